"""
HTTP Server
===========

Flask application exposing a StateStore over the HTTP state-backend contract:

    GET        /state/<name>/<state_id>          read
    POST, PUT  /state/<name>/<state_id>?ID=<id>  write
    DELETE     /state/<name>/<state_id>?ID=<id>  delete
    LOCK       /state/<name>/<state_id>          lock   (body: lock token)
    UNLOCK     /state/<name>/<state_id>          unlock (body: lock token)
    GET        /healthz

Identifiers are validated before the store is called. Store errors map to:

    InvalidRequest     400
    LockConflict       409
    LockNotHeld        409
    AlreadyLocked      423 (body: the token holding the lock)
    StoreTimeout       503
    anything else      500
"""

import base64
import hashlib
import logging

from flask import Flask, Response, request

from .errors import (
    AlreadyLocked,
    InconsistentState,
    InvalidRequest,
    LockConflict,
    LockNotHeld,
    StoreError,
    StoreTimeout,
)
from .state.ledger import StateKey
from .store import StateStore

logger = logging.getLogger(__name__)


STATE_PATH = "/state/<name>/<state_id>"


def md5_hash(data: bytes) -> str:
    """Base64 MD5 digest, as used in the Content-MD5 header"""
    return base64.b64encode(hashlib.md5(data).digest()).decode("ascii")


def _text(message: str, status: int) -> Response:
    return Response(message + "\n", status=status, mimetype="text/plain")


def create_app(store: StateStore) -> Flask:
    """Build the Flask app serving store"""
    app = Flask(__name__)

    # =========================================================================
    # State routes
    # =========================================================================

    @app.route(STATE_PATH, methods=["GET"])
    def get_state(name: str, state_id: str):
        key = StateKey.parse(name, state_id)
        data = store.read(key)

        response = Response(data, status=200, mimetype="application/json")
        digest = ""
        if data:
            digest = md5_hash(data)
            response.headers["Content-MD5"] = digest
        logger.info("GET: %s %d %s", key, len(data), digest)
        return response

    @app.route(STATE_PATH, methods=["POST", "PUT"])
    def set_state(name: str, state_id: str):
        key = StateKey.parse(name, state_id)
        body = request.get_data()

        expected = request.headers.get("Content-MD5")
        if expected and expected != md5_hash(body):
            raise InvalidRequest(f"Content-MD5 mismatch for {key}")

        lock_id = request.args.get("ID", "")
        if not lock_id:
            logger.debug("SET %s without lock id", key)

        version = store.write(key, lock_id, body)
        logger.info("SET: %s %d %s version %d", key, len(body), md5_hash(body), version)
        return _text("OK", 200)

    @app.route(STATE_PATH, methods=["DELETE"])
    def delete_state(name: str, state_id: str):
        key = StateKey.parse(name, state_id)
        version = store.delete(key, request.args.get("ID", ""))
        logger.info("DELETE: %s version %d", key, version)
        return _text("OK", 200)

    @app.route(STATE_PATH, methods=["LOCK"])
    def lock_state(name: str, state_id: str):
        key = StateKey.parse(name, state_id)
        token = request.get_data(as_text=True)
        store.lock(key, token)
        logger.info("LOCK: %s", key)
        return _text("OK", 200)

    @app.route(STATE_PATH, methods=["UNLOCK"])
    def unlock_state(name: str, state_id: str):
        key = StateKey.parse(name, state_id)
        token = request.get_data(as_text=True)
        store.unlock(key, token)
        logger.info("UNLOCK: %s", key)
        return _text("OK", 200)

    @app.route("/healthz", methods=["GET"])
    def healthz():
        return _text("OK", 200)

    # =========================================================================
    # Error mapping
    # =========================================================================

    @app.errorhandler(InvalidRequest)
    def invalid_request(e):
        logger.warning("Invalid request %s %s: %s", request.method, request.path, e)
        return _text(str(e), 400)

    @app.errorhandler(AlreadyLocked)
    def already_locked(e):
        logger.info("LOCK: already locked %s", e.key)
        return Response(e.current_token or "", status=423, mimetype="application/json")

    @app.errorhandler(LockConflict)
    def lock_conflict(e):
        return _text(str(e), 409)

    @app.errorhandler(LockNotHeld)
    def lock_not_held(e):
        return _text(str(e), 409)

    @app.errorhandler(StoreTimeout)
    def store_timeout(e):
        return _text("Store timed out", 503)

    @app.errorhandler(StoreError)
    @app.errorhandler(InconsistentState)
    def store_failure(e):
        return _text("Internal error", 500)

    return app
