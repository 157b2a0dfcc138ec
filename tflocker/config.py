"""
Configuration
=============

Configuration is a nested dict, loaded from YAML and layered as:

    built-in defaults < config file < environment

Environment overrides:
    DATABASE_URL        database.url
    PORT                server.port
    TFLOCKER_LOG_LEVEL  logging.level
"""

import copy
import os
from pathlib import Path
from typing import Optional

import yaml


DEFAULT_CONFIG = {
    "server": {
        "host": "0.0.0.0",
        "port": 8080,
    },
    "database": {
        # "memory://" selects the in-memory ledger
        "url": "sqlite:///./state/tflocker.db",
        "timeout_sec": 5,
        "echo": False,
    },
    "logging": {
        "level": "INFO",
    },
}

CONFIG_ENV_VAR = "TFLOCKER_CONFIG"


class ConfigError(ValueError):
    """The configuration file or an override could not be used"""


def _merge(base: dict, override: dict) -> dict:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def _apply_env(config: dict, environ) -> None:
    if environ.get("DATABASE_URL"):
        config["database"]["url"] = environ["DATABASE_URL"]

    port = environ.get("PORT")
    if port:
        try:
            config["server"]["port"] = int(port)
        except ValueError as e:
            raise ConfigError(f"Can't parse port [{port}]") from e

    if environ.get("TFLOCKER_LOG_LEVEL"):
        config["logging"]["level"] = environ["TFLOCKER_LOG_LEVEL"]


def load_config(path: Optional[str | Path] = None, environ=None) -> dict:
    """
    Load configuration.

    Args:
        path: YAML file to read. Defaults to $TFLOCKER_CONFIG, then
            ./config.yaml if it exists.
        environ: Environment mapping (defaults to os.environ)
    """
    environ = os.environ if environ is None else environ
    config = copy.deepcopy(DEFAULT_CONFIG)

    if path is None:
        path = environ.get(CONFIG_ENV_VAR)
        if path is None and Path("config.yaml").exists():
            path = "config.yaml"

    if path is not None:
        config_path = Path(path)
        try:
            with open(config_path) as f:
                loaded = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Can't read config {config_path}: {e}") from e
        if not isinstance(loaded, dict):
            raise ConfigError(f"Config {config_path} must be a mapping")
        _merge(config, loaded)

    _apply_env(config, environ)
    return config
