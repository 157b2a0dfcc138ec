"""Unit tests for the command-line interface."""

import pytest
from click.testing import CliRunner

from tflocker.cli import main
from tflocker.lock_info import LockInfo


STATE_ID = "5d0c9d5c-8e0f-4a8e-9a43-3f3c1c6b2a10"


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(f"database:\n  url: sqlite:///{tmp_path / 'states.db'}\n")
    return path


@pytest.fixture
def run(config_file):
    runner = CliRunner()

    def invoke(*args):
        return runner.invoke(
            main,
            ["--config", str(config_file), "--log-level", "WARNING", *args],
            catch_exceptions=False,
        )

    return invoke


class TestCli:

    def test_init_db(self, run, tmp_path):
        result = run("init-db")

        assert result.exit_code == 0
        assert (tmp_path / "states.db").exists()

    def test_status_empty(self, run):
        result = run("status")

        assert result.exit_code == 0
        assert "No states found" in result.output

    def test_lock_status_unlock(self, run):
        result = run("lock", "env", STATE_ID, "--operation", "maintenance")
        assert result.exit_code == 0
        token = result.output.strip().splitlines()[-1]
        assert LockInfo.from_json(token).Operation == "maintenance"

        status = run("status")
        assert "env" in status.output
        assert "locked" in status.output

        again = run("lock", "env", STATE_ID)
        assert again.exit_code == 1
        assert "already locked" in again.output

        assert run("unlock", "env", STATE_ID, "wrong").exit_code != 0
        assert run("unlock", "env", STATE_ID, token).exit_code == 0
        assert "unlocked" in run("status").output

    def test_history_and_read(self, run, tmp_path):
        from tflocker.config import load_config
        from tflocker.state import StateKey
        from tflocker.store import create_store

        store = create_store(load_config(tmp_path / "config.yaml", environ={}))
        key = StateKey.parse("env", STATE_ID)
        store.write(key, "", b"first")
        store.write(key, "", b"second")
        store.ledger.close()

        history = run("history", "env", STATE_ID)
        assert history.exit_code == 0
        assert "History of env" in history.output

        out = tmp_path / "blob.out"
        assert run("read", "env", STATE_ID, "--output", str(out)).exit_code == 0
        assert out.read_bytes() == b"second"

    def test_history_of_missing_state(self, run):
        result = run("history", "env", STATE_ID)

        assert result.exit_code == 0
        assert "No versions" in result.output

    def test_bad_state_id(self, run):
        result = run("history", "env", "not-a-uuid")

        assert result.exit_code == 2
