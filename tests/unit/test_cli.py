"""
Tests for the operator CLI.
"""
import json

import pytest
from typer.testing import CliRunner

from signalstream.cli import app
from signalstream.domain.models import StreamingLogType
from signalstream.storage.db import Database
from signalstream.storage.streaming_log import StreamingLogSink

runner = CliRunner()


@pytest.fixture
def cli_env(monkeypatch, tmp_path):
    for name in ("METAAPI_ACCOUNT_ID", "METAAPI_TOKEN", "METAAPI_REGION_URL", "TELEGRAM_BOT_TOKEN", "TELEGRAM_CHANNEL_ID"):
        monkeypatch.delenv(name, raising=False)
    database_url = f"sqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setenv("DATABASE_URL", database_url)
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.chdir(tmp_path)
    return database_url


def _config(tmp_path, broker: str = "") -> str:
    path = tmp_path / "config.yaml"
    path.write_text(broker + "monitoring:\n  log_level: WARNING\n  log_format: text\n")
    return str(path)


def _seed_logs(database_url: str, *messages: str) -> None:
    db = Database(database_url)
    db.create_all()
    sink = StreamingLogSink(db)
    for message in messages:
        sink._write(StreamingLogType.POSITION_DETECTED.value, message, True, None, "555", None, "acc-1", {})
    db.dispose()


class TestCheckConfig:

    def test_ok(self, cli_env, tmp_path):
        config = _config(tmp_path, "broker:\n  account_id: acc-1\n  token: tok\n")
        result = runner.invoke(app, ["check-config", "--config", config])
        assert result.exit_code == 0, result.output
        assert "Broker account acc-1" in result.output

    def test_missing_credentials(self, cli_env, tmp_path):
        result = runner.invoke(app, ["check-config", "--config", _config(tmp_path)])
        assert result.exit_code == 1

    def test_missing_file(self, cli_env, tmp_path):
        result = runner.invoke(app, ["check-config", "--config", str(tmp_path / "nope.yaml")])
        assert result.exit_code == 2


class TestLogs:

    def test_json_output(self, cli_env, tmp_path):
        _seed_logs(cli_env, "first", "second")
        result = runner.invoke(app, ["logs", "--config", _config(tmp_path), "--json", "--limit", "1"])

        assert result.exit_code == 0, result.output
        entries = json.loads(result.output)
        assert [e["message"] for e in entries] == ["second"]

    def test_empty(self, cli_env, tmp_path):
        result = runner.invoke(app, ["logs", "--config", _config(tmp_path)])
        assert result.exit_code == 0
        assert "No log entries." in result.output

    def test_clear_logs(self, cli_env, tmp_path):
        _seed_logs(cli_env, "a", "b")
        result = runner.invoke(app, ["clear-logs", "--config", _config(tmp_path), "--yes"])
        assert result.exit_code == 0
        assert "Deleted 2 log entries." in result.output


def test_status_without_record(cli_env, tmp_path):
    result = runner.invoke(app, ["status", "--config", _config(tmp_path)])
    assert result.exit_code == 0
    assert "Not running" in result.output


def test_sweep_locks(cli_env, tmp_path):
    result = runner.invoke(app, ["sweep-locks", "--config", _config(tmp_path)])
    assert result.exit_code == 0
    assert "Removed 0 archive locks and 0 signal locks." in result.output
