"""Unit tests for the CLI — command registration and behaviour via CliRunner."""

from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from sinkrelay.cli.app import app
from sinkrelay.cli.commands.send import parse_json
from sinkrelay.core.delivery_log import DeliveryLog
from sinkrelay.core.errors import ValidationError
from sinkrelay.models.batches import BatchState
from sinkrelay.models.outcomes import DeliveryLogEntry

runner = CliRunner()


# ---------------------------------------------------------------------------
# Test: CLI help and registration
# ---------------------------------------------------------------------------


class TestCliApp:
    def test_help_flag(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("policies", "send", "log", "demo"):
            assert command in result.output

    @pytest.mark.parametrize("command", ["policies", "send", "log", "demo"])
    def test_command_help(self, command):
        result = runner.invoke(app, [command, "--help"])
        assert result.exit_code == 0


class TestPolicies:
    def test_lists_every_destination_type(self):
        result = runner.invoke(app, ["policies"])
        assert result.exit_code == 0
        for name in ("http", "object-storage", "email", "push-channel", "re-emit", "tabular"):
            assert name in result.output


class TestParseJson:
    def test_empty_is_none(self):
        assert parse_json("", field="--payload") is None
        assert parse_json("   ", field="--payload") is None

    def test_valid(self):
        assert parse_json('{"a": [1, 2]}', field="--config") == {"a": [1, 2]}

    def test_invalid_raises(self):
        with pytest.raises(ValidationError, match="--config must be valid JSON"):
            parse_json("{not json", field="--config")


class TestSend:
    def test_send_to_object_storage(self, tmp_dir):
        config = {"bucket": "cli", "keyTemplate": "{batch_id}.jsonl", "format": "jsonl"}
        result = runner.invoke(
            app,
            [
                "send",
                "object-storage",
                "--config", json.dumps(config),
                "--payload", '{"hello": "world"}',
                "--object-store", str(tmp_dir / "objects"),
                "--log-db", str(tmp_dir / "log.db"),
            ],
        )
        assert result.exit_code == 0, result.output
        assert "delivered" in result.output
        files = list((tmp_dir / "objects" / "cli").glob("*.jsonl"))
        assert len(files) == 1
        assert json.loads(files[0].read_text())["payload"] == {"hello": "world"}

    def test_invalid_config_json_is_rejected(self, tmp_dir):
        result = runner.invoke(
            app, ["send", "http", "--config", "{nope", "--log-db", str(tmp_dir / "log.db")]
        )
        assert result.exit_code == 1
        assert "Rejected" in result.output

    def test_unknown_type_is_rejected(self, tmp_dir):
        result = runner.invoke(
            app, ["send", "pager", "--config", "{}", "--log-db", str(tmp_dir / "log.db")]
        )
        assert result.exit_code == 1
        assert "pager" in result.output


class TestLog:
    def test_missing_log(self, tmp_dir):
        result = runner.invoke(app, ["log", "--log-db", str(tmp_dir / "absent.db")])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_shows_entries(self, tmp_dir):
        log = DeliveryLog(tmp_dir / "log.db")
        log.append(
            DeliveryLogEntry(
                batch_id="batch-abc",
                destination_key="http:k",
                outcome=BatchState.EXHAUSTED_FAILED,
                attempts=5,
                last_error="503",
            )
        )
        result = runner.invoke(app, ["log", "--log-db", str(tmp_dir / "log.db")])
        assert result.exit_code == 0
        assert "batch-abc" in result.output
        assert "exhausted_failed" in result.output

    def test_unknown_outcome_filter(self, tmp_dir):
        DeliveryLog(tmp_dir / "log.db")
        result = runner.invoke(
            app, ["log", "--outcome", "lost", "--log-db", str(tmp_dir / "log.db")]
        )
        assert result.exit_code == 1


class TestDemo:
    def test_demo_runs_and_writes_objects(self, tmp_dir):
        result = runner.invoke(
            app,
            [
                "demo",
                "--executions", "2",
                "--events", "5",
                "--batch-size", "2",
                "--object-store", str(tmp_dir / "objects"),
                "--log-db", str(tmp_dir / "demo.db"),
            ],
        )
        assert result.exit_code == 0, result.output
        # 5 events in batches of 2 -> 3 objects per execution.
        assert len(list((tmp_dir / "objects" / "demo-events").rglob("*.jsonl"))) == 6
        assert "Re-emitted summaries: 2" in result.output
