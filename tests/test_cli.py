"""
Tests for the CLI interface.
"""
import logging
import os
import shutil
import tempfile
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from callguard.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL
from callguard.core.billing import month_start
from callguard.core.transcription import TokenUsage, TranscriptionResult, UpstreamUnavailable
from callguard.storage.models import RecordStatus
from callguard.storage.repository import SqliteRecordStore

runner = CliRunner()

CONFIG = """
processing:
  max_retries: 2
billing:
  overage_rate_per_minute_usd: 0.10
  default_plan:
    base_monthly_charge_usd: 20
    included_audio_hours: 8
tenants:
  acme:
    timezone: America/New_York
    jobs:
      retention:
        daily_time: "03:15"
"""


@pytest.fixture(autouse=True)
def restore_logging():
    """The CLI reconfigures the root logger; put it back afterwards."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def workspace():
    """Temporary database and config file."""
    temp_dir = tempfile.mkdtemp()
    db_path = os.path.join(temp_dir, "test.db")
    config_path = os.path.join(temp_dir, "config.yaml")
    with open(config_path, "w", encoding="utf-8") as f:
        f.write(CONFIG)
    yield db_path, config_path
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def mock_client_class():
    """Mock the OpenAI-backed client used by process and retry."""
    with patch('callguard.cli.main.OpenAITranscriptionClient') as mock_class:
        mock_class.return_value.transcribe_and_analyze.return_value = TranscriptionResult(
            transcript="thanks for calling",
            analysis="1. **Summary**\nA short call.",
            model="gpt-4o-mini",
            usage=TokenUsage(input_tokens=100, output_tokens=20),
        )
        yield mock_class


def _invoke(workspace, *args):
    db_path, config_path = workspace
    return runner.invoke(app, ["--db", db_path, "--config", config_path, *args])


def _ingest(workspace, external_id="CA1", *extra):
    result = _invoke(workspace, "ingest", "acme", "twilio_call", "--external-id", external_id, *extra)
    assert result.exit_code == EXIT_CODE_PASS, result.output
    store = SqliteRecordStore(workspace[0])
    return store.find_by_composite_key("twilio_call", external_id)


class TestCLI:
    """Test CLI commands."""

    def test_init_creates_database(self, workspace):
        result = _invoke(workspace, "init")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized" in result.output
        assert os.path.exists(workspace[0])

    def test_commands_before_init_fail_cleanly(self, workspace):
        result = _invoke(workspace, "status")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "callguard init" in result.output

    def test_ingest_and_show(self, workspace):
        _invoke(workspace, "init")
        record = _ingest(workspace, "CA1", "--audio", "https://example.com/a.wav", "--duration", "90")

        assert record.status == RecordStatus.PENDING
        assert record.duration_seconds == 90

        result = _invoke(workspace, "show", record.id)
        assert result.exit_code == EXIT_CODE_PASS
        assert "acme" in result.output
        assert "pending" in result.output

    def test_ingest_twice_keeps_one_record(self, workspace):
        _invoke(workspace, "init")
        first = _ingest(workspace, "CA1")
        second = _ingest(workspace, "CA1")

        assert first.id == second.id
        result = _invoke(workspace, "status")
        assert result.exit_code == EXIT_CODE_PASS
        assert "pending" in result.output

    def test_ingest_bad_timestamp(self, workspace):
        _invoke(workspace, "init")
        result = _invoke(workspace, "ingest", "acme", "twilio_call", "--occurred-at", "last tuesday")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid timestamp" in result.output

    def test_show_unknown_record(self, workspace):
        _invoke(workspace, "init")
        result = _invoke(workspace, "show", "does-not-exist")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Record not found" in result.output

    def test_process_completes_record(self, workspace, mock_client_class):
        _invoke(workspace, "init")
        record = _ingest(workspace, "CA1", "--audio", "https://example.com/a.wav")

        result = _invoke(workspace, "process", record.id)

        assert result.exit_code == EXIT_CODE_PASS, result.output
        assert "completed" in result.output
        mock_client_class.return_value.transcribe_and_analyze.assert_called_once_with("https://example.com/a.wav")
        stored = SqliteRecordStore(workspace[0]).get_by_id(record.id)
        assert stored.transcript == "thanks for calling"

    def test_process_failure_exits_nonzero(self, workspace, mock_client_class):
        mock_client_class.return_value.transcribe_and_analyze.side_effect = UpstreamUnavailable("timed out")
        _invoke(workspace, "init")
        record = _ingest(workspace, "CA1", "--audio", "https://example.com/a.wav")

        result = _invoke(workspace, "process", record.id)

        assert result.exit_code == EXIT_CODE_FAIL
        assert "timed out" in result.output

    def test_retry_budget_from_config(self, workspace, mock_client_class):
        """max_retries: 2 in the config allows two attempts in total."""
        mock_client_class.return_value.transcribe_and_analyze.side_effect = UpstreamUnavailable("timed out")
        _invoke(workspace, "init")
        record = _ingest(workspace, "CA1", "--audio", "https://example.com/a.wav")
        _invoke(workspace, "process", record.id)
        _invoke(workspace, "retry", record.id)

        result = _invoke(workspace, "retry", record.id)

        assert result.exit_code == EXIT_CODE_FAIL
        assert "2 of 2 attempts" in result.output
        assert mock_client_class.return_value.transcribe_and_analyze.call_count == 2

    def test_process_requires_target(self, workspace):
        _invoke(workspace, "init")
        result = _invoke(workspace, "process")

        assert result.exit_code == EXIT_CODE_FAIL

    def test_process_backlog(self, workspace, mock_client_class):
        _invoke(workspace, "init")
        _ingest(workspace, "CA1", "--audio", "https://example.com/1.wav")
        _ingest(workspace, "CA2", "--audio", "https://example.com/2.wav")

        result = _invoke(workspace, "process", "--backlog")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Attempted 2 record(s), 2 completed" in result.output

    def test_billing_recompute_and_finalize(self, workspace, mock_client_class):
        _invoke(workspace, "init")
        record = _ingest(workspace, "CA1", "--audio", "https://example.com/a.wav", "--duration", "36000")
        _invoke(workspace, "process", record.id)
        month = f"{month_start(datetime.now(timezone.utc).date()):%Y-%m}"

        result = _invoke(workspace, "billing-recompute", "acme", month)
        assert result.exit_code == EXIT_CODE_PASS, result.output
        assert "$32.00" in result.output

        result = _invoke(workspace, "billing-finalize", "acme", month)
        assert result.exit_code == EXIT_CODE_PASS
        assert "finalized" in result.output

        result = _invoke(workspace, "billing-recompute", "acme", month)
        assert result.exit_code == EXIT_CODE_FAIL
        assert "is finalized" in result.output

    def test_billing_show_missing_month(self, workspace):
        _invoke(workspace, "init")
        result = _invoke(workspace, "billing-show", "acme", "2020-01")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "No billing data" in result.output

    def test_billing_finalize_missing_month(self, workspace):
        _invoke(workspace, "init")
        result = _invoke(workspace, "billing-finalize", "acme", "2020-01")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "No billing month" in result.output

    def test_billing_bad_month(self, workspace):
        _invoke(workspace, "init")
        result = _invoke(workspace, "billing-show", "acme", "January")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid month" in result.output

    def test_billing_history(self, workspace):
        _invoke(workspace, "init")
        result = _invoke(workspace, "billing-history", "acme", "--months", "2")

        assert result.exit_code == EXIT_CODE_PASS
        assert "finalized" in result.output
        assert "open" in result.output

    def test_next_run_and_due(self, workspace):
        _invoke(workspace, "init")

        result = _invoke(workspace, "next-run", "acme", "retention")
        assert result.exit_code == EXIT_CODE_PASS
        next_run = datetime.fromisoformat(result.output.strip())
        assert next_run > datetime.now(timezone.utc)

        result = _invoke(workspace, "due", "acme", "retention")
        assert result.exit_code == EXIT_CODE_PASS
        assert result.output.strip() in ("due", "not due")

    def test_invalid_config_fails(self, workspace):
        db_path, config_path = workspace
        with open(config_path, "w", encoding="utf-8") as f:
            f.write("unknown_section: {}\n")

        result = runner.invoke(app, ["--db", db_path, "--config", config_path, "show", "x"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unknown keys" in result.output

    def test_read_only_commands_do_not_build_client(self, workspace, mock_client_class):
        _invoke(workspace, "init")
        record = _ingest(workspace, "CA1")

        result = _invoke(workspace, "show", record.id)

        assert result.exit_code == EXIT_CODE_PASS
        mock_client_class.assert_not_called()
