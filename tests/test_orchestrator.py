"""
Unit tests for processing orchestration.

Tests the retry budget, failure recording and redaction on completion.
"""

import os
import shutil
import tempfile
from datetime import datetime, timezone

import pytest

from callguard.core.clock import FixedClock
from callguard.core.orchestrator import MAX_RETRIES, ProcessingOrchestrator, RetryExhausted
from callguard.core.redaction import KeywordRedactionPolicy
from callguard.core.status import StatusStateMachine
from callguard.core.transcription import (
    TokenUsage,
    TranscriptionResult,
    TranscriptWord,
    UpstreamUnavailable,
)
from callguard.storage.models import ProcessingRecord, RecordStatus, RedactionStatus
from callguard.storage.repository import SqliteRecordStore

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeClient:
    """Returns queued results, raising queued exceptions."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def transcribe_and_analyze(self, audio_locator):
        self.calls.append(audio_locator)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _result(transcript="thanks for calling", words=()) -> TranscriptionResult:
    return TranscriptionResult(
        transcript=transcript,
        analysis="1. **Summary**\nCustomer called.",
        model="gpt-4o-mini",
        usage=TokenUsage(input_tokens=200, output_tokens=40),
        words=tuple(words),
    )


class BrokenPolicy:
    """Redaction policy whose scan always raises."""

    def scan(self, transcript, words=()):
        raise RuntimeError("pattern table unavailable")

    def sanitize(self, transcript):
        return transcript


class TestProcessingOrchestrator:
    """Test orchestration against a real store."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.store = SqliteRecordStore(os.path.join(self.temp_dir, "test.db"))
        self.store.initialize()
        self.machine = StatusStateMachine(self.store, clock=FixedClock(NOW))

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _insert(self, record_id="rec-1", audio_locator="https://example.com/rec.wav"):
        return self.store.insert(ProcessingRecord(
            id=record_id,
            tenant_id="tenant-a",
            source_type="twilio_call",
            external_id=f"CA-{record_id}",
            created_at=NOW,
            audio_locator=audio_locator,
            duration_seconds=60,
        ))

    def _orchestrator(self, client, **kwargs):
        return ProcessingOrchestrator(self.machine, client, **kwargs)

    def test_process_completes_record(self):
        """A successful attempt stores results and usage."""
        client = FakeClient([_result()])
        record = self._insert()

        completed = self._orchestrator(client).process(record)

        assert completed.status == RecordStatus.COMPLETED
        stored = self.store.get_by_id("rec-1")
        assert stored.transcript == "thanks for calling"
        assert stored.analysis is not None
        assert stored.processed_at == NOW
        assert stored.input_tokens == 200
        assert stored.output_tokens == 40
        assert stored.retry_count == 1
        assert client.calls == ["https://example.com/rec.wav"]

    def test_upstream_failure_is_recorded(self):
        """Client failures become failed records with last_error."""
        client = FakeClient([UpstreamUnavailable("service timed out")])

        failed = self._orchestrator(client).process(self._insert())

        assert failed.status == RecordStatus.FAILED
        stored = self.store.get_by_id("rec-1")
        assert stored.status == RecordStatus.FAILED
        assert stored.last_error == "service timed out"
        assert stored.last_attempt_at == NOW
        assert stored.retry_count == 1

    def test_retry_budget_is_bounded(self):
        """MAX_RETRIES attempts in total, then RetryExhausted."""
        client = FakeClient([UpstreamUnavailable("down")] * MAX_RETRIES)
        orchestrator = self._orchestrator(client)

        record = orchestrator.process(self._insert())
        assert record.retry_count == 1
        for expected in range(2, MAX_RETRIES + 1):
            record = orchestrator.retry(record)
            assert record.status == RecordStatus.FAILED
            assert record.retry_count == expected

        before = self.store.get_by_id("rec-1")
        with pytest.raises(RetryExhausted, match=f"{MAX_RETRIES} of {MAX_RETRIES} attempts"):
            orchestrator.retry(before)

        assert self.store.get_by_id("rec-1") == before
        assert len(client.calls) == MAX_RETRIES

    def test_exhausted_record_is_not_processed(self):
        """process leaves a failed record with a spent budget untouched."""
        client = FakeClient([UpstreamUnavailable("down")])
        orchestrator = self._orchestrator(client, max_retries=1)

        record = orchestrator.process(self._insert())
        assert record.retry_count == 1

        assert orchestrator.process(record) is None
        assert not orchestrator.is_eligible(record)
        with pytest.raises(RetryExhausted):
            orchestrator.retry(record)
        assert len(client.calls) == 1

    def test_retry_after_failure_can_complete(self):
        """A retry that succeeds clears last_error and keeps the count."""
        client = FakeClient([UpstreamUnavailable("down"), _result()])
        orchestrator = self._orchestrator(client)

        completed = orchestrator.retry(orchestrator.process(self._insert()))

        assert completed.status == RecordStatus.COMPLETED
        assert completed.retry_count == 2
        assert self.store.get_by_id("rec-1").last_error is None

    def test_record_without_audio_is_skipped(self):
        """Records waiting for media stay pending."""
        client = FakeClient([])
        record = self._insert(audio_locator=None)

        assert self._orchestrator(client).process(record) is None
        assert self.store.get_by_id("rec-1").status == RecordStatus.PENDING
        assert client.calls == []

    def test_completed_record_is_not_reprocessed(self):
        client = FakeClient([_result()])
        orchestrator = self._orchestrator(client)
        completed = orchestrator.process(self._insert())

        assert orchestrator.process(completed) is None
        assert len(client.calls) == 1

    def test_concurrent_claim_skips_client(self):
        """A stale copy of an already claimed record does nothing."""
        client = FakeClient([_result()])
        record = self._insert()
        self.machine.begin(record)

        assert self._orchestrator(client).process(record) is None
        assert client.calls == []

    def test_redaction_on_completion(self):
        """Sensitive spans are recorded and the transcript is masked."""
        spoken = ["my", "card", "number", "is", "4111", "1111", "1111", "1111", "thanks"]
        words = [TranscriptWord(word=w, start=i * 0.5, end=(i + 1) * 0.5) for i, w in enumerate(spoken)]
        client = FakeClient([_result(transcript=" ".join(spoken), words=words)])
        orchestrator = self._orchestrator(client, redaction_policy=KeywordRedactionPolicy())

        completed = orchestrator.process(self._insert())

        assert completed.redacted is True
        assert completed.redaction_status == RedactionStatus.COMPLETED
        assert len(completed.redacted_segments) == 1
        assert "card_number" in completed.redacted_segments[0].reason.split(",")
        assert "4111" not in completed.transcript
        assert "[REDACTED]" in completed.transcript
        assert self.store.get_by_id("rec-1").redacted_segments == completed.redacted_segments

    def test_negative_max_retries_rejected(self):
        with pytest.raises(ValueError):
            self._orchestrator(FakeClient([]), max_retries=-1)

    def test_masked_text_without_word_timings_is_marked_redacted(self):
        """Without timings no segments are found, but the masked text is recorded as a redaction."""
        transcript = "my card number is 4111 1111 1111 1111"
        client = FakeClient([_result(transcript=transcript)])
        orchestrator = self._orchestrator(client, redaction_policy=KeywordRedactionPolicy())

        completed = orchestrator.process(self._insert())

        stored = self.store.get_by_id("rec-1")
        assert stored == completed
        assert "4111" not in stored.transcript
        assert stored.redacted is True
        assert stored.redaction_status == RedactionStatus.COMPLETED
        assert stored.redacted_segments == ()

    def test_redaction_error_fails_record(self):
        """A policy that raises leaves the record failed and retryable, never processing."""
        client = FakeClient([_result(), _result()])
        orchestrator = self._orchestrator(client, redaction_policy=BrokenPolicy())

        failed = orchestrator.process(self._insert())

        stored = self.store.get_by_id("rec-1")
        assert stored == failed
        assert stored.status == RecordStatus.FAILED
        assert stored.redaction_status == RedactionStatus.FAILED
        assert "Redaction failed" in stored.last_error
        assert stored.transcript is None
        assert orchestrator.is_eligible(stored)

        orchestrator.redaction_policy = KeywordRedactionPolicy()
        completed = orchestrator.retry(stored)
        assert completed.status == RecordStatus.COMPLETED
        assert completed.redaction_status == RedactionStatus.NOT_NEEDED

    def test_process_without_client_rejected(self):
        record = self._insert()
        orchestrator = ProcessingOrchestrator(self.machine)

        assert orchestrator.is_eligible(record)
        with pytest.raises(ValueError, match="No transcription client"):
            orchestrator.process(record)
        assert self.store.get_by_id("rec-1").status == RecordStatus.PENDING
