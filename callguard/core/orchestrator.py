"""
Transcription and analysis orchestration.

Drives a record through transcription, analysis and redaction under the
status state machine, within a bounded retry budget.

Retry policy:
1. ``retry_count`` counts attempts, including the first one
2. Failed records are only re-attempted through an explicit call
3. The budget is never reset, so at most MAX_RETRIES attempts ever run
"""

import logging
from typing import Optional

from .redaction import NoRedactionPolicy, RedactionPolicy
from .status import StatusStateMachine
from .transcription import TranscriptionAnalysisClient, UpstreamUnavailable
from callguard.storage.models import ProcessingRecord, RecordStatus

logger = logging.getLogger(__name__)

MAX_RETRIES = 3


class RetryExhausted(Exception):
    """Raised when an operator retry is requested on a spent retry budget."""
    def __init__(self, record_id: str, retry_count: int, max_retries: int):
        super().__init__(
            f"Record {record_id} has used {retry_count} of {max_retries} attempts"
        )
        self.record_id = record_id
        self.retry_count = retry_count
        self.max_retries = max_retries


class ProcessingOrchestrator:
    """Coordinates the transcription client, redaction and status updates.

    The client call may take seconds; nothing is held across it except the
    record's ``processing`` status, which is already committed in the store.
    Without a client the orchestrator can still report eligibility, but
    ``process`` and ``retry`` refuse to run.
    """

    def __init__(
        self,
        state_machine: StatusStateMachine,
        client: Optional[TranscriptionAnalysisClient] = None,
        redaction_policy: Optional[RedactionPolicy] = None,
        max_retries: int = MAX_RETRIES,
    ):
        if max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        self.state_machine = state_machine
        self.client = client
        self.redaction_policy = redaction_policy or NoRedactionPolicy()
        self.max_retries = max_retries

    def is_eligible(self, record: ProcessingRecord) -> bool:
        """Whether ``process`` would attempt this record."""
        if record.status == RecordStatus.PENDING:
            return True
        if record.status == RecordStatus.FAILED:
            return record.retry_count < self.max_retries
        return False

    def process(self, record: ProcessingRecord) -> Optional[ProcessingRecord]:
        """Transcribe, analyze and redact a record.

        Ineligible records (processing, completed, or failed with the budget
        spent) and records still waiting for media are left untouched.

        Args:
            record: Record as last read from the store

        Returns:
            The record after this attempt, or None if nothing was attempted
            (ineligible, or claimed by another worker)

        Raises:
            ValueError: If no transcription client is configured
        """
        if self.client is None:
            raise ValueError("No transcription client configured")
        if not self.is_eligible(record):
            logger.debug("Record %s not eligible (status=%s, attempts=%d)",
                         record.id, record.status.value, record.retry_count)
            return None
        if not record.audio_locator:
            logger.info("Record %s has no audio yet; skipping", record.id)
            return None

        claimed = self.state_machine.begin(record)
        if claimed is None:
            return None

        logger.info("Processing record %s (attempt %d of %d)",
                    claimed.id, claimed.retry_count, self.max_retries)
        try:
            result = self.client.transcribe_and_analyze(claimed.audio_locator)
        except UpstreamUnavailable as e:
            logger.warning("Transcription failed for record %s: %s", claimed.id, e)
            return self._fail(claimed, str(e) or type(e).__name__)

        try:
            segments = self.redaction_policy.scan(result.transcript, result.words)
            transcript = self.redaction_policy.sanitize(result.transcript)
        except Exception as e:
            logger.error("Redaction failed for record %s: %s", claimed.id, e)
            return self._fail(claimed, f"Redaction failed: {type(e).__name__}: {e}", redaction_failed=True)
        if segments:
            logger.info("Redacted %d segment(s) in record %s", len(segments), claimed.id)

        try:
            completed = self.state_machine.complete(claimed, result, segments, transcript)
        except Exception as e:
            logger.error("Could not store results for record %s: %s", claimed.id, e)
            return self._fail(claimed, f"Storing results failed: {type(e).__name__}: {e}")
        if completed is not None:
            logger.info("Record %s completed", completed.id)
        return completed

    def retry(self, record: ProcessingRecord) -> Optional[ProcessingRecord]:
        """Operator-triggered retry.

        Raises:
            RetryExhausted: If the record has used its whole retry budget
        """
        if record.retry_count >= self.max_retries:
            raise RetryExhausted(record.id, record.retry_count, self.max_retries)
        return self.process(record)

    def _fail(self, claimed: ProcessingRecord, reason: str, redaction_failed: bool = False) -> Optional[ProcessingRecord]:
        failed = self.state_machine.fail(claimed, reason, redaction_failed=redaction_failed)
        if failed is not None and failed.retry_count >= self.max_retries:
            logger.warning("Record %s exhausted its retry budget", failed.id)
        return failed
