"""
Processing status state machine.

Owns the lifecycle of a call or voicemail record:

    pending -> processing -> completed
                          -> failed -> processing (explicit retry only)

Transitions are validated here and applied through a conditional store
update keyed on the status the caller observed. When two workers race on
the same record exactly one update matches; the loser gets ``None`` back
and must treat the record as already claimed.
"""

import logging
from dataclasses import replace
from typing import Dict, FrozenSet, Optional, Sequence

from .clock import Clock, SystemClock
from .transcription import TranscriptionResult
from callguard.storage.models import ProcessingRecord, RecordStatus, RedactedSegment, RedactionStatus
from callguard.storage.repository import RecordStore

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[RecordStatus, FrozenSet[RecordStatus]] = {
    RecordStatus.PENDING: frozenset({RecordStatus.PROCESSING}),
    RecordStatus.PROCESSING: frozenset({RecordStatus.COMPLETED, RecordStatus.FAILED}),
    RecordStatus.FAILED: frozenset({RecordStatus.PROCESSING}),
    RecordStatus.COMPLETED: frozenset(),
}


class InvalidTransition(Exception):
    """Raised when a state change is not allowed from the current status."""
    def __init__(self, record_id: str, current: RecordStatus, target: RecordStatus):
        super().__init__(
            f"Cannot move record {record_id} from {current.value} to {target.value}"
        )
        self.record_id = record_id
        self.current = current
        self.target = target


def check_transition(record: ProcessingRecord, target: RecordStatus) -> None:
    """Raise InvalidTransition unless ``record`` may move to ``target``."""
    if target not in ALLOWED_TRANSITIONS[record.status]:
        raise InvalidTransition(record.id, record.status, target)


class StatusStateMachine:
    """Applies lifecycle transitions to records through the store."""

    def __init__(self, store: RecordStore, clock: Optional[Clock] = None):
        self.store = store
        self.clock = clock or SystemClock()

    def begin(self, record: ProcessingRecord) -> Optional[ProcessingRecord]:
        """Claim a pending or failed record for processing.

        Every claim counts as an attempt and increments ``retry_count``, so
        a failed record always has at least one attempt on file.

        Returns:
            The claimed record, or None if another worker claimed it first

        Raises:
            InvalidTransition: If the record is processing or completed
        """
        check_transition(record, RecordStatus.PROCESSING)
        patch = {
            "status": RecordStatus.PROCESSING,
            "last_attempt_at": self.clock.now(),
            "retry_count": record.retry_count + 1,
            "redaction_status": RedactionStatus.PENDING,
        }
        return self._apply(record, patch)

    def complete(
        self,
        record: ProcessingRecord,
        result: TranscriptionResult,
        segments: Sequence[RedactedSegment] = (),
        transcript: Optional[str] = None,
    ) -> Optional[ProcessingRecord]:
        """Store transcript, analysis and usage and mark the record completed.

        The record counts as redacted when segments were found or when the
        sanitized transcript differs from the raw one.

        Args:
            record: Record currently in ``processing``
            result: Output of the transcription/analysis client
            segments: Sensitive spans found by the redaction policy
            transcript: Sanitized transcript to store instead of the raw one

        Raises:
            InvalidTransition: If the record is not processing
        """
        check_transition(record, RecordStatus.COMPLETED)
        now = self.clock.now()
        stored_transcript = transcript if transcript is not None else result.transcript
        patch = {
            "status": RecordStatus.COMPLETED,
            "transcript": stored_transcript,
            "analysis": result.analysis,
            "analysis_model": result.model,
            "input_tokens": result.usage.input_tokens,
            "output_tokens": result.usage.output_tokens,
            "processed_at": now,
            "last_error": None,
        }
        if segments or stored_transcript != result.transcript:
            patch.update({
                "redaction_status": RedactionStatus.COMPLETED,
                "redacted": True,
                "redacted_segments": tuple(segments),
                "redacted_at": now,
            })
        else:
            patch.update({
                "redaction_status": RedactionStatus.NOT_NEEDED,
                "redacted": False,
                "redacted_segments": (),
            })
        return self._apply(record, patch)

    def fail(
        self,
        record: ProcessingRecord,
        reason: str,
        redaction_failed: bool = False,
    ) -> Optional[ProcessingRecord]:
        """Mark a processing record as failed, keeping any partial results.

        Args:
            record: Record currently in ``processing``
            reason: Stored as ``last_error``
            redaction_failed: Also mark the redaction pass as failed

        Raises:
            InvalidTransition: If the record is not processing
        """
        check_transition(record, RecordStatus.FAILED)
        patch = {"status": RecordStatus.FAILED, "last_error": reason}
        if redaction_failed:
            patch["redaction_status"] = RedactionStatus.FAILED
        return self._apply(record, patch)

    def _apply(self, record: ProcessingRecord, patch: Dict) -> Optional[ProcessingRecord]:
        rows = self.store.update_where_status(record.id, record.status, patch)
        if rows == 0:
            logger.debug(
                "Record %s no longer %s; transition to %s skipped",
                record.id, record.status.value, patch["status"].value,
            )
            return None
        return replace(record, **patch)
