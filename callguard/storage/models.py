"""
Data models for storage layer.

Defines processing records, billing snapshots and job schedules.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple


class RecordStatus(Enum):
    """Processing lifecycle of a call or voicemail."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RedactionStatus(Enum):
    """Outcome of the redaction pass over a transcript."""
    NOT_NEEDED = "not_needed"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class RecordKind(Enum):
    CALL = "call"
    VOICEMAIL = "voicemail"


@dataclass(frozen=True)
class RedactedSegment:
    """A span of audio, in seconds, flagged as sensitive."""
    start_sec: float
    end_sec: float
    reason: str


@dataclass(frozen=True)
class ProcessingRecord:
    """A call or voicemail driven through transcription and analysis.

    Records are immutable values; every change goes through the store and
    comes back as a new instance.
    """
    id: str
    tenant_id: str
    source_type: str
    created_at: datetime
    kind: RecordKind = RecordKind.CALL
    external_id: Optional[str] = None
    provider_ref: Optional[str] = None
    caller_number: Optional[str] = None
    caller_name: Optional[str] = None
    audio_locator: Optional[str] = None
    duration_seconds: Optional[int] = None
    occurred_at: Optional[datetime] = None
    status: RecordStatus = RecordStatus.PENDING
    transcript: Optional[str] = None
    analysis: Optional[str] = None
    analysis_model: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    retry_count: int = 0
    last_attempt_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    redaction_status: RedactionStatus = RedactionStatus.NOT_NEEDED
    redacted: bool = False
    redacted_segments: Tuple[RedactedSegment, ...] = field(default_factory=tuple)
    redacted_at: Optional[datetime] = None

    def __post_init__(self):
        """Validate identity and counters."""
        if not self.tenant_id:
            raise ValueError("tenant_id is required")
        if self.retry_count < 0:
            raise ValueError("retry_count cannot be negative")

    @property
    def billing_timestamp(self) -> datetime:
        """Timestamp used to attribute the record to a billing month."""
        return self.occurred_at or self.created_at


@dataclass(frozen=True)
class IngestPayload:
    """Upstream event fields supplied on ingestion."""
    kind: RecordKind = RecordKind.CALL
    provider_ref: Optional[str] = None
    caller_number: Optional[str] = None
    caller_name: Optional[str] = None
    audio_locator: Optional[str] = None
    duration_seconds: Optional[int] = None
    occurred_at: Optional[datetime] = None


@dataclass(frozen=True)
class BillingMonth:
    """Monthly usage and charge snapshot for a tenant.

    Once ``is_finalized`` is set the row is an issued bill and must never
    change again.
    """
    tenant_id: str
    month: date
    base_plan_monthly_charge_usd: Decimal
    base_plan_included_audio_hours: Decimal
    overage_rate_per_minute_usd: Decimal
    audio_seconds: int
    audio_minutes: Decimal
    overage_seconds: int
    overage_minutes: Decimal
    overage_charge_usd: Decimal
    total_charge_usd: Decimal
    calculated_at: datetime
    is_finalized: bool = False

    def __post_init__(self):
        """Validate aggregate values are reasonable."""
        if self.audio_seconds < 0:
            raise ValueError("audio_seconds cannot be negative")
        if self.overage_seconds < 0:
            raise ValueError("overage_seconds cannot be negative")
        if self.month.day != 1:
            raise ValueError("month must be the first day of a month")


@dataclass(frozen=True)
class JobSchedule:
    """Recurring per-tenant job state."""
    tenant_id: str
    job_type: str
    timezone: str
    daily_time: str
    last_run_at: Optional[datetime] = None
