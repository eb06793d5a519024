"""
Call processing pipeline.

Entry points consumed by the outer layers (HTTP handlers, CLI, schedulers):
ingestion, processing and retry of records, billing month maintenance and
recurring job gating. Collaborators are passed in; nothing is looked up
globally.
"""

import logging
import uuid
from dataclasses import replace
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, List, Optional

from .billing import (
    BillingAggregator,
    DailyUsage,
    add_months,
    daily_usage,
    month_start,
    plan_from_snapshot,
)
from .clock import Clock, SystemClock
from .orchestrator import ProcessingOrchestrator
from .schedule import compute_next_run_utc, is_due
from callguard.config.loader import PipelineConfig
from callguard.storage.models import (
    BillingMonth,
    IngestPayload,
    JobSchedule,
    ProcessingRecord,
    RecordStatus,
)
from callguard.storage.repository import DuplicateRecordError, RecordNotFound, SqliteRecordStore

logger = logging.getLogger(__name__)


class CallPipeline:
    """Core operations over records, billing months and job schedules."""

    def __init__(
        self,
        store: SqliteRecordStore,
        orchestrator: ProcessingOrchestrator,
        aggregator: BillingAggregator,
        config: Optional[PipelineConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.aggregator = aggregator
        self.config = config or PipelineConfig()
        self.clock = clock or SystemClock()

    # -- records ------------------------------------------------------------

    def ingest(
        self,
        tenant_id: str,
        source_type: str,
        external_id: Optional[str],
        payload: Optional[IngestPayload] = None,
    ) -> ProcessingRecord:
        """Create a pending record for an upstream event.

        Idempotent on (source_type, external_id): a repeated event returns
        the existing record, attaching media if it arrived late.

        Raises:
            DuplicateRecordError: If the source identity belongs to another tenant
        """
        payload = payload or IngestPayload()
        if external_id:
            existing = self.store.find_by_composite_key(source_type, external_id)
            if existing is not None:
                return self._existing(existing, tenant_id, payload)

        record = ProcessingRecord(
            id=uuid.uuid4().hex,
            tenant_id=tenant_id,
            source_type=source_type,
            created_at=self.clock.now(),
            kind=payload.kind,
            external_id=external_id or None,
            provider_ref=payload.provider_ref,
            caller_number=payload.caller_number,
            caller_name=payload.caller_name,
            audio_locator=payload.audio_locator,
            duration_seconds=payload.duration_seconds,
            occurred_at=payload.occurred_at,
        )
        try:
            self.store.insert(record)
        except DuplicateRecordError:
            # Another worker ingested the same event between lookup and insert.
            existing = None
            if external_id:
                existing = self.store.find_by_composite_key(source_type, external_id)
            if existing is None and payload.provider_ref:
                existing = self.store.find_by_provider_ref(payload.provider_ref)
            if existing is None:
                raise
            return self._existing(existing, tenant_id, payload)

        logger.info("Ingested %s record %s for tenant %s (%s:%s)",
                    record.kind.value, record.id, tenant_id, source_type, external_id)
        return record

    def _existing(self, record: ProcessingRecord, tenant_id: str, payload: IngestPayload) -> ProcessingRecord:
        if record.tenant_id != tenant_id:
            raise DuplicateRecordError(
                f"{record.source_type}:{record.external_id} already belongs to another tenant"
            )
        if record.status != RecordStatus.PENDING or record.audio_locator or not payload.audio_locator:
            return record

        patch = {"audio_locator": payload.audio_locator}
        if payload.duration_seconds is not None:
            patch["duration_seconds"] = payload.duration_seconds
        if self.store.update_where_status(record.id, RecordStatus.PENDING, patch) == 0:
            return self.get_record(record.id)
        logger.info("Attached media to record %s", record.id)
        return replace(record, **patch)

    def get_record(self, record_id: str) -> ProcessingRecord:
        """Raises RecordNotFound if the id is unknown."""
        record = self.store.get_by_id(record_id)
        if record is None:
            raise RecordNotFound(record_id)
        return record

    def process(self, record_id: str) -> ProcessingRecord:
        """Attempt processing; returns the record as stored afterwards."""
        self.orchestrator.process(self.get_record(record_id))
        return self.get_record(record_id)

    def retry(self, record_id: str) -> ProcessingRecord:
        """Operator retry; raises RetryExhausted when the budget is spent."""
        self.orchestrator.retry(self.get_record(record_id))
        return self.get_record(record_id)

    def process_backlog(self, tenant_id: Optional[str] = None, limit: int = 50) -> List[ProcessingRecord]:
        """Process pending records, oldest first.

        Returns:
            Records this worker actually attempted
        """
        attempted = []
        for record in self.store.list_records(tenant_id=tenant_id, status=RecordStatus.PENDING, limit=limit):
            result = self.orchestrator.process(record)
            if result is not None:
                attempted.append(result)
        return attempted

    # -- billing ------------------------------------------------------------

    def _current_month(self) -> date:
        return month_start(self.clock.now().date())

    def get_billing_month(self, tenant_id: str, month: date) -> Optional[BillingMonth]:
        return self.store.get_billing_month(tenant_id, month_start(month))

    def recompute_billing_month(self, tenant_id: str, month: date) -> BillingMonth:
        """Rebuild a month from completed records.

        Past months keep the plan captured when they were first calculated.

        Raises:
            AlreadyFinalized: If the month is finalized
        """
        month = month_start(month)
        return self.aggregator.recompute(
            tenant_id,
            month,
            self.store.list_completed_durations(tenant_id, month),
            self.config.plan_for(tenant_id),
            preserve_snapshot=month < self._current_month(),
        )

    def finalize_billing_month(self, tenant_id: str, month: date) -> BillingMonth:
        return self.aggregator.finalize(tenant_id, month_start(month))

    def billing_history(self, tenant_id: str, months: int = 12) -> List[BillingMonth]:
        """Snapshots for the last ``months`` months, newest first.

        The current month is recomputed; earlier months are closed
        (recomputed once more, then finalized) if not already finalized.
        """
        if months < 1:
            raise ValueError("months must be >= 1")
        current = self._current_month()
        plan = self.config.plan_for(tenant_id)
        history = []
        for offset in range(months):
            month = add_months(current, -offset)
            durations = self.store.list_completed_durations(tenant_id, month)
            if month == current:
                history.append(self.aggregator.recompute(tenant_id, month, durations, plan))
            else:
                history.append(self.aggregator.close_month(tenant_id, month, durations, plan))
        return history

    def daily_usage(self, tenant_id: str, start: date, end: date) -> List[DailyUsage]:
        """Per-day audio and overage seconds between two dates (inclusive)."""
        if start > end:
            raise ValueError("start must be on or before end")
        window_start = datetime.combine(month_start(start), time.min, tzinfo=timezone.utc)
        window_end = datetime.combine(end + timedelta(days=1), time.min, tzinfo=timezone.utc)
        usages = self.store.list_completed_usage(tenant_id, window_start, window_end)

        current_plan = self.config.plan_for(tenant_id)

        def included_seconds_for(month: date) -> int:
            snapshot = self.store.get_billing_month(tenant_id, month)
            if snapshot is not None:
                return plan_from_snapshot(snapshot).included_seconds
            return current_plan.included_seconds

        return daily_usage(usages, start, end, included_seconds_for)

    # -- recurring jobs -----------------------------------------------------

    def job_schedule(self, tenant_id: str, job_type: str) -> JobSchedule:
        tenant = self.config.tenant(tenant_id)
        return JobSchedule(
            tenant_id=tenant_id,
            job_type=job_type,
            timezone=tenant.timezone,
            daily_time=tenant.daily_time_for(job_type),
            last_run_at=self.store.get_last_run(tenant_id, job_type),
        )

    def next_run_utc(self, tenant_id: str, job_type: str, now: Optional[datetime] = None) -> datetime:
        schedule = self.job_schedule(tenant_id, job_type)
        return compute_next_run_utc(schedule.timezone, schedule.daily_time, now or self.clock.now())

    def due_now(self, tenant_id: str, job_type: str, now: Optional[datetime] = None) -> bool:
        schedule = self.job_schedule(tenant_id, job_type)
        return is_due(schedule.timezone, schedule.daily_time, schedule.last_run_at, now or self.clock.now())

    def run_job_if_due(
        self,
        tenant_id: str,
        job_type: str,
        dispatch: Callable[[], Any],
        now: Optional[datetime] = None,
    ) -> bool:
        """Dispatch a recurring job at most once per tenant-local day.

        The run is claimed by a conditional write of ``last_run_at`` before
        ``dispatch`` is called, so a concurrent tick that read the same
        state claims nothing.

        Returns:
            True if this caller claimed the run and dispatched the job
        """
        now = now or self.clock.now()
        schedule = self.job_schedule(tenant_id, job_type)
        if not is_due(schedule.timezone, schedule.daily_time, schedule.last_run_at, now):
            return False
        if self.store.claim_job_run(tenant_id, job_type, schedule.last_run_at, now) == 0:
            logger.debug("Job %s for tenant %s already claimed", job_type, tenant_id)
            return False

        logger.info("Dispatching %s for tenant %s", job_type, tenant_id)
        dispatch()
        return True
