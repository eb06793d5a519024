"""
Repository pattern for data access.

Handles database operations and data persistence logic for processing
records, billing months and job schedules.
"""

import json
import logging
import sqlite3
from dataclasses import fields
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Tuple

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    BillingMonth,
    ProcessingRecord,
    RecordKind,
    RecordStatus,
    RedactedSegment,
    RedactionStatus,
)

logger = logging.getLogger(__name__)

_RECORD_COLUMNS = tuple(f.name for f in fields(ProcessingRecord))
_IMMUTABLE_COLUMNS = {"id", "tenant_id", "source_type", "external_id", "created_at"}


class DuplicateRecordError(Exception):
    """Raised when an insert collides with an existing source identity."""


class RecordNotFound(Exception):
    """Raised when a record id does not exist."""
    def __init__(self, record_id: str):
        super().__init__(f"Record not found: {record_id}")
        self.record_id = record_id


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a timestamp as fixed-width UTC ISO text.

    Fixed width keeps lexical and chronological order identical in SQL.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _encode(column: str, value: Any) -> Any:
    """Convert a model value into its column representation."""
    if value is None:
        return None
    if isinstance(value, (RecordStatus, RedactionStatus, RecordKind)):
        return value.value
    if isinstance(value, datetime):
        return _to_iso(value)
    if isinstance(value, bool):
        return int(value)
    if column == "redacted_segments":
        return json.dumps([
            {"start_sec": s.start_sec, "end_sec": s.end_sec, "reason": s.reason}
            for s in value
        ])
    return value


def _row_to_record(row: sqlite3.Row) -> ProcessingRecord:
    segments = tuple(
        RedactedSegment(start_sec=s["start_sec"], end_sec=s["end_sec"], reason=s["reason"])
        for s in json.loads(row["redacted_segments"] or "[]")
    )
    return ProcessingRecord(
        id=row["id"],
        tenant_id=row["tenant_id"],
        source_type=row["source_type"],
        created_at=_from_iso(row["created_at"]),
        kind=RecordKind(row["kind"]),
        external_id=row["external_id"],
        provider_ref=row["provider_ref"],
        caller_number=row["caller_number"],
        caller_name=row["caller_name"],
        audio_locator=row["audio_locator"],
        duration_seconds=row["duration_seconds"],
        occurred_at=_from_iso(row["occurred_at"]),
        status=RecordStatus(row["status"]),
        transcript=row["transcript"],
        analysis=row["analysis"],
        analysis_model=row["analysis_model"],
        input_tokens=row["input_tokens"],
        output_tokens=row["output_tokens"],
        retry_count=row["retry_count"],
        last_attempt_at=_from_iso(row["last_attempt_at"]),
        processed_at=_from_iso(row["processed_at"]),
        last_error=row["last_error"],
        redaction_status=RedactionStatus(row["redaction_status"]),
        redacted=bool(row["redacted"]),
        redacted_segments=segments,
        redacted_at=_from_iso(row["redacted_at"]),
    )


def _row_to_billing_month(row: sqlite3.Row) -> BillingMonth:
    return BillingMonth(
        tenant_id=row["tenant_id"],
        month=date.fromisoformat(row["month"]),
        base_plan_monthly_charge_usd=Decimal(row["base_plan_monthly_charge_usd"]),
        base_plan_included_audio_hours=Decimal(row["base_plan_included_audio_hours"]),
        overage_rate_per_minute_usd=Decimal(row["overage_rate_per_minute_usd"]),
        audio_seconds=row["audio_seconds"],
        audio_minutes=Decimal(row["audio_minutes"]),
        overage_seconds=row["overage_seconds"],
        overage_minutes=Decimal(row["overage_minutes"]),
        overage_charge_usd=Decimal(row["overage_charge_usd"]),
        total_charge_usd=Decimal(row["total_charge_usd"]),
        calculated_at=_from_iso(row["calculated_at"]),
        is_finalized=bool(row["is_finalized"]),
    )


def _month_bounds(month: date) -> Tuple[datetime, datetime]:
    start = datetime(month.year, month.month, 1, tzinfo=timezone.utc)
    if month.month == 12:
        end = datetime(month.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(month.year, month.month + 1, 1, tzinfo=timezone.utc)
    return start, end


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the record, billing and schedule tables if they don't exist.

    Source identities are enforced by unique constraints so that two
    workers ingesting the same upstream event cannot both insert it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS processing_record (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                source_type TEXT NOT NULL,
                created_at TEXT NOT NULL,
                kind TEXT NOT NULL DEFAULT 'call',
                external_id TEXT,
                provider_ref TEXT UNIQUE,
                caller_number TEXT,
                caller_name TEXT,
                audio_locator TEXT,
                duration_seconds INTEGER,
                occurred_at TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                transcript TEXT,
                analysis TEXT,
                analysis_model TEXT,
                input_tokens INTEGER,
                output_tokens INTEGER,
                retry_count INTEGER NOT NULL DEFAULT 0,
                last_attempt_at TEXT,
                processed_at TEXT,
                last_error TEXT,
                redaction_status TEXT NOT NULL DEFAULT 'not_needed',
                redacted INTEGER NOT NULL DEFAULT 0,
                redacted_segments TEXT,
                redacted_at TEXT,
                UNIQUE (source_type, external_id)
            );

            CREATE INDEX IF NOT EXISTS idx_record_tenant_status
                ON processing_record (tenant_id, status);

            CREATE TABLE IF NOT EXISTS billing_month (
                tenant_id TEXT NOT NULL,
                month TEXT NOT NULL,
                base_plan_monthly_charge_usd TEXT NOT NULL,
                base_plan_included_audio_hours TEXT NOT NULL,
                overage_rate_per_minute_usd TEXT NOT NULL,
                audio_seconds INTEGER NOT NULL DEFAULT 0,
                audio_minutes TEXT NOT NULL,
                overage_seconds INTEGER NOT NULL DEFAULT 0,
                overage_minutes TEXT NOT NULL,
                overage_charge_usd TEXT NOT NULL,
                total_charge_usd TEXT NOT NULL,
                is_finalized INTEGER NOT NULL DEFAULT 0,
                calculated_at TEXT NOT NULL,
                PRIMARY KEY (tenant_id, month)
            );

            CREATE TABLE IF NOT EXISTS job_schedule (
                tenant_id TEXT NOT NULL,
                job_type TEXT NOT NULL,
                last_run_at TEXT,
                PRIMARY KEY (tenant_id, job_type)
            );
        """)
        conn.commit()
    finally:
        conn.close()


class RecordStore(Protocol):
    """Storage capability consumed by the processing core."""

    def get_by_id(self, record_id: str) -> Optional[ProcessingRecord]: ...

    def find_by_composite_key(self, source_type: str, external_id: str) -> Optional[ProcessingRecord]: ...

    def insert(self, record: ProcessingRecord) -> ProcessingRecord: ...

    def update_where_status(
        self, record_id: str, expected_status: RecordStatus, patch: Dict[str, Any]
    ) -> int: ...

    def list_completed_durations(self, tenant_id: str, month: date) -> List[int]: ...


class SqliteRecordStore:
    """SQLite implementation of the record store.

    Every state change is a single conditional statement, so the store
    (not an in-process lock) arbitrates between concurrent workers.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize(self) -> None:
        initialize_schema(self.db_path)

    # -- processing records -------------------------------------------------

    def get_by_id(self, record_id: str) -> Optional[ProcessingRecord]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM processing_record WHERE id = ?", (record_id,)
            ).fetchone()
            return _row_to_record(row) if row else None
        finally:
            conn.close()

    def find_by_composite_key(self, source_type: str, external_id: str) -> Optional[ProcessingRecord]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM processing_record WHERE source_type = ? AND external_id = ?",
                (source_type, external_id),
            ).fetchone()
            return _row_to_record(row) if row else None
        finally:
            conn.close()

    def find_by_provider_ref(self, provider_ref: str) -> Optional[ProcessingRecord]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM processing_record WHERE provider_ref = ?", (provider_ref,)
            ).fetchone()
            return _row_to_record(row) if row else None
        finally:
            conn.close()

    def insert(self, record: ProcessingRecord) -> ProcessingRecord:
        """Insert a new record.

        Raises:
            DuplicateRecordError: If the id, composite key or provider
                reference already exists
        """
        placeholders = ", ".join("?" for _ in _RECORD_COLUMNS)
        values = [_encode(name, getattr(record, name)) for name in _RECORD_COLUMNS]
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                f"INSERT INTO processing_record ({', '.join(_RECORD_COLUMNS)}) VALUES ({placeholders})",
                values,
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise DuplicateRecordError(str(e)) from e
        finally:
            conn.close()
        return record

    def update_where_status(
        self,
        record_id: str,
        expected_status: RecordStatus,
        patch: Dict[str, Any],
    ) -> int:
        """Apply ``patch`` only if the record still has ``expected_status``.

        Args:
            record_id: Record to update
            expected_status: Status the caller last observed
            patch: Field name to new value

        Returns:
            Number of rows affected (0 or 1)

        Raises:
            ValueError: If the patch names unknown or immutable fields
        """
        if not patch:
            raise ValueError("patch cannot be empty")
        unknown = set(patch) - set(_RECORD_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown record fields: {unknown}")
        immutable = set(patch) & _IMMUTABLE_COLUMNS
        if immutable:
            raise ValueError(f"Immutable record fields: {immutable}")

        assignments = ", ".join(f"{name} = ?" for name in patch)
        params = [_encode(name, value) for name, value in patch.items()]
        params.extend([record_id, expected_status.value])

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"UPDATE processing_record SET {assignments} WHERE id = ? AND status = ?",
                params,
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def list_records(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[RecordStatus] = None,
        limit: int = 100,
    ) -> List[ProcessingRecord]:
        """List records, oldest first, with optional filtering."""
        query = "SELECT * FROM processing_record"
        params: List[Any] = []
        conditions = []

        if tenant_id:
            conditions.append("tenant_id = ?")
            params.append(tenant_id)
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY created_at ASC LIMIT ?"
        params.append(limit)

        conn = get_connection(self.db_path)
        try:
            return [_row_to_record(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def count_by_status(self, tenant_id: Optional[str] = None) -> Dict[str, int]:
        """Number of records per status value."""
        query = "SELECT status, COUNT(*) AS n FROM processing_record"
        params: List[Any] = []
        if tenant_id:
            query += " WHERE tenant_id = ?"
            params.append(tenant_id)
        query += " GROUP BY status"

        conn = get_connection(self.db_path)
        try:
            return {row["status"]: row["n"] for row in conn.execute(query, params).fetchall()}
        finally:
            conn.close()

    def list_completed_usage(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
    ) -> List[Tuple[datetime, int]]:
        """Return (billing timestamp, duration) for completed records in [start, end)."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT COALESCE(occurred_at, created_at) AS billed_at,
                       COALESCE(duration_seconds, 0) AS duration
                FROM processing_record
                WHERE tenant_id = ?
                  AND status = ?
                  AND COALESCE(occurred_at, created_at) >= ?
                  AND COALESCE(occurred_at, created_at) < ?
                ORDER BY billed_at ASC
            """, (tenant_id, RecordStatus.COMPLETED.value, _to_iso(start), _to_iso(end)))
            return [(_from_iso(row["billed_at"]), row["duration"]) for row in cursor.fetchall()]
        finally:
            conn.close()

    def list_completed_durations(self, tenant_id: str, month: date) -> List[int]:
        """Durations in seconds of completed records billed to ``month``."""
        start, end = _month_bounds(month)
        return [duration for _, duration in self.list_completed_usage(tenant_id, start, end)]

    # -- billing months -----------------------------------------------------

    def get_billing_month(self, tenant_id: str, month: date) -> Optional[BillingMonth]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM billing_month WHERE tenant_id = ? AND month = ?",
                (tenant_id, month.isoformat()),
            ).fetchone()
            return _row_to_billing_month(row) if row else None
        finally:
            conn.close()

    def list_billing_months(self, tenant_id: str) -> List[BillingMonth]:
        """All billing months for a tenant, newest first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT * FROM billing_month WHERE tenant_id = ? ORDER BY month DESC",
                (tenant_id,),
            )
            return [_row_to_billing_month(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def upsert_billing_month(self, snapshot: BillingMonth) -> int:
        """Insert or refresh a billing month unless it is finalized.

        Returns:
            Rows written; 0 means the existing row is finalized
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT INTO billing_month (
                    tenant_id, month,
                    base_plan_monthly_charge_usd, base_plan_included_audio_hours,
                    overage_rate_per_minute_usd,
                    audio_seconds, audio_minutes,
                    overage_seconds, overage_minutes, overage_charge_usd,
                    total_charge_usd, is_finalized, calculated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                ON CONFLICT (tenant_id, month) DO UPDATE SET
                    base_plan_monthly_charge_usd = excluded.base_plan_monthly_charge_usd,
                    base_plan_included_audio_hours = excluded.base_plan_included_audio_hours,
                    overage_rate_per_minute_usd = excluded.overage_rate_per_minute_usd,
                    audio_seconds = excluded.audio_seconds,
                    audio_minutes = excluded.audio_minutes,
                    overage_seconds = excluded.overage_seconds,
                    overage_minutes = excluded.overage_minutes,
                    overage_charge_usd = excluded.overage_charge_usd,
                    total_charge_usd = excluded.total_charge_usd,
                    calculated_at = excluded.calculated_at
                WHERE billing_month.is_finalized = 0
            """, (
                snapshot.tenant_id,
                snapshot.month.isoformat(),
                str(snapshot.base_plan_monthly_charge_usd),
                str(snapshot.base_plan_included_audio_hours),
                str(snapshot.overage_rate_per_minute_usd),
                snapshot.audio_seconds,
                str(snapshot.audio_minutes),
                snapshot.overage_seconds,
                str(snapshot.overage_minutes),
                str(snapshot.overage_charge_usd),
                str(snapshot.total_charge_usd),
                _to_iso(snapshot.calculated_at),
            ))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def mark_billing_month_finalized(self, tenant_id: str, month: date) -> int:
        """Flip ``is_finalized`` on a not-yet-finalized row.

        Returns:
            Rows affected; 0 if missing or already finalized
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE billing_month SET is_finalized = 1 "
                "WHERE tenant_id = ? AND month = ? AND is_finalized = 0",
                (tenant_id, month.isoformat()),
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    # -- job schedules ------------------------------------------------------

    def get_last_run(self, tenant_id: str, job_type: str) -> Optional[datetime]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT last_run_at FROM job_schedule WHERE tenant_id = ? AND job_type = ?",
                (tenant_id, job_type),
            ).fetchone()
            return _from_iso(row["last_run_at"]) if row else None
        finally:
            conn.close()

    def claim_job_run(
        self,
        tenant_id: str,
        job_type: str,
        expected_last_run: Optional[datetime],
        run_at: datetime,
    ) -> int:
        """Record ``run_at`` as the last run if nobody else has since ``expected_last_run``.

        Returns:
            Rows affected; 0 means another tick already claimed the run
        """
        conn = get_connection(self.db_path)
        try:
            if expected_last_run is None:
                cursor = conn.execute("""
                    INSERT INTO job_schedule (tenant_id, job_type, last_run_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT (tenant_id, job_type) DO UPDATE SET
                        last_run_at = excluded.last_run_at
                    WHERE job_schedule.last_run_at IS NULL
                """, (tenant_id, job_type, _to_iso(run_at)))
            else:
                cursor = conn.execute(
                    "UPDATE job_schedule SET last_run_at = ? "
                    "WHERE tenant_id = ? AND job_type = ? AND last_run_at = ?",
                    (_to_iso(run_at), tenant_id, job_type, _to_iso(expected_last_run)),
                )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()
