"""
Monthly usage billing.

Rolls completed audio durations up into per-tenant monthly snapshots with
overage pricing, and locks a snapshot once the bill is issued.

Aggregates are always rebuilt from the full list of source durations, never
incremented, so corrected or removed records cannot cause drift.
"""

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .clock import Clock, SystemClock
from .pricing import (
    BillingPlan,
    calculate_overage_charge,
    calculate_overage_seconds,
    seconds_to_minutes,
)
from callguard.storage.models import BillingMonth

logger = logging.getLogger(__name__)


class AlreadyFinalized(Exception):
    """Raised when a finalized billing month would be modified."""
    def __init__(self, tenant_id: str, month: date):
        super().__init__(f"Billing month {month:%Y-%m} for tenant {tenant_id} is finalized")
        self.tenant_id = tenant_id
        self.month = month


class BillingMonthNotFound(Exception):
    """Raised when finalizing a month that was never calculated."""
    def __init__(self, tenant_id: str, month: date):
        super().__init__(f"No billing month {month:%Y-%m} for tenant {tenant_id}")
        self.tenant_id = tenant_id
        self.month = month


def month_start(value: date) -> date:
    """First day of the month containing ``value``."""
    return date(value.year, value.month, 1)


def add_months(value: date, months: int) -> date:
    index = value.year * 12 + (value.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


def parse_month(value: str) -> date:
    """Parse ``YYYY-MM`` (or a full ISO date) into a month start.

    Raises:
        ValueError: If the value is not a month
    """
    text = value.strip()
    try:
        if len(text) == 7:
            return date(int(text[:4]), int(text[5:7]), 1)
        return month_start(date.fromisoformat(text))
    except (ValueError, IndexError):
        raise ValueError(f"Invalid month: {value!r} (expected YYYY-MM)")


def plan_from_snapshot(snapshot: BillingMonth) -> BillingPlan:
    """The plan captured when ``snapshot`` was calculated."""
    return BillingPlan(
        base_monthly_charge_usd=snapshot.base_plan_monthly_charge_usd,
        included_hours=snapshot.base_plan_included_audio_hours,
        per_minute_overage_rate=snapshot.overage_rate_per_minute_usd,
    )


def build_snapshot(
    tenant_id: str,
    month: date,
    durations_seconds: Iterable[Optional[int]],
    plan: BillingPlan,
    calculated_at: datetime,
) -> BillingMonth:
    """Compute a billing month from raw durations.

    Unknown (None) and negative durations contribute nothing.
    """
    audio_seconds = sum(max(0, int(d)) for d in durations_seconds if d is not None)
    overage_seconds = calculate_overage_seconds(audio_seconds, plan)
    overage_charge = calculate_overage_charge(overage_seconds, plan)

    return BillingMonth(
        tenant_id=tenant_id,
        month=month_start(month),
        base_plan_monthly_charge_usd=plan.base_monthly_charge_usd,
        base_plan_included_audio_hours=plan.included_hours,
        overage_rate_per_minute_usd=plan.per_minute_overage_rate,
        audio_seconds=audio_seconds,
        audio_minutes=seconds_to_minutes(audio_seconds),
        overage_seconds=overage_seconds,
        overage_minutes=seconds_to_minutes(overage_seconds),
        overage_charge_usd=overage_charge,
        total_charge_usd=plan.base_monthly_charge_usd + overage_charge,
        calculated_at=calculated_at,
        is_finalized=False,
    )


class BillingAggregator:
    """Maintains billing month snapshots in the store.

    ``finalize`` is the only writer of ``is_finalized``. ``recompute``
    checks and rejects finalized rows, and its upsert is itself guarded,
    so a finalize racing a recompute always wins.
    """

    def __init__(self, store, clock: Optional[Clock] = None):
        self.store = store
        self.clock = clock or SystemClock()

    def recompute(
        self,
        tenant_id: str,
        month: date,
        completed_durations_seconds: Iterable[Optional[int]],
        plan: BillingPlan,
        preserve_snapshot: bool = False,
    ) -> BillingMonth:
        """Rebuild and store the billing month from source durations.

        Args:
            tenant_id: Tenant being billed
            month: Any date in the month
            completed_durations_seconds: Durations of all completed records
            plan: Current plan for the tenant
            preserve_snapshot: Keep the plan captured by an existing row
                instead of ``plan`` (used for past months)

        Returns:
            The stored snapshot

        Raises:
            AlreadyFinalized: If the month is finalized; nothing is written
        """
        month = month_start(month)
        existing = self.store.get_billing_month(tenant_id, month)
        if existing is not None and existing.is_finalized:
            raise AlreadyFinalized(tenant_id, month)
        if preserve_snapshot and existing is not None:
            plan = plan_from_snapshot(existing)

        snapshot = build_snapshot(
            tenant_id, month, completed_durations_seconds, plan, self.clock.now()
        )
        if self.store.upsert_billing_month(snapshot) == 0:
            raise AlreadyFinalized(tenant_id, month)

        logger.info(
            "Recomputed billing %s/%s: %ds audio, %ds overage, total $%s",
            tenant_id, f"{month:%Y-%m}", snapshot.audio_seconds,
            snapshot.overage_seconds, snapshot.total_charge_usd,
        )
        return snapshot

    def finalize(self, tenant_id: str, month: date) -> BillingMonth:
        """Lock a billing month. Finalizing twice is a no-op.

        Raises:
            BillingMonthNotFound: If the month has never been calculated
        """
        month = month_start(month)
        existing = self.store.get_billing_month(tenant_id, month)
        if existing is None:
            raise BillingMonthNotFound(tenant_id, month)
        if existing.is_finalized:
            return existing

        if self.store.mark_billing_month_finalized(tenant_id, month) == 0:
            # Lost a race with another finalize; the stored row is authoritative.
            current = self.store.get_billing_month(tenant_id, month)
            if current is None:
                raise BillingMonthNotFound(tenant_id, month)
            return current

        logger.info("Finalized billing %s/%s", tenant_id, f"{month:%Y-%m}")
        return replace(existing, is_finalized=True)

    def close_month(
        self,
        tenant_id: str,
        month: date,
        completed_durations_seconds: Iterable[Optional[int]],
        plan: BillingPlan,
    ) -> BillingMonth:
        """Recompute a past month with its preserved plan and finalize it."""
        month = month_start(month)
        existing = self.store.get_billing_month(tenant_id, month)
        if existing is not None and existing.is_finalized:
            return existing
        self.recompute(tenant_id, month, completed_durations_seconds, plan, preserve_snapshot=True)
        return self.finalize(tenant_id, month)


@dataclass(frozen=True)
class DailyUsage:
    """Audio usage for one UTC day and the overage attributable to it."""
    day: date
    audio_seconds: int
    overage_seconds: int


def daily_usage(
    usages: Sequence[Tuple[datetime, Optional[int]]],
    start: date,
    end: date,
    included_seconds_for: Callable[[date], int],
) -> List[DailyUsage]:
    """Per-day usage series with cumulative overage allocation.

    Within each month usage accumulates from the 1st; a day's overage is the
    growth of ``max(0, cumulative - included)`` across that day, so the
    allowance is consumed by the earliest days of the month. ``usages`` must
    therefore cover the whole month of ``start`` onwards.

    Args:
        usages: (billing timestamp, duration seconds) pairs
        start: First day to report (inclusive)
        end: Last day to report (inclusive)
        included_seconds_for: Allowance in seconds for a month start

    Returns:
        One entry per day from ``start`` to ``end``
    """
    if start > end:
        raise ValueError("start must be on or before end")

    by_day: Dict[date, int] = {}
    for billed_at, duration in usages:
        if duration is None:
            continue
        day = billed_at.date()
        by_day[day] = by_day.get(day, 0) + max(0, int(duration))

    points = []
    day = month_start(start)
    cumulative = 0
    included = included_seconds_for(day)
    while day <= end:
        if day.day == 1:
            cumulative = 0
            included = included_seconds_for(day)
        seconds = by_day.get(day, 0)
        previous_overage = max(0, cumulative - included)
        cumulative += seconds
        overage = max(0, cumulative - included) - previous_overage
        if day >= start:
            points.append(DailyUsage(day=day, audio_seconds=seconds, overage_seconds=overage))
        day += timedelta(days=1)
    return points
