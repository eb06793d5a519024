"""
Pricing calculations for audio usage.

Handles plan allowances and per-minute overage charges.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

SECONDS_PER_HOUR = 3600
SECONDS_PER_MINUTE = Decimal("60")
CENT = Decimal("0.01")

Number = Union[int, float, str, Decimal]


def to_decimal(value: Number) -> Decimal:
    """Convert a number to Decimal without binary float artifacts."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass(frozen=True)
class BillingPlan:
    """A tenant's monthly plan: base charge, included hours, overage rate."""
    base_monthly_charge_usd: Decimal
    included_hours: Decimal
    per_minute_overage_rate: Decimal

    def __post_init__(self):
        """Normalize to Decimal and validate values are non-negative."""
        for name in ("base_monthly_charge_usd", "included_hours", "per_minute_overage_rate"):
            value = to_decimal(getattr(self, name))
            if value < 0:
                raise ValueError(f"{name} cannot be negative")
            object.__setattr__(self, name, value)

    @property
    def included_seconds(self) -> int:
        return int(self.included_hours * SECONDS_PER_HOUR)


def seconds_to_minutes(seconds: int) -> Decimal:
    """Exact minutes rounded to the cent for display and storage."""
    return (Decimal(seconds) / SECONDS_PER_MINUTE).quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_overage_seconds(audio_seconds: int, plan: BillingPlan) -> int:
    return max(0, audio_seconds - plan.included_seconds)


def calculate_overage_charge(overage_seconds: int, plan: BillingPlan) -> Decimal:
    """Charge for usage beyond the plan allowance.

    Uses exact (unrounded) minutes and rounds the charge half-up to cents.

    Args:
        overage_seconds: Billable seconds beyond the allowance
        plan: Plan providing the per-minute rate

    Returns:
        Charge in USD, quantized to 0.01
    """
    minutes = Decimal(overage_seconds) / SECONDS_PER_MINUTE
    return (minutes * plan.per_minute_overage_rate).quantize(CENT, rounding=ROUND_HALF_UP)
