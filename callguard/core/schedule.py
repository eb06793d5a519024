"""
Recurring job schedule computation.

Pure functions deciding when a per-tenant daily job should next run and
whether it has already run on the tenant's local calendar day. Bad
configuration never raises out of this module: an unknown timezone falls
back to UTC and a malformed time of day falls back to 02:00.
"""

import logging
import re
from datetime import date, datetime, time, timedelta
from typing import Optional, Union

import pytz

logger = logging.getLogger(__name__)

DEFAULT_DAILY_TIME = "02:00"

_DAILY_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class InvalidConfiguration(Exception):
    """Raised for an unresolvable timezone or malformed time of day."""


def parse_daily_time(value: str) -> time:
    """Parse a 24h ``HH:MM`` string.

    Raises:
        InvalidConfiguration: If the value is not a valid HH:MM
    """
    match = _DAILY_TIME_RE.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise InvalidConfiguration(f"Invalid daily time of day: {value!r}")
    return time(int(match.group(1)), int(match.group(2)))


def normalize_daily_time(value: Optional[str], fallback: str = DEFAULT_DAILY_TIME) -> str:
    """Return ``value`` stripped if it is a valid HH:MM, else ``fallback``."""
    try:
        parse_daily_time(value)
    except InvalidConfiguration:
        return fallback
    return value.strip()


def resolve_timezone(name: Optional[str]) -> pytz.BaseTzInfo:
    """Resolve an IANA timezone name.

    Raises:
        InvalidConfiguration: If the name is empty or unknown
    """
    if not isinstance(name, str) or not name.strip():
        raise InvalidConfiguration("Timezone is empty")
    try:
        return pytz.timezone(name.strip())
    except pytz.exceptions.UnknownTimeZoneError:
        raise InvalidConfiguration(f"Unknown timezone: {name!r}")


def _timezone_or_utc(name: Optional[str]) -> pytz.BaseTzInfo:
    try:
        return resolve_timezone(name)
    except InvalidConfiguration as e:
        logger.warning("%s; falling back to UTC", e)
        return pytz.UTC


def _daily_time_or_default(value: Optional[str]) -> time:
    try:
        return parse_daily_time(value)
    except InvalidConfiguration as e:
        logger.warning("%s; falling back to %s", e, DEFAULT_DAILY_TIME)
        return parse_daily_time(DEFAULT_DAILY_TIME)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


def _localize(tz: pytz.BaseTzInfo, wall_clock: datetime) -> datetime:
    """Attach ``tz`` to a naive wall-clock time.

    A time inside a spring-forward gap moves to the next top of the hour;
    an ambiguous fall-back time takes its first occurrence.
    """
    try:
        return tz.localize(wall_clock, is_dst=None)
    except pytz.exceptions.NonExistentTimeError:
        adjusted = (wall_clock + timedelta(hours=1)).replace(minute=0, second=0, microsecond=0)
        return tz.localize(adjusted, is_dst=True)
    except pytz.exceptions.AmbiguousTimeError:
        return tz.localize(wall_clock, is_dst=True)


def scheduled_local_time(tz: pytz.BaseTzInfo, day: date, at: time) -> datetime:
    """The aware local datetime the job is scheduled for on ``day``."""
    return _localize(tz, datetime.combine(day, at))


def compute_next_run_utc(timezone: Optional[str], daily_time: Optional[str], now: datetime) -> datetime:
    """Next UTC instant at which a daily job should run.

    ``daily_time`` is a wall-clock time in ``timezone``. Today's slot is
    used if it is strictly after ``now``, otherwise tomorrow's.

    Args:
        timezone: IANA timezone name (UTC if unresolvable)
        daily_time: 24h HH:MM (02:00 if malformed)
        now: Current instant; naive values are taken as UTC

    Returns:
        Timezone-aware UTC datetime
    """
    tz = _timezone_or_utc(timezone)
    at = _daily_time_or_default(daily_time)
    now_local = _as_utc(now).astimezone(tz)

    candidate = scheduled_local_time(tz, now_local.date(), at)
    if candidate <= now_local:
        candidate = scheduled_local_time(tz, now_local.date() + timedelta(days=1), at)

    return candidate.astimezone(pytz.UTC)


def _parse_last_run(value: Union[datetime, str, None]) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    try:
        return _as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        logger.warning("Ignoring invalid last run timestamp: %r", value)
        return None


def has_run_today(last_run_at_utc: Union[datetime, str, None], timezone: Optional[str], now: datetime) -> bool:
    """Whether the last run fell on the same local calendar date as ``now``.

    Compares calendar dates in ``timezone``, not 24 hour windows.
    """
    last_run = _parse_last_run(last_run_at_utc)
    if last_run is None:
        return False
    tz = _timezone_or_utc(timezone)
    return last_run.astimezone(tz).date() == _as_utc(now).astimezone(tz).date()


def is_due(
    timezone: Optional[str],
    daily_time: Optional[str],
    last_run_at_utc: Union[datetime, str, None],
    now: datetime,
) -> bool:
    """Whether today's slot has arrived and the job has not yet run today."""
    tz = _timezone_or_utc(timezone)
    at = _daily_time_or_default(daily_time)
    now_local = _as_utc(now).astimezone(tz)
    if now_local < scheduled_local_time(tz, now_local.date(), at):
        return False
    return not has_run_today(last_run_at_utc, timezone, now)
