"""
Time handling shared by the engine and its wire format.

Timestamps are always timezone-aware UTC. Durations travel as
``days.HH:MM:SS`` strings (fractional seconds optional).
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Union
import re

_DURATION_RE = re.compile(
    r"^(?P<sign>-)?(?:(?P<days>\d+)\.)?(?P<hours>\d{1,2}):(?P<minutes>\d{2})"
    r"(?::(?P<seconds>\d{2})(?:\.(?P<fraction>\d{1,7}))?)?$"
)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def parse_duration(value: Union[str, int, float, timedelta]) -> timedelta:
    """
    Parse a duration.

    Accepts a timedelta, a number of seconds, a bare number of days as a
    string ("2"), or a ``[days.]HH:MM[:SS[.fraction]]`` string.

    Raises
    ------
    ValueError
        If the string is not a recognised duration.
    """
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Not a duration: {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)

    text = str(value).strip()
    if text.isdigit():
        return timedelta(days=int(text))

    match = _DURATION_RE.match(text)
    if match is None:
        raise ValueError(f"Not a duration: {value!r} (expected days.HH:MM:SS)")

    hours = int(match.group("hours"))
    minutes = int(match.group("minutes"))
    seconds = int(match.group("seconds") or 0)
    if hours > 23 or minutes > 59 or seconds > 59:
        raise ValueError(f"Duration component out of range: {value!r}")

    fraction = match.group("fraction") or ""
    microseconds = int((fraction + "000000")[:6]) if fraction else 0

    result = timedelta(
        days=int(match.group("days") or 0),
        hours=hours,
        minutes=minutes,
        seconds=seconds,
        microseconds=microseconds,
    )
    return -result if match.group("sign") else result


def format_duration(value: timedelta) -> str:
    """Format a timedelta as ``days.HH:MM:SS`` (fractional seconds only when present)."""
    sign = "-" if value < timedelta(0) else ""
    value = abs(value)
    hours, remainder = divmod(value.seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    text = f"{sign}{value.days}.{hours:02d}:{minutes:02d}:{seconds:02d}"
    if value.microseconds:
        text += f".{value.microseconds:06d}"
    return text


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with microsecond precision, e.g. 2024-03-01T00:00:00.000000Z."""
    return ensure_utc(value).strftime(TIMESTAMP_FORMAT)


def period_budget(remaining_budget: Decimal, remaining_time: timedelta, period_duration: timedelta) -> Decimal:
    """
    Share of the remaining budget that belongs to one period.

    The remaining budget is paced evenly over the remaining periods. The
    period count is never taken as less than one, so a single period never
    receives more than the remaining budget. No time left means no budget.
    """
    if remaining_time <= timedelta(0) or period_duration <= timedelta(0):
        return Decimal("0")

    number_of_periods = max(
        Decimal(remaining_time // timedelta(microseconds=1)) / Decimal(period_duration // timedelta(microseconds=1)),
        Decimal(1),
    )
    return remaining_budget / number_of_periods
