"""Clinic-timezone helpers shared by availability, booking and notifications."""

from __future__ import annotations

from datetime import UTC, date, datetime, time
from zoneinfo import ZoneInfo

from clinic_agent.config import TIMEZONE

CLINIC_TZ = ZoneInfo(TIMEZONE)

_WEEKDAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


def now_utc() -> datetime:
    return datetime.now(UTC)


def weekday_index(day: date) -> int:
    """Weekday with Sunday = 0 … Saturday = 6 (the working-hours convention)."""
    return (day.weekday() + 1) % 7


def weekday_name(index: int) -> str:
    return _WEEKDAY_NAMES[index]


def parse_hhmm(value: str) -> time:
    hours, minutes = value.strip().split(":")
    return time(int(hours), int(minutes))


def parse_iso_datetime(value: str, tz: ZoneInfo = CLINIC_TZ) -> datetime:
    """Parse an ISO 8601 timestamp coming from the model.

    A trailing ``Z`` is accepted; timestamps without an offset are read as
    clinic-local wall time.  Raises ``ValueError`` for anything unparseable.
    """
    dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz)
    return dt


def format_short(dt: datetime, tz: ZoneInfo = CLINIC_TZ) -> str:
    """``Mon 23 Feb`` style date."""
    return dt.astimezone(tz).strftime("%a %d %b")


def format_day(day: date) -> str:
    """``Monday, 23 February 2026``."""
    return f"{weekday_name(weekday_index(day))}, {day.strftime('%d %B %Y')}"


def format_long(dt: datetime, tz: ZoneInfo = CLINIC_TZ) -> str:
    """``Monday, 23 February 2026 at 14:00`` in clinic time."""
    local = dt.astimezone(tz)
    return f"{format_day(local.date())} at {local.strftime('%H:%M')}"
