"""Availability engine: bookable slots from working hours and calendar busy time.

``generate_slots`` is a pure function over one day; ``AvailabilityService``
wraps it with the provider's working hours and the Google Calendar
free/busy query.

Calendar failures are **not** swallowed here: ``CalendarAPIError``
propagates so the caller can tell "the calendar is down" apart from
"there is no free slot", which need different replies to the patient.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from clinic_agent.errors import NotFound, ValidationFailed
from clinic_agent.models import Procedure, Provider
from clinic_agent.services.google_calendar import BusyInterval, GoogleCalendarClient
from clinic_agent.timeutils import (
    CLINIC_TZ,
    format_day,
    format_short,
    now_utc,
    parse_hhmm,
    weekday_index,
    weekday_name,
)

logger = logging.getLogger(__name__)

SLOT_STEP_MINUTES = 30
DEFAULT_DAYS_AHEAD = 14
MAX_DAYS_AHEAD = 30
# Stop the multi-day scan after this many days with at least one free slot.
MAX_DAYS_WITH_AVAILABILITY = 5


@dataclass(frozen=True)
class Slot:
    """A candidate bookable interval.  Never persisted."""

    start: datetime
    end: datetime
    tz: ZoneInfo = CLINIC_TZ

    @property
    def display_start(self) -> str:
        return self.start.astimezone(self.tz).strftime("%H:%M")

    @property
    def display_date(self) -> str:
        return format_short(self.start, self.tz)

    def to_dict(self) -> dict[str, str]:
        local_start = self.start.astimezone(self.tz)
        local_end = self.end.astimezone(self.tz)
        return {
            "start": local_start.isoformat(timespec="seconds"),
            "end": local_end.isoformat(timespec="seconds"),
            "display_start": self.display_start,
            "display_date": self.display_date,
        }


def _overlaps(start: datetime, end: datetime, busy: BusyInterval) -> bool:
    busy_start, busy_end = busy
    return start < busy_end and end > busy_start


def generate_slots(
    day: date,
    window: tuple[time, time],
    duration_minutes: int,
    busy: Iterable[BusyInterval],
    now: datetime,
    tz: ZoneInfo = CLINIC_TZ,
    step_minutes: int = SLOT_STEP_MINUTES,
) -> list[Slot]:
    """Return the free slots of *day* inside *window*.

    Candidates start at the window opening and advance in ``step_minutes``
    while ``start + duration`` still fits before the window closes.  A
    candidate is dropped when its start is not strictly after *now* or when
    it overlaps any busy interval (half-open: touching boundaries do not
    overlap).
    """
    if duration_minutes <= 0:
        raise ValueError("duration_minutes must be positive")

    opens = datetime.combine(day, window[0], tzinfo=tz)
    closes = datetime.combine(day, window[1], tzinfo=tz)
    duration = timedelta(minutes=duration_minutes)
    step = timedelta(minutes=step_minutes)
    busy = list(busy)

    slots: list[Slot] = []
    cursor = opens
    while cursor + duration <= closes:
        end = cursor + duration
        if cursor > now and not any(_overlaps(cursor, end, b) for b in busy):
            slots.append(Slot(start=cursor, end=end, tz=tz))
        cursor += step
    return slots


class AvailabilityService:
    """Slot lookup for one provider/procedure pair against Google Calendar."""

    def __init__(
        self,
        session: Session,
        calendar: GoogleCalendarClient,
        *,
        tz: ZoneInfo = CLINIC_TZ,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._session = session
        self._calendar = calendar
        self._tz = tz
        self._clock = clock

    # ── Lookups ──────────────────────────────────────────────────────

    def _load(self, provider_id: str, procedure_id: str) -> tuple[Provider, Procedure]:
        provider = self._session.get(Provider, provider_id)
        if provider is None or not provider.active:
            raise NotFound(f"Provider {provider_id} not found or inactive.")
        procedure = self._session.get(Procedure, procedure_id)
        if procedure is None or not procedure.active:
            raise NotFound(f"Procedure {procedure_id} not found or inactive.")
        return provider, procedure

    def _slots(self, provider: Provider, procedure: Procedure, day: date, now: datetime) -> list[Slot]:
        hours = provider.hours_for(weekday_index(day))
        if hours is None:
            return []
        window = (parse_hhmm(hours.start_time), parse_hhmm(hours.end_time))

        # Nothing left to offer today: skip the calendar round-trip.
        if not generate_slots(day, window, procedure.duration_minutes, (), now, self._tz):
            return []

        busy = self._calendar.free_busy(
            provider.calendar_id,
            datetime.combine(day, window[0], tzinfo=self._tz),
            datetime.combine(day, window[1], tzinfo=self._tz),
        )
        return generate_slots(day, window, procedure.duration_minutes, busy, now, self._tz)

    # ── Public API ───────────────────────────────────────────────────

    def slots_for_day(self, provider_id: str, procedure_id: str, day: date) -> list[Slot]:
        """Fine-grained slot list for one day.

        Raises ``ValidationFailed`` when the provider does not work on that
        weekday and ``CalendarAPIError`` when busy time cannot be read.
        """
        provider, procedure = self._load(provider_id, procedure_id)
        if provider.hours_for(weekday_index(day)) is None:
            raise ValidationFailed(
                f"{provider.name} does not work on {weekday_name(weekday_index(day))}s.",
                working_days=[weekday_name(wh.weekday) for wh in provider.working_hours if wh.active],
            )
        return self._slots(provider, procedure, day, self._clock())

    def available_days(
        self, provider_id: str, procedure_id: str, days_ahead: int = DEFAULT_DAYS_AHEAD,
    ) -> list[dict[str, str | int]]:
        """Coarse day index: which of the next *days_ahead* days have a free slot."""
        provider, procedure = self._load(provider_id, procedure_id)
        days_ahead = max(1, min(days_ahead or DEFAULT_DAYS_AHEAD, MAX_DAYS_AHEAD))
        now = self._clock()
        today = now.astimezone(self._tz).date()

        days: list[dict[str, str | int]] = []
        for offset in range(days_ahead):
            day = today + timedelta(days=offset)
            slots = self._slots(provider, procedure, day, now)
            if not slots:
                continue
            days.append(
                {
                    "date": day.isoformat(),
                    "display_date": format_day(day),
                    "free_slots": len(slots),
                }
            )
            if len(days) >= MAX_DAYS_WITH_AVAILABILITY:
                break

        logger.debug(
            "Availability for provider=%s procedure=%s: %d day(s) within %d",
            provider_id, procedure_id, len(days), days_ahead,
        )
        return days
