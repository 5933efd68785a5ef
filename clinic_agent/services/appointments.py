"""Appointment lifecycle: schedule, cancel, reschedule, complete.

States::

    SCHEDULED ──(end passed, batch)──▶ COMPLETED
    SCHEDULED ──(cancel)─────────────▶ record removed
    SCHEDULED ──(reschedule)─────────▶ SCHEDULED (new window, fresh reminders)

The local record is the source of truth.  ``calendar_event_id`` is only a
pointer to the mirrored Google Calendar event: every calendar write is
best-effort, and a failure is logged as a divergence instead of failing
the booking.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session, joinedload

from clinic_agent.errors import NotAuthorized, NotFound, ValidationFailed
from clinic_agent.models import Appointment, AppointmentStatus, Patient, Procedure, Provider
from clinic_agent.services.google_calendar import CalendarAPIError, GoogleCalendarClient
from clinic_agent.tax_id import format_cpf
from clinic_agent.timeutils import format_long, now_utc

logger = logging.getLogger(__name__)

# ── Reminder bands (relative to "now") ──────────────────────────────
REMINDER_24H_BAND = (timedelta(hours=23), timedelta(hours=24))
REMINDER_2H_BAND = (timedelta(hours=1, minutes=30), timedelta(hours=2))
# Survey goes out for appointments that ended between 6 h and 3 h ago.
SURVEY_BAND = (timedelta(hours=6), timedelta(hours=3))


def describe(appointment: Appointment) -> dict[str, Any]:
    """Serialisable summary of an appointment for tools and notifications."""
    provider = appointment.provider
    procedure = appointment.procedure
    patient = appointment.patient
    return {
        "id": appointment.id,
        "patient_name": patient.name or "",
        "patient_tax_id": format_cpf(patient.tax_id),
        "provider": provider.name,
        "provider_specialty": provider.specialty or "",
        "procedure": procedure.name,
        "duration_minutes": procedure.duration_minutes,
        "start_time": appointment.start_time.isoformat(),
        "end_time": appointment.end_time.isoformat(),
        "status": appointment.status.value,
        "display": f"{procedure.name} with {provider.name} on {format_long(appointment.start_time)}",
    }


class AppointmentService:
    """State machine over ``Appointment`` rows with Google Calendar mirroring."""

    def __init__(
        self,
        session: Session,
        calendar: GoogleCalendarClient,
        *,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._session = session
        self._calendar = calendar
        self._clock = clock

    # ── Helpers ──────────────────────────────────────────────────────

    def _get(self, appointment_id: str) -> Appointment:
        appointment = self._session.scalar(
            select(Appointment)
            .options(
                joinedload(Appointment.patient),
                joinedload(Appointment.provider),
                joinedload(Appointment.procedure),
            )
            .where(Appointment.id == appointment_id)
        )
        if appointment is None:
            raise NotFound(f"Appointment {appointment_id} not found.")
        return appointment

    def _get_owned(self, appointment_id: str, requester_id: str) -> Appointment:
        appointment = self._get(appointment_id)
        if appointment.patient_id != requester_id:
            logger.warning(
                "Patient %s tried to modify appointment %s owned by %s",
                requester_id, appointment_id, appointment.patient_id,
            )
            raise NotAuthorized("This appointment belongs to another patient.")
        return appointment

    def _require_future(self, start: datetime) -> None:
        if start.tzinfo is None:
            raise ValidationFailed("Start time must include a timezone.")
        if start <= self._clock():
            raise ValidationFailed("The selected date/time has already passed.")

    @staticmethod
    def _event_texts(patient: Patient, procedure: Procedure, *, rescheduled: bool = False) -> tuple[str, str]:
        name = patient.name or "WhatsApp patient"
        summary = f"{procedure.name} - {name}"
        description = (
            f"Procedure: {procedure.name}{' (rescheduled)' if rescheduled else ''}\n"
            f"Duration: {procedure.duration_minutes} minutes\n\n"
            f"Patient: {name}\nWhatsApp: {patient.address}"
        )
        return summary, description

    def _try_create_event(
        self, provider: Provider, patient: Patient, procedure: Procedure,
        start: datetime, end: datetime, *, rescheduled: bool = False,
    ) -> str | None:
        summary, description = self._event_texts(patient, procedure, rescheduled=rescheduled)
        try:
            return self._calendar.create_event(
                provider.calendar_id, summary=summary, description=description, start=start, end=end,
            )
        except CalendarAPIError as exc:
            logger.warning("Could not create calendar event on %s: %s", provider.calendar_id, exc)
            return None

    # ── Lifecycle operations ─────────────────────────────────────────

    def schedule(
        self,
        patient_id: str,
        provider_id: str,
        procedure_id: str,
        start: datetime,
        notes: str | None = None,
    ) -> Appointment:
        """Create a SCHEDULED appointment; end is derived from the procedure."""
        patient = self._session.get(Patient, patient_id)
        if patient is None:
            raise NotFound(f"Patient {patient_id} not found.")
        provider = self._session.get(Provider, provider_id)
        if provider is None or not provider.active:
            raise ValidationFailed("Provider not found or inactive.")
        procedure = self._session.get(Procedure, procedure_id)
        if procedure is None or not procedure.active:
            raise ValidationFailed("Procedure not found or inactive.")
        self._require_future(start)

        end = start + timedelta(minutes=procedure.duration_minutes)
        event_id = self._try_create_event(provider, patient, procedure, start, end)

        appointment = Appointment(
            patient=patient,
            provider=provider,
            procedure=procedure,
            start_time=start,
            end_time=end,
            status=AppointmentStatus.SCHEDULED,
            calendar_event_id=event_id,
            notes=notes,
        )
        self._session.add(appointment)
        self._session.flush()
        logger.info(
            "Appointment %s scheduled for patient %s at %s (calendar event: %s)",
            appointment.id, patient_id, start.isoformat(), event_id or "none",
        )
        return appointment

    def cancel(self, appointment_id: str, requester_id: str) -> dict[str, Any]:
        """Remove the appointment and its calendar event.  Returns its summary."""
        appointment = self._get_owned(appointment_id, requester_id)
        if appointment.status == AppointmentStatus.COMPLETED:
            raise ValidationFailed("A completed appointment cannot be cancelled.")

        summary = describe(appointment)
        if appointment.calendar_event_id:
            try:
                self._calendar.delete_event(
                    appointment.provider.calendar_id, appointment.calendar_event_id,
                )
            except CalendarAPIError as exc:
                logger.error(
                    "Calendar divergence: event %s for cancelled appointment %s "
                    "could not be deleted: %s",
                    appointment.calendar_event_id, appointment_id, exc,
                )

        self._session.delete(appointment)
        self._session.flush()
        logger.info("Appointment %s cancelled by patient %s", appointment_id, requester_id)
        return summary

    def reschedule(self, appointment_id: str, requester_id: str, new_start: datetime) -> Appointment:
        """Move the appointment to *new_start*, keeping its procedure duration."""
        appointment = self._get_owned(appointment_id, requester_id)
        if appointment.status in (AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED):
            raise ValidationFailed(
                f"A {appointment.status.value.lower()} appointment cannot be rescheduled."
            )
        self._require_future(new_start)

        new_end = new_start + timedelta(minutes=appointment.procedure.duration_minutes)
        calendar_id = appointment.provider.calendar_id
        event_id = appointment.calendar_event_id

        if event_id:
            try:
                self._calendar.update_event(calendar_id, event_id, start=new_start, end=new_end)
            except CalendarAPIError as exc:
                logger.warning("Patch of event %s failed (%s); recreating", event_id, exc)
                new_event_id = self._try_create_event(
                    appointment.provider, appointment.patient, appointment.procedure,
                    new_start, new_end, rescheduled=True,
                )
                if new_event_id is None:
                    logger.error(
                        "Calendar divergence: event %s still shows the old time of appointment %s",
                        event_id, appointment_id,
                    )
                else:
                    try:
                        self._calendar.delete_event(calendar_id, event_id)
                    except CalendarAPIError as del_exc:
                        logger.error(
                            "Calendar divergence: old event %s for appointment %s "
                            "could not be deleted: %s",
                            event_id, appointment_id, del_exc,
                        )
                    event_id = new_event_id
        else:
            event_id = self._try_create_event(
                appointment.provider, appointment.patient, appointment.procedure,
                new_start, new_end, rescheduled=True,
            )

        appointment.start_time = new_start
        appointment.end_time = new_end
        appointment.calendar_event_id = event_id
        appointment.status = AppointmentStatus.SCHEDULED
        appointment.reminder_24h_sent = False
        appointment.reminder_2h_sent = False
        self._session.flush()
        logger.info("Appointment %s rescheduled to %s", appointment_id, new_start.isoformat())
        return appointment

    def complete_past(self, now: datetime | None = None) -> int:
        """Mark every SCHEDULED appointment whose end has passed as COMPLETED."""
        now = now or self._clock()
        result = self._session.execute(
            update(Appointment)
            .where(Appointment.status == AppointmentStatus.SCHEDULED, Appointment.end_time <= now)
            .values(status=AppointmentStatus.COMPLETED)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    # ── Queries ──────────────────────────────────────────────────────

    def upcoming_for_patient(self, patient_id: str) -> list[Appointment]:
        return list(
            self._session.scalars(
                select(Appointment)
                .options(joinedload(Appointment.provider), joinedload(Appointment.procedure))
                .where(
                    Appointment.patient_id == patient_id,
                    Appointment.status == AppointmentStatus.SCHEDULED,
                    Appointment.start_time >= self._clock(),
                )
                .order_by(Appointment.start_time)
            ).unique()
        )

    def _due(self, *criteria) -> list[Appointment]:
        return list(
            self._session.scalars(
                select(Appointment)
                .options(
                    joinedload(Appointment.patient),
                    joinedload(Appointment.provider),
                    joinedload(Appointment.procedure),
                )
                .where(*criteria)
                .order_by(Appointment.start_time)
            ).unique()
        )

    def due_for_reminder_24h(self, now: datetime | None = None) -> list[Appointment]:
        now = now or self._clock()
        return self._due(
            Appointment.status == AppointmentStatus.SCHEDULED,
            Appointment.reminder_24h_sent.is_(False),
            Appointment.start_time >= now + REMINDER_24H_BAND[0],
            Appointment.start_time <= now + REMINDER_24H_BAND[1],
        )

    def due_for_reminder_2h(self, now: datetime | None = None) -> list[Appointment]:
        now = now or self._clock()
        return self._due(
            Appointment.status == AppointmentStatus.SCHEDULED,
            Appointment.reminder_2h_sent.is_(False),
            Appointment.start_time >= now + REMINDER_2H_BAND[0],
            Appointment.start_time <= now + REMINDER_2H_BAND[1],
        )

    def due_for_survey(self, now: datetime | None = None) -> list[Appointment]:
        now = now or self._clock()
        return self._due(
            Appointment.status == AppointmentStatus.COMPLETED,
            Appointment.survey_sent.is_(False),
            Appointment.end_time >= now - SURVEY_BAND[0],
            Appointment.end_time <= now - SURVEY_BAND[1],
        )

    def mark_reminder_24h_sent(self, appointment: Appointment) -> None:
        appointment.reminder_24h_sent = True
        self._session.flush()

    def mark_reminder_2h_sent(self, appointment: Appointment) -> None:
        appointment.reminder_2h_sent = True
        self._session.flush()

    def mark_survey_sent(self, appointment: Appointment) -> None:
        appointment.survey_sent = True
        self._session.flush()
