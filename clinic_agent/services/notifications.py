"""Outbound notification texts: reminders, satisfaction survey, attendant alerts.

WhatsApp renders ``*bold*`` and ``_italic_``; blank lines are kept as
paragraph breaks and empty optional lines are dropped.
"""

from __future__ import annotations

import logging
from zoneinfo import ZoneInfo

from clinic_agent.config import ATTENDANT_PHONE, CLINIC_ADDRESS, CLINIC_NAME, CLINIC_PHONE
from clinic_agent.models import Appointment
from clinic_agent.services.messaging import EvolutionClient
from clinic_agent.timeutils import CLINIC_TZ, format_long

logger = logging.getLogger(__name__)


def _first_name(appointment: Appointment) -> str:
    name = appointment.patient.name
    return name.split()[0] if name else "there"


def _join(lines: list[str | None]) -> str:
    return "\n".join(line for line in lines if line is not None)


class NotificationService:
    """Formats and sends the clinic's proactive WhatsApp messages."""

    def __init__(
        self,
        messaging: EvolutionClient,
        *,
        clinic_name: str = CLINIC_NAME,
        clinic_phone: str = CLINIC_PHONE,
        clinic_address: str = CLINIC_ADDRESS,
        attendant_phone: str = ATTENDANT_PHONE,
        tz: ZoneInfo = CLINIC_TZ,
    ) -> None:
        self._messaging = messaging
        self._clinic_name = clinic_name
        self._clinic_phone = clinic_phone
        self._clinic_address = clinic_address
        self._attendant_phone = attendant_phone
        self._tz = tz

    # ── Appointment reminders ────────────────────────────────────────

    def reminder_24h_text(self, appointment: Appointment) -> str:
        return _join([
            f"⏰ *Appointment reminder, {_first_name(appointment)}!*",
            "",
            "Your appointment is *tomorrow*. See you soon 😊",
            "",
            f"📋 *{appointment.procedure.name}*",
            f"👨‍⚕️ {appointment.provider.name}",
            f"📅 {format_long(appointment.start_time, self._tz)}",
            "",
            "Need to cancel or reschedule? Just message me here!",
            f"📞 You can also call us: *{self._clinic_phone}*" if self._clinic_phone else None,
            "",
            f"_{self._clinic_name}_",
        ])

    def reminder_2h_text(self, appointment: Appointment) -> str:
        local_time = appointment.start_time.astimezone(self._tz).strftime("%H:%M")
        return _join([
            f"🕐 *Your appointment is in 2 hours, {_first_name(appointment)}!*",
            "",
            f"📋 {appointment.procedure.name} with {appointment.provider.name}",
            f"🕐 Today at *{local_time}*",
            f"📍 {self._clinic_address}" if self._clinic_address else None,
            "",
            "Please arrive 10 minutes early. See you shortly!",
            "",
            f"_{self._clinic_name}_",
        ])

    def survey_text(self, appointment: Appointment) -> str:
        return _join([
            f"💙 *Hi {_first_name(appointment)}, how are you feeling?*",
            "",
            f"We hope your appointment with {appointment.provider.name} went well!",
            "",
            "⭐ From 1 to 5, how would you rate your experience today?",
            "_(1 = Poor | 5 = Excellent)_",
            "",
            "Feel free to leave a comment too. Your feedback helps us improve.",
            "",
            f"_{self._clinic_name}_",
        ])

    def send_reminder_24h(self, appointment: Appointment) -> None:
        self._messaging.send_text(appointment.patient.address, self.reminder_24h_text(appointment))
        logger.info("24h reminder sent for appointment %s", appointment.id)

    def send_reminder_2h(self, appointment: Appointment) -> None:
        self._messaging.send_text(appointment.patient.address, self.reminder_2h_text(appointment))
        logger.info("2h reminder sent for appointment %s", appointment.id)

    def send_survey(self, appointment: Appointment) -> None:
        self._messaging.send_text(appointment.patient.address, self.survey_text(appointment))
        logger.info("Satisfaction survey sent for appointment %s", appointment.id)

    # ── Escalation ───────────────────────────────────────────────────

    def notify_attendant(self, patient_address: str, reason: str | None) -> bool:
        """Alert the human attendant.  Returns ``False`` when none is configured."""
        if not self._attendant_phone:
            logger.warning("Escalation for %s not forwarded: ATTENDANT_PHONE is not set", patient_address)
            return False
        self._messaging.send_text(
            self._attendant_phone,
            _join([
                "🔔 *New request for a human attendant*",
                "",
                f"👤 Patient: {patient_address}",
                f"📝 Reason: {reason or 'Requested by the patient'}",
                "",
                "Please contact the patient. Send *resume <phone>* when done.",
            ]),
        )
        return True
