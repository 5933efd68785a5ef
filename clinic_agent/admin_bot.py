"""WhatsApp command interpreter for the clinic operator.

Messages from ``ATTENDANT_PHONE`` never reach the model: they are parsed here
as plain commands.  Matching is case- and accent-insensitive, so ``Amanhã``
style input from a phone keyboard still works.

Commands:
  help                  list commands
  today / tomorrow      appointments of that clinic-local day
  week                  appointments of the next 7 days, grouped by day
  escalations           pending handovers
  stats                 counters for today and this month
  patient <query>       search by name, phone or CPF
  resume <phone>        resolve handovers and hand the chat back to the bot
"""

from __future__ import annotations

import logging
import re
import unicodedata
from collections.abc import Callable
from datetime import date, datetime, time, timedelta

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, joinedload, sessionmaker

from clinic_agent.db import session_scope
from clinic_agent.models import (
    Appointment,
    AppointmentStatus,
    Conversation,
    ConversationStatus,
    Escalation,
    EscalationStatus,
    Patient,
)
from clinic_agent.services.patients import normalize_address, phones_match
from clinic_agent.tax_id import format_cpf
from clinic_agent.timeutils import CLINIC_TZ, now_utc

logger = logging.getLogger(__name__)

HELP_TEXT = "\n".join([
    "🤖 *Operator panel: commands*",
    "",
    "📅 *Appointments*",
    "• `today`: today's appointments",
    "• `tomorrow`: tomorrow's appointments",
    "• `week`: next 7 days",
    "",
    "🔔 *Escalations*",
    "• `escalations`: pending handovers",
    "• `resume <phone>`: hand the chat back to the bot",
    "",
    "📊 *Statistics*",
    "• `stats`: summary of the day",
    "",
    "🔍 *Search*",
    "• `patient <name, phone or CPF>`",
])

UNKNOWN_TEXT = "❓ Unknown command.\n\nSend *help* to see the available commands."

_HELP_WORDS = {"help", "menu", "?", "hi", "hello", "ajuda"}
_TODAY_WORDS = {"today", "hoje"}
_TOMORROW_WORDS = {"tomorrow", "amanha"}
_WEEK_WORDS = {"week", "next week", "semana"}
_ESCALATION_WORDS = {"escalations", "pending", "escalacoes"}
_STATS_WORDS = {"stats", "summary", "dashboard", "resumo"}


def normalize_command(text: str) -> str:
    """Lowercase, strip accents and collapse whitespace."""
    decomposed = unicodedata.normalize("NFD", text.strip().lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", stripped)


class AdminBot:
    """Answers operator commands from the database."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def handle(self, text: str) -> str:
        cmd = normalize_command(text)
        logger.info("Operator command: %r", cmd)
        arg = text.strip().split(maxsplit=1)[1].strip() if " " in text.strip() else ""

        with session_scope(self._session_factory) as session:
            if cmd in _HELP_WORDS:
                return HELP_TEXT
            if cmd in _TODAY_WORDS:
                return self._day(session, 0, "Today")
            if cmd in _TOMORROW_WORDS:
                return self._day(session, 1, "Tomorrow")
            if cmd in _WEEK_WORDS:
                return self._week(session)
            if cmd in _ESCALATION_WORDS:
                return self._escalations(session)
            if cmd in _STATS_WORDS:
                return self._stats(session)
            if cmd.startswith(("patient ", "paciente ")) or cmd in ("patient", "paciente"):
                return self._patient(session, arg)
            if cmd.startswith("resume ") or cmd == "resume":
                return self._resume(session, arg)
        return UNKNOWN_TEXT

    # ── Helpers ──────────────────────────────────────────────────────

    def _local_today(self) -> date:
        return self._clock().astimezone(CLINIC_TZ).date()

    @staticmethod
    def _day_bounds(day: date) -> tuple[datetime, datetime]:
        start = datetime.combine(day, time.min, tzinfo=CLINIC_TZ)
        return start, start + timedelta(days=1)

    @staticmethod
    def _appointments_between(session: Session, start: datetime, end: datetime) -> list[Appointment]:
        return list(
            session.scalars(
                select(Appointment)
                .options(
                    joinedload(Appointment.patient),
                    joinedload(Appointment.provider),
                    joinedload(Appointment.procedure),
                )
                .where(
                    Appointment.start_time >= start,
                    Appointment.start_time < end,
                    Appointment.status != AppointmentStatus.CANCELLED,
                )
                .order_by(Appointment.start_time)
            )
        )

    @staticmethod
    def _hhmm(dt: datetime) -> str:
        return dt.astimezone(CLINIC_TZ).strftime("%H:%M")

    # ── Commands ─────────────────────────────────────────────────────

    def _day(self, session: Session, offset: int, label: str) -> str:
        day = self._local_today() + timedelta(days=offset)
        appointments = self._appointments_between(session, *self._day_bounds(day))
        title = f"📅 *{label} ({day:%d/%m})*"
        if not appointments:
            return f"{title}\n\nNo appointments found."
        lines = [
            f"{i}. {self._hhmm(a.start_time)}: {a.patient.name or a.patient.address}\n"
            f"   🦷 {a.provider.name} | {a.procedure.name}"
            for i, a in enumerate(appointments, start=1)
        ]
        return f"{title}\n\n" + "\n\n".join(lines)

    def _week(self, session: Session) -> str:
        now = self._clock()
        end = self._day_bounds(self._local_today() + timedelta(days=7))[1]
        appointments = self._appointments_between(session, now, end)
        if not appointments:
            return "📅 *Next 7 days*\n\nNo appointments found."

        lines = [f"📅 *Next 7 days: {len(appointments)} appointment(s)*"]
        current_day = None
        index = 0
        for a in appointments:
            local = a.start_time.astimezone(CLINIC_TZ)
            if local.date() != current_day:
                current_day = local.date()
                index = 0
                lines.append(f"\n*{local:%d/%m (%a)}*")
            index += 1
            lines.append(f"{index}. {local:%H:%M}: {a.patient.name or a.patient.address} | {a.procedure.name}")
        return "\n".join(lines)

    def _escalations(self, session: Session) -> str:
        escalations = list(
            session.scalars(
                select(Escalation)
                .options(joinedload(Escalation.conversation).joinedload(Conversation.patient))
                .where(Escalation.status == EscalationStatus.PENDING)
                .order_by(Escalation.created_at.desc())
            )
        )
        if not escalations:
            return "✅ *Escalations*\n\nNo pending escalations."

        lines = [f"🔔 *Pending escalations ({len(escalations)})*", ""]
        for i, e in enumerate(escalations, start=1):
            patient = e.conversation.patient
            lines.append(f"{i}. {patient.name or '(no name)'}")
            lines.append(f"   📞 {patient.address}")
            if e.reason:
                lines.append(f"   Reason: {e.reason}")
            lines.append(f"   At: {e.created_at.astimezone(CLINIC_TZ):%d/%m %H:%M}")
        return "\n".join(lines)

    def _stats(self, session: Session) -> str:
        today = self._local_today()
        day_start, day_end = self._day_bounds(today)
        month_start = datetime.combine(today.replace(day=1), time.min, tzinfo=CLINIC_TZ)

        def count_today(status: AppointmentStatus | None = None) -> int:
            stmt = select(func.count(Appointment.id)).where(
                Appointment.start_time >= day_start,
                Appointment.start_time < day_end,
                Appointment.status != AppointmentStatus.CANCELLED,
            )
            if status is not None:
                stmt = stmt.where(Appointment.status == status)
            return session.scalar(stmt) or 0

        month_total = session.scalar(
            select(func.count(Appointment.id)).where(
                Appointment.start_time >= month_start,
                Appointment.status != AppointmentStatus.CANCELLED,
            )
        ) or 0
        pending = session.scalar(
            select(func.count(Escalation.id)).where(Escalation.status == EscalationStatus.PENDING)
        ) or 0
        patients = session.scalar(select(func.count(Patient.id))) or 0

        return "\n".join([
            f"📊 *Summary: {today:%d/%m/%Y}*",
            "",
            f"📅 *Today:* {count_today()} appointment(s)",
            f"   ✅ Scheduled: {count_today(AppointmentStatus.SCHEDULED)}",
            f"   🏁 Completed: {count_today(AppointmentStatus.COMPLETED)}",
            "",
            f"📆 *This month:* {month_total} appointment(s)",
            f"🔔 *Pending escalations:* {pending}",
            f"👥 *Total patients:* {patients}",
        ])

    def _patient(self, session: Session, query: str) -> str:
        if not query:
            return "❌ Give a name, phone or CPF.\nE.g. `patient Maria`"

        digits = re.sub(r"\D", "", query)
        conditions = [Patient.name.ilike(f"%{query}%")]
        if digits:
            conditions += [Patient.address.contains(digits), Patient.tax_id.contains(digits)]
        patients = list(
            session.scalars(
                select(Patient).where(or_(*conditions)).order_by(Patient.created_at.desc()).limit(5)
            )
        )
        if not patients:
            return f'🔍 No patient found for *"{query}"*.'

        lines = [f'🔍 *Results for "{query}"*', ""]
        for i, p in enumerate(patients, start=1):
            lines.append(f"{i}. *{p.name or '(no name)'}*")
            lines.append(f"   📞 {p.address}")
            if p.tax_id:
                lines.append(f"   CPF: {format_cpf(p.tax_id)}")
            lines.append(f"   📋 {len(p.appointments)} appointment(s)")
        return "\n".join(lines)

    def _resume(self, session: Session, phone: str) -> str:
        if not normalize_address(phone):
            return "❌ Give the patient's phone.\nE.g. `resume 5511999999999`"

        conversations = [
            c
            for c in session.scalars(
                select(Conversation)
                .options(joinedload(Conversation.patient), joinedload(Conversation.escalations))
                .where(Conversation.status == ConversationStatus.ESCALATED)
            ).unique()
            if phones_match(c.patient.address, phone)
        ]
        if not conversations:
            return f"ℹ️ No escalated conversation for {phone}."

        now = self._clock()
        for conversation in conversations:
            conversation.status = ConversationStatus.ACTIVE
            for escalation in conversation.escalations:
                if escalation.status == EscalationStatus.PENDING:
                    escalation.status = EscalationStatus.RESOLVED
                    escalation.resolved_at = now
        logger.info("Operator resumed %d conversation(s) for %s", len(conversations), phone)
        return f"✅ Automated replies resumed for {phone}."
