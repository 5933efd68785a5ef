"""Tests for the operator command interpreter."""

from __future__ import annotations

from datetime import datetime

import pytest

from clinic_agent.admin_bot import HELP_TEXT, UNKNOWN_TEXT, AdminBot, normalize_command
from clinic_agent.models import (
    AppointmentStatus,
    Conversation,
    ConversationStatus,
    Escalation,
    EscalationStatus,
)
from clinic_agent.services.appointments import AppointmentService

MONDAY_9AM = datetime.fromisoformat("2026-03-02T09:00:00-03:00")
WEDNESDAY_10AM = datetime.fromisoformat("2026-03-04T10:00:00-03:00")


@pytest.fixture
def bot(session_factory, clinic, clock):
    return AdminBot(session_factory, clock=clock)


@pytest.fixture
def booked(session, clinic, mock_calendar, clock):
    service = AppointmentService(session, mock_calendar, clock=clock)
    monday = service.schedule(clinic["registered"].id, "dr-ana", "cleaning", MONDAY_9AM)
    wednesday = service.schedule(clinic["registered"].id, "dr-ana", "evaluation", WEDNESDAY_10AM)
    session.commit()
    return monday, wednesday


@pytest.fixture
def escalated(session, clinic):
    conversation = Conversation(patient=clinic["registered"], status=ConversationStatus.ESCALATED)
    session.add(conversation)
    session.add(Escalation(conversation=conversation, reason="Insurance question"))
    session.commit()
    return conversation


# ── Parsing ──────────────────────────────────────────────────────────


class TestNormalizeCommand:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("  TODAY ", "today"),
            ("Amanhã", "amanha"),
            ("next   week", "next week"),
            ("Escalações", "escalacoes"),
        ],
    )
    def test_normalizes(self, raw, expected):
        assert normalize_command(raw) == expected


class TestDispatch:
    def test_help(self, bot):
        assert bot.handle("help") == HELP_TEXT
        assert bot.handle("Ajuda") == HELP_TEXT

    def test_unknown_command(self, bot):
        assert bot.handle("launch rockets") == UNKNOWN_TEXT


# ── Appointment listings ─────────────────────────────────────────────


class TestListings:
    def test_today(self, bot, booked):
        reply = bot.handle("today")
        assert "Today (02/03)" in reply
        assert "09:00: Maria Souza" in reply
        assert "Dental Cleaning" in reply
        assert "Evaluation Visit" not in reply

    def test_tomorrow_empty(self, bot, booked):
        reply = bot.handle("amanhã")
        assert "Tomorrow (03/03)" in reply
        assert "No appointments found." in reply

    def test_week_groups_by_day(self, bot, booked):
        reply = bot.handle("week")
        assert "2 appointment(s)" in reply
        assert "*02/03 (Mon)*" in reply
        assert "*04/03 (Wed)*" in reply

    def test_cancelled_are_hidden(self, bot, booked, session):
        monday, _ = booked
        monday.status = AppointmentStatus.CANCELLED
        session.commit()
        assert "No appointments found." in bot.handle("today")


# ── Escalations & stats ──────────────────────────────────────────────


class TestEscalationsAndStats:
    def test_no_escalations(self, bot):
        assert "No pending escalations." in bot.handle("escalations")

    def test_pending_escalations_listed(self, bot, escalated):
        reply = bot.handle("pending")
        assert "Pending escalations (1)" in reply
        assert "Maria Souza" in reply
        assert "Reason: Insurance question" in reply

    def test_stats(self, bot, booked, escalated):
        reply = bot.handle("stats")
        assert "Summary: 02/03/2026" in reply
        assert "*Today:* 1 appointment(s)" in reply
        assert "*This month:* 2 appointment(s)" in reply
        assert "*Pending escalations:* 1" in reply
        assert "*Total patients:* 2" in reply

    def test_stats_ignore_cancelled_rows(self, bot, booked, session):
        monday, _ = booked
        monday.status = AppointmentStatus.CANCELLED
        session.commit()

        reply = bot.handle("stats")
        assert "*Today:* 0 appointment(s)" in reply
        assert "*This month:* 1 appointment(s)" in reply
        assert "Cancelled" not in reply


# ── Patient search & resume ──────────────────────────────────────────


class TestPatientAndResume:
    def test_search_by_name(self, bot, booked):
        reply = bot.handle("patient maria")
        assert "*Maria Souza*" in reply
        assert "CPF: 529.982.247-25" in reply
        assert "2 appointment(s)" in reply

    def test_search_by_cpf_digits(self, bot):
        assert "Maria Souza" in bot.handle("paciente 529.982")

    def test_search_without_query(self, bot):
        assert "Give a name" in bot.handle("patient")

    def test_search_without_results(self, bot):
        assert "No patient found" in bot.handle("patient Zé Ninguém")

    def test_resume_hands_chat_back(self, bot, escalated, session):
        reply = bot.handle("resume +55 (11) 99999-0000")

        assert "resumed" in reply
        session.expire_all()
        conversation = session.get(Conversation, escalated.id)
        assert conversation.status == ConversationStatus.ACTIVE
        (escalation,) = conversation.escalations
        assert escalation.status == EscalationStatus.RESOLVED
        assert escalation.resolved_at is not None

    def test_resume_unknown_phone(self, bot, escalated):
        assert "No escalated conversation" in bot.handle("resume 5511911112222")

    def test_resume_without_phone(self, bot):
        assert "Give the patient's phone" in bot.handle("resume")
