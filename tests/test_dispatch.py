"""Tests for the tool dispatcher: argument validation, errors and each tool."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from clinic_agent.models import (
    Appointment,
    AppointmentStatus,
    Conversation,
    ConversationStatus,
    Escalation,
    Patient,
)
from clinic_agent.services.google_calendar import CalendarAPIError
from clinic_agent.tools.dispatch import ToolDispatcher, TurnContext
SLOT = "2026-03-02T09:00:00-03:00"
VALID_CPF = "52998224725"
OTHER_VALID_CPF = "11144477735"


@pytest.fixture
def dispatcher(session, clinic, mock_calendar, clock):
    return ToolDispatcher(session, mock_calendar, clock=clock)


def _turn(session, patient) -> TurnContext:
    conversation = Conversation(patient=patient)
    session.add(conversation)
    session.commit()
    return TurnContext(patient_id=patient.id, conversation_id=conversation.id, address=patient.address)


@pytest.fixture
def registered_turn(session, clinic):
    return _turn(session, clinic["registered"])


@pytest.fixture
def unregistered_turn(session, clinic):
    return _turn(session, clinic["unregistered"])


# ── Error boundary ───────────────────────────────────────────────────


class TestErrorBoundary:
    def test_unknown_tool(self, dispatcher, registered_turn):
        result = dispatcher.execute("drop_tables", {}, registered_turn)
        assert result["success"] is False
        assert result["code"] == "unknown_tool"

    def test_invalid_arguments_are_reported_per_field(self, dispatcher, registered_turn):
        result = dispatcher.execute("get_availability", {"provider_id": "dr-ana"}, registered_turn)
        assert result["code"] == "invalid_arguments"
        assert any(d["field"] == "procedure_id" for d in result["details"])

    def test_target_date_must_be_iso(self, dispatcher, registered_turn):
        result = dispatcher.execute(
            "get_availability",
            {"provider_id": "dr-ana", "procedure_id": "evaluation", "target_date": "02/03/2026"},
            registered_turn,
        )
        assert result["code"] == "invalid_arguments"

    def test_calendar_read_failure_is_distinct_from_no_availability(
        self, dispatcher, registered_turn, mock_calendar,
    ):
        mock_calendar.free_busy.side_effect = CalendarAPIError("down", status_code=503)
        result = dispatcher.execute(
            "get_availability", {"provider_id": "dr-ana", "procedure_id": "evaluation"}, registered_turn,
        )
        assert result["calendar_unavailable"] is True
        assert "available_dates" not in result

    def test_unexpected_exception_becomes_generic_error(self, dispatcher, registered_turn, session):
        with patch.object(dispatcher, "_handlers", {"search_faq": lambda args, turn: 1 / 0}):
            result = dispatcher.execute("search_faq", {"query": "hours"}, registered_turn)
        assert result["success"] is False
        assert "search_faq" in result["error"]


# ── Catalogue & availability ─────────────────────────────────────────


class TestCatalogue:
    def test_list_providers(self, dispatcher, registered_turn):
        result = dispatcher.execute("list_providers", {}, registered_turn)
        (provider,) = result["providers"]
        assert provider["id"] == "dr-ana"
        assert {p["id"] for p in provider["procedures"]} == {"evaluation", "cleaning"}
        assert [d["weekday"] for d in provider["working_days"]] == ["Monday", "Wednesday"]

    def test_list_providers_specialty_filter(self, dispatcher, registered_turn):
        result = dispatcher.execute("list_providers", {"specialty": "orthodontics"}, registered_turn)
        assert result["providers"] == []
        assert "message" in result

    def test_list_procedures_for_unknown_provider(self, dispatcher, registered_turn):
        result = dispatcher.execute("list_procedures", {"provider_id": "nobody"}, registered_turn)
        assert result["code"] == "not_found"

    def test_availability_days_then_times(self, dispatcher, registered_turn):
        days = dispatcher.execute(
            "get_availability", {"provider_id": "dr-ana", "procedure_id": "evaluation", "days_ahead": 3},
            registered_turn,
        )
        assert [d["date"] for d in days["available_dates"]] == ["2026-03-02", "2026-03-04"]

        times = dispatcher.execute(
            "get_availability",
            {"provider_id": "dr-ana", "procedure_id": "evaluation", "target_date": "2026-03-02"},
            registered_turn,
        )
        assert times["slots"][0]["start"] == "2026-03-02T08:00:00-03:00"
        assert len(times["slots"]) == 8

    def test_availability_on_day_off(self, dispatcher, registered_turn):
        result = dispatcher.execute(
            "get_availability",
            {"provider_id": "dr-ana", "procedure_id": "evaluation", "target_date": "2026-03-03"},
            registered_turn,
        )
        assert result["code"] == "validation"
        assert result["working_days"] == ["Monday", "Wednesday"]


# ── Booking ──────────────────────────────────────────────────────────


class TestBooking:
    def test_create_appointment(self, dispatcher, registered_turn, session):
        result = dispatcher.execute(
            "create_appointment",
            {"provider_id": "dr-ana", "procedure_id": "cleaning", "start_time": SLOT},
            registered_turn,
        )
        assert result["success"] is True
        assert result["appointment"]["patient_name"] == "Maria Souza"
        assert result["appointment"]["status"] == "SCHEDULED"
        assert session.query(Appointment).count() == 1

    def test_unregistered_patient_cannot_book(self, dispatcher, unregistered_turn, session):
        result = dispatcher.execute(
            "create_appointment",
            {"provider_id": "dr-ana", "procedure_id": "cleaning", "start_time": SLOT},
            unregistered_turn,
        )
        assert result["requires_registration"] is True
        assert result["missing"] == ["full name", "CPF"]
        assert session.query(Appointment).count() == 0

    def test_naive_start_is_clinic_local(self, dispatcher, registered_turn):
        result = dispatcher.execute(
            "create_appointment",
            {"provider_id": "dr-ana", "procedure_id": "cleaning", "start_time": "2026-03-02T09:00:00"},
            registered_turn,
        )
        assert result["appointment"]["start_time"] == "2026-03-02T09:00:00-03:00"

    def test_list_cancel_and_reschedule(self, dispatcher, registered_turn, session):
        created = dispatcher.execute(
            "create_appointment",
            {"provider_id": "dr-ana", "procedure_id": "cleaning", "start_time": SLOT},
            registered_turn,
        )
        appointment_id = created["appointment"]["id"]

        listed = dispatcher.execute("list_patient_appointments", {}, registered_turn)
        assert [a["id"] for a in listed["appointments"]] == [appointment_id]

        moved = dispatcher.execute(
            "reschedule_appointment",
            {"appointment_id": appointment_id, "new_start_time": "2026-03-04T10:00:00-03:00"},
            registered_turn,
        )
        assert moved["appointment"]["start_time"] == "2026-03-04T10:00:00-03:00"

        cancelled = dispatcher.execute("cancel_appointment", {"appointment_id": appointment_id}, registered_turn)
        assert cancelled["cancelled"]["id"] == appointment_id
        assert session.query(Appointment).count() == 0

    def test_cancel_someone_elses_appointment(self, dispatcher, registered_turn, unregistered_turn, session):
        created = dispatcher.execute(
            "create_appointment",
            {"provider_id": "dr-ana", "procedure_id": "cleaning", "start_time": SLOT},
            registered_turn,
        )
        appointment_id = created["appointment"]["id"]

        result = dispatcher.execute("cancel_appointment", {"appointment_id": appointment_id}, unregistered_turn)

        assert result["code"] == "not_authorized"
        assert session.get(Appointment, appointment_id).status == AppointmentStatus.SCHEDULED


# ── FAQ & escalation ─────────────────────────────────────────────────


class TestFaqAndEscalation:
    def test_search_faq(self, dispatcher, registered_turn):
        result = dispatcher.execute("search_faq", {"query": "opening hours"}, registered_turn)
        assert result["found"] is True
        assert result["results"][0]["category"] == "hours"

    def test_search_faq_miss(self, dispatcher, registered_turn):
        result = dispatcher.execute("search_faq", {"query": "parking garage"}, registered_turn)
        assert result["found"] is False

    def test_escalate_marks_conversation(self, dispatcher, registered_turn, session):
        result = dispatcher.execute("escalate", {"reason": "Wants a human"}, registered_turn)
        assert result["success"] is True
        conversation = session.get(Conversation, registered_turn.conversation_id)
        assert conversation.status == ConversationStatus.ESCALATED
        assert session.query(Escalation).one().reason == "Wants a human"


# ── Registration ─────────────────────────────────────────────────────


class TestRegistration:
    def test_register_completes_patient(self, dispatcher, unregistered_turn, session):
        result = dispatcher.execute(
            "register_patient", {"name": "João Pereira", "tax_id": "111.444.777-35"}, unregistered_turn,
        )
        assert result["registered"] is True
        assert result["patient"]["tax_id"] == "111.444.777-35"
        assert session.get(Patient, unregistered_turn.patient_id).tax_id == OTHER_VALID_CPF

    def test_partial_registration_reports_missing(self, dispatcher, unregistered_turn):
        result = dispatcher.execute("register_patient", {"name": "João Pereira"}, unregistered_turn)
        assert result["registered"] is False
        assert result["missing"] == ["CPF"]

    def test_invalid_cpf_rejected(self, dispatcher, unregistered_turn, session):
        result = dispatcher.execute(
            "register_patient", {"name": "João", "tax_id": "123.456.789-00"}, unregistered_turn,
        )
        assert result["code"] == "validation"
        assert session.get(Patient, unregistered_turn.patient_id).name is None

    def test_cpf_of_another_patient_rejected(self, dispatcher, unregistered_turn):
        result = dispatcher.execute("register_patient", {"tax_id": VALID_CPF}, unregistered_turn)
        assert result["code"] == "validation"

    def test_empty_registration_rejected(self, dispatcher, unregistered_turn):
        assert dispatcher.execute("register_patient", {}, unregistered_turn)["code"] == "validation"

    def test_dependent_redirects_the_rest_of_the_turn(self, dispatcher, registered_turn, session):
        guardian_id = registered_turn.patient_id
        result = dispatcher.execute(
            "register_patient",
            {"name": "Pedro Souza", "tax_id": OTHER_VALID_CPF, "create_dependent": True},
            registered_turn,
        )
        assert result["registered"] is True
        assert registered_turn.patient_id != guardian_id

        booked = dispatcher.execute(
            "create_appointment",
            {"provider_id": "dr-ana", "procedure_id": "evaluation", "start_time": SLOT},
            registered_turn,
        )
        assert booked["appointment"]["patient_name"] == "Pedro Souza"
        dependent = session.get(Patient, registered_turn.patient_id)
        assert dependent.address == session.get(Patient, guardian_id).address
        assert session.get(Conversation, registered_turn.conversation_id).patient_id == dependent.id
