"""Tests for the LangGraph agent loop and turn orchestration.

Covers:
  - Conditional edges (tools / END, round cap, model failure)
  - Reply extraction from content blocks
  - End-to-end turns with a mocked LLM: tool execution, persistence,
    stage-based tool narrowing, the booking fallback and the apology
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from unittest.mock import ANY, MagicMock, patch

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage
from langgraph.graph import END

from clinic_agent.agent import (
    APOLOGY_REPLY,
    MAX_TOOL_ROUNDS,
    AgentService,
    AgentState,
    after_chatbot,
    after_tools,
    booking_confirmation,
    message_text,
)
from clinic_agent.models import Appointment, Conversation, Message, MessageDirection
from clinic_agent.services.metrics import metrics
from clinic_agent.stages import Stage

PHONE = "5511999990000"
SLOT = "2026-03-02T09:00:00-03:00"


# ── Helpers ──────────────────────────────────────────────────────────


def _tool_call(name: str, args: dict, call_id: str = "call_1") -> AIMessage:
    return AIMessage(content="", tool_calls=[{"name": name, "args": args, "id": call_id}])


def _make_mock_llm(*responses):
    """Mock chat model whose bound version returns *responses* in order."""
    llm = MagicMock()
    llm.bind_tools.return_value.invoke.side_effect = list(responses)
    return llm


def _state(**overrides) -> AgentState:
    state: AgentState = {
        "messages": [HumanMessage(content="Hi")],
        "system_prompt": "prompt",
        "stage": Stage.INITIAL,
        "rounds": 1,
        "model_failed": False,
    }
    state.update(overrides)
    return state


@pytest.fixture
def make_agent(session_factory, clinic, mock_calendar, clock):
    def _make(llm):
        return AgentService(session_factory, mock_calendar, llm=llm, clock=clock)

    return _make


# ── Conditional edges ────────────────────────────────────────────────


class TestRouting:
    def test_tool_calls_route_to_tools(self):
        state = _state(messages=[_tool_call("search_faq", {"query": "hours"})])
        assert after_chatbot(state) == "tools"

    def test_plain_answer_ends(self):
        assert after_chatbot(_state(messages=[AIMessage(content="Hello!")])) == END

    def test_model_failure_ends(self):
        assert after_chatbot(_state(model_failed=True)) == END

    def test_round_cap_ends_loop(self):
        assert after_tools(_state(rounds=MAX_TOOL_ROUNDS)) == END
        assert after_tools(_state(rounds=MAX_TOOL_ROUNDS - 1)) == "chatbot"


class TestReplyHelpers:
    def test_message_text_joins_text_blocks(self):
        message = AIMessage(content=[
            {"type": "text", "text": "Hello "},
            {"type": "tool_use", "id": "x", "name": "search_faq", "input": {}},
            {"type": "text", "text": "there"},
        ])
        assert message_text(message) == "Hello there"

    def test_booking_confirmation_names_everything(self):
        text = booking_confirmation({
            "patient_name": "Maria Souza",
            "patient_tax_id": "529.982.247-25",
            "procedure": "Dental Cleaning",
            "provider": "Dr. Ana Lima",
            "start_time": "2026-03-02T12:00:00+00:00",
        })
        assert "Maria Souza" in text
        assert "Dental Cleaning" in text
        assert "Dr. Ana Lima" in text
        assert "Monday, 02 March 2026 at 09:00" in text


# ── End-to-end turns ─────────────────────────────────────────────────


class TestProcessMessage:
    def test_plain_reply_is_persisted(self, make_agent, session):
        agent = make_agent(_make_mock_llm(AIMessage(content="Hi! How can I help?")))

        reply = agent.process_message(PHONE, "Hello")

        assert reply == "Hi! How can I help?"
        rows = session.query(Message).order_by(Message.id).all()
        assert [(r.direction, r.content) for r in rows] == [
            (MessageDirection.INBOUND, "Hello"),
            (MessageDirection.OUTBOUND, "Hi! How can I help?"),
        ]

    def test_system_prompt_carries_patient_status(self, make_agent):
        llm = _make_mock_llm(AIMessage(content="ok"))
        make_agent(llm).process_message(PHONE, "Hello")

        sent = llm.bind_tools.return_value.invoke.call_args[0][0]
        assert isinstance(sent[0], SystemMessage)
        assert "Maria Souza" in sent[0].content
        assert "Registered" in sent[0].content

    def test_new_address_creates_patient(self, make_agent, session):
        make_agent(_make_mock_llm(AIMessage(content="Welcome!"))).process_message("5521955554444", "Hi")
        conversation = session.query(Conversation).one()
        assert conversation.patient.address == "5521955554444"
        assert conversation.patient.is_registered is False

    def test_tool_round_trip(self, make_agent, session):
        llm = _make_mock_llm(
            _tool_call("create_appointment", {
                "provider_id": "dr-ana", "procedure_id": "cleaning", "start_time": SLOT,
            }),
            AIMessage(content="✅ *Appointment confirmed!*"),
        )
        reply = make_agent(llm).process_message(PHONE, "Yes, confirm")

        assert reply == "✅ *Appointment confirmed!*"
        assert session.query(Appointment).count() == 1
        second_call = llm.bind_tools.return_value.invoke.call_args_list[1][0][0]
        tool_message = second_call[-1]
        assert isinstance(tool_message, ToolMessage)
        assert json.loads(tool_message.content)["success"] is True

    def test_booking_survives_model_failure(self, make_agent, session):
        llm = _make_mock_llm(
            _tool_call("create_appointment", {
                "provider_id": "dr-ana", "procedure_id": "cleaning", "start_time": SLOT,
            }),
            RuntimeError("model timeout"),
        )
        reply = make_agent(llm).process_message(PHONE, "Yes")

        assert "Maria Souza" in reply
        assert "Dental Cleaning" in reply
        assert "Dr. Ana Lima" in reply
        assert "Monday, 02 March 2026 at 09:00" in reply
        assert session.query(Appointment).count() == 1

    def test_model_failure_without_booking_apologises(self, make_agent, session):
        reply = make_agent(_make_mock_llm(RuntimeError("overloaded"))).process_message(PHONE, "Hi")
        assert reply == APOLOGY_REPLY
        outbound = session.query(Message).filter_by(direction=MessageDirection.OUTBOUND).one()
        assert outbound.content == APOLOGY_REPLY

    def test_tool_rounds_are_capped(self, make_agent):
        llm = MagicMock()
        # A fresh message per round: add_messages replaces messages that share an id.
        llm.bind_tools.return_value.invoke.side_effect = lambda *_a, **_k: _tool_call("search_faq", {"query": "hours"})

        reply = make_agent(llm).process_message(PHONE, "Hours?")

        assert reply == APOLOGY_REPLY
        assert llm.bind_tools.return_value.invoke.call_count == MAX_TOOL_ROUNDS

    def test_invalid_tool_arguments_reach_the_model(self, make_agent):
        llm = _make_mock_llm(
            _tool_call("get_availability", {"provider_id": "dr-ana"}),
            AIMessage(content="Which procedure?"),
        )
        make_agent(llm).process_message(PHONE, "Availability?")

        tool_message = llm.bind_tools.return_value.invoke.call_args_list[1][0][0][-1]
        assert json.loads(tool_message.content)["code"] == "invalid_arguments"

    def test_model_latency_recorded_on_success(self, make_agent):
        with patch.object(metrics, "record_success") as mock_success:
            make_agent(_make_mock_llm(AIMessage(content="Hi"))).process_message(PHONE, "Hello")
        mock_success.assert_called_once_with("anthropic", "llm_invoke", latency_ms=ANY)

    def test_model_failure_recorded(self, make_agent):
        with patch.object(metrics, "record_failure") as mock_failure:
            make_agent(_make_mock_llm(RuntimeError("overloaded"))).process_message(PHONE, "Hi")
        mock_failure.assert_called_once_with(
            "anthropic", "llm_invoke", error_type="RuntimeError", latency_ms=ANY,
        )


# ── History & stage ──────────────────────────────────────────────────


class TestHistoryAndStage:
    def _seed_history(self, session, clinic, clock, last_outbound: str):
        conversation = Conversation(patient=clinic["registered"], last_activity=clock.now)
        session.add(conversation)
        base = clock.now - timedelta(minutes=10)
        for i, (direction, role, content) in enumerate([
            (MessageDirection.OUTBOUND, "assistant", "Welcome to the clinic!"),
            (MessageDirection.INBOUND, "user", "I want a cleaning"),
            (MessageDirection.OUTBOUND, "assistant", last_outbound),
        ]):
            session.add(Message(
                conversation=conversation, direction=direction, role=role,
                content=content, timestamp=base + timedelta(minutes=i),
            ))
        session.commit()
        return conversation

    def test_history_is_replayed_starting_with_user(self, make_agent, session, clinic, clock):
        self._seed_history(session, clinic, clock, "Which day works best for you?")
        llm = _make_mock_llm(AIMessage(content="Great, Monday then."))

        make_agent(llm).process_message(PHONE, "Monday")

        sent = llm.bind_tools.return_value.invoke.call_args[0][0]
        assert [type(m).__name__ for m in sent] == ["SystemMessage", "HumanMessage", "AIMessage", "HumanMessage"]
        assert sent[1].content == "I want a cleaning"
        assert sent[-1].content == "Monday"

    def test_stage_narrows_bound_tools(self, make_agent, session, clinic, clock):
        self._seed_history(session, clinic, clock, "Cleaning on Monday at 09:00. Shall I confirm this booking?")
        llm = _make_mock_llm(AIMessage(content="Done"))

        make_agent(llm).process_message(PHONE, "yes")

        bound = llm.bind_tools.call_args[0][0]
        assert {t["function"]["name"] for t in bound} == {"create_appointment", "get_availability", "escalate"}

    def test_quick_intent_logged_with_stage_at_debug(self, make_agent, session, clinic, clock, caplog):
        self._seed_history(session, clinic, clock, "Cleaning on Monday at 09:00. Shall I confirm this booking?")

        with caplog.at_level(logging.DEBUG, logger="clinic_agent.agent"):
            make_agent(_make_mock_llm(AIMessage(content="Done"))).process_message(PHONE, "yes!")

        assert "Stage pre_confirmation, quick intent confirm" in caplog.text

    def test_quick_intent_not_logged_at_info(self, make_agent, caplog):
        with caplog.at_level(logging.INFO, logger="clinic_agent.agent"):
            make_agent(_make_mock_llm(AIMessage(content="Hi"))).process_message(PHONE, "yes")

        assert "quick intent" not in caplog.text

    def test_existing_conversation_is_reused(self, make_agent, session, clinic, clock):
        conversation = self._seed_history(session, clinic, clock, "Hello!")
        make_agent(_make_mock_llm(AIMessage(content="Hi"))).process_message(PHONE, "Hi")
        assert session.query(Conversation).count() == 1
        assert session.query(Message).filter_by(conversation_id=conversation.id).count() == 5
