"""LangGraph-based booking agent for the clinic's WhatsApp channel.

Architecture:
  One turn of the conversation is one run of a small LangGraph
  StateGraph with two nodes:

    1. **chatbot** — Claude with the tool subset allowed for the current
                     conversation stage (see ``stages.py``)
    2. **tools**   — executes the requested tool calls **sequentially**
                     through ``ToolDispatcher`` (order matters: registration
                     must land before booking)

  Routing:
    chatbot → (tool calls?)    → tools → (rounds left?) → chatbot (loop)
            → (no tool calls?) → END                   → END
            → (model failed?)  → END

  The loop is capped at ``MAX_TOOL_ROUNDS`` model calls.  A model failure
  ends the run immediately (no retry inside a turn).

  Memory:
    Conversation history lives in the database (``Message`` rows), not in a
    LangGraph checkpointer: the last ``MAX_HISTORY_MESSAGES`` are replayed
    into every turn.

  Every turn yields a reply: the model's final text, or a deterministic
  booking confirmation if an appointment was created before the model
  failed, or an apology.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Annotated, Any

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, AnyMessage, HumanMessage, SystemMessage, ToolMessage
from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, StateGraph
from langgraph.graph.message import add_messages
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker
from typing_extensions import TypedDict

from clinic_agent.config import ANTHROPIC_API_KEY, MODEL_NAME, MODEL_TIMEOUT_SECONDS
from clinic_agent.db import session_scope
from clinic_agent.models import Conversation, Message, MessageDirection
from clinic_agent.prompts import get_system_prompt
from clinic_agent.services.google_calendar import GoogleCalendarClient
from clinic_agent.services.metrics import metrics
from clinic_agent.services.patients import active_conversation, get_or_create_primary_patient
from clinic_agent.stages import Stage, classify_quick_intent, detect_stage, tools_for_stage
from clinic_agent.timeutils import format_long, now_utc, parse_iso_datetime
from clinic_agent.tools.dispatch import ToolDispatcher, TurnContext

logger = logging.getLogger(__name__)

MAX_TOOL_ROUNDS = 10
MAX_HISTORY_MESSAGES = 20

APOLOGY_REPLY = "Sorry, I ran into a small technical problem. Could you repeat your message? 😊"


# ── State schema ─────────────────────────────────────────────────────


class AgentState(TypedDict):
    """The state that flows through the graph for one turn.

    ``messages`` uses the ``add_messages`` reducer so each node appends.
    ``rounds`` counts model calls; ``model_failed`` short-circuits to END.
    """

    messages: Annotated[list[AnyMessage], add_messages]
    system_prompt: str
    stage: Stage
    rounds: int
    model_failed: bool


# ── Helpers ──────────────────────────────────────────────────────────


def _build_llm() -> ChatAnthropic:
    """Build the Claude client.  No client-side retries: a failure ends the turn."""
    return ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.3,
        max_tokens=1024,
        timeout=MODEL_TIMEOUT_SECONDS,
        max_retries=0,
    )


def message_text(message: AnyMessage) -> str:
    """Plain text of a message whose content may be a list of content blocks."""
    content = message.content
    if isinstance(content, str):
        return content.strip()
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts).strip()


def booking_confirmation(booking: dict[str, Any]) -> str:
    """Deterministic confirmation used when the model could not write one."""
    start = parse_iso_datetime(booking["start_time"])
    return "\n".join([
        "✅ *Appointment confirmed!*",
        "",
        f"👤 *Patient:* {booking.get('patient_name', '')}",
        f"🪪 *CPF:* {booking.get('patient_tax_id', '')}",
        f"📋 *Procedure:* {booking.get('procedure', '')}",
        f"👨‍⚕️ *Dentist:* {booking.get('provider', '')}",
        f"📅 *Date & time:* {format_long(start)}",
        "",
        "_Please arrive 10 minutes early. To cancel or reschedule, just message me!_",
    ])


def _tool_message(call_id: str, name: str, result: dict[str, Any]) -> ToolMessage:
    return ToolMessage(content=json.dumps(result, default=str, ensure_ascii=False), tool_call_id=call_id, name=name)


# ── Nodes ────────────────────────────────────────────────────────────


def _make_chatbot_node(llm: ChatAnthropic):
    """Create the chatbot node.

    Tool bindings are built once per stage and cached in the closure so the
    loop (chatbot → tools → chatbot → …) reuses them.
    """
    bound: dict[Stage, Any] = {}

    def _llm_for(stage: Stage):
        if stage not in bound:
            bound[stage] = llm.bind_tools([tool.as_tool() for tool in tools_for_stage(stage)])
        return bound[stage]

    def chatbot_node(state: AgentState) -> dict:
        stage = state.get("stage", Stage.INITIAL)
        rounds = state.get("rounds", 0) + 1
        logger.debug("chatbot round %d (stage=%s, model=%s)", rounds, stage.value, MODEL_NAME)
        try:
            with metrics.timed("anthropic", "llm_invoke"):
                response = _llm_for(stage).invoke(
                    [SystemMessage(content=state["system_prompt"])] + state["messages"]
                )
        except Exception as exc:
            logger.error("Model call failed on round %d: %s", rounds, exc)
            return {"rounds": rounds, "model_failed": True}

        return {"messages": [response], "rounds": rounds}

    return chatbot_node


def tools_node(state: AgentState, config: RunnableConfig) -> dict:
    """Execute every tool call of the last model message, one after another."""
    dispatcher: ToolDispatcher = config["configurable"]["dispatcher"]
    turn: TurnContext = config["configurable"]["turn"]
    last = state["messages"][-1]

    results: list[ToolMessage] = []
    for call in getattr(last, "tool_calls", None) or []:
        logger.info("Tool call %s %s", call["name"], call.get("args"))
        result = dispatcher.execute(call["name"], call.get("args"), turn)
        if call["name"] == "create_appointment" and result.get("success") and result.get("appointment"):
            turn.last_booking = result["appointment"]
        results.append(_tool_message(call["id"], call["name"], result))

    # Unparseable arguments still need a tool result for the model to recover.
    for bad in getattr(last, "invalid_tool_calls", None) or []:
        logger.warning("Malformed tool call %s: %s", bad.get("name"), bad.get("error"))
        results.append(
            _tool_message(
                bad.get("id") or "", bad.get("name") or "unknown",
                {"success": False, "error": "Malformed tool arguments; send valid JSON."},
            )
        )
    return {"messages": results}


# ── Conditional edges ────────────────────────────────────────────────


def after_chatbot(state: AgentState) -> str:
    if state.get("model_failed"):
        return END
    last = state["messages"][-1]
    if isinstance(last, AIMessage) and (last.tool_calls or last.invalid_tool_calls):
        return "tools"
    return END


def after_tools(state: AgentState) -> str:
    if state.get("rounds", 0) >= MAX_TOOL_ROUNDS:
        logger.warning("Tool round cap (%d) reached", MAX_TOOL_ROUNDS)
        return END
    return "chatbot"


# ── Graph assembly ───────────────────────────────────────────────────


def create_booking_graph(llm: ChatAnthropic | None = None):
    """Build and compile the booking graph.

    Invoke with the dispatcher and turn context in the run config::

        graph.invoke(
            {"messages": [...], "system_prompt": "...", "stage": Stage.INITIAL,
             "rounds": 0, "model_failed": False},
            config={"configurable": {"dispatcher": dispatcher, "turn": turn}},
        )
    """
    graph = StateGraph(AgentState)
    graph.add_node("chatbot", _make_chatbot_node(llm or _build_llm()))
    graph.add_node("tools", tools_node)
    graph.set_entry_point("chatbot")
    graph.add_conditional_edges("chatbot", after_chatbot, {"tools": "tools", END: END})
    graph.add_conditional_edges("tools", after_tools, {"chatbot": "chatbot", END: END})
    return graph.compile()


# ── Turn orchestration ───────────────────────────────────────────────


class AgentService:
    """Runs one patient turn end-to-end and always returns a reply."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        calendar: GoogleCalendarClient,
        *,
        llm: ChatAnthropic | None = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._session_factory = session_factory
        self._calendar = calendar
        self._clock = clock
        self._graph = create_booking_graph(llm)

    def _history(self, session: Session, conversation: Conversation) -> list[AnyMessage]:
        rows = list(
            session.scalars(
                select(Message)
                .where(Message.conversation_id == conversation.id)
                .order_by(Message.timestamp.desc(), Message.id.desc())
                .limit(MAX_HISTORY_MESSAGES)
            )
        )
        rows.reverse()
        # The model expects the transcript to open with a user message.
        while rows and rows[0].role != "user":
            rows.pop(0)
        return [
            HumanMessage(content=m.content) if m.role == "user" else AIMessage(content=m.content)
            for m in rows
        ]

    def _start_turn(self, address: str, text: str) -> tuple[TurnContext, list[AnyMessage], str, Stage]:
        """Resolve conversation + patient, persist the inbound message."""
        now = self._clock()
        with session_scope(self._session_factory) as session:
            conversation = active_conversation(session, address)
            if conversation is None:
                patient = get_or_create_primary_patient(session, address)
                conversation = Conversation(patient=patient, last_activity=now)
                session.add(conversation)
                session.flush()
            patient = conversation.patient

            history = self._history(session, conversation)
            last_outbound = session.scalar(
                select(Message.content)
                .where(
                    Message.conversation_id == conversation.id,
                    Message.direction == MessageDirection.OUTBOUND,
                )
                .order_by(Message.timestamp.desc(), Message.id.desc())
                .limit(1)
            )
            session.add(
                Message(
                    conversation=conversation, direction=MessageDirection.INBOUND,
                    role="user", content=text, timestamp=now,
                )
            )
            conversation.last_activity = now
            system_prompt = get_system_prompt(patient, now)
            turn = TurnContext(patient_id=patient.id, conversation_id=conversation.id, address=address)

        stage = detect_stage(last_outbound)
        logger.info(
            "Turn for %s: conversation=%s patient=%s stage=%s",
            address, turn.conversation_id, turn.patient_id, stage.value,
        )
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Stage %s, quick intent %s", stage.value, classify_quick_intent(text))
        return turn, history + [HumanMessage(content=text)], system_prompt, stage

    def _run_loop(self, turn: TurnContext, messages: list[AnyMessage], system_prompt: str, stage: Stage) -> str:
        with session_scope(self._session_factory) as session:
            dispatcher = ToolDispatcher(session, self._calendar, clock=self._clock)
            try:
                final = self._graph.invoke(
                    {
                        "messages": messages,
                        "system_prompt": system_prompt,
                        "stage": stage,
                        "rounds": 0,
                        "model_failed": False,
                    },
                    config={
                        "configurable": {"dispatcher": dispatcher, "turn": turn},
                        "recursion_limit": MAX_TOOL_ROUNDS * 2 + 5,
                    },
                )
            except Exception:
                logger.exception("Agent loop aborted for conversation %s", turn.conversation_id)
                return ""

        if final.get("model_failed"):
            return ""
        last = final["messages"][-1]
        if isinstance(last, AIMessage) and not last.tool_calls:
            return message_text(last)
        return ""

    def process_message(self, address: str, text: str) -> str:
        """Handle one (possibly coalesced) patient message and return the reply."""
        turn, messages, system_prompt, stage = self._start_turn(address, text)

        reply = self._run_loop(turn, messages, system_prompt, stage)
        outcome = "reply"
        if not reply:
            if turn.last_booking:
                logger.warning("Model produced no reply after a booking; sending fallback confirmation")
                reply = booking_confirmation(turn.last_booking)
                outcome = "booking_fallback"
            else:
                reply = APOLOGY_REPLY
                outcome = "apology"
        metrics.record_event("agent_turn", outcome=outcome)

        with session_scope(self._session_factory) as session:
            session.add(
                Message(
                    conversation_id=turn.conversation_id, direction=MessageDirection.OUTBOUND,
                    role="assistant", content=reply, timestamp=self._clock(),
                )
            )
        return reply
