"""Deterministic conversation-stage detection and per-stage tool narrowing.

The stage is inferred from the assistant's previous message with plain
regular expressions, no model call involved.  Narrowing the tool list keeps
the model focused (e.g. only ``create_appointment`` after a booking summary)
but anything unrecognised falls back to ``INITIAL`` with the full tool set:
a wrongly restrictive stage would block a legitimate action.
"""

from __future__ import annotations

import enum
import re

from clinic_agent.tools.schemas import (
    ALL_TOOLS,
    CancelAppointment,
    CreateAppointment,
    Escalate,
    GetAvailability,
    ListPatientAppointments,
    RegisterPatient,
    RescheduleAppointment,
    ToolArgs,
)


class Stage(str, enum.Enum):
    INITIAL = "initial"
    AWAITING_DAY = "awaiting_day"
    AWAITING_TIME = "awaiting_time"
    PRE_CONFIRMATION = "pre_confirmation"
    CANCEL_FLOW = "cancel_flow"
    REGISTRATION = "registration"


STAGE_TOOLS: dict[Stage, tuple[type[ToolArgs], ...]] = {
    Stage.INITIAL: ALL_TOOLS,
    Stage.PRE_CONFIRMATION: (CreateAppointment, GetAvailability, Escalate),
    Stage.AWAITING_TIME: (GetAvailability, Escalate, RegisterPatient),
    Stage.AWAITING_DAY: (GetAvailability, ListPatientAppointments, Escalate, RegisterPatient),
    Stage.CANCEL_FLOW: (
        ListPatientAppointments,
        CancelAppointment,
        RescheduleAppointment,
        GetAvailability,
        Escalate,
    ),
    Stage.REGISTRATION: (RegisterPatient, Escalate),
}

# Checked in this order; the first match wins.
_STAGE_PATTERNS: tuple[tuple[Stage, re.Pattern[str]], ...] = (
    (
        Stage.PRE_CONFIRMATION,
        re.compile(r"shall i confirm|can i confirm|do you confirm|confirm (the|this|your) (booking|appointment)"),
    ),
    (
        Stage.AWAITING_TIME,
        re.compile(r"which time|what time|choose a time|pick a time|prefer.*time|available times"),
    ),
    (
        Stage.AWAITING_DAY,
        re.compile(r"which day|what day|which date|what date|prefer.*day"),
    ),
    (
        Stage.CANCEL_FLOW,
        re.compile(
            r"which appointment.*(cancel|reschedul)|confirm.*cancellation"
            r"|(cancel|reschedule) (it|this appointment|that appointment)\?"
        ),
    ),
    (
        Stage.REGISTRATION,
        re.compile(
            r"(full name|cpf).*(register|provide|need|required|send)"
            r"|(provide|need|send).*(full name|cpf)"
        ),
    ),
)


def detect_stage(last_outbound: str | None) -> Stage:
    """Infer the stage from the last assistant message."""
    if not last_outbound:
        return Stage.INITIAL
    text = last_outbound.lower()
    for stage, pattern in _STAGE_PATTERNS:
        if pattern.search(text):
            return stage
    return Stage.INITIAL


def tools_for_stage(stage: Stage) -> tuple[type[ToolArgs], ...]:
    return STAGE_TOOLS[stage]


# ── Quick yes/no classification ─────────────────────────────────────

QUICK_INTENT_MAX_CHARS = 40

_YES = re.compile(
    r"^(yes|yeah|yep|y|ok|okay|sure|confirm|confirmed|go ahead|do it|perfect|great"
    r"|that works|sounds good|correct|right|exactly|sim|pode)$"
)
_NO = re.compile(
    r"^(no|nope|n|not really|cancel|don't|do not|change|wrong|other|another"
    r"|go back|never mind|nevermind|nao|não)$"
)
_TRAILING_PUNCTUATION = re.compile(r"[!?.…]+$")


def classify_quick_intent(text: str) -> str:
    """Classify a short reply as ``confirm``, ``deny`` or ``unknown``.

    Messages longer than 40 characters are always ``unknown``: they carry
    more than a yes/no and are left to the model.
    """
    trimmed = text.strip()
    if len(trimmed) > QUICK_INTENT_MAX_CHARS:
        return "unknown"
    clean = _TRAILING_PUNCTUATION.sub("", trimmed.lower()).strip()
    if _YES.match(clean):
        return "confirm"
    if _NO.match(clean):
        return "deny"
    return "unknown"
