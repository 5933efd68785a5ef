"""Patient and conversation lookups keyed by WhatsApp address.

Several patients may share one address (a guardian booking for a
dependent); the *primary* patient of an address is its oldest record.
"""

from __future__ import annotations

import logging
import re

from sqlalchemy import select
from sqlalchemy.orm import Session

from clinic_agent.models import Conversation, ConversationStatus, Patient

logger = logging.getLogger(__name__)

_BR_MOBILE_WITHOUT_NINE = re.compile(r"^55\d{10}$")


def normalize_address(raw: str) -> str:
    """``"5511999999999@s.whatsapp.net"`` / ``"+55 (11) 99999-9999"`` → digits."""
    return re.sub(r"\D", "", raw.split("@")[0])


def _with_ninth_digit(phone: str) -> str:
    if _BR_MOBILE_WITHOUT_NINE.match(phone):
        return f"55{phone[2:4]}9{phone[4:]}"
    return phone


def phones_match(a: str, b: str) -> bool:
    """Compare two numbers, tolerating Brazil's 8 → 9 digit mobile migration."""
    a, b = normalize_address(a), normalize_address(b)
    if not a or not b:
        return False
    return a == b or _with_ninth_digit(a) == _with_ninth_digit(b)


def primary_patient(session: Session, address: str) -> Patient | None:
    return session.scalar(
        select(Patient).where(Patient.address == address).order_by(Patient.created_at, Patient.id).limit(1)
    )


def get_or_create_primary_patient(session: Session, address: str) -> Patient:
    patient = primary_patient(session, address)
    if patient is None:
        patient = Patient(address=address)
        session.add(patient)
        session.flush()
        logger.info("New patient %s created for %s", patient.id, address)
    return patient


def active_conversation(session: Session, address: str) -> Conversation | None:
    """Most recently active ACTIVE conversation of any patient on *address*."""
    return session.scalar(
        select(Conversation)
        .join(Conversation.patient)
        .where(Patient.address == address, Conversation.status == ConversationStatus.ACTIVE)
        .order_by(Conversation.last_activity.desc())
        .limit(1)
    )


def escalated_conversation(session: Session, address: str) -> Conversation | None:
    return session.scalar(
        select(Conversation)
        .join(Conversation.patient)
        .where(Patient.address == address, Conversation.status == ConversationStatus.ESCALATED)
        .order_by(Conversation.last_activity.desc())
        .limit(1)
    )
