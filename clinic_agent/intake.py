"""Inbound WhatsApp webhook handling: filtering, dedup and debounce.

Flow for one Evolution API ``messages.upsert`` event:

  1. Drop other events, groups, our own messages and duplicates.
  2. Operator texts go to ``AdminBot`` and are answered immediately.
  3. Chats handed over to a human (ESCALATED) get no automated reply,
     not even the "text only" notice for audio or stickers.
  4. Non-text messages get that notice.
  5. Otherwise the text is buffered per sender and a timer is (re)armed.
     When a sender stays quiet for ``DEBOUNCE_SECONDS`` the buffered texts
     are joined into a single agent turn, so "Hi" / "I'd like" / "a cleaning"
     sent in quick succession get one answer instead of three.

The webhook must return fast, so ``handle`` never calls the model; the
agent runs on the timer thread.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from clinic_agent.admin_bot import AdminBot
from clinic_agent.agent import AgentService
from clinic_agent.config import ATTENDANT_PHONE, DEBOUNCE_SECONDS
from clinic_agent.db import session_scope
from clinic_agent.models import Conversation, Escalation, EscalationStatus, Patient
from clinic_agent.services.dedup import ExpiringSet
from clinic_agent.services.messaging import EvolutionClient
from clinic_agent.services.metrics import metrics
from clinic_agent.services.notifications import NotificationService
from clinic_agent.services.patients import escalated_conversation, normalize_address, phones_match
from clinic_agent.timeutils import now_utc

logger = logging.getLogger(__name__)

PAUSE_MARKER = "[PAUSE]"
MAX_TYPING_MS = 3500

NON_TEXT_REPLY = (
    "Hi! 😊 For now I can only read text messages. "
    "Please write what you need and I'll be happy to help!"
)
FALLBACK_REPLY = "Sorry, I had a momentary technical problem. Please try again in a few moments. 😊"
OPERATOR_ERROR_REPLY = "❌ Error while running the command. Please try again."


def extract_text(message: dict[str, Any] | None) -> str | None:
    """Text of a WhatsApp message: plain, extended (reply/link) or image caption."""
    if not message:
        return None
    return (
        message.get("conversation")
        or (message.get("extendedTextMessage") or {}).get("text")
        or (message.get("imageMessage") or {}).get("caption")
        or None
    )


def split_reply(reply: str) -> list[str]:
    """Split a reply into WhatsApp bubbles on ``[PAUSE]`` markers."""
    return [part.strip() for part in reply.split(PAUSE_MARKER) if part.strip()]


@dataclass
class _PendingBatch:
    texts: list[str] = field(default_factory=list)
    timer: Any = None


class IntakeGate:
    """Turns raw webhook events into debounced agent turns."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        agent: AgentService,
        messaging: EvolutionClient,
        notifications: NotificationService,
        admin_bot: AdminBot,
        *,
        attendant_phone: str = ATTENDANT_PHONE,
        debounce_seconds: float = DEBOUNCE_SECONDS,
        seen: ExpiringSet | None = None,
        timer_factory: Callable[..., Any] = threading.Timer,
    ) -> None:
        self._session_factory = session_factory
        self._agent = agent
        self._messaging = messaging
        self._notifications = notifications
        self._admin_bot = admin_bot
        self._attendant_phone = attendant_phone
        self._debounce_seconds = debounce_seconds
        self._seen = seen or ExpiringSet()
        self._timer_factory = timer_factory
        self._pending: dict[str, _PendingBatch] = {}
        self._lock = threading.Lock()

    # ── Webhook entry point ──────────────────────────────────────────

    def handle(self, payload: dict[str, Any]) -> str:
        """Process one webhook event.  Returns a short outcome label."""
        if payload.get("event") != "messages.upsert":
            return "ignored"
        data = payload.get("data") or {}
        key = data.get("key") or {}
        if not key:
            return "ignored"
        if key.get("fromMe"):
            return "own_message"

        remote_jid = key.get("remoteJid") or ""
        if "@g.us" in remote_jid:
            return "group"

        message_id = key.get("id") or ""
        if message_id and not self._seen.add_if_new(message_id):
            logger.debug("Duplicate webhook delivery %s dropped", message_id)
            return "duplicate"

        address = normalize_address(remote_jid)
        if not address:
            return "ignored"

        text = extract_text(data.get("message"))
        if text and self._attendant_phone and phones_match(address, self._attendant_phone):
            logger.info("Operator command from %s: %r", address, text[:50])
            self._messaging.mark_as_read(message_id, remote_jid)
            self._answer_operator(address, text)
            return "operator"

        with session_scope(self._session_factory) as session:
            if escalated_conversation(session, address) is not None:
                logger.info("Conversation of %s is with a human; no automated reply", address)
                return "escalated"

        if not text:
            self._messaging.send_text(address, NON_TEXT_REPLY)
            return "non_text"

        logger.info("Message from %s: %r", address, text[:50])
        metrics.record_event("inbound_message")
        self._messaging.mark_as_read(message_id, remote_jid)
        self._enqueue(address, text)
        return "queued"

    def _answer_operator(self, address: str, text: str) -> None:
        try:
            reply = self._admin_bot.handle(text)
        except Exception:
            logger.exception("Operator command failed: %r", text)
            reply = OPERATOR_ERROR_REPLY
        self._messaging.send_text(address, reply)

    # ── Debounce ─────────────────────────────────────────────────────

    def _enqueue(self, address: str, text: str) -> None:
        with self._lock:
            previous = self._pending.get(address)
            texts = [text]
            if previous is not None:
                previous.timer.cancel()
                texts = previous.texts + texts
                logger.info("Buffered message for %s (%d pending)", address, len(texts))
            batch = _PendingBatch(texts=texts)
            batch.timer = self._timer_factory(self._debounce_seconds, self._fire, args=(address, batch))
            batch.timer.daemon = True
            self._pending[address] = batch
            batch.timer.start()

    def _fire(self, address: str, batch: _PendingBatch) -> None:
        with self._lock:
            # A newer batch replaced this one after the timer had already started.
            if self._pending.get(address) is not batch:
                return
            del self._pending[address]
        combined = "\n".join(batch.texts)
        logger.info("Processing %d message(s) from %s", len(batch.texts), address)
        self.process(address, combined)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def shutdown(self) -> None:
        """Cancel every armed timer; buffered texts are dropped."""
        with self._lock:
            for batch in self._pending.values():
                batch.timer.cancel()
            dropped = len(self._pending)
            self._pending.clear()
        if dropped:
            logger.warning("Intake shut down with %d unprocessed sender buffer(s)", dropped)

    # ── Turn execution ───────────────────────────────────────────────

    def process(self, address: str, text: str) -> None:
        """Run one agent turn for *address* and deliver the reply."""
        started = now_utc()
        try:
            reply = self._agent.process_message(address, text)
            for part in split_reply(reply):
                self._messaging.send_typing(address, min(len(part) * 25, MAX_TYPING_MS))
                self._messaging.send_text(address, part)
            self._notify_new_escalation(address, started)
        except Exception:
            logger.exception("Failed to handle message from %s", address)
            try:
                self._messaging.send_text(address, FALLBACK_REPLY)
            except Exception:
                logger.exception("Fallback reply to %s could not be sent", address)

    def _notify_new_escalation(self, address: str, since) -> None:
        with session_scope(self._session_factory) as session:
            escalation = session.scalar(
                select(Escalation)
                .join(Escalation.conversation)
                .join(Conversation.patient)
                .where(
                    Patient.address == address,
                    Escalation.status == EscalationStatus.PENDING,
                    Escalation.created_at >= since,
                )
                .order_by(Escalation.created_at.desc())
                .limit(1)
            )
            reason = escalation.reason if escalation is not None else None
        if escalation is not None:
            self._notifications.notify_attendant(address, reason)
