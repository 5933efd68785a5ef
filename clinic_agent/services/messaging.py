"""HTTP client for the Evolution API (WhatsApp gateway).

Evolution API v2 docs: https://doc.evolution-api.com/v2/api-reference
Only three endpoints are used: ``/message/sendText``,
``/chat/markMessageAsRead`` and ``/chat/sendPresence``.  Read receipts and
the typing indicator are cosmetic, so their failures are logged and dropped;
``send_text`` retries and raises ``MessagingError`` when delivery fails.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any

import httpx

from clinic_agent.config import EVOLUTION_API_KEY, EVOLUTION_API_URL, EVOLUTION_INSTANCE_NAME
from clinic_agent.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 30.0

# Delay Evolution applies before delivering a text (renders as "typing…").
SEND_DELAY_MS = 1200


class MessagingError(Exception):
    """Raised when a message cannot be delivered to the gateway."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class EvolutionClient:
    """Thin wrapper around the Evolution API for one WhatsApp instance."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        instance: str | None = None,
    ):
        self._instance = instance or EVOLUTION_INSTANCE_NAME
        self._client = httpx.Client(
            base_url=base_url or EVOLUTION_API_URL,
            headers={
                "apikey": api_key or EVOLUTION_API_KEY,
                "Content-Type": "application/json",
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
        )

    # ── Internal helpers ─────────────────────────────────────────────

    def _post(self, endpoint: str, body: dict[str, Any]) -> dict[str, Any]:
        """POST with exponential-backoff retries on timeouts and 5xx."""
        path = f"{endpoint}/{self._instance}"
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            t0 = time.perf_counter()
            try:
                response = self._client.post(path, json=body)
                if response.status_code >= 400:
                    raise MessagingError(
                        f"Evolution API error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                metrics.record_success(
                    "evolution", endpoint, latency_ms=(time.perf_counter() - t0) * 1000,
                )
                return response.json() if response.content else {}

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                metrics.record_failure("evolution", endpoint, error_type=type(exc).__name__)
                logger.warning(
                    "Evolution API attempt %d/%d failed (%s)",
                    attempt, MAX_RETRIES, type(exc).__name__,
                )
            except MessagingError as exc:
                metrics.record_failure("evolution", endpoint, error_type=f"http_{exc.status_code}")
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning("Evolution API server error on attempt %d/%d", attempt, MAX_RETRIES)
                else:
                    raise

            if attempt < MAX_RETRIES:
                time.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise MessagingError(f"Evolution API request failed after {MAX_RETRIES} retries: {last_error}")

    # ── Public API ───────────────────────────────────────────────────

    def send_text(self, to: str, text: str) -> None:
        """Send a WhatsApp text to *to* (digits only, e.g. ``5511999999999``)."""
        self._post("/message/sendText", {"number": to, "text": text, "delay": SEND_DELAY_MS})
        logger.debug("WhatsApp message sent to %s", to)

    def mark_as_read(self, message_id: str, remote_jid: str) -> None:
        try:
            self._post(
                "/chat/markMessageAsRead",
                {"readMessages": [{"id": message_id, "remoteJid": remote_jid, "fromMe": False}]},
            )
        except MessagingError as exc:
            logger.warning("Could not mark message %s as read: %s", message_id, exc)

    def send_typing(self, to: str, duration_ms: int = 2000) -> None:
        try:
            self._post(
                "/chat/sendPresence",
                {"number": to, "options": {"delay": duration_ms, "presence": "composing"}},
            )
        except MessagingError as exc:
            logger.debug("Typing indicator for %s failed: %s", to, exc)


# ── Module-level singleton (thread-safe) ────────────────────────────
_client: EvolutionClient | None = None
_client_lock = threading.Lock()


def get_messaging_client() -> EvolutionClient:
    """Return a module-level EvolutionClient singleton."""
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                _client = EvolutionClient()
    return _client
