"""FastAPI route definitions: health, direct chat and the WhatsApp webhook."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Request

from clinic_agent.api.schemas import ChatRequest, ChatResponse, HealthResponse, WebhookAck, WebhookEvent
from clinic_agent.intake import split_reply
from clinic_agent.services.patients import normalize_address

logger = logging.getLogger(__name__)

router = APIRouter()
webhook_router = APIRouter()


def _get_state(request: Request, name: str):
    """Retrieve a runtime object (``agent`` / ``gate``) from app state.

    Both are created once during the FastAPI lifespan (see ``server.py``).
    """
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=503,
            detail="The agent is still starting up. Please try again in a moment.",
        )
    return value


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, http_request: Request):
    """Run one agent turn for *address* and return the reply directly.

    ``process_message`` blocks on the model and the calendar, so it runs in
    the default thread pool to keep the event loop free.
    """
    agent = _get_state(http_request, "agent")
    request_id = getattr(http_request.state, "request_id", "?")
    address = normalize_address(request.address)
    if not address:
        raise HTTPException(status_code=422, detail="address must contain a phone number.")

    try:
        reply = await asyncio.to_thread(agent.process_message, address, request.message)
    except Exception as e:
        # Full traceback stays server-side.
        logger.exception("[%s] Error processing chat request", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    return ChatResponse(reply=reply, parts=split_reply(reply), address=address)


@webhook_router.post("/whatsapp", response_model=WebhookAck)
async def whatsapp_webhook(event: WebhookEvent, http_request: Request):
    """Receive Evolution API events.

    Always answers 200: the gateway retries on errors, and a retried event
    would only be dropped as a duplicate anyway.
    """
    gate = _get_state(http_request, "gate")
    request_id = getattr(http_request.state, "request_id", "?")
    try:
        outcome = await asyncio.to_thread(gate.handle, event.model_dump())
    except Exception:
        logger.exception("[%s] Webhook event could not be handled", request_id)
        outcome = "error"
    return WebhookAck(outcome=outcome)
