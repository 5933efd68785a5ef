"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ChatRequest(BaseModel):
    """A patient message sent outside WhatsApp (web widget, manual testing)."""

    message: str = Field(..., min_length=1, max_length=2000, description="The patient's message")
    address: str = Field(
        ...,
        min_length=8,
        max_length=32,
        description="Patient phone number; identifies the conversation",
    )


class ChatResponse(BaseModel):
    """Response from the agent."""

    reply: str = Field(..., description="The agent's full reply")
    parts: list[str] = Field(default_factory=list, description="Reply split into chat bubbles")
    address: str = Field(..., description="Normalised patient address")


class WebhookAck(BaseModel):
    """Acknowledgement for the WhatsApp gateway; it only checks the status code."""

    status: str = "ok"
    outcome: str | None = None


class WebhookEvent(BaseModel):
    """Evolution API webhook envelope.  Unknown fields are kept for the intake gate."""

    model_config = {"extra": "allow"}

    event: str = ""
    instance: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "clinic-agent"
