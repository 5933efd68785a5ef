"""Domain exceptions shared by the booking services and the tool dispatcher.

Every ``BookingError`` is recoverable by the dialogue: the dispatcher turns it
into a structured ``{"error": ...}`` tool result that the model relays to the
patient.  Client errors for external services (calendar, messaging) live next
to their clients.
"""

from __future__ import annotations

from typing import Any


class BookingError(Exception):
    """Base class for errors the patient can recover from in conversation."""

    code = "booking_error"

    def __init__(self, message: str, **extra: Any) -> None:
        self.message = message
        self.extra = extra
        super().__init__(message)

    def to_tool_result(self) -> dict[str, Any]:
        """Serialise into the structured error shape the model receives."""
        return {"success": False, "error": self.message, "code": self.code, **self.extra}


class ValidationFailed(BookingError):
    """Past start time, inactive provider/procedure, malformed input, etc."""

    code = "validation"


class NotFound(BookingError):
    code = "not_found"


class NotAuthorized(BookingError):
    """The acting patient does not own the appointment."""

    code = "not_authorized"


class RegistrationRequired(BookingError):
    """The patient must provide name and tax id before booking."""

    code = "registration_required"

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(
            f"Patient is not registered. Ask for {' and '.join(missing)} before booking.",
            requires_registration=True,
            missing=missing,
        )
