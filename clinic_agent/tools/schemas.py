"""Tool specifications exposed to the model.

Each tool is a pydantic model: its docstring becomes the tool description
the model sees, its fields become the JSON-schema parameters, and the same
model validates the (untrusted) arguments the model sends back.

The acting patient and conversation are never tool arguments; they come
from the turn context so the model cannot act on someone else's behalf.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from clinic_agent.timeutils import CLINIC_TZ


def _clinic_local(value: datetime) -> datetime:
    # Timestamps without an offset are clinic wall time.
    return value if value.tzinfo else value.replace(tzinfo=CLINIC_TZ)


class ToolArgs(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    @classmethod
    def tool_name(cls) -> str:
        return cls.model_config["title"]

    @classmethod
    def as_tool(cls) -> dict[str, Any]:
        """OpenAI-style function definition accepted by ``bind_tools``."""
        schema = cls.model_json_schema()
        schema.pop("title", None)
        return {
            "type": "function",
            "function": {
                "name": cls.tool_name(),
                "description": " ".join((cls.__doc__ or "").split()),
                "parameters": schema,
            },
        }


class ListProviders(ToolArgs):
    """List the clinic's active dentists, optionally filtered by specialty
    (e.g. "Orthodontics", "Endodontics").  Use it to show the patient who
    is available.  Specialty is never a procedure name."""

    model_config = ConfigDict(title="list_providers")

    specialty: Optional[str] = Field(None, description="Specialty to filter by. Omit to list everyone.")


class ListProcedures(ToolArgs):
    """List the active procedures, optionally only those a given dentist performs."""

    model_config = ConfigDict(title="list_procedures")

    provider_id: Optional[str] = Field(None, description="Dentist id to restrict the list to.")


class GetAvailability(ToolArgs):
    """Look up a dentist's availability for a procedure.
    Without target_date: returns only the DAYS with free time (ask the patient
    which day they prefer).  With target_date: returns the free TIMES on that day."""

    model_config = ConfigDict(title="get_availability")

    provider_id: str = Field(..., description="Dentist id.")
    procedure_id: str = Field(..., description="Procedure id (its duration sizes the slots).")
    days_ahead: Optional[int] = Field(
        None, ge=1, description="How many days ahead to scan without target_date (default 14, max 30).",
    )
    target_date: Optional[date] = Field(
        None,
        description='Specific day as YYYY-MM-DD (e.g. "2026-02-23"), taken from the "date" '
        "field of a previous availability result.",
    )

    @field_validator("target_date", mode="before")
    @classmethod
    def require_iso_date(cls, value: Any) -> Any:
        if value is None or isinstance(value, date):
            return value
        text = str(value).strip()
        if len(text) != 10:
            raise ValueError(f'target_date must be YYYY-MM-DD, got "{text}"')
        return text


class CreateAppointment(ToolArgs):
    """Book a new appointment for the current patient.  Call it ONLY after the
    patient confirmed dentist, procedure, day and time."""

    model_config = ConfigDict(title="create_appointment")

    provider_id: str = Field(..., description="Dentist id.")
    procedure_id: str = Field(..., description="Procedure id.")
    start_time: datetime = Field(
        ...,
        description='Exact "start" value of the chosen slot, ISO 8601 with offset '
        '(e.g. "2026-02-23T14:00:00-03:00").',
    )
    notes: Optional[str] = Field(None, description="Anything the patient wants the clinic to know.")

    @field_validator("start_time")
    @classmethod
    def attach_clinic_tz(cls, value: datetime) -> datetime:
        return _clinic_local(value)


class ListPatientAppointments(ToolArgs):
    """List the current patient's upcoming appointments.  Use it before
    cancelling or rescheduling."""

    model_config = ConfigDict(title="list_patient_appointments")


class CancelAppointment(ToolArgs):
    """Cancel one of the current patient's appointments.  Confirm with the
    patient before calling."""

    model_config = ConfigDict(title="cancel_appointment")

    appointment_id: str = Field(..., description="Full id of the appointment to cancel.")


class RescheduleAppointment(ToolArgs):
    """Move one of the current patient's appointments to a new date and time.
    Call it after the patient confirmed the new slot."""

    model_config = ConfigDict(title="reschedule_appointment")

    appointment_id: str = Field(..., description="Full id of the appointment to move.")
    new_start_time: datetime = Field(
        ..., description='New start, ISO 8601 with offset (e.g. "2026-02-25T10:00:00-03:00").',
    )

    @field_validator("new_start_time")
    @classmethod
    def attach_clinic_tz(cls, value: datetime) -> datetime:
        return _clinic_local(value)


class SearchFaq(ToolArgs):
    """Search the clinic's FAQ for prices, opening hours, payment, procedures,
    booking policies and emergencies."""

    model_config = ConfigDict(title="search_faq")

    query: str = Field(..., min_length=1, description="Search terms from the patient's question.")
    category: Optional[str] = Field(
        None,
        description='FAQ category: "payment", "hours", "procedures", "booking" or "emergency".',
    )


class Escalate(ToolArgs):
    """Hand the conversation over to a human attendant.  Use it when the
    patient asks for a person, the situation is too complex, or you cannot help."""

    model_config = ConfigDict(title="escalate")

    reason: str = Field(..., description='Why (e.g. "Patient asked for an attendant").')


class RegisterPatient(ToolArgs):
    """Register or update the patient's full name and CPF as soon as they are
    given.  Set create_dependent=true when booking for someone else (a family
    member or dependent) who uses the same phone; the new person becomes the
    active patient for the rest of the conversation."""

    model_config = ConfigDict(title="register_patient")

    name: Optional[str] = Field(None, description="Patient's full name.")
    tax_id: Optional[str] = Field(None, description='CPF, digits only (e.g. "12345678909").')
    create_dependent: bool = Field(False, description="Create a new patient on this phone number.")


ALL_TOOLS: tuple[type[ToolArgs], ...] = (
    ListProviders,
    ListProcedures,
    GetAvailability,
    CreateAppointment,
    ListPatientAppointments,
    CancelAppointment,
    RescheduleAppointment,
    SearchFaq,
    Escalate,
    RegisterPatient,
)

TOOLS_BY_NAME: dict[str, type[ToolArgs]] = {tool.tool_name(): tool for tool in ALL_TOOLS}
