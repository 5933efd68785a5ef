"""Tool execution for the agent loop.

``ToolDispatcher.execute`` is the error boundary between the model and the
domain: whatever happens inside a tool, the model gets back a JSON-able
dict and the turn continues.

* ``BookingError``      → its structured ``to_tool_result()``
* pydantic validation   → ``{"success": False, "code": "invalid_arguments", ...}``
* ``CalendarAPIError``  → ``{"error": ..., "calendar_unavailable": True}`` (reads)
* anything else         → logged with traceback, generic error

The acting patient and conversation come from ``TurnContext``, which a
``register_patient(create_dependent=True)`` call mutates in place so the
rest of the turn acts on the new patient.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from clinic_agent.errors import BookingError, NotFound, RegistrationRequired, ValidationFailed
from clinic_agent.models import (
    Conversation,
    ConversationStatus,
    Escalation,
    EscalationStatus,
    Patient,
    Procedure,
    Provider,
)
from clinic_agent.services.appointments import AppointmentService, describe
from clinic_agent.services.availability import AvailabilityService
from clinic_agent.services.google_calendar import CalendarAPIError, GoogleCalendarClient
from clinic_agent.services.metrics import metrics
from clinic_agent.tax_id import format_cpf, is_valid_cpf, normalize_cpf
from clinic_agent.timeutils import format_day, now_utc, weekday_name
from clinic_agent.tools import schemas
from clinic_agent.tools.faq import search_faq

logger = logging.getLogger(__name__)


@dataclass
class TurnContext:
    """Who the current turn acts for.  Mutable: registration may redirect it.

    ``last_booking`` holds the summary of the last appointment successfully
    created in this turn, so a reply can still be produced if the model
    fails afterwards.
    """

    patient_id: str
    conversation_id: str
    address: str
    last_booking: dict[str, Any] | None = None


class ToolDispatcher:
    """Validates tool arguments and routes each call to the domain services."""

    def __init__(
        self,
        session: Session,
        calendar: GoogleCalendarClient,
        *,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._session = session
        self._appointments = AppointmentService(session, calendar, clock=clock)
        self._availability = AvailabilityService(session, calendar, clock=clock)
        self._handlers: dict[str, Callable[[Any, TurnContext], dict[str, Any]]] = {
            "list_providers": self._list_providers,
            "list_procedures": self._list_procedures,
            "get_availability": self._get_availability,
            "create_appointment": self._create_appointment,
            "list_patient_appointments": self._list_patient_appointments,
            "cancel_appointment": self._cancel_appointment,
            "reschedule_appointment": self._reschedule_appointment,
            "search_faq": self._search_faq,
            "escalate": self._escalate,
            "register_patient": self._register_patient,
        }

    # ── Error boundary ───────────────────────────────────────────────

    def execute(self, name: str, args: dict[str, Any] | None, turn: TurnContext) -> dict[str, Any]:
        """Run one tool call; never raises."""
        metrics.record_event("tool_call", tool=name)
        spec = schemas.TOOLS_BY_NAME.get(name)
        handler = self._handlers.get(name)
        if spec is None or handler is None:
            logger.warning("Unknown tool requested: %s", name)
            return {"success": False, "error": f"Unknown tool: {name}", "code": "unknown_tool"}

        try:
            parsed = spec.model_validate(args or {})
        except ValidationError as exc:
            logger.info("Invalid arguments for %s: %s", name, exc.errors(include_url=False))
            return {
                "success": False,
                "error": f"Invalid arguments for {name}.",
                "code": "invalid_arguments",
                "details": [
                    {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                    for err in exc.errors(include_url=False)
                ],
            }

        # Each tool call is its own transaction: a booking is durable as soon
        # as the tool returns, and a failed call leaves nothing behind.
        try:
            result = handler(parsed, turn)
            self._session.commit()
            return result
        except BookingError as exc:
            self._session.rollback()
            logger.info("Tool %s rejected: %s", name, exc.message)
            return exc.to_tool_result()
        except CalendarAPIError as exc:
            self._session.rollback()
            logger.error("Calendar unavailable during %s: %s", name, exc)
            return {
                "success": False,
                "error": "The calendar could not be reached, so availability is unknown right now.",
                "calendar_unavailable": True,
            }
        except Exception:
            self._session.rollback()
            logger.exception("Tool %s failed", name)
            return {"success": False, "error": f"Error while running {name}. Please try again."}

    # ── Catalogue ────────────────────────────────────────────────────

    def _list_providers(self, args: schemas.ListProviders, turn: TurnContext) -> dict[str, Any]:
        stmt = (
            select(Provider)
            .options(selectinload(Provider.procedures), selectinload(Provider.working_hours))
            .where(Provider.active.is_(True))
            .order_by(Provider.name)
        )
        providers = list(self._session.scalars(stmt))
        if args.specialty:
            wanted = args.specialty.lower()
            providers = [p for p in providers if p.specialty and wanted in p.specialty.lower()]

        result: dict[str, Any] = {
            "providers": [
                {
                    "id": p.id,
                    "name": p.name,
                    "specialty": p.specialty or "General dentistry",
                    "bio": p.bio,
                    "procedures": [
                        {"id": proc.id, "name": proc.name, "duration_minutes": proc.duration_minutes}
                        for proc in p.procedures
                        if proc.active
                    ],
                    "working_days": [
                        {"weekday": weekday_name(wh.weekday), "start": wh.start_time, "end": wh.end_time}
                        for wh in p.working_hours
                        if wh.active
                    ],
                }
                for p in providers
            ]
        }
        if not providers:
            result["message"] = "No active dentist matches that specialty."
        return result

    def _list_procedures(self, args: schemas.ListProcedures, turn: TurnContext) -> dict[str, Any]:
        if args.provider_id:
            provider = self._session.get(Provider, args.provider_id)
            if provider is None or not provider.active:
                raise NotFound(f"Dentist {args.provider_id} not found or inactive.")
            procedures = sorted((p for p in provider.procedures if p.active), key=lambda p: p.name)
        else:
            procedures = list(
                self._session.scalars(
                    select(Procedure).where(Procedure.active.is_(True)).order_by(Procedure.name)
                )
            )
        return {
            "procedures": [
                {
                    "id": p.id,
                    "name": p.name,
                    "description": p.description,
                    "duration_minutes": p.duration_minutes,
                    "price": p.price,
                }
                for p in procedures
            ]
        }

    # ── Availability ─────────────────────────────────────────────────

    def _get_availability(self, args: schemas.GetAvailability, turn: TurnContext) -> dict[str, Any]:
        if args.target_date is not None:
            slots = self._availability.slots_for_day(args.provider_id, args.procedure_id, args.target_date)
            return {
                "provider_id": args.provider_id,
                "procedure_id": args.procedure_id,
                "date": args.target_date.isoformat(),
                "display_date": format_day(args.target_date),
                "slots": [slot.to_dict() for slot in slots],
                "message": None if slots else "No free times on this day. Ask the patient for another date.",
            }

        days = self._availability.available_days(
            args.provider_id, args.procedure_id, args.days_ahead or 14,
        )
        return {
            "provider_id": args.provider_id,
            "procedure_id": args.procedure_id,
            "available_dates": days,
            "message": (
                "Show these days and ask which one the patient prefers, then call "
                "get_availability again with target_date."
                if days
                else "No free day in the coming days. Suggest another dentist or a longer period."
            ),
        }

    # ── Booking ──────────────────────────────────────────────────────

    def _create_appointment(self, args: schemas.CreateAppointment, turn: TurnContext) -> dict[str, Any]:
        patient = self._session.get(Patient, turn.patient_id)
        if patient is None:
            raise NotFound("Current patient not found.")
        if not patient.is_registered:
            raise RegistrationRequired(patient.missing_registration_fields())

        appointment = self._appointments.schedule(
            patient.id, args.provider_id, args.procedure_id, args.start_time, args.notes,
        )
        return {"success": True, "appointment": describe(appointment)}

    def _list_patient_appointments(
        self, args: schemas.ListPatientAppointments, turn: TurnContext,
    ) -> dict[str, Any]:
        appointments = self._appointments.upcoming_for_patient(turn.patient_id)
        result: dict[str, Any] = {"appointments": [describe(a) for a in appointments]}
        if not appointments:
            result["message"] = "The patient has no upcoming appointments."
        return result

    def _cancel_appointment(self, args: schemas.CancelAppointment, turn: TurnContext) -> dict[str, Any]:
        cancelled = self._appointments.cancel(args.appointment_id, turn.patient_id)
        return {"success": True, "cancelled": cancelled}

    def _reschedule_appointment(
        self, args: schemas.RescheduleAppointment, turn: TurnContext,
    ) -> dict[str, Any]:
        appointment = self._appointments.reschedule(
            args.appointment_id, turn.patient_id, args.new_start_time,
        )
        return {"success": True, "appointment": describe(appointment)}

    # ── FAQ & escalation ─────────────────────────────────────────────

    def _search_faq(self, args: schemas.SearchFaq, turn: TurnContext) -> dict[str, Any]:
        entries = search_faq(self._session, args.query, args.category)
        if not entries:
            return {"found": False, "message": "No specific FAQ answer found."}
        return {
            "found": True,
            "results": [
                {"question": e.question, "answer": e.answer, "category": e.category} for e in entries
            ],
        }

    def _escalate(self, args: schemas.Escalate, turn: TurnContext) -> dict[str, Any]:
        conversation = self._session.get(Conversation, turn.conversation_id)
        if conversation is None:
            raise NotFound("Conversation not found.")
        self._session.add(
            Escalation(conversation=conversation, reason=args.reason, status=EscalationStatus.PENDING)
        )
        conversation.status = ConversationStatus.ESCALATED
        self._session.flush()
        logger.info("Conversation %s escalated: %s", conversation.id, args.reason)
        return {"success": True, "message": "Handover registered. An attendant will be notified."}

    # ── Registration ─────────────────────────────────────────────────

    def _register_patient(self, args: schemas.RegisterPatient, turn: TurnContext) -> dict[str, Any]:
        if not args.name and not args.tax_id:
            raise ValidationFailed("Provide at least the name or the CPF to register.")

        tax_id = None
        if args.tax_id:
            tax_id = normalize_cpf(args.tax_id)
            if not is_valid_cpf(tax_id):
                raise ValidationFailed("This CPF is not valid. Ask the patient to check the digits.")
            owner = self._session.scalar(select(Patient).where(Patient.tax_id == tax_id))
            if owner is not None and (args.create_dependent or owner.id != turn.patient_id):
                raise ValidationFailed("This CPF is already registered to another patient.")

        if args.create_dependent:
            patient = Patient(address=turn.address, name=args.name, tax_id=tax_id)
            self._session.add(patient)
            self._session.flush()
            conversation = self._session.get(Conversation, turn.conversation_id)
            if conversation is not None:
                conversation.patient_id = patient.id
            turn.patient_id = patient.id
            logger.info("Dependent patient %s created on %s", patient.id, turn.address)
            message = "New patient registered. Further bookings in this conversation are for this person."
        else:
            patient = self._session.get(Patient, turn.patient_id)
            if patient is None:
                raise NotFound("Current patient not found.")
            if args.name:
                patient.name = args.name
            if tax_id:
                patient.tax_id = tax_id
            message = "Patient details saved."
        self._session.flush()

        return {
            "success": True,
            "patient": {"id": patient.id, "name": patient.name, "tax_id": format_cpf(patient.tax_id)},
            "registered": patient.is_registered,
            "missing": patient.missing_registration_fields(),
            "message": message,
        }
