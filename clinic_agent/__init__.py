"""Clinic Scheduling Agent: a WhatsApp receptionist for a dental clinic.

Architecture Overview
=====================

Patients write on WhatsApp; the Evolution API gateway posts every message to
our webhook.  An **intake gate** filters and debounces those events, and each
burst of messages becomes one **agent turn**:

1. **chatbot** — Claude (via ``langchain-anthropic``) with a system prompt that
   carries the clinic-local time and the patient's registration status.  The
   tools it may call are narrowed by the conversation **stage**, inferred from
   the bot's previous message.

2. **tools** — Runs the requested calls one after another against the local
   database and Google Calendar.  Each call is its own transaction, and every
   failure comes back to the model as a structured error.

Routing: chatbot → (tool calls?) → tools → chatbot (loop, at most 10 model
calls) → END.  Every turn ends with a reply, even when the model fails.

Key Design Decisions
--------------------
- **Source of truth**: appointments live in the local database; the Google
  Calendar event is a mirror.  Calendar writes are best-effort, while a
  calendar *read* failure is reported as "unavailable", never "fully booked".
- **Memory**: conversation history is stored as ``Message`` rows and the last
  20 are replayed on every turn.
- **Reminders**: an APScheduler job completes past appointments, sends 24h and
  2h reminders, and sends a satisfaction survey.
- **Operator**: messages from ``ATTENDANT_PHONE`` are read as commands, not
  chat.  ``resume <phone>`` hands an escalated conversation back to the bot.

Package Structure
-----------------
- ``clinic_agent/agent.py`` — LangGraph loop and turn orchestration
- ``clinic_agent/stages.py`` — stage detection and per-stage tool sets
- ``clinic_agent/intake.py`` — webhook filtering, dedup and debounce
- ``clinic_agent/scheduler.py`` — reminder/survey/completion job
- ``clinic_agent/admin_bot.py`` — operator commands
- ``clinic_agent/models.py`` / ``db.py`` — SQLAlchemy schema and sessions
- ``clinic_agent/services/`` — availability, appointments, Google Calendar,
  Evolution API, notifications, metrics
- ``clinic_agent/tools/`` — tool schemas, dispatcher and FAQ search
- ``clinic_agent/api/`` — FastAPI routes and Pydantic schemas
"""
