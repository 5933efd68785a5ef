"""Builds the long-lived objects shared by the server and the CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from clinic_agent.admin_bot import AdminBot
from clinic_agent.agent import AgentService
from clinic_agent.config import DATABASE_URL
from clinic_agent.db import create_db_engine, create_session_factory, init_db
from clinic_agent.intake import IntakeGate
from clinic_agent.scheduler import ReminderScheduler
from clinic_agent.services.google_calendar import get_calendar_client
from clinic_agent.services.messaging import get_messaging_client
from clinic_agent.services.notifications import NotificationService

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    engine: Engine
    session_factory: sessionmaker[Session]
    agent: AgentService
    gate: IntakeGate
    scheduler: ReminderScheduler

    def close(self) -> None:
        self.scheduler.shutdown()
        self.gate.shutdown()
        self.engine.dispose()


def build_runtime(database_url: str = DATABASE_URL) -> Runtime:
    """Create the database schema and wire every service together."""
    engine = create_db_engine(database_url)
    init_db(engine)
    session_factory = create_session_factory(engine)

    calendar = get_calendar_client()
    messaging = get_messaging_client()
    notifications = NotificationService(messaging)
    agent = AgentService(session_factory, calendar)
    gate = IntakeGate(session_factory, agent, messaging, notifications, AdminBot(session_factory))
    scheduler = ReminderScheduler(session_factory, calendar, notifications)
    logger.info("Runtime ready")
    return Runtime(engine, session_factory, agent, gate, scheduler)
