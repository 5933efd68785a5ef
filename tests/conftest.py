"""Shared test fixtures for the clinic agent test suite."""

from __future__ import annotations

import os
from datetime import datetime
from unittest.mock import MagicMock

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("TIMEZONE", "America/Sao_Paulo")
    os.environ.setdefault("DATABASE_URL", "sqlite://")
    os.environ.setdefault("ATTENDANT_PHONE", "")
    os.environ.setdefault("METRICS_ENABLED", "false")


# Monday 2 March 2026, 07:00 clinic time (UTC-3).
MONDAY_7AM_ISO = "2026-03-02T07:00:00-03:00"

VALID_CPF = "52998224725"
OTHER_VALID_CPF = "11144477735"

REGISTERED_PHONE = "5511999990000"
UNREGISTERED_PHONE = "5511988880000"


@pytest.fixture
def monday_7am() -> datetime:
    return datetime.fromisoformat(MONDAY_7AM_ISO)


@pytest.fixture
def clock(monday_7am):
    """Mutable clock: tests may set ``clock.now`` to move time."""

    class _Clock:
        now = monday_7am

        def __call__(self):
            return self.now

    return _Clock()


@pytest.fixture
def session_factory():
    """In-memory SQLite database with the full schema."""
    from clinic_agent.db import create_db_engine, create_session_factory, init_db

    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def session(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def clinic(session):
    """One dentist working Mon and Wed 08:00-12:00, two procedures, two patients, FAQs."""
    from clinic_agent.models import FaqEntry, Patient, Procedure, Provider, WorkingHours

    evaluation = Procedure(id="evaluation", name="Evaluation Visit", duration_minutes=30, price=0)
    cleaning = Procedure(id="cleaning", name="Dental Cleaning", duration_minutes=60, price=150)
    provider = Provider(
        id="dr-ana",
        name="Dr. Ana Lima",
        specialty="General dentistry",
        calendar_id="cal-ana",
        procedures=[evaluation, cleaning],
        working_hours=[
            WorkingHours(weekday=1, start_time="08:00", end_time="12:00"),
            WorkingHours(weekday=3, start_time="08:00", end_time="12:00"),
        ],
    )
    registered = Patient(address=REGISTERED_PHONE, name="Maria Souza", tax_id=VALID_CPF)
    unregistered = Patient(address=UNREGISTERED_PHONE)
    session.add_all([provider, registered, unregistered])
    session.add_all([
        FaqEntry(
            question="Which payment methods do you accept?",
            answer="Cash, cards, PIX and dental plans.",
            category="payment",
            order=1,
        ),
        FaqEntry(
            question="What are your opening hours?",
            answer="Monday to Friday from 8am to 6pm.",
            category="hours",
            order=2,
        ),
        FaqEntry(
            question="Do you accept dental insurance plans?",
            answer="Yes, we work with the main dental plans.",
            category="payment",
            order=3,
        ),
    ])
    session.commit()
    return {
        "provider": provider,
        "evaluation": evaluation,
        "cleaning": cleaning,
        "registered": registered,
        "unregistered": unregistered,
    }


@pytest.fixture
def mock_calendar():
    """Calendar client double: empty calendar, event ids ``evt-1``, ``evt-2``, …"""
    calendar = MagicMock()
    calendar.free_busy.return_value = []
    calendar.create_event.side_effect = [f"evt-{i}" for i in range(1, 50)]
    return calendar


@pytest.fixture
def mock_http_response():
    """Factory fixture for creating mock httpx responses."""

    def _make(data: dict | None, status_code: int = 200):
        mock = MagicMock()
        mock.status_code = status_code
        mock.json.return_value = data
        mock.text = str(data)
        mock.content = b"" if data is None else b"{}"
        return mock

    return _make
