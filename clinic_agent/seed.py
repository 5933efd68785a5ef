"""Seed the database with a starter catalogue.

Creates the base procedures, one example dentist working Monday to Friday
08:00-18:00 and the clinic FAQ.  Safe to run repeatedly: existing rows
(matched by id, or by question for FAQs) are left untouched.

Usage:
    python -m clinic_agent.seed
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from clinic_agent.config import DATABASE_URL
from clinic_agent.db import create_db_engine, create_session_factory, init_db, session_scope
from clinic_agent.models import FaqEntry, Procedure, Provider, WorkingHours

logger = logging.getLogger(__name__)

PROCEDURES = [
    ("evaluation", "Evaluation Visit", "Initial assessment and diagnosis", 30, 0),
    ("cleaning", "Dental Cleaning (Prophylaxis)", "Professional cleaning with tartar removal", 60, 150),
    ("whitening", "Teeth Whitening", "In-office whitening with professional gel", 90, 500),
    ("filling", "Filling", "Cavity treatment with composite resin", 60, 200),
    ("extraction", "Simple Extraction", "Tooth extraction under local anaesthesia", 45, 180),
    ("root-canal", "Root Canal Treatment", "Complete endodontic treatment", 90, 800),
    ("braces-fitting", "Orthodontics: Braces Fitting", "Fitting of fixed braces", 90, 1200),
    ("braces-maintenance", "Orthodontics: Maintenance", "Braces maintenance visit", 30, 150),
    ("implant", "Dental Implant", "Titanium implant to replace a tooth", 120, 2500),
    ("prosthesis", "Dental Prosthesis", "Prosthesis fabrication and fitting", 60, 1500),
]

EXAMPLE_PROVIDER = {
    "id": "dentist-example",
    "name": "Dr. John Silva",
    "specialty": "General dentistry",
    "calendar_id": "primary",
    "bio": "Dental surgeon specialised in general and aesthetic dentistry.",
}
WORK_DAYS = (1, 2, 3, 4, 5)  # Monday … Friday (0 = Sunday)
WORK_HOURS = ("08:00", "18:00")

FAQS = [
    (
        "Which payment methods do you accept?",
        "We accept cash, debit and credit cards (up to 12 instalments), PIX and dental plans.",
        "payment",
    ),
    (
        "How does cancelling an appointment work?",
        "Cancellation is free with at least 24 hours' notice. Later cancellations may carry a fee.",
        "booking",
    ),
    (
        "Do you accept dental insurance plans?",
        "Yes! We work with the main dental plans. Contact us to check whether yours is covered.",
        "payment",
    ),
    (
        "What are your opening hours?",
        "Monday to Friday 8am to 6pm and Saturdays 8am to 12pm. Closed on Sundays and holidays.",
        "hours",
    ),
    (
        "What should I do in a dental emergency?",
        "Message us on WhatsApp. We keep slots reserved for urgent care.",
        "emergency",
    ),
    (
        "Does teeth whitening hurt?",
        "Professional whitening may cause mild, temporary sensitivity that goes away in a few days.",
        "procedures",
    ),
    (
        "How often should I have a dental cleaning?",
        "We recommend a cleaning every 6 months; sometimes more often if your dentist advises it.",
        "procedures",
    ),
    (
        "How do I prepare for a dental appointment?",
        "Brush your teeth beforehand, bring your ID and any previous exams, and tell us about "
        "medication you take or relevant medical conditions.",
        "procedures",
    ),
]


def seed(session: Session) -> None:
    procedures = []
    for proc_id, name, description, duration, price in PROCEDURES:
        procedure = session.get(Procedure, proc_id)
        if procedure is None:
            procedure = Procedure(
                id=proc_id, name=name, description=description,
                duration_minutes=duration, price=price,
            )
            session.add(procedure)
        procedures.append(procedure)

    provider = session.get(Provider, EXAMPLE_PROVIDER["id"])
    if provider is None:
        provider = Provider(**EXAMPLE_PROVIDER)
        provider.procedures = procedures
        provider.working_hours = [
            WorkingHours(weekday=day, start_time=WORK_HOURS[0], end_time=WORK_HOURS[1])
            for day in WORK_DAYS
        ]
        session.add(provider)

    existing = set(session.scalars(select(FaqEntry.question)))
    for order, (question, answer, category) in enumerate(FAQS, start=1):
        if question not in existing:
            session.add(FaqEntry(question=question, answer=answer, category=category, order=order))
    logger.info("Seeded %d procedures, 1 dentist and %d FAQ entries", len(PROCEDURES), len(FAQS))


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)-8s %(name)s — %(message)s")
    engine = create_db_engine(DATABASE_URL)
    init_db(engine)
    with session_scope(create_session_factory(engine)) as session:
        seed(session)


if __name__ == "__main__":
    main()
