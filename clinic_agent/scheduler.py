"""Periodic appointment upkeep: completion sweep, reminders and surveys.

Runs on an APScheduler ``BackgroundScheduler`` every
``REMINDER_INTERVAL_MINUTES``.  Each run has four independent sub-tasks,
each with its own database session; a failure in one is logged and does
not stop the others.  Inside a sub-task, each appointment is handled on
its own: its flag is committed right after its message went out, so a
failed send is simply retried on the next run while it is still in band.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session, sessionmaker

from clinic_agent.config import REMINDER_INTERVAL_MINUTES
from clinic_agent.db import session_scope
from clinic_agent.models import Appointment
from clinic_agent.services.appointments import AppointmentService
from clinic_agent.services.google_calendar import GoogleCalendarClient
from clinic_agent.services.metrics import metrics
from clinic_agent.services.notifications import NotificationService
from clinic_agent.timeutils import now_utc

logger = logging.getLogger(__name__)

JOB_ID = "appointment-upkeep"


class ReminderScheduler:
    """Owns the background scheduler and the upkeep job."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        calendar: GoogleCalendarClient,
        notifications: NotificationService,
        *,
        interval_minutes: int = REMINDER_INTERVAL_MINUTES,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._session_factory = session_factory
        self._calendar = calendar
        self._notifications = notifications
        self._interval_minutes = interval_minutes
        self._clock = clock
        self._scheduler: BackgroundScheduler | None = None

    # ── Lifecycle ────────────────────────────────────────────────────

    def start(self) -> None:
        if self._scheduler is not None:
            return
        self._scheduler = BackgroundScheduler(timezone="UTC")
        self._scheduler.add_job(
            self.run_once,
            IntervalTrigger(minutes=self._interval_minutes),
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info("Reminder scheduler started (every %d min)", self._interval_minutes)

    def shutdown(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Reminder scheduler stopped")

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    # ── Job ──────────────────────────────────────────────────────────

    def run_once(self, now: datetime | None = None) -> dict[str, int]:
        """Run every sub-task once.  Returns how many items each one handled."""
        now = now or self._clock()
        results: dict[str, int] = {}
        for name, task in (
            ("completed", self._complete_past),
            ("reminder_24h", self._send_reminders_24h),
            ("reminder_2h", self._send_reminders_2h),
            ("survey", self._send_surveys),
        ):
            try:
                results[name] = task(now)
            except Exception:
                logger.exception("Scheduler task %s failed", name)
                results[name] = 0
        return results

    def _service(self, session: Session) -> AppointmentService:
        return AppointmentService(session, self._calendar, clock=self._clock)

    def _complete_past(self, now: datetime) -> int:
        with session_scope(self._session_factory) as session:
            count = self._service(session).complete_past(now)
        if count:
            logger.info("%d appointment(s) marked as completed", count)
        return count

    def _send_each(
        self,
        kind: str,
        now: datetime,
        due: Callable[[AppointmentService, datetime], list[Appointment]],
        send: Callable[[Appointment], None],
        mark: Callable[[AppointmentService, Appointment], None],
    ) -> int:
        sent = 0
        with session_scope(self._session_factory) as session:
            service = self._service(session)
            for appointment in due(service, now):
                try:
                    send(appointment)
                except Exception:
                    logger.exception("Could not send %s for appointment %s", kind, appointment.id)
                    metrics.record_event("notification_failed", kind=kind)
                    continue
                mark(service, appointment)
                session.commit()
                sent += 1
                metrics.record_event("notification_sent", kind=kind)
        return sent

    def _send_reminders_24h(self, now: datetime) -> int:
        return self._send_each(
            "reminder_24h", now,
            AppointmentService.due_for_reminder_24h,
            self._notifications.send_reminder_24h,
            AppointmentService.mark_reminder_24h_sent,
        )

    def _send_reminders_2h(self, now: datetime) -> int:
        return self._send_each(
            "reminder_2h", now,
            AppointmentService.due_for_reminder_2h,
            self._notifications.send_reminder_2h,
            AppointmentService.mark_reminder_2h_sent,
        )

    def _send_surveys(self, now: datetime) -> int:
        return self._send_each(
            "survey", now,
            AppointmentService.due_for_survey,
            self._notifications.send_survey,
            AppointmentService.mark_survey_sent,
        )
