"""Periodic background jobs: the calendar sweep and the notification outbox drain.

Each job is registered only when its interval setting is positive, so a
deployment that triggers the sweep externally through ``POST /calendar/sync``
can leave the in-process scheduler idle.
"""

from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import Settings, get_settings
from app.services.calendar_sync_service import CalendarSyncService
from app.services.notification_service import drain_notification_outbox

logger = logging.getLogger(__name__)

CALENDAR_SYNC_JOB_ID = "calendar_sync"
NOTIFICATION_OUTBOX_JOB_ID = "notification_outbox_drain"


class BackgroundJobScheduler:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._scheduler: BackgroundScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> bool:
        """Start the scheduler; returns False when no job is configured."""
        if self.running:
            return True

        scheduler = BackgroundScheduler(timezone="UTC")
        if self.settings.calendar_sync_interval_minutes > 0:
            scheduler.add_job(
                run_calendar_sync,
                trigger=IntervalTrigger(minutes=self.settings.calendar_sync_interval_minutes),
                id=CALENDAR_SYNC_JOB_ID,
                name="Scan calendars for upcoming meetings",
                max_instances=1,
                coalesce=True,
            )
        if self.settings.notification_outbox_interval_seconds > 0:
            scheduler.add_job(
                drain_notification_outbox,
                trigger=IntervalTrigger(seconds=self.settings.notification_outbox_interval_seconds),
                id=NOTIFICATION_OUTBOX_JOB_ID,
                name="Deliver queued notifications",
                max_instances=1,
                coalesce=True,
            )
        if not scheduler.get_jobs():
            logger.info("Background scheduler idle reason=no_jobs_configured")
            return False

        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "Background scheduler started jobs=%s",
            ",".join(job.id for job in scheduler.get_jobs()),
        )
        return True

    def stop(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Background scheduler stopped")
        self._scheduler = None


def run_calendar_sync() -> None:
    try:
        CalendarSyncService(get_settings()).sync_all()
    except Exception:
        logger.exception("Scheduled calendar sweep failed")
