"""Background maintenance jobs.

Jobs:

- topic refresh: clear the topic cache and pre-compute the national topics
- suspension cleanup: deactivate suspensions past their end date
- security cleanup: prune old low-risk security events once a day
"""

from __future__ import annotations

import signal
import sqlite3
import sys
from typing import Any, Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .config import load_settings
from .db import init_db
from .errors import UnitedWeRiseError
from .logger import get_logger
from .services import Services, build_services
from .topics import AggregationOptions

log = get_logger(__name__)


class MaintenanceScheduler:
    def __init__(self, services: Services, scheduler: Optional[BlockingScheduler] = None) -> None:
        self.services = services
        self.config = services.settings.app.scheduler
        self.scheduler = scheduler or BlockingScheduler(timezone="UTC")

    def _handle_signal(self, signum: int, frame: Any) -> None:
        log.info("Received signal %s, shutting down...", signum)
        self.stop()
        sys.exit(0)

    def refresh_topics(self) -> None:
        try:
            self.services.topics.refresh()
            topics = self.services.topics.aggregate_topics(AggregationOptions())
            log.info("Topic refresh complete: %d topics", len(topics))
        except (sqlite3.Error, UnitedWeRiseError) as e:
            log.exception("Topic refresh failed: %s", e)

    def cleanup_suspensions(self) -> None:
        try:
            count = self.services.moderation.cleanup_expired_suspensions()
            log.info("Suspension cleanup complete: %d expired", count)
        except sqlite3.Error as e:
            log.exception("Suspension cleanup failed: %s", e)

    def cleanup_security_events(self) -> None:
        try:
            deleted = self.services.security.cleanup_old_events()
            log.info("Security event cleanup complete: %d deleted", deleted)
        except sqlite3.Error as e:
            log.exception("Security event cleanup failed: %s", e)

    def add_jobs(self) -> None:
        self.scheduler.add_job(
            self.refresh_topics,
            trigger=IntervalTrigger(minutes=self.config.topic_refresh_minutes),
            id="topic_refresh",
            name="Topic Refresh",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.cleanup_suspensions,
            trigger=IntervalTrigger(minutes=self.config.suspension_cleanup_minutes),
            id="suspension_cleanup",
            name="Suspension Cleanup",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.cleanup_security_events,
            trigger=CronTrigger(hour=self.config.security_cleanup_hour, minute=0),
            id="security_cleanup",
            name="Security Event Cleanup",
            replace_existing=True,
        )
        log.info(
            "Scheduled topic refresh every %d min, suspension cleanup every %d min, security cleanup at %02d:00 UTC",
            self.config.topic_refresh_minutes,
            self.config.suspension_cleanup_minutes,
            self.config.security_cleanup_hour,
        )

    def start(self) -> None:
        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)
        self.add_jobs()
        log.info("Scheduler started with %d job(s)", len(self.scheduler.get_jobs()))
        for job in self.scheduler.get_jobs():
            log.info("  - %s: %s", job.name, job.trigger)
        try:
            self.scheduler.start()
        except (KeyboardInterrupt, SystemExit):
            log.info("Scheduler stopped")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)
            log.info("Scheduler stopped")


def run_scheduler(settings_path: Optional[str] = None) -> None:
    settings = load_settings(settings_path)
    init_db(settings.app.database_path)
    MaintenanceScheduler(build_services(settings)).start()
