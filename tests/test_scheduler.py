from __future__ import annotations

from datetime import timedelta

from apscheduler.schedulers.background import BackgroundScheduler

from unitedwerise.db import execute, get_user
from unitedwerise.scheduler import MaintenanceScheduler
from unitedwerise.utils import to_iso, utc_now


def make_scheduler(services) -> MaintenanceScheduler:
    return MaintenanceScheduler(services, scheduler=BackgroundScheduler(timezone="UTC"))


def test_jobs_are_registered(services):
    scheduler = make_scheduler(services)
    scheduler.add_jobs()
    jobs = {job.id: job for job in scheduler.scheduler.get_jobs()}
    assert set(jobs) == {"topic_refresh", "suspension_cleanup", "security_cleanup"}
    assert jobs["topic_refresh"].trigger.interval == timedelta(minutes=15)
    assert jobs["suspension_cleanup"].trigger.interval == timedelta(minutes=60)


def test_stop_without_start(services):
    make_scheduler(services).stop()


def test_cleanup_jobs_run(services, users, db_path):
    services.moderation.suspend_user("u-bob", "u-carol", "cool off", "TEMPORARY", days=1)
    # backdate the suspension so it has already ended
    execute(
        db_path,
        "UPDATE user_suspensions SET ends_at = ? WHERE user_id = 'u-bob';",
        (to_iso(utc_now() - timedelta(hours=1)),),
    )

    scheduler = make_scheduler(services)
    scheduler.cleanup_suspensions()
    assert get_user(db_path, "u-bob")["is_suspended"] == 0

    scheduler.cleanup_security_events()
    scheduler.refresh_topics()
