"""Celery application factory for the timetable notification triggers."""
from __future__ import annotations

from celery import Celery
from celery.schedules import crontab

from notifications.config import load_settings

SETTINGS = load_settings()


def create_celery_app() -> Celery:
    """Build the Celery app carrying the digest and reminder beat entries."""
    celery_app = Celery(
        "lesson_notifications",
        broker=SETTINGS.broker_url,
        backend=SETTINGS.result_backend,
        include=["notifications.tasks"],
    )

    celery_app.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone=SETTINGS.timezone,
        enable_utc=True,
        # one process so the per-trigger guards and the reminder ledger are shared
        worker_pool="threads",
        worker_concurrency=2,
        beat_schedule={
            "send-tomorrow-digest": {
                "task": "notifications.tasks.send_tomorrow_digest",
                "schedule": crontab(hour=SETTINGS.digest_hour, minute=SETTINGS.digest_minute),
            },
            "scan-lesson-reminders": {
                "task": "notifications.tasks.send_lesson_reminders",
                "schedule": crontab(minute=f"*/{SETTINGS.reminder_interval}"),
                "options": {"expires": SETTINGS.reminder_interval * 60},
            },
        },
    )

    return celery_app


celery_app = create_celery_app()
