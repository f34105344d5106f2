"""Celery application instance shared across the backend.

Start a worker and the beat scheduler with:
    celery -A app.celery_app worker -B -Q reminder -l info --concurrency=1
"""

from celery import Celery

from config import configure_logging, settings

configure_logging()

celery_app = Celery("task_reminders", broker=settings.REDIS_URL, backend=settings.REDIS_URL)

# Global task settings
celery_app.conf.task_acks_late = True
celery_app.conf.task_reject_on_worker_lost = True
celery_app.conf.task_default_retry_delay = 30  # seconds

celery_app.conf.task_routes = {
    "app.workers.reminder.sweep": {"queue": "reminder"},
}

# Beat schedule: sweep for due reminders on a fixed period. A sweep that has
# not started before the next one is due is dropped, so sweeps never stack up.
celery_app.conf.beat_schedule = {
    "sweep-due-reminders": {
        "task": "app.workers.reminder.sweep",
        "schedule": settings.REMINDER_SWEEP_INTERVAL,
        "options": {"expires": settings.REMINDER_SWEEP_INTERVAL},
    }
}

# --- Ensure tasks are registered ---
import app.workers.reminder  # noqa: E402,F401
