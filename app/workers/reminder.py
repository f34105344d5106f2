"""Celery entry point for the periodic reminder sweep."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict

from app.celery_app import celery_app
from app.runtime import build_services
from app.services.reminder_scheduler import SweepStats

_LOGGER = logging.getLogger(__name__)


async def run_sweep() -> SweepStats:
    # the sweep never needs the LLM
    async with build_services(with_agent=False) as services:
        return await services.scheduler.sweep()


# ---------------------------------------------------------------------------
# Celery Tasks
# ---------------------------------------------------------------------------

@celery_app.task(name="app.workers.reminder.sweep", bind=True, max_retries=3)
def sweep(self):  # noqa: D401
    """Run one reminder sweep; retry the whole sweep if it cannot start."""
    try:
        stats = asyncio.run(run_sweep())
    except Exception as exc:  # noqa: BLE001
        _LOGGER.exception("Reminder sweep failed")
        raise self.retry(exc=exc, countdown=30)
    return asdict(stats)
