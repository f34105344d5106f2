"""Periodic reminder sweep.

Per task the states are derived, never stored beyond ``reminder_sent``:
PENDING_TIME (phrase not resolved) -> SCHEDULED (resolved, not sent) -> FIRED
(``reminder_sent`` true, terminal). Tasks with ``time_type == "none"`` never
show up as candidates.

Delivery happens before the mark-sent write. A crash between the two can
re-send once after restart; a failed send is never marked and is retried on
the next sweep.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from db.task_store import DueCandidate, TaskTimeStore
from app.utils.sms import SmsSender
from config import settings

_LOGGER = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def reminder_message(candidate: DueCandidate) -> str:
    if candidate.time_type == "deadline":
        return f'Reminder: Your task "{candidate.content}" is due soon!'
    return f'Reminder: "{candidate.content}" is coming up soon!'


@dataclass
class SweepStats:
    candidates: int = 0
    sent: int = 0
    not_due: int = 0
    unresolved: int = 0
    no_phone: int = 0
    failed: int = 0
    orphaned: int = 0


class ReminderScheduler:
    def __init__(
        self,
        store: TaskTimeStore,
        sender: SmsSender,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.sender = sender
        self._clock = clock

    async def sweep(self) -> SweepStats:
        """Run one pass over every due candidate. Never raises for a single task.

        Candidates are read in pages of ``SWEEP_BATCH_LIMIT`` until the query
        is exhausted, so undeliverable rows never hide the ones behind them.
        """
        stats = SweepStats()
        now = self._clock()
        batch = settings.SWEEP_BATCH_LIMIT
        after = None

        while True:
            candidates = await self.store.read_due_candidates(limit=batch, after=after)
            stats.candidates += len(candidates)
            for candidate in candidates:
                try:
                    await self._process(candidate, now, stats)
                except Exception:  # noqa: BLE001
                    stats.failed += 1
                    _LOGGER.exception("Reminder sweep failed for task %s", candidate.task_id)
            if not batch or len(candidates) < batch:
                break
            after = candidates[-1].task_id

        _LOGGER.info("Reminder sweep done: %s", stats)
        return stats

    async def _process(self, candidate: DueCandidate, now: datetime, stats: SweepStats) -> None:
        if not candidate.owner_found:
            stats.orphaned += 1
            _LOGGER.error(
                "Task %s references missing user %s; skipping", candidate.task_id, candidate.user_id
            )
            return

        resolved_at = await self.store.ensure_resolved(candidate)
        if resolved_at is None:
            stats.unresolved += 1
            return

        reminder_at = resolved_at - timedelta(minutes=candidate.reminder_offset)
        if now < reminder_at:
            stats.not_due += 1
            return

        if not candidate.phone_number:
            # user has not verified a phone yet
            stats.no_phone += 1
            return

        if await self.store.is_reminder_sent(candidate.task_id):
            return

        try:
            await self.sender.send(candidate.phone_number, reminder_message(candidate))
        except Exception as exc:  # noqa: BLE001
            stats.failed += 1
            _LOGGER.warning("Reminder delivery failed for task %s: %s", candidate.task_id, exc)
            return

        if await self.store.mark_reminder_sent(candidate.task_id):
            stats.sent += 1
            _LOGGER.info("Reminder sent for task %s", candidate.task_id)
        else:
            _LOGGER.warning("Task %s was already marked sent", candidate.task_id)
