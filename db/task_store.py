"""Task time store: the single source of truth for task times and reminder state.

All writes are column-scoped UPDATEs keyed by ``task_id``. A time write never
touches ``content`` and a content edit never touches the time columns, so the
dashboard, the SMS handler and the sweep's lazy write-back cannot clobber
each other. The lazy write-back and ``mark_reminder_sent`` are conditional
updates on top of that.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Union
from uuid import uuid4

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.services.time_resolver import TimeExpressionResolver
from app.types.task_contract import (
    PendingTime,
    ResolvedTime,
    TaskOut,
    TimeType,
    classify_time_input,
)
from db.db import Task, User, as_utc

_LOGGER = logging.getLogger(__name__)

TimeInput = Union[str, datetime, PendingTime, ResolvedTime, None]


class TaskNotFound(LookupError):
    pass


class UserNotFound(LookupError):
    pass


@dataclass
class DueCandidate:
    """One row of the due-candidate query, joined with its owner (if any)."""

    task_id: str
    user_id: str
    content: str
    time_type: str
    time_value: Union[PendingTime, ResolvedTime, None]
    reminder_offset: int
    owner_found: bool
    phone_number: Optional[str] = None
    time_zone: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _time_columns(value: Union[PendingTime, ResolvedTime, None]) -> dict:
    if isinstance(value, PendingTime):
        return {"time_text": value.text, "time_noted_at": value.noted_at, "time_at": None}
    if isinstance(value, ResolvedTime):
        return {"time_text": None, "time_noted_at": None, "time_at": value.at}
    return {"time_text": None, "time_noted_at": None, "time_at": None}


def _time_value(task: Task) -> Union[PendingTime, ResolvedTime, None]:
    if task.time_at is not None:
        return ResolvedTime(at=as_utc(task.time_at))
    if task.time_text:
        noted_at = as_utc(task.time_noted_at) or as_utc(task.created_at) or _utcnow()
        return PendingTime(text=task.time_text, noted_at=noted_at)
    return None


def _to_out(task: Task) -> TaskOut:
    return TaskOut(
        task_id=task.task_id,
        user_id=task.user_id,
        content=task.content,
        time_type=task.time_type,
        time_value=_time_value(task),
        reminder_offset=task.reminder_offset,
        reminder_sent=bool(task.reminder_sent),
    )


class TaskTimeStore:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        resolver: TimeExpressionResolver,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_maker = session_maker
        self.resolver = resolver
        self._clock = clock

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    async def create_user(
        self,
        user_id: str,
        *,
        phone_number: Optional[str] = None,
        phone_verified: bool = False,
        time_zone: Optional[str] = None,
        first_name: Optional[str] = None,
    ) -> User:
        user = User(
            user_id=user_id,
            phone_number=phone_number,
            phone_verified=phone_verified,
            time_zone=time_zone,
            first_name=first_name,
        )
        async with self._session_maker() as s:
            s.add(user)
            await s.commit()
        return user

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self._session_maker() as s:
            return await s.get(User, user_id)

    async def get_user_by_phone(self, phone_number: str) -> Optional[User]:
        async with self._session_maker() as s:
            res = await s.execute(
                select(User)
                .where(User.phone_number == phone_number, User.phone_verified.is_(True))
                .limit(1)
            )
            return res.scalar_one_or_none()

    async def set_time_zone(self, user_id: str, zone: str) -> None:
        async with self._session_maker() as s:
            res = await s.execute(
                update(User)
                .where(User.user_id == user_id)
                .values(time_zone=zone)
                .execution_options(synchronize_session=False)
            )
            await s.commit()
        if res.rowcount != 1:
            raise UserNotFound(user_id)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------
    async def _prepare_time(
        self, zone: Optional[str], time_type: TimeType, raw: TimeInput
    ) -> Union[PendingTime, ResolvedTime, None]:
        """Classify input and resolve genuine free text in the owner's zone."""
        if time_type == "none":
            return None
        value = classify_time_input(raw, noted_at=self._clock().replace(microsecond=0))
        if isinstance(value, PendingTime):
            resolved = self.resolver.resolve(value.text, value.noted_at, zone)
            if resolved is not None:
                return ResolvedTime(at=resolved)
            _LOGGER.info("Keeping time %r pending for later resolution", value.text)
        return value

    async def create_task(
        self,
        user_id: str,
        content: str,
        time_type: TimeType = "none",
        time_value: TimeInput = None,
        reminder_offset: Optional[int] = None,
    ) -> TaskOut:
        user = await self.get_user(user_id)
        if user is None:
            raise UserNotFound(user_id)
        value = await self._prepare_time(user.time_zone, time_type, time_value)
        task = Task(
            task_id=str(uuid4()),
            user_id=user_id,
            content=content,
            time_type=time_type,
            reminder_offset=reminder_offset,
            reminder_sent=False,
            created_at=_utcnow(),
            **_time_columns(value),
        )
        async with self._session_maker() as s:
            s.add(task)
            await s.commit()
        return _to_out(task)

    async def get_task(self, task_id: str) -> Optional[TaskOut]:
        async with self._session_maker() as s:
            task = await s.get(Task, task_id)
            return _to_out(task) if task else None

    async def list_tasks(self, user_id: str) -> list[TaskOut]:
        async with self._session_maker() as s:
            res = await s.execute(
                select(Task).where(Task.user_id == user_id).order_by(Task.created_at, Task.task_id)
            )
            return [_to_out(t) for t in res.scalars()]

    async def update_content(self, task_id: str, content: str) -> None:
        await self._update_task(task_id, content=content)

    async def write_time(
        self,
        task_id: str,
        time_type: TimeType,
        raw_or_resolved: TimeInput,
        reminder_offset: Optional[int],
    ) -> Union[PendingTime, ResolvedTime, None]:
        """Write the time fields of one task and return the stored value.

        An instant (aware datetime, ``ResolvedTime`` or ``...Z`` string) is
        stored as-is. Other text goes through the resolver in the owner's zone
        and stays pending when that fails. ``reminder_sent`` is not touched.
        """
        async with self._session_maker() as s:
            res = await s.execute(
                select(User.time_zone)
                .select_from(Task)
                .outerjoin(User, User.user_id == Task.user_id)
                .where(Task.task_id == task_id)
            )
            row = res.first()
        if row is None:
            raise TaskNotFound(task_id)

        value = await self._prepare_time(row.time_zone, time_type, raw_or_resolved)
        await self._update_task(
            task_id,
            time_type=time_type,
            reminder_offset=reminder_offset,
            **_time_columns(value),
        )
        return value

    async def set_reminder_offset(self, task_id: str, minutes: Optional[int]) -> None:
        await self._update_task(task_id, reminder_offset=minutes)

    async def delete_task(self, task_id: str) -> bool:
        async with self._session_maker() as s:
            res = await s.execute(delete(Task).where(Task.task_id == task_id))
            await s.commit()
        return res.rowcount == 1

    async def _update_task(self, task_id: str, **values) -> None:
        async with self._session_maker() as s:
            res = await s.execute(
                update(Task)
                .where(Task.task_id == task_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await s.commit()
        if res.rowcount != 1:
            raise TaskNotFound(task_id)

    # ------------------------------------------------------------------
    # Reminder sweep
    # ------------------------------------------------------------------
    async def read_due_candidates(
        self, limit: Optional[int] = None, after: Optional[str] = None
    ) -> list[DueCandidate]:
        """Every task the sweep must look at, and nothing else.

        time_type != none, a time set (pending or resolved), an offset set and
        reminder_sent = false. Owners are outer-joined so orphaned rows still
        show up and can be reported.

        Rows come back in ``task_id`` order. With ``limit`` set, pass the last
        ``task_id`` of a page as ``after`` to read the next one.
        """
        stmt = (
            select(Task, User)
            .outerjoin(User, User.user_id == Task.user_id)
            .where(
                Task.time_type != "none",
                or_(Task.time_text != "", Task.time_at.isnot(None)),
                Task.reminder_offset.isnot(None),
                Task.reminder_sent.is_(False),
            )
            .order_by(Task.task_id)
        )
        if after is not None:
            stmt = stmt.where(Task.task_id > after)
        if limit:
            stmt = stmt.limit(limit)
        async with self._session_maker() as s:
            res = await s.execute(stmt)
            rows = res.all()

        candidates = []
        for task, user in rows:
            candidates.append(
                DueCandidate(
                    task_id=task.task_id,
                    user_id=task.user_id,
                    content=task.content,
                    time_type=task.time_type,
                    time_value=_time_value(task),
                    reminder_offset=task.reminder_offset,
                    owner_found=user is not None,
                    phone_number=user.phone_number if user else None,
                    time_zone=user.time_zone if user else None,
                )
            )
        return candidates

    async def ensure_resolved(self, candidate: DueCandidate) -> Optional[datetime]:
        """Return the candidate's UTC instant, resolving a pending phrase if needed.

        A fresh resolution is written back only if the row still holds the same
        pending phrase; otherwise a concurrent edit won and the candidate waits
        for the next sweep.
        """
        value = candidate.time_value
        if isinstance(value, ResolvedTime):
            return value.at
        if value is None:
            return None

        resolved = self.resolver.resolve(value.text, value.noted_at, candidate.time_zone)
        if resolved is None:
            return None

        async with self._session_maker() as s:
            res = await s.execute(
                update(Task)
                .where(
                    Task.task_id == candidate.task_id,
                    Task.time_text == value.text,
                    Task.time_at.is_(None),
                )
                .values(time_at=resolved, time_text=None, time_noted_at=None)
                .execution_options(synchronize_session=False)
            )
            await s.commit()
        if res.rowcount != 1:
            _LOGGER.info("Task %s time changed while resolving, deferring", candidate.task_id)
            return None
        _LOGGER.info("Resolved task %s time %r -> %s", candidate.task_id, value.text, resolved.isoformat())
        return resolved

    async def is_reminder_sent(self, task_id: str) -> bool:
        async with self._session_maker() as s:
            res = await s.execute(select(Task.reminder_sent).where(Task.task_id == task_id))
            sent = res.scalar_one_or_none()
        if sent is None:
            raise TaskNotFound(task_id)
        return bool(sent)

    async def mark_reminder_sent(self, task_id: str) -> bool:
        """Flip reminder_sent to true; False if it already was (or the task is gone)."""
        async with self._session_maker() as s:
            res = await s.execute(
                update(Task)
                .where(Task.task_id == task_id, Task.reminder_sent.is_(False))
                .values(reminder_sent=True)
                .execution_options(synchronize_session=False)
            )
            await s.commit()
        return res.rowcount == 1
