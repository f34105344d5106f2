import logging
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import delete

from app.services.reminder_scheduler import ReminderScheduler
from app.types.task_contract import ResolvedTime
from config import settings
from conftest import NOW, FakeSender
from db.db import Task, User

UTC = timezone.utc
NY = "America/New_York"
PHONE = "+15550001111"


@pytest.fixture()
def sender():
    return FakeSender()


@pytest.fixture()
def scheduler(store, sender, clock):
    return ReminderScheduler(store, sender, clock=clock)


async def make_user(store, user_id="u1", phone=PHONE, zone=NY):
    return await store.create_user(user_id, phone_number=phone, phone_verified=phone is not None, time_zone=zone)


async def due_task(store, user_id="u1", content="call mom", time_type="scheduled", minutes_ago=1, offset=0):
    at = NOW - timedelta(minutes=minutes_ago)
    return await store.create_task(user_id, content, time_type, ResolvedTime(at=at), offset)


@pytest.mark.asyncio
async def test_reminder_is_sent_exactly_once(store, scheduler, sender):
    await make_user(store)
    task = await due_task(store)

    stats = await scheduler.sweep()
    assert stats.sent == 1
    assert sender.sent == [(PHONE, 'Reminder: "call mom" is coming up soon!')]
    assert await store.is_reminder_sent(task.task_id)

    for _ in range(3):
        stats = await scheduler.sweep()
        assert stats.candidates == 0
    assert len(sender.sent) == 1


@pytest.mark.asyncio
async def test_deadline_message(store, scheduler, sender):
    await make_user(store)
    await due_task(store, content="pay rent", time_type="deadline")
    await scheduler.sweep()
    assert sender.sent == [(PHONE, 'Reminder: Your task "pay rent" is due soon!')]


@pytest.mark.asyncio
async def test_offset_moves_reminder_earlier(store, scheduler, sender, clock):
    await make_user(store)
    # due in 30 minutes, remind 60 minutes before: already due
    await due_task(store, minutes_ago=-30, offset=60)
    # due in 90 minutes, remind 60 minutes before: not yet
    await due_task(store, content="later", minutes_ago=-90, offset=60)

    stats = await scheduler.sweep()
    assert stats.sent == 1
    assert stats.not_due == 1
    assert [body for _, body in sender.sent] == ['Reminder: "call mom" is coming up soon!']

    clock.now = NOW + timedelta(minutes=30)
    stats = await scheduler.sweep()
    assert stats.sent == 1
    assert len(sender.sent) == 2


@pytest.mark.asyncio
async def test_failed_delivery_is_retried_next_sweep(store, scheduler, sender, caplog):
    await make_user(store)
    task = await due_task(store)
    sender.fail_for.add(PHONE)

    with caplog.at_level(logging.WARNING):
        stats = await scheduler.sweep()
    assert stats.failed == 1
    assert stats.sent == 0
    assert not await store.is_reminder_sent(task.task_id)
    assert "delivery failed" in caplog.text

    sender.fail_for.clear()
    stats = await scheduler.sweep()
    assert stats.sent == 1
    assert await store.is_reminder_sent(task.task_id)


@pytest.mark.asyncio
async def test_one_failure_does_not_stop_the_sweep(store, scheduler, sender):
    await make_user(store, "u1", "+15550001111")
    await make_user(store, "u2", "+15550002222")
    await due_task(store, "u1", content="first")
    await due_task(store, "u2", content="second")
    sender.fail_for.add("+15550001111")

    stats = await scheduler.sweep()
    assert stats.failed == 1
    assert stats.sent == 1
    assert sender.sent == [("+15550002222", 'Reminder: "second" is coming up soon!')]


@pytest.mark.asyncio
async def test_store_error_for_one_task_is_contained(store, scheduler, sender, monkeypatch):
    await make_user(store)
    broken = await due_task(store, content="broken")
    await due_task(store, content="fine")

    original = store.ensure_resolved

    async def flaky(candidate):
        if candidate.task_id == broken.task_id:
            raise RuntimeError("db hiccup")
        return await original(candidate)

    monkeypatch.setattr(store, "ensure_resolved", flaky)
    stats = await scheduler.sweep()
    assert stats.failed == 1
    assert [body for _, body in sender.sent] == ['Reminder: "fine" is coming up soon!']


@pytest.mark.asyncio
async def test_owner_without_phone_is_skipped(store, scheduler, sender):
    await make_user(store, phone=None)
    task = await due_task(store)

    stats = await scheduler.sweep()
    assert stats.no_phone == 1
    assert sender.sent == []
    assert not await store.is_reminder_sent(task.task_id)


@pytest.mark.asyncio
async def test_orphaned_task_is_logged_and_skipped(store, scheduler, sender, session_maker, caplog):
    await make_user(store)
    task = await due_task(store)
    async with session_maker() as s:
        await s.execute(delete(User).where(User.user_id == "u1"))
        await s.commit()

    with caplog.at_level(logging.ERROR):
        stats = await scheduler.sweep()
    assert stats.orphaned == 1
    assert sender.sent == []
    assert any(r.levelno == logging.ERROR and task.task_id in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_unresolvable_time_is_skipped(store, scheduler, sender):
    await make_user(store)
    await store.create_task("u1", "water plants", "scheduled", "when the moon is full", 0)

    stats = await scheduler.sweep()
    assert stats.unresolved == 1
    assert sender.sent == []


@pytest.mark.asyncio
async def test_already_sent_on_recheck_is_not_resent(store, scheduler, sender, monkeypatch):
    await make_user(store)
    task = await due_task(store)
    [candidate] = await store.read_due_candidates()
    # another worker delivered between the read and the decision
    await store.mark_reminder_sent(task.task_id)

    async def stale_read(limit=None, after=None):
        return [candidate]

    monkeypatch.setattr(store, "read_due_candidates", stale_read)
    stats = await scheduler.sweep()
    assert stats.sent == 0
    assert sender.sent == []


@pytest.mark.asyncio
async def test_new_york_scenario(store, scheduler, sender, session_maker, clock):
    """Pending "tomorrow at 3pm" in New York with a 60 minute offset."""
    await make_user(store)
    async with session_maker() as s:
        s.add(
            Task(
                task_id="t1",
                user_id="u1",
                content="dentist",
                time_type="scheduled",
                time_text="tomorrow at 3pm",
                time_noted_at=NOW,
                reminder_offset=60,
                reminder_sent=False,
                created_at=NOW,
            )
        )
        await s.commit()

    stats = await scheduler.sweep()
    assert stats.not_due == 1
    assert (await store.get_task("t1")).time_value.at == datetime(2024, 6, 2, 19, 0, tzinfo=UTC)

    clock.now = datetime(2024, 6, 2, 17, 59, tzinfo=UTC)
    await scheduler.sweep()
    assert sender.sent == []

    clock.now = datetime(2024, 6, 2, 18, 0, tzinfo=UTC)
    stats = await scheduler.sweep()
    assert stats.sent == 1
    assert sender.sent == [(PHONE, 'Reminder: "dentist" is coming up soon!')]
    assert await store.is_reminder_sent("t1")

    clock.now = datetime(2024, 6, 2, 19, 30, tzinfo=UTC)
    await scheduler.sweep()
    await scheduler.sweep()
    assert len(sender.sent) == 1


@pytest.mark.asyncio
async def test_none_tasks_are_never_swept(store, scheduler, sender, session_maker):
    await make_user(store)
    async with session_maker() as s:
        s.add(
            Task(
                task_id="t1",
                user_id="u1",
                content="someday",
                time_type="none",
                time_at=NOW - timedelta(hours=1),
                reminder_offset=0,
                reminder_sent=False,
                created_at=NOW,
            )
        )
        await s.commit()

    stats = await scheduler.sweep()
    assert stats.candidates == 0
    assert sender.sent == []


@pytest.mark.asyncio
async def test_undeliverable_backlog_does_not_block_due_reminders(
    store, scheduler, sender, session_maker, monkeypatch
):
    monkeypatch.setattr(settings, "SWEEP_BATCH_LIMIT", 2)
    await make_user(store, "no-phone", phone=None)
    await make_user(store)

    async with session_maker() as s:
        for task_id in ("a1", "a2"):
            s.add(
                Task(
                    task_id=task_id,
                    user_id="no-phone",
                    content="stuck",
                    time_type="scheduled",
                    time_at=NOW - timedelta(days=3),
                    reminder_offset=0,
                    reminder_sent=False,
                    created_at=NOW,
                )
            )
        for task_id in ("b1", "b2"):
            s.add(
                Task(
                    task_id=task_id,
                    user_id="u1",
                    content="vague",
                    time_type="scheduled",
                    time_text="when the moon is full",
                    time_noted_at=NOW,
                    reminder_offset=0,
                    reminder_sent=False,
                    created_at=NOW,
                )
            )
        s.add(
            Task(
                task_id="z-due",
                user_id="u1",
                content="call mom",
                time_type="scheduled",
                time_at=NOW - timedelta(minutes=1),
                reminder_offset=0,
                reminder_sent=False,
                created_at=NOW,
            )
        )
        await s.commit()

    stats = await scheduler.sweep()
    assert stats.candidates == 5
    assert stats.no_phone == 2
    assert stats.unresolved == 2
    assert stats.sent == 1
    assert sender.sent == [(PHONE, 'Reminder: "call mom" is coming up soon!')]

    stats = await scheduler.sweep()
    assert stats.candidates == 4
    assert stats.sent == 0


@pytest.mark.asyncio
async def test_empty_time_text_is_not_swept(store, scheduler, sender, session_maker):
    await make_user(store)
    async with session_maker() as s:
        s.add(
            Task(
                task_id="t1",
                user_id="u1",
                content="blank",
                time_type="scheduled",
                time_text="",
                reminder_offset=0,
                reminder_sent=False,
                created_at=NOW,
            )
        )
        await s.commit()

    stats = await scheduler.sweep()
    assert stats.candidates == 0
    assert stats.failed == 0
    assert sender.sent == []
