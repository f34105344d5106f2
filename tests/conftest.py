from datetime import datetime, timezone

import pytest
import pytest_asyncio

from app.services.time_resolver import TimeExpressionResolver
from db.db import create_all, dispose_engine, make_engine, make_session_maker
from db.task_store import TaskTimeStore

UTC = timezone.utc

# Saturday 2024-06-01, 10:00 in New York
NOW = datetime(2024, 6, 1, 14, 0, tzinfo=UTC)


class Clock:
    """Settable clock shared by the resolver, the store and the scheduler."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeSender:
    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)

    async def send(self, to, body):
        if to in self.fail_for:
            raise RuntimeError(f"gateway refused {to}")
        self.sent.append((to, body))


@pytest.fixture()
def clock():
    return Clock()


@pytest_asyncio.fixture()
async def session_maker():
    engine = make_engine("sqlite+aiosqlite://")
    await create_all(engine)
    yield make_session_maker(engine)
    await dispose_engine(engine)


@pytest.fixture()
def store(session_maker, clock):
    resolver = TimeExpressionResolver(clock=clock)
    return TaskTimeStore(session_maker, resolver, clock=clock)
