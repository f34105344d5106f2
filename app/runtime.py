"""Explicit construction of the long-lived clients.

Every entry point (FastAPI app, celery task, cron script) opens one
``build_services()`` context and closes it on exit, so no module holds a
global engine or API client.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from app.services.intent_agent import IntentAgent, build_client
from app.services.reminder_scheduler import ReminderScheduler
from app.services.sms_commands import SmsCommandHandler
from app.services.time_resolver import TimeExpressionResolver
from app.utils.sms import SmsSender
from db.db import create_all, dispose_engine, make_engine, make_session_maker
from db.task_store import TaskTimeStore

_LOGGER = logging.getLogger(__name__)


@dataclass
class Services:
    engine: AsyncEngine
    resolver: TimeExpressionResolver
    store: TaskTimeStore
    sender: SmsSender
    scheduler: ReminderScheduler
    agent: IntentAgent
    commands: SmsCommandHandler


@asynccontextmanager
async def build_services(database_url: Optional[str] = None, *, with_agent: bool = True) -> AsyncIterator[Services]:
    engine = make_engine(database_url)
    agent = IntentAgent(build_client() if with_agent else None)
    try:
        await create_all(engine)
        resolver = TimeExpressionResolver()
        store = TaskTimeStore(make_session_maker(engine), resolver)
        sender = SmsSender()
        yield Services(
            engine=engine,
            resolver=resolver,
            store=store,
            sender=sender,
            scheduler=ReminderScheduler(store, sender),
            agent=agent,
            commands=SmsCommandHandler(store, agent),
        )
    finally:
        if agent.client is not None:
            await agent.client.close()
        await dispose_engine(engine)
        _LOGGER.debug("Services closed")
