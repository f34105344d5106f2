"""Apply an inbound SMS to the user's tasks and build the reply text."""

from __future__ import annotations

import logging
from typing import List, Optional

from app.services.intent_agent import IntentAgent
from app.services.time_resolver import is_known_zone, load_zone
from app.types.task_contract import PendingTime, ResolvedTime, TaskIntent, TaskOut
from config import settings
from db.db import User
from db.task_store import TaskTimeStore

_LOGGER = logging.getLogger(__name__)

NOT_LINKED = "Your number is not linked to an account."
NOT_UNDERSTOOD = "Sorry, I didn't get that. Text HELP to see what I can do."
HELP_TEXT = (
    "You can text me things like:\n"
    "- Call mom tomorrow at 3pm\n"
    "- Pay rent by friday, remind me 60 minutes before\n"
    "- List my tasks\n"
    "- Remove 2\n"
    "- I'm in America/Denver"
)

_KEYWORDS = {
    "help": "get_help",
    "?": "get_help",
    "list": "list_tasks",
    "tasks": "list_tasks",
}


def time_label(time_type: str) -> str:
    return "Due" if time_type == "deadline" else "Scheduled"


def format_time(value, zone: Optional[str]) -> str:
    if isinstance(value, ResolvedTime):
        return value.at.astimezone(load_zone(zone)).strftime("%a %b %d, %I:%M %p %Z")
    if isinstance(value, PendingTime):
        return f'"{value.text}" (time not understood yet)'
    return ""


def task_line(index: int, task: TaskOut, zone: Optional[str]) -> str:
    line = f"{index}. {task.content}"
    if task.time_type != "none" and task.time_value is not None:
        line += f" ({time_label(task.time_type)}: {format_time(task.time_value, zone)})"
    return line


def find_task(tasks: List[TaskOut], identifier: Optional[str]) -> Optional[TaskOut]:
    """Match by 1-based list number, then by case-insensitive content substring."""
    if not identifier:
        return None
    ident = identifier.strip().lstrip("#")
    if ident.isdigit():
        index = int(ident)
        return tasks[index - 1] if 1 <= index <= len(tasks) else None
    needle = ident.lower()
    for task in tasks:
        if needle in task.content.lower():
            return task
    return None


class SmsCommandHandler:
    def __init__(
        self,
        store: TaskTimeStore,
        agent: IntentAgent,
        default_offset: int = settings.DEFAULT_REMINDER_OFFSET,
    ):
        self.store = store
        self.agent = agent
        self.default_offset = default_offset

    async def handle(self, from_number: str, text: str) -> str:
        user = await self.store.get_user_by_phone(from_number)
        if user is None:
            _LOGGER.info("SMS from unlinked number %s", from_number)
            return NOT_LINKED

        tasks = await self.store.list_tasks(user.user_id)
        keyword = _KEYWORDS.get(text.strip().lower())
        if keyword:
            intent = TaskIntent(intent=keyword)
        else:
            lines = [task_line(i, t, user.time_zone) for i, t in enumerate(tasks, start=1)]
            try:
                intent = await self.agent.analyze(text, lines)
            except ValueError:
                return NOT_UNDERSTOOD

        _LOGGER.info("SMS intent for user %s: %s", user.user_id, intent.intent)
        handler = getattr(self, f"_{intent.intent}", None)
        if handler is None:
            return NOT_UNDERSTOOD
        return await handler(user, intent, tasks)

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------
    def _offset_for(self, intent: TaskIntent, current: Optional[int] = None) -> int:
        if intent.reminder_offset is not None:
            return intent.reminder_offset
        return current if current is not None else self.default_offset

    async def _add_task(self, user: User, intent: TaskIntent, tasks: List[TaskOut]) -> str:
        content = (intent.task_content or "").strip()
        if not content:
            return "What's the task? Try something like: Call mom tomorrow at 3pm"

        if intent.time_value:
            task = await self.store.create_task(
                user.user_id,
                content,
                time_type=intent.time_type or "scheduled",
                time_value=intent.time_value,
                reminder_offset=self._offset_for(intent),
            )
        else:
            task = await self.store.create_task(user.user_id, content)
        return self._saved_reply("Added", task, user.time_zone)

    async def _remove_task(self, user: User, intent: TaskIntent, tasks: List[TaskOut]) -> str:
        task = find_task(tasks, intent.task_identifier or intent.task_content)
        if task is None:
            return "I couldn't find that task. Text LIST to see your tasks."
        await self.store.delete_task(task.task_id)
        return f'Removed "{task.content}".'

    async def _update_task(self, user: User, intent: TaskIntent, tasks: List[TaskOut]) -> str:
        task = find_task(tasks, intent.task_identifier)
        if task is None:
            return "I couldn't find that task. Text LIST to see your tasks."

        if intent.task_content and intent.task_content.strip() != task.content:
            await self.store.update_content(task.task_id, intent.task_content.strip())
        if intent.time_value:
            time_type = intent.time_type or (task.time_type if task.time_type != "none" else "scheduled")
            await self.store.write_time(
                task.task_id,
                time_type,
                intent.time_value,
                self._offset_for(intent, task.reminder_offset),
            )
        updated = await self.store.get_task(task.task_id)
        return self._saved_reply("Updated", updated, user.time_zone)

    async def _list_tasks(self, user: User, intent: TaskIntent, tasks: List[TaskOut]) -> str:
        if not tasks:
            return "You have no tasks."
        lines = [task_line(i, t, user.time_zone) for i, t in enumerate(tasks, start=1)]
        return "Your tasks:\n" + "\n".join(lines)

    async def _set_time_zone(self, user: User, intent: TaskIntent, tasks: List[TaskOut]) -> str:
        zone = (intent.time_zone or "").strip()
        if not is_known_zone(zone):
            return f'I don\'t recognize the time zone "{zone}". Try something like America/New_York.'
        await self.store.set_time_zone(user.user_id, zone)
        return f"Time zone set to {zone}."

    async def _update_reminder(self, user: User, intent: TaskIntent, tasks: List[TaskOut]) -> str:
        if intent.reminder_offset is None:
            return "How many minutes before should I remind you?"
        task = find_task(tasks, intent.task_identifier)
        if task is None:
            timed = [t for t in tasks if t.time_type != "none"]
            task = timed[-1] if timed and not intent.task_identifier else None
        if task is None:
            return "I couldn't find that task. Text LIST to see your tasks."
        await self.store.set_reminder_offset(task.task_id, intent.reminder_offset)
        return f'I\'ll remind you {intent.reminder_offset} minutes before "{task.content}".'

    async def _get_help(self, user: User, intent: TaskIntent, tasks: List[TaskOut]) -> str:
        return HELP_TEXT

    async def _unknown(self, user: User, intent: TaskIntent, tasks: List[TaskOut]) -> str:
        return NOT_UNDERSTOOD

    @staticmethod
    def _saved_reply(verb: str, task: TaskOut, zone: Optional[str]) -> str:
        reply = f'{verb} "{task.content}"'
        if isinstance(task.time_value, ResolvedTime):
            return reply + f" ({time_label(task.time_type)}: {format_time(task.time_value, zone)})."
        if isinstance(task.time_value, PendingTime):
            return (
                reply
                + f'. I couldn\'t understand the time "{task.time_value.text}" yet, '
                "so I'll keep trying before reminding you."
            )
        return reply + "."
