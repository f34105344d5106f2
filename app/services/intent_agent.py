"""
LLM-powered intent agent.

Turns one inbound SMS into a `TaskIntent`. The model only classifies and
copies the user's wording; all date math happens in the time resolver.
"""

from __future__ import annotations

import json
import logging
from typing import List, Optional

import openai
from openai import AsyncOpenAI
from openai.types.chat import ChatCompletionMessageParam
from tenacity import (
    retry,
    stop_after_attempt,
    wait_random_exponential,
    retry_if_exception_type,
)

from app.types.task_contract import TaskIntent
from config import settings

_LOGGER = logging.getLogger(__name__)

# ──────────────────────────────────────────────────────────────────────────
# Prompts & function-tool definition
# ──────────────────────────────────────────────────────────────────────────

_SYSTEM_PROMPT = (
    "You are the intake assistant of a task and reminder service reached over SMS. "
    "Classify the user's message and extract its fields by calling `parse_task_intent`. "
    "\n\n"
    "**Crucially:** `time_value` must be the user's own time wording copied verbatim "
    "(e.g. \"tomorrow at 3pm\", \"next friday\", \"in 2 hours\"). Never convert it to a "
    "date or an ISO timestamp and never do date arithmetic yourself. "
    "Use `time_type=deadline` when the task is due by a time (\"by\", \"before\", \"due\") "
    "and `time_type=scheduled` when it happens at a time. Omit both when there is no time. "
    "`reminder_offset` is the number of minutes before the time the user wants a "
    "reminder (\"remind me 30 minutes before\" -> 30). "
    "`task_identifier` is a list number or a few words naming an existing task. "
    "`time_zone` is an IANA zone name when the user states their zone "
    "(\"I'm in Denver\" -> America/Denver)."
)

_TEXT_TEMPLATE = (
    "# Message\n{message}\n\n"
    "# Current tasks\n{tasks}\n\n"
    "Call parse_task_intent."
)

_FUNCTION_DEF = {
    "name": "parse_task_intent",
    "description": "Parse the user's message to determine their intent with tasks.",
    "parameters": {
        "type": "object",
        "properties": {
            "intent": {
                "type": "string",
                "enum": [
                    "add_task",
                    "remove_task",
                    "update_task",
                    "list_tasks",
                    "set_time_zone",
                    "update_reminder",
                    "get_help",
                    "unknown",
                ],
            },
            "task_content": {"type": "string"},
            "task_identifier": {"type": "string"},
            "time_type": {"type": "string", "enum": ["scheduled", "deadline"]},
            "time_value": {"type": "string"},
            "reminder_offset": {"type": "integer", "minimum": 0},
            "time_zone": {"type": "string"},
            "tense_used": {"type": "string", "enum": ["past", "present", "future"]},
        },
        "required": ["intent"],
        "additionalProperties": False,
    },
}

FUNCTIONS = [{"type": "function", "function": _FUNCTION_DEF}]

# Retry only on transport / rate-limit / backend errors
RETRY_ERRORS = (
    openai.APIStatusError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.APITimeoutError,
)


def _build_messages(message: str, task_lines: Optional[List[str]] = None) -> List[ChatCompletionMessageParam]:
    tasks = "\n".join(task_lines or []) or "(none)"
    return [
        {"role": "system", "content": _SYSTEM_PROMPT},
        {"role": "user", "content": _TEXT_TEMPLATE.format(message=message[:480], tasks=tasks)},
    ]


class IntentAgent:
    """Wraps the chat-completions tool call. ``client`` is injected by the entry point."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: str = settings.OPENAI_MODEL,
        timeout: float = settings.OPENAI_TIMEOUT,
    ):
        self.client = client
        self.model = model
        self.timeout = timeout

    @retry(
        wait=wait_random_exponential(multiplier=1, max=30),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type(RETRY_ERRORS),
    )
    async def _call_openai(self, messages: List[ChatCompletionMessageParam]) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            tools=FUNCTIONS,
            tool_choice={"type": "function", "function": {"name": "parse_task_intent"}},
            timeout=self.timeout,
        )
        msg = response.choices[0].message
        if msg.tool_calls:
            return msg.tool_calls[0].function.arguments
        # No tool call; assume assistant responded with final JSON
        return msg.content or ""

    async def analyze(self, message: str, task_lines: Optional[List[str]] = None) -> TaskIntent:
        """
        Classify ``message``. ``task_lines`` gives the model the user's numbered tasks.
        Falls back to "add the whole message as a task" if no OpenAI client is configured.
        """
        if self.client is None:
            # local dev shortcut
            return TaskIntent(intent="add_task", task_content=message.strip())

        try:
            raw_json = await self._call_openai(_build_messages(message, task_lines))
            _LOGGER.info("LLM raw JSON: %s", raw_json)
            parsed = json.loads(raw_json) if raw_json else {}
            return TaskIntent.model_validate(parsed)
        except RETRY_ERRORS:
            raise
        except Exception as exc:
            _LOGGER.warning("Failed to parse assistant output: %s", exc)
            raise ValueError("Unable to interpret LLM output") from exc


def build_client() -> Optional[AsyncOpenAI]:
    if not settings.OPENAI_API_KEY:
        _LOGGER.info("OPENAI_API_KEY not set; intent agent runs in stub mode")
        return None
    return AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
