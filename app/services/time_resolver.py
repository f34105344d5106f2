"""Resolve free-text task times into UTC instants.

The resolver is the single place where text becomes an instant. It is used by
the parse-time endpoint, by task writes and by the reminder sweep's lazy path.

Steps:
1. A strict ISO timestamp is taken literally. ``Z`` or a numeric offset is
   honoured; a bare timestamp is wall-clock time in the user's zone.
2. Otherwise a bare ``at H`` gets an implied "pm", the phrase is parsed by
   :mod:`app.services.time_grammar` against the user's local "now", and only
   the returned calendar fields are recombined in the user's zone.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.services import time_grammar
from app.types.task_contract import (
    ISO_TIMESTAMP_RE,
    NO_TIME,
    ParseTimeRequest,
    ParseTimeResponse,
    to_utc_iso,
)
from config import settings

_LOGGER = logging.getLogger(__name__)

UTC = timezone.utc

_BARE_AT_HOUR_RE = re.compile(
    r"\bat (?P<h>\d{1,2})(?::(?P<m>\d{2}))?\b(?!\s*(?:[ap]\.?m\b|[:/]))",
    re.IGNORECASE,
)
_MERIDIEM_CUES_RE = re.compile(
    r"\b(?:[ap]\.?m\.?|morning|afternoon|evening|night|tonight|noon|midday|midnight)\b"
    r"|\d(?:am|pm)\b",
    re.IGNORECASE,
)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def load_zone(name: Optional[str]) -> ZoneInfo:
    """Return the IANA zone ``name``, or the default zone (UTC) when it is unset or unknown."""
    if name:
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            _LOGGER.warning("Unknown time zone %r, falling back to %s", name, settings.DEFAULT_TIMEZONE)
    if is_known_zone(settings.DEFAULT_TIMEZONE):
        return ZoneInfo(settings.DEFAULT_TIMEZONE)
    return ZoneInfo("UTC")


def is_known_zone(name: Optional[str]) -> bool:
    if not name:
        return False
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def infer_meridiem(phrase: str, hour_limit: int = settings.PM_INFERENCE_HOUR_LIMIT) -> str:
    """Read a bare "at H" (1 <= H < hour_limit) as PM when nothing else says otherwise.

    "at 6" becomes "at 6pm"; "at 6am", "at 6 in the morning" and "at 18:00"
    are left alone.
    """
    if _MERIDIEM_CUES_RE.search(phrase):
        return phrase
    match = _BARE_AT_HOUR_RE.search(phrase)
    if not match:
        return phrase
    hour = int(match.group("h"))
    if not 1 <= hour < min(hour_limit, 12):
        return phrase
    _LOGGER.debug("Applied PM inference to %r", phrase)
    return phrase[: match.end()] + "pm" + phrase[match.end():]


class TimeExpressionResolver:
    """Turns (phrase, reference instant, zone) into a UTC ``datetime`` or ``None``."""

    def __init__(
        self,
        pm_hour_limit: int = settings.PM_INFERENCE_HOUR_LIMIT,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.pm_hour_limit = pm_hour_limit
        self._clock = clock

    def resolve(
        self,
        phrase: str,
        reference: Optional[datetime],
        zone: Optional[str],
    ) -> Optional[datetime]:
        """Resolve ``phrase`` to an aware UTC datetime, or ``None`` if unparseable.

        ``reference`` defaults to now. A naive reference is read as wall-clock
        time in ``zone``. The "none" sentinel is the caller's to handle.
        """
        text = (phrase or "").strip()
        if not text or text.lower() == NO_TIME:
            raise ValueError("resolve() needs a time phrase; handle the 'none' sentinel first")

        tz = load_zone(zone)
        match = ISO_TIMESTAMP_RE.match(text)
        if match:
            return self._resolve_timestamp(text, match.group("zone"), tz)

        reference = reference or self._clock()
        if reference.tzinfo is None:
            ref_local = reference.replace(tzinfo=tz)
        else:
            ref_local = reference.astimezone(tz)

        prepared = infer_meridiem(text, self.pm_hour_limit)
        parsed = time_grammar.parse(prepared, ref_local.replace(tzinfo=None))
        if parsed is None:
            _LOGGER.info("Could not resolve time phrase %r (zone=%s)", text, tz.key)
            return None
        return self._localize(parsed, ref_local, tz)

    @staticmethod
    def _resolve_timestamp(text: str, zone_marker: Optional[str], tz: ZoneInfo) -> Optional[datetime]:
        try:
            value = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            _LOGGER.info("Malformed timestamp %r", text)
            return None
        if zone_marker:
            # already absolute; never re-localize
            return value.astimezone(UTC)
        return value.replace(tzinfo=tz).astimezone(UTC)

    @staticmethod
    def _localize(parsed: time_grammar.ParsedTime, ref_local: datetime, tz: ZoneInfo) -> Optional[datetime]:
        hour = time_grammar.to_24_hour(parsed.hour, parsed.meridiem)
        year = parsed.year
        if not parsed.year_certain and abs(year - ref_local.year) > 1:
            _LOGGER.warning("Implausible year %s for reference %s, using %s", year, ref_local.year, ref_local.year)
            year = ref_local.year
        try:
            local = datetime(year, parsed.month, parsed.day, hour, parsed.minute, parsed.second, tzinfo=tz)
        except ValueError:
            _LOGGER.info("Parsed fields do not form a valid date: %s", parsed)
            return None
        return local.astimezone(UTC)

    def parse_time(self, request: ParseTimeRequest) -> ParseTimeResponse:
        """Externally callable form of :meth:`resolve` (dashboard parse-as-you-type)."""
        phrase = request.phrase.strip()
        if not phrase or phrase.lower() == NO_TIME:
            return ParseTimeResponse(success=False, input=request.phrase, error="Time string is required")

        resolved = self.resolve(phrase, None, request.zone)
        if resolved is None:
            return ParseTimeResponse(
                success=False, input=request.phrase, error="Could not parse time expression"
            )
        local = resolved.astimezone(load_zone(request.zone))
        return ParseTimeResponse(
            success=True,
            input=request.phrase,
            resolved_instant=to_utc_iso(resolved),
            display=local.strftime("%a %b %d %Y, %I:%M %p %Z"),
        )
