"""Compact natural-language grammar for task time phrases.

``parse()`` turns phrases such as "tomorrow at 6pm", "next friday",
"in 2 hours" or "may 5th" into calendar fields relative to a *local*
reference wall clock. The result only carries fields (year, month, day,
clock hour, minute, second, meridiem); localizing them is the caller's job.

Forward-date policy: an under-specified phrase that lands in the past moves to
its next occurrence. A bare time moves to tomorrow, a bare weekday to next
week, and a month/day with no year to next year. Explicit anchors such as
"today" or "yesterday" are never moved.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

AM, PM = 0, 1

_MONTHS = (
    r"jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?"
    r"|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?"
)
_AMOUNT = (
    r"(?P<amount>\d+|a couple of|couple of|a few|few|an?|one|two|three|four|five|six"
    r"|seven|eight|nine|ten|eleven|twelve|fifteen|twenty|thirty|forty five)"
)
_UNIT = r"(?P<unit>minutes?|mins?|hours?|hrs?|days?|weeks?|wks?|months?|years?)"

_NOW_RE = re.compile(r"(?<!from )\b(?:right now|now|asap)\b")
_HALF_HOUR_RE = re.compile(r"\bin half an? hour\b")
_OFFSET_RES = (
    re.compile(rf"\bin (?:about )?{_AMOUNT} {_UNIT}\b"),
    re.compile(rf"\b{_AMOUNT} {_UNIT} (?:from now|later)\b"),
)
_NEXT_PERIOD_RE = re.compile(r"\bnext (?P<unit>week|month|year)\b")
_ISO_DATE_RE = re.compile(r"\b\d{4}-\d{1,2}-\d{1,2}\b")
_SLASH_DATE_RE = re.compile(r"\b\d{1,2}/\d{1,2}(?:/\d{2,4})?\b")
_MONTH_DAY_RE = re.compile(
    rf"\b(?:{_MONTHS})\.? \d{{1,2}}(?:st|nd|rd|th)?(?: \d{{4}})?\b"
)
_DAY_MONTH_RE = re.compile(
    rf"\b\d{{1,2}}(?:st|nd|rd|th)? (?:of )?(?:{_MONTHS})\.?(?: \d{{4}})?\b"
)
_ANCHOR_RE = re.compile(
    r"\b(?P<anchor>(?:the )?day after tomorrow|tomorrow|tomorow|tmrw|tmr|today|tonight|yesterday)\b"
)
_WEEKDAY_RE = re.compile(
    r"\b(?:(?P<mod>next|this|coming|on) )?"
    r"(?P<wd>monday|mon|tuesday|tues|tue|wednesday|wed|thursday|thurs|thur|thu"
    r"|friday|fri|saturday|sat|sunday|sun)\b"
)
_NAMED_TIME_RE = re.compile(r"(?:\bat )?\b(?P<word>noon|midday|midnight)\b")
_CLOCK_RE = re.compile(
    r"(?P<at>\bat |@ ?)?\b(?P<h>\d{1,2})(?::(?P<m>\d{2}))?(?::(?P<s>\d{2}))?"
    r" ?(?P<mer>am|pm|oclock)?\b"
)
_PART_RE = re.compile(r"\b(?P<part>morning|afternoon|evening|night)\b")

_NUMBER_WORDS = {
    "a": 1, "an": 1, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11,
    "twelve": 12, "fifteen": 15, "twenty": 20, "thirty": 30, "forty five": 45,
    "a couple of": 2, "couple of": 2, "a few": 3, "few": 3,
}
_WEEKDAYS = {
    "mon": 0, "tue": 1, "wed": 2, "thu": 3, "fri": 4, "sat": 5, "sun": 6,
}
# part of day -> (default clock hour, meridiem)
_PARTS = {
    "morning": (9, AM),
    "afternoon": (3, PM),
    "evening": (6, PM),
    "night": (8, PM),
}
# two defaults that disagree on every field, to see which ones the text set
_PROBE_A = datetime(2000, 1, 1)
_PROBE_B = datetime(2004, 12, 28)


@dataclass
class ParsedTime:
    """Calendar fields of one parse, as stated or implied by the phrase.

    ``hour`` is the clock hour as written: 1-12 when ``meridiem`` is set,
    0-23 otherwise. Use :func:`to_24_hour` to combine the two.
    """

    year: int
    month: int
    day: int
    hour: int = 0
    minute: int = 0
    second: int = 0
    meridiem: Optional[int] = None
    year_certain: bool = False
    date_only: bool = False

    def local_datetime(self) -> datetime:
        return datetime(
            self.year, self.month, self.day,
            to_24_hour(self.hour, self.meridiem), self.minute, self.second,
        )


def to_24_hour(hour: int, meridiem: Optional[int]) -> int:
    """12 pm stays 12, 12 am becomes 0, other pm hours gain 12."""
    if meridiem == PM and hour < 12:
        return hour + 12
    if meridiem == AM and hour == 12:
        return 0
    return hour


class _Scanner:
    """Matches patterns against the phrase, blanking out what each one used."""

    def __init__(self, text: str):
        self.text = text
        self.matched = False

    def take(self, pattern: re.Pattern, accept=None) -> Optional[re.Match]:
        for match in pattern.finditer(self.text):
            if accept is None or accept(match):
                start, end = match.span()
                self.text = self.text[:start] + " " * (end - start) + self.text[end:]
                self.matched = True
                return match
        return None


def _normalize(text: str) -> str:
    text = text.lower().strip()
    text = re.sub(r"\b([ap])\.m\.?", r"\1m", text)
    text = re.sub(r"o['’]clock", "oclock", text)
    text = re.sub(r"[,!?;]", " ", text)
    text = re.sub(r"\.(\s|$)", r"\1", text)
    return re.sub(r"\s+", " ", text).strip()


def _amount(raw: str) -> int:
    return int(raw) if raw.isdigit() else _NUMBER_WORDS[raw]


def _delta(amount: int, unit: str) -> relativedelta:
    if unit.startswith("min"):
        return relativedelta(minutes=amount)
    if unit.startswith("h"):
        return relativedelta(hours=amount)
    if unit.startswith("d"):
        return relativedelta(days=amount)
    if unit.startswith("w"):
        return relativedelta(weeks=amount)
    if unit.startswith("mo"):
        return relativedelta(months=amount)
    return relativedelta(years=amount)


def _read_date(chunk: str) -> Optional[tuple[int, int, Optional[int]]]:
    """Month, day and (if written) year of a date chunk, via dateutil."""
    try:
        first = date_parser.parse(chunk, default=_PROBE_A)
        second = date_parser.parse(chunk, default=_PROBE_B)
    except (ValueError, OverflowError):
        return None
    if (first.month, first.day) != (second.month, second.day):
        return None
    year = first.year if first.year == second.year else None
    return first.month, first.day, year


def _valid_date(year: int, month: int, day: int) -> Optional[date]:
    # Feb 29 without a year lands on the next leap year
    for candidate in range(year, year + 8):
        try:
            return date(candidate, month, day)
        except ValueError:
            continue
    return None


def parse(text: str, reference: datetime) -> Optional[ParsedTime]:
    """Parse ``text`` against the naive local wall clock ``reference``.

    Returns ``None`` when nothing in the phrase reads as a date or time.
    """
    ref = reference.replace(tzinfo=None, microsecond=0)
    scan = _Scanner(_normalize(text))

    if scan.take(_NOW_RE):
        return ParsedTime(ref.year, ref.month, ref.day, ref.hour, ref.minute, ref.second)

    if scan.take(_HALF_HOUR_RE):
        moment = ref + timedelta(minutes=30)
        return ParsedTime(moment.year, moment.month, moment.day, moment.hour, moment.minute, moment.second)

    offset_at: Optional[datetime] = None
    for pattern in _OFFSET_RES:
        match = scan.take(pattern)
        if match:
            offset_at = ref + _delta(_amount(match.group("amount")), match.group("unit"))
            break
    if offset_at is None:
        match = scan.take(_NEXT_PERIOD_RE)
        if match:
            offset_at = ref + _delta(1, match.group("unit"))
    if offset_at is not None and (offset_at - ref) < timedelta(days=1):
        # sub-day offsets pin the full time; nothing else in the phrase applies
        return ParsedTime(
            offset_at.year, offset_at.month, offset_at.day,
            offset_at.hour, offset_at.minute, offset_at.second,
        )

    day: Optional[date] = offset_at.date() if offset_at else None
    roll: Optional[str] = None
    # offsets and leap-day lookups pick the year on purpose
    year_certain = offset_at is not None
    part: Optional[str] = None

    if day is None:
        for pattern in (_ISO_DATE_RE, _SLASH_DATE_RE, _MONTH_DAY_RE, _DAY_MONTH_RE):
            match = scan.take(pattern, accept=lambda m: _read_date(m.group(0)) is not None)
            if match:
                month, mday, year = _read_date(match.group(0))
                if year is None:
                    day = _valid_date(ref.year, month, mday)
                    roll = "year"
                    if day is None:
                        return None
                    year_certain = day.year != ref.year
                else:
                    day = date(year, month, mday)
                    year_certain = True
                break

    if day is None:
        match = scan.take(_ANCHOR_RE)
        if match:
            anchor = match.group("anchor")
            if anchor.endswith("day after tomorrow"):
                day = ref.date() + timedelta(days=2)
            elif anchor.startswith("tom") or anchor.startswith("tm"):
                day = ref.date() + timedelta(days=1)
            elif anchor == "yesterday":
                day = ref.date() - timedelta(days=1)
            else:
                day = ref.date()
                if anchor == "tonight":
                    part = "night"

    if day is None:
        match = scan.take(_WEEKDAY_RE)
        if match:
            target = _WEEKDAYS[match.group("wd")[:3]]
            if match.group("mod") == "next":
                next_monday = ref.date() + timedelta(days=7 - ref.weekday())
                day = next_monday + timedelta(days=target)
            else:
                day = ref.date() + timedelta(days=(target - ref.weekday()) % 7)
                roll = "week"

    clock: Optional[tuple[int, int, int, Optional[int]]] = None
    match = scan.take(_NAMED_TIME_RE)
    if match:
        clock = (12, 0, 0, AM if match.group("word") == "midnight" else PM)
    else:
        match = scan.take(_CLOCK_RE, accept=_is_clock)
        if match:
            mer = match.group("mer")
            clock = (
                int(match.group("h")),
                int(match.group("m") or 0),
                int(match.group("s") or 0),
                {"am": AM, "pm": PM}.get(mer or ""),
            )

    if part is None:
        match = scan.take(_PART_RE)
        if match:
            part = match.group("part")

    if not scan.matched:
        return None

    date_only = False
    if clock is not None:
        hour, minute, second, meridiem = clock
        if part and meridiem is None and 1 <= hour <= 12:
            meridiem = _PARTS[part][1]
    elif part is not None:
        hour, meridiem = _PARTS[part]
        minute = second = 0
    elif offset_at is not None:
        hour, minute, second, meridiem = offset_at.hour, offset_at.minute, offset_at.second, None
    else:
        hour, minute, second, meridiem = 0, 0, 0, None
        date_only = day is not None

    if day is None:
        day = ref.date()
        roll = "day"

    parsed = ParsedTime(
        day.year, day.month, day.day, hour, minute, second,
        meridiem=meridiem, year_certain=year_certain, date_only=date_only,
    )
    return _roll_forward(parsed, ref, roll, explicit_time=not date_only)


def _is_clock(match: re.Match) -> bool:
    hour = int(match.group("h"))
    minute = int(match.group("m") or 0)
    second = int(match.group("s") or 0)
    mer = match.group("mer")
    if not (match.group("at") or match.group("m") or mer):
        return False
    if minute > 59 or second > 59:
        return False
    if mer in ("am", "pm"):
        return 1 <= hour <= 12
    return hour <= 23


def _roll_forward(parsed: ParsedTime, ref: datetime, roll: Optional[str], explicit_time: bool) -> ParsedTime:
    if roll is None:
        return parsed
    moment = parsed.local_datetime()
    if moment >= ref:
        return parsed
    # a date-only phrase naming today stays today
    if roll == "day" or (roll == "week" and explicit_time):
        moved = moment.date() + timedelta(days=1 if roll == "day" else 7)
    elif roll == "year" and moment.date() < ref.date():
        moved = _valid_date(parsed.year + 1, parsed.month, parsed.day)
        parsed.year_certain = parsed.year_certain or moved.year > ref.year + 1
    else:
        return parsed
    parsed.year, parsed.month, parsed.day = moved.year, moved.month, moved.day
    return parsed
