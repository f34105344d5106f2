from datetime import datetime

import pytest

from app.services import time_grammar
from app.services.time_grammar import AM, PM, to_24_hour

# Saturday
REF = datetime(2024, 6, 1, 10, 0)


def parse_local(text, ref=REF):
    parsed = time_grammar.parse(text, ref)
    return parsed.local_datetime() if parsed else None


@pytest.mark.parametrize(
    "text, expected",
    [
        ("now", datetime(2024, 6, 1, 10, 0)),
        ("in half an hour", datetime(2024, 6, 1, 10, 30)),
        ("in 45 minutes", datetime(2024, 6, 1, 10, 45)),
        ("two hours from now", datetime(2024, 6, 1, 12, 0)),
        ("in a week", datetime(2024, 6, 8, 10, 0)),
        ("tomorrow", datetime(2024, 6, 2, 0, 0)),
        ("day after tomorrow at 7:15pm", datetime(2024, 6, 3, 19, 15)),
        ("tomorrow morning", datetime(2024, 6, 2, 9, 0)),
        ("this afternoon", datetime(2024, 6, 1, 15, 0)),
        ("monday evening", datetime(2024, 6, 3, 18, 0)),
        ("at 11pm", datetime(2024, 6, 1, 23, 0)),
        ("at 8am", datetime(2024, 6, 2, 8, 0)),
        ("5/20", datetime(2025, 5, 20, 0, 0)),
        ("7/4/2024 at 9am", datetime(2024, 7, 4, 9, 0)),
        ("the 5th of july", datetime(2024, 7, 5, 0, 0)),
        ("2024-06-01", datetime(2024, 6, 1, 0, 0)),
        ("feb 29", datetime(2028, 2, 29, 0, 0)),
    ],
)
def test_parse(text, expected):
    assert parse_local(text) == expected


def test_today_is_never_moved():
    assert parse_local("today") == datetime(2024, 6, 1, 0, 0)
    assert parse_local("yesterday at 3pm") == datetime(2024, 5, 31, 15, 0)


def test_weekday_today_with_past_time_moves_a_week():
    assert parse_local("saturday at 9am") == datetime(2024, 6, 8, 9, 0)
    assert parse_local("saturday at 4pm") == datetime(2024, 6, 1, 16, 0)


def test_next_weekday_is_in_the_following_week():
    wednesday = datetime(2024, 6, 5, 10, 0)
    assert parse_local("next monday", wednesday) == datetime(2024, 6, 10, 0, 0)
    assert parse_local("next friday", wednesday) == datetime(2024, 6, 14, 0, 0)
    assert parse_local("friday", wednesday) == datetime(2024, 6, 7, 0, 0)


def test_punctuation_and_dotted_meridiem():
    assert parse_local("Tomorrow, at 3 p.m.!") == datetime(2024, 6, 2, 15, 0)


def test_explicit_year_is_certain():
    parsed = time_grammar.parse("march 3 2023", REF)
    assert parsed.year_certain
    assert parsed.local_datetime() == datetime(2023, 3, 3, 0, 0)


def test_date_only_flag():
    assert time_grammar.parse("tomorrow", REF).date_only
    assert not time_grammar.parse("tomorrow at 5pm", REF).date_only


@pytest.mark.parametrize("text", ["buy milk", "someday", "call 2 people", "13/45"])
def test_unparseable(text):
    assert time_grammar.parse(text, REF) is None


def test_to_24_hour():
    assert to_24_hour(12, PM) == 12
    assert to_24_hour(12, AM) == 0
    assert to_24_hour(3, PM) == 15
    assert to_24_hour(15, None) == 15
