from __future__ import annotations

from datetime import date

import pytest

from ehrm.errors import ValidationError
from ehrm.schedule import (
    LegacySchedule,
    WeeklyPattern,
    dump_schedule,
    load_schedule,
    normalize_weekly_schedule,
    parse_weekday,
    summarize_schedule,
)


def test_monday_wednesday_pattern_over_ten_days():
    result = normalize_weekly_schedule(
        {"days": ["Monday", "Wednesday"], "start_date": "2024-01-01", "end_date": "2024-01-10"}
    )

    by_name = {entry.name: entry for entry in result.days}
    assert by_name["MONDAY"].dates == (date(2024, 1, 1), date(2024, 1, 8))
    assert by_name["WEDNESDAY"].dates == (date(2024, 1, 3), date(2024, 1, 10))
    assert result.derived_start == date(2024, 1, 1)
    assert result.derived_end == date(2024, 1, 10)
    assert result.occurrences == [date(2024, 1, 1), date(2024, 1, 3), date(2024, 1, 8), date(2024, 1, 10)]
    assert result.reference_week == (date(2024, 1, 1), date(2024, 1, 7))


def test_open_ended_pattern_has_no_derived_end():
    result = normalize_weekly_schedule({"days": [1, 3], "start_date": "2024-01-01"})

    assert result.derived_end is None
    assert result.occurrences == [date(2024, 1, 1), date(2024, 1, 3)]
    assert all(entry.last_date is None for entry in result.days)


def test_fallback_dates_apply_when_pattern_has_none():
    result = normalize_weekly_schedule(["Friday"], fallback_start=date(2024, 2, 1), fallback_end="2024-02-29")

    assert result.derived_start == date(2024, 2, 2)
    assert result.derived_end == date(2024, 2, 23)
    assert len(result.occurrences) == 4
    assert result.reference_week == (date(2024, 1, 29), date(2024, 2, 4))


def test_time_of_day_is_discarded():
    result = normalize_weekly_schedule({"days": ["MON"], "start_date": "2024-01-01T18:45:00Z"})

    assert result.derived_start == date(2024, 1, 1)


@pytest.mark.parametrize(
    ("token", "expected"),
    [
        (0, 0),
        (7, 0),
        (1, 1),
        ("6", 6),
        ("sunday", 0),
        ("Tue", 2),
        ("Senin", 1),
        ("Jum'at", 5),
        ("sab", 6),
        ("HARI3", 3),
        ("hari 7", 0),
        ({"dayIndex": 4}, 4),
        ({"name": "Rabu"}, 3),
    ],
)
def test_weekday_tokens(token, expected):
    assert parse_weekday(token) == expected


def test_unknown_tokens_are_reported_but_do_not_fail_the_pattern():
    result = normalize_weekly_schedule({"days": ["Monday", "Funday", None], "start_date": "2024-01-01"})

    assert [entry.index for entry in result.days] == [1]
    assert result.ignored_tokens == ("Funday", None)


@pytest.mark.parametrize(
    "raw",
    [
        {"type": "MONTHLY", "days": ["Monday"], "start_date": "2024-01-01"},
        {"days": ["Monday"]},
        {"days": ["Monday"], "start_date": "2024-01-10", "end_date": "2024-01-01"},
        {"days": [], "start_date": "2024-01-01"},
        {"days": ["Funday", "Blursday"], "start_date": "2024-01-01"},
        {"days": ["Friday"], "start_date": "2024-01-01", "end_date": "2024-01-02"},
        "Monday",
    ],
)
def test_invalid_patterns_raise_validation_error(raw):
    with pytest.raises(ValidationError):
        normalize_weekly_schedule(raw)


def test_storage_adapter_keeps_weekly_and_legacy_values_apart():
    pattern = WeeklyPattern(weekdays=(1, 3), start_date=date(2024, 1, 1), end_date=None)

    assert load_schedule(dump_schedule(pattern)) == pattern
    assert load_schedule("Senin - Jumat") == LegacySchedule("Senin - Jumat")
    assert load_schedule('["Senin", "Rabu"]') == WeeklyPattern(weekdays=(1, 3))
    assert load_schedule("") is None
    assert summarize_schedule(pattern) == {"type": "WEEKLY", "days": ["MONDAY", "WEDNESDAY"]}
