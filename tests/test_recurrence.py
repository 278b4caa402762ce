from datetime import datetime, timedelta, timezone as dt_timezone

import pytest

from followup.reminders.errors import ValidationError
from followup.reminders.recurrence_models import (
    CommonPatterns,
    RecurrenceCalculator,
    RecurrencePattern,
    RecurrenceType,
)


BASE = datetime(2025, 3, 1, 10, 30, tzinfo=dt_timezone.utc)


@pytest.mark.parametrize(
    "pattern, days",
    [
        (CommonPatterns.daily(), 1),
        (CommonPatterns.every_3_days(), 3),
        (CommonPatterns.weekly(), 7),
        (CommonPatterns.biweekly(), 14),
        (CommonPatterns.every_n_days(10), 10),
        (CommonPatterns.every_n_days(365), 365),
    ],
)
def test_next_date_moves_forward_by_interval(pattern, days):
    nxt = RecurrenceCalculator.next_date(BASE, pattern)
    assert nxt > BASE
    assert nxt - BASE == timedelta(days=days)


def test_next_date_keeps_past_results():
    long_ago = datetime(2020, 1, 1, tzinfo=dt_timezone.utc)
    assert RecurrenceCalculator.next_date(long_ago, CommonPatterns.weekly()) == datetime(2020, 1, 8, tzinfo=dt_timezone.utc)


def test_one_time_has_no_successor():
    with pytest.raises(ValueError):
        RecurrenceCalculator.next_date(BASE, CommonPatterns.one_time())


def test_parse_presets_and_defaults():
    assert RecurrencePattern.parse("weekly").type == RecurrenceType.WEEKLY
    assert RecurrencePattern.parse(None).type == RecurrenceType.ONE_TIME
    assert not RecurrencePattern.parse("one-time").is_recurring
    assert RecurrencePattern.parse("custom", 5).interval_days == 5


@pytest.mark.parametrize(
    "frequency, days",
    [
        ("fortnightly", None),
        ("WEEKLY", None),
        ("custom", None),
        ("custom", 0),
        ("custom", 366),
        ("custom", 2.5),
        ("custom", True),
        ("weekly", 7),
    ],
)
def test_parse_rejects_malformed_frequency(frequency, days):
    with pytest.raises(ValidationError):
        RecurrencePattern.parse(frequency, days)


def test_pattern_dict_round_trip():
    pattern = CommonPatterns.every_n_days(4)
    assert RecurrencePattern.from_dict(pattern.to_dict()) == pattern
