from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

import pytest

from autoflow.automations.calendar import (
    InvalidCalendarSettingsError,
    adjust_to_next_valid_instant,
    compute_execute_at,
    fallback_instant,
    is_valid_instant,
    is_weekend_day,
    is_within_office_hours,
    parse_clock,
    weekend_days,
)
from autoflow.automations.errors import CalendarSettingsMissingError
from autoflow.automations.schemas import CalendarSettings


# 2026-03-04 is a Wednesday.
WEDNESDAY = datetime(2026, 3, 4, tzinfo=timezone.utc)
FRIDAY = datetime(2026, 3, 6, tzinfo=timezone.utc)
SATURDAY = datetime(2026, 3, 7, tzinfo=timezone.utc)
SUNDAY = datetime(2026, 3, 8, tzinfo=timezone.utc)
MONDAY = datetime(2026, 3, 9, tzinfo=timezone.utc)


def _at(day: datetime, hour: int, minute: int = 0) -> datetime:
    return day.replace(hour=hour, minute=minute)


@pytest.fixture()
def office() -> CalendarSettings:
    return CalendarSettings(day_start="10:00", day_end="18:00", weekend1="Saturday", weekend2="Sunday")


def test_parse_clock_accepts_hour_only_and_hour_minute() -> None:
    assert parse_clock("9") == 540
    assert parse_clock("09") == 540
    assert parse_clock("09:30") == 570
    assert parse_clock(" 17:05 ") == 17 * 60 + 5


@pytest.mark.parametrize("raw", ["", "25:00", "12:75", "noon"])
def test_parse_clock_rejects_garbage(raw: str) -> None:
    with pytest.raises(InvalidCalendarSettingsError):
        parse_clock(raw)


def test_default_calendar_settings() -> None:
    settings = CalendarSettings()
    assert settings.day_start == "09:00"
    assert settings.day_end == "17:00"
    assert weekend_days(settings) == frozenset({5, 6})
    assert weekend_days(None) == frozenset({5, 6})


def test_weekend_and_office_hour_checks(office: CalendarSettings) -> None:
    assert is_weekend_day(_at(SATURDAY, 12), office)
    assert is_weekend_day(_at(SUNDAY, 12), office)
    assert not is_weekend_day(_at(MONDAY, 12), office)

    assert is_within_office_hours(_at(WEDNESDAY, 10), office)
    assert is_within_office_hours(_at(WEDNESDAY, 18), office)
    assert not is_within_office_hours(_at(WEDNESDAY, 18, 1), office)
    assert not is_within_office_hours(_at(WEDNESDAY, 9, 59), office)


def test_saturday_moves_to_monday_keeping_time(office: CalendarSettings) -> None:
    assert adjust_to_next_valid_instant(_at(SATURDAY, 11), office, True, False) == _at(MONDAY, 11)


def test_sunday_moves_to_monday_keeping_time(office: CalendarSettings) -> None:
    assert adjust_to_next_valid_instant(_at(SUNDAY, 11), office, True, False) == _at(MONDAY, 11)


def test_before_office_hours_clamps_to_same_day_start(office: CalendarSettings) -> None:
    assert adjust_to_next_valid_instant(_at(WEDNESDAY, 8), office, False, True) == _at(WEDNESDAY, 10)


def test_after_office_hours_moves_to_next_day_start(office: CalendarSettings) -> None:
    thursday = WEDNESDAY + timedelta(days=1)
    assert adjust_to_next_valid_instant(_at(WEDNESDAY, 19), office, False, True) == _at(thursday, 10)


def test_friday_evening_with_both_flags_moves_to_monday_start(office: CalendarSettings) -> None:
    assert adjust_to_next_valid_instant(_at(FRIDAY, 19), office, True, True) == _at(MONDAY, 10)


def test_saturday_morning_with_both_flags_moves_to_monday_start(office: CalendarSettings) -> None:
    assert adjust_to_next_valid_instant(_at(SATURDAY, 8), office, True, True) == _at(MONDAY, 10)


def test_valid_instant_is_unchanged(office: CalendarSettings) -> None:
    candidate = _at(WEDNESDAY, 12, 15)
    assert is_valid_instant(candidate, office, True, True)
    assert adjust_to_next_valid_instant(candidate, office, True, True) == candidate


def test_office_hours_are_evaluated_in_company_timezone() -> None:
    settings = CalendarSettings(day_start="09:00", day_end="17:00", timezone="America/New_York")
    # 12:00 UTC is 07:00 in New York before the March DST switch.
    adjusted = adjust_to_next_valid_instant(_at(WEDNESDAY, 12), settings, False, True)
    assert adjusted == _at(WEDNESDAY, 14)
    assert adjusted.tzinfo == timezone.utc


def test_no_flags_never_needs_settings() -> None:
    candidate = _at(SATURDAY, 3)
    assert is_valid_instant(candidate, None, False, False)
    assert adjust_to_next_valid_instant(candidate, None, False, False) == candidate


def test_flags_without_settings_raise() -> None:
    with pytest.raises(CalendarSettingsMissingError):
        adjust_to_next_valid_instant(_at(SATURDAY, 3), None, True, False)
    with pytest.raises(CalendarSettingsMissingError):
        is_valid_instant(_at(SATURDAY, 3), None, False, True)


def test_inverted_office_window_counts_as_missing_settings() -> None:
    settings = CalendarSettings(day_start="18:00", day_end="09:00")
    with pytest.raises(CalendarSettingsMissingError):
        adjust_to_next_valid_instant(_at(WEDNESDAY, 12), settings, False, True)


def test_fallback_instant_is_next_day_at_hour() -> None:
    assert fallback_instant(_at(WEDNESDAY, 15, 30), "UTC", 9) == _at(WEDNESDAY + timedelta(days=1), 9)


def test_compute_execute_at_adds_delay_then_adjusts(office: CalendarSettings) -> None:
    assert compute_execute_at(_at(WEDNESDAY, 12), 3600, None, False, False) == _at(WEDNESDAY, 13)
    assert compute_execute_at(_at(FRIDAY, 17), 7200, office, True, True) == _at(MONDAY, 10)


@pytest.mark.parametrize("seed", [3, 17, 2026])
@pytest.mark.parametrize("timezone_name", ["UTC", "America/New_York"])
def test_adjusted_instant_is_valid_and_never_earlier(seed: int, timezone_name: str) -> None:
    rng = random.Random(seed)
    settings = CalendarSettings(day_start="08:30", day_end="17:45", timezone=timezone_name)
    window_start = datetime(2026, 2, 23, tzinfo=timezone.utc)

    for _ in range(200):
        candidate = window_start + timedelta(minutes=rng.randrange(0, 21 * 24 * 60))
        respect_weekdays = rng.random() < 0.7
        respect_office_hours = rng.random() < 0.7
        adjusted = adjust_to_next_valid_instant(candidate, settings, respect_weekdays, respect_office_hours)

        assert adjusted >= candidate
        assert is_valid_instant(adjusted, settings, respect_weekdays, respect_office_hours)
        assert adjust_to_next_valid_instant(adjusted, settings, respect_weekdays, respect_office_hours) == adjusted
        assert adjusted - candidate <= timedelta(days=4)
