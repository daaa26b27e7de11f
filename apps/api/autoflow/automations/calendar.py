from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from autoflow.automations.errors import CalendarSettingsMissingError
from autoflow.automations.schemas import CalendarSettings


logger = logging.getLogger("autoflow.automations.calendar")

_DAY_NUMBERS = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}
DEFAULT_WEEKEND = frozenset({5, 6})
_ONE_DAY = timedelta(days=1)


class InvalidCalendarSettingsError(CalendarSettingsMissingError):
    """Settings exist but cannot describe a usable business day."""


def day_number(name: str | None) -> int | None:
    if not name:
        return None
    return _DAY_NUMBERS.get(name.strip().lower())


def parse_clock(value: str) -> int:
    """Minutes since midnight for "HH" or "HH:MM"."""
    raw = (value or "").strip()
    hour_part, _, minute_part = raw.partition(":")
    try:
        hour = int(hour_part)
        minute = int(minute_part) if minute_part else 0
    except ValueError as exc:
        raise InvalidCalendarSettingsError() from exc
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise InvalidCalendarSettingsError()
    return hour * 60 + minute


def resolve_zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("calendar.unknown_timezone", extra={"reason": str(name)})
        return ZoneInfo("UTC")


def weekend_days(settings: CalendarSettings | None) -> frozenset[int]:
    if settings is None:
        return DEFAULT_WEEKEND
    days = {number for number in (day_number(settings.weekend1), day_number(settings.weekend2)) if number is not None}
    return frozenset(days)


def office_window(settings: CalendarSettings) -> tuple[int, int]:
    start = parse_clock(settings.day_start)
    end = parse_clock(settings.day_end)
    if start > end:
        raise InvalidCalendarSettingsError()
    return start, end


def _to_local(instant: datetime, settings: CalendarSettings | None) -> datetime:
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(resolve_zone(settings.timezone if settings else None))


def _minutes(local: datetime) -> int:
    return local.hour * 60 + local.minute


def _at_minutes(local: datetime, minutes: int) -> datetime:
    return local.replace(hour=minutes // 60, minute=minutes % 60, second=0, microsecond=0)


def _skip_weekend(local: datetime, weekend: frozenset[int]) -> datetime:
    if local.weekday() not in weekend:
        return local
    following = local + _ONE_DAY
    if following.weekday() in weekend:
        following = following + _ONE_DAY
    return following


def is_weekend_day(instant: datetime, settings: CalendarSettings | None = None) -> bool:
    return _to_local(instant, settings).weekday() in weekend_days(settings)


def is_within_office_hours(instant: datetime, settings: CalendarSettings) -> bool:
    start, end = office_window(settings)
    return start <= _minutes(_to_local(instant, settings)) <= end


def is_valid_instant(
    instant: datetime,
    settings: CalendarSettings | None,
    respect_weekdays: bool,
    respect_office_hours: bool,
) -> bool:
    if not respect_weekdays and not respect_office_hours:
        return True
    if settings is None:
        raise CalendarSettingsMissingError()
    if respect_weekdays and is_weekend_day(instant, settings):
        return False
    if respect_office_hours and not is_within_office_hours(instant, settings):
        return False
    return True


def adjust_to_next_valid_instant(
    candidate: datetime,
    settings: CalendarSettings | None,
    respect_weekdays: bool,
    respect_office_hours: bool,
) -> datetime:
    """Earliest instant at or after `candidate` that the restriction flags allow.

    Weekend skip first, then the office-hours clamp, then a second weekend
    check because clamping past `day_end` moves to the next day. Every step
    only moves forward, so the result is reached in a bounded number of steps.
    """
    if not respect_weekdays and not respect_office_hours:
        return candidate
    if settings is None:
        raise CalendarSettingsMissingError()

    weekend = weekend_days(settings)
    local = _to_local(candidate, settings)

    if respect_weekdays:
        local = _skip_weekend(local, weekend)

    if respect_office_hours:
        start, end = office_window(settings)
        current = _minutes(local)
        if current < start:
            local = _at_minutes(local, start)
        elif current > end:
            local = _at_minutes(local + _ONE_DAY, start)
            if respect_weekdays:
                local = _skip_weekend(local, weekend)

    return local.astimezone(timezone.utc)


def fallback_instant(candidate: datetime, timezone_name: str | None, hour: int) -> datetime:
    """Next day at `hour`:00, used when restriction flags are set without settings."""
    zone = resolve_zone(timezone_name)
    if candidate.tzinfo is None:
        candidate = candidate.replace(tzinfo=timezone.utc)
    local = candidate.astimezone(zone) + _ONE_DAY
    return local.replace(hour=hour, minute=0, second=0, microsecond=0).astimezone(timezone.utc)


def compute_execute_at(
    base: datetime,
    delay_seconds: int,
    settings: CalendarSettings | None,
    respect_weekdays: bool,
    respect_office_hours: bool,
) -> datetime:
    candidate = base + timedelta(seconds=max(0, delay_seconds))
    return adjust_to_next_valid_instant(candidate, settings, respect_weekdays, respect_office_hours)
