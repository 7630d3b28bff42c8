from __future__ import annotations

from datetime import datetime, timedelta

INTERVAL_UNITS = ("days", "weeks", "months", "minutes")
BUSINESS_DAY_POLICIES = ("as_is", "move_earlier", "move_later")

# Legacy numeric interval codes still sent by older clients.
_LEGACY_UNITS = {1: "days", 2: "weeks", 3: "months", 4: "minutes"}


def coerce_unit(unit: str | int | None) -> str | None:
    if unit is None:
        return None
    if isinstance(unit, int) or str(unit).isdigit():
        return _LEGACY_UNITS.get(int(unit))
    return unit if unit in INTERVAL_UNITS else None


def add_interval(dt: datetime, unit: str, value: int) -> datetime:
    if unit == "minutes":
        return dt + timedelta(minutes=value)
    if unit == "days":
        return dt + timedelta(days=value)
    if unit == "weeks":
        return dt + timedelta(weeks=value)
    if unit == "months":
        # months are counted as 30 days
        return dt + timedelta(days=30 * value)
    raise ValueError(f"Unknown interval unit: {unit}")


def is_business_day(dt: datetime) -> bool:
    return dt.weekday() < 5


def apply_business_day_policy(dt: datetime, policy: str) -> datetime:
    """Weekends only; holidays are out of scope."""
    if policy == "as_is" or is_business_day(dt):
        return dt
    step = timedelta(days=-1 if policy == "move_earlier" else 1)
    while not is_business_day(dt):
        dt = dt + step
    return dt


def next_occurrence(
    scheduled_at: datetime,
    *,
    unit: str | None,
    value: int,
    occurrence_count: int,
    max_occurrences: int,
    policy: str = "as_is",
) -> datetime | None:
    """Due time of the next occurrence, or None when the series is done."""
    unit = coerce_unit(unit)
    if not unit or value <= 0:
        return None
    if occurrence_count >= max_occurrences:
        return None
    return apply_business_day_policy(add_interval(scheduled_at, unit, value), policy)
