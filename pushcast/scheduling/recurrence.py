"""Next-fire-time calculation for recurring campaigns.

``next_fire_time`` is pure and total: a malformed rule never raises, its
missing or unparseable fields fall back to defaults (hour 0, minute 0,
Sunday, the 1st of the month, one hour).

Wall-clock fields (``hour``, ``minute``, weekday, day of month) are read in
the timezone of the reference datetime.  ``day_of_week`` counts from
Sunday = 0 to Saturday = 6.
"""
from __future__ import annotations

import calendar
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any

FREQUENCIES = frozenset({"daily", "weekly", "monthly", "interval"})

_INTERVAL_UNITS: dict[str, timedelta] = {
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
}

# camelCase keys written by the dashboard, and the legacy ``day`` key.
_ALIASES: dict[str, tuple[str, ...]] = {
    "day_of_week": ("day_of_week", "dayOfWeek"),
    "day_of_month": ("day_of_month", "dayOfMonth", "day"),
    "interval_value": ("interval_value", "intervalValue"),
    "interval_unit": ("interval_unit", "intervalUnit"),
    "last_sent": ("last_sent", "lastSent"),
}


@dataclass(frozen=True)
class RecurrenceRule:
    frequency: str = "daily"
    hour: int = 0
    minute: int = 0
    day_of_week: int = 0
    day_of_month: int = 1
    interval_value: int = 1
    interval_unit: str = "hours"
    last_sent: datetime | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> RecurrenceRule:
        """Parse a stored ``recurring_schedule`` JSON object leniently."""
        raw = raw or {}

        def pick(field: str) -> Any:
            for key in _ALIASES.get(field, (field,)):
                if raw.get(key) is not None:
                    return raw[key]
            return None

        frequency = str(raw.get("frequency") or "").lower()
        unit = str(pick("interval_unit") or "").lower()
        return cls(
            frequency=frequency if frequency in FREQUENCIES else "daily",
            hour=_bounded_int(raw.get("hour"), 0, 0, 23),
            minute=_bounded_int(raw.get("minute"), 0, 0, 59),
            day_of_week=_bounded_int(pick("day_of_week"), 0, 0, 6),
            day_of_month=_bounded_int(pick("day_of_month"), 1, 1, 31),
            interval_value=_bounded_int(pick("interval_value"), 1, 1, None),
            interval_unit=unit if unit in _INTERVAL_UNITS else "hours",
            last_sent=_parse_datetime(pick("last_sent")),
        )

    def with_last_sent(self, value: datetime | None) -> RecurrenceRule:
        return replace(self, last_sent=value)

    @property
    def interval(self) -> timedelta:
        return _INTERVAL_UNITS[self.interval_unit] * self.interval_value


def next_fire_time(rule: RecurrenceRule, reference: datetime) -> datetime:
    """Return the first fire time of *rule* strictly after *reference*.

    The interval frequency is the exception: it returns
    ``last_sent + interval``, or *reference* itself when the rule has
    never fired.
    """
    if rule.frequency == "interval":
        if rule.last_sent is None:
            return reference
        last_sent = rule.last_sent
        if reference.tzinfo is not None and last_sent.tzinfo is None:
            last_sent = last_sent.replace(tzinfo=reference.tzinfo)
        return last_sent + rule.interval

    target = reference.replace(hour=rule.hour, minute=rule.minute, second=0, microsecond=0)

    if rule.frequency == "weekly":
        today = (reference.weekday() + 1) % 7  # Sunday = 0
        days_ahead = rule.day_of_week - today
        if days_ahead < 0 or (days_ahead == 0 and target <= reference):
            days_ahead += 7
        return target + timedelta(days=days_ahead)

    if rule.frequency == "monthly":
        candidate = _on_day_of_month(target, reference.year, reference.month, rule.day_of_month)
        if candidate <= reference:
            year, month = _next_month(reference.year, reference.month)
            candidate = _on_day_of_month(target, year, month, rule.day_of_month)
        return candidate

    # daily
    if target <= reference:
        target += timedelta(days=1)
    return target


def _on_day_of_month(base: datetime, year: int, month: int, day: int) -> datetime:
    last_day = calendar.monthrange(year, month)[1]
    return base.replace(year=year, month=month, day=min(day, last_day))


def _next_month(year: int, month: int) -> tuple[int, int]:
    if month == 12:
        return year + 1, 1
    return year, month + 1


def _bounded_int(value: Any, default: int, low: int, high: int | None) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    if number < low or (high is not None and number > high):
        return default
    return number


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        # ``Z`` suffix as written by JavaScript's toISOString()
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
