"""Tests for next-fire-time calculation of recurring campaigns."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from pushcast.scheduling.recurrence import RecurrenceRule, next_fire_time
from tests.factories import utc


# ---------------------------------------------------------------------------
# daily
# ---------------------------------------------------------------------------

class TestDaily:
    def test_before_target_fires_today(self):
        rule = RecurrenceRule(frequency="daily", hour=9, minute=0)
        assert next_fire_time(rule, utc(2026, 3, 2, 8, 0)) == utc(2026, 3, 2, 9, 0)

    def test_after_target_fires_tomorrow(self):
        rule = RecurrenceRule(frequency="daily", hour=9, minute=0)
        assert next_fire_time(rule, utc(2026, 3, 2, 10, 0)) == utc(2026, 3, 3, 9, 0)

    def test_exactly_at_target_fires_tomorrow(self):
        rule = RecurrenceRule(frequency="daily", hour=9, minute=0)
        assert next_fire_time(rule, utc(2026, 3, 2, 9, 0)) == utc(2026, 3, 3, 9, 0)

    def test_seconds_are_zeroed(self):
        rule = RecurrenceRule(frequency="daily", hour=9, minute=30)
        result = next_fire_time(rule, datetime(2026, 3, 2, 8, 15, 42, 123, tzinfo=timezone.utc))
        assert result == utc(2026, 3, 2, 9, 30)


# ---------------------------------------------------------------------------
# weekly
# ---------------------------------------------------------------------------

class TestWeekly:
    def test_sunday_is_day_zero(self):
        rule = RecurrenceRule(frequency="weekly", day_of_week=0, hour=9)
        # 2026-03-02 is a Monday; next Sunday is the 8th.
        assert next_fire_time(rule, utc(2026, 3, 2, 12, 0)) == utc(2026, 3, 8, 9, 0)

    def test_later_today_fires_today(self):
        rule = RecurrenceRule(frequency="weekly", day_of_week=1, hour=15)
        assert next_fire_time(rule, utc(2026, 3, 2, 12, 0)) == utc(2026, 3, 2, 15, 0)

    def test_passed_today_fires_next_week(self):
        rule = RecurrenceRule(frequency="weekly", day_of_week=1, hour=9)
        assert next_fire_time(rule, utc(2026, 3, 2, 9, 0)) == utc(2026, 3, 9, 9, 0)

    def test_earlier_weekday_wraps(self):
        rule = RecurrenceRule(frequency="weekly", day_of_week=6, hour=9)
        assert next_fire_time(rule, utc(2026, 3, 2, 12, 0)) == utc(2026, 3, 7, 9, 0)


# ---------------------------------------------------------------------------
# monthly
# ---------------------------------------------------------------------------

class TestMonthly:
    def test_later_this_month(self):
        rule = RecurrenceRule(frequency="monthly", day_of_month=15, hour=8)
        assert next_fire_time(rule, utc(2026, 3, 2, 12, 0)) == utc(2026, 3, 15, 8, 0)

    def test_passed_this_month_rolls_over(self):
        rule = RecurrenceRule(frequency="monthly", day_of_month=1, hour=8)
        assert next_fire_time(rule, utc(2026, 3, 2, 12, 0)) == utc(2026, 4, 1, 8, 0)

    def test_day_31_clamps_in_february(self):
        rule = RecurrenceRule(frequency="monthly", day_of_month=31, hour=0)
        result = next_fire_time(rule, utc(2026, 2, 1, 12, 0))
        assert result == utc(2026, 2, 28, 0, 0)

    def test_day_31_clamps_in_leap_february(self):
        rule = RecurrenceRule(frequency="monthly", day_of_month=31, hour=0)
        assert next_fire_time(rule, utc(2028, 2, 1, 12, 0)) == utc(2028, 2, 29, 0, 0)

    def test_december_rolls_into_january(self):
        rule = RecurrenceRule(frequency="monthly", day_of_month=1, hour=0)
        assert next_fire_time(rule, utc(2026, 12, 5, 0, 0)) == utc(2027, 1, 1, 0, 0)

    def test_clamped_next_month(self):
        rule = RecurrenceRule(frequency="monthly", day_of_month=31, hour=9)
        assert next_fire_time(rule, utc(2026, 1, 31, 10, 0)) == utc(2026, 2, 28, 9, 0)


# ---------------------------------------------------------------------------
# interval
# ---------------------------------------------------------------------------

class TestInterval:
    def test_without_last_sent_fires_at_reference(self):
        rule = RecurrenceRule(frequency="interval", interval_value=2, interval_unit="hours")
        reference = utc(2026, 3, 2, 12, 0)
        assert next_fire_time(rule, reference) <= reference

    def test_adds_interval_to_last_sent(self):
        last_sent = utc(2026, 3, 2, 10, 0)
        rule = RecurrenceRule(frequency="interval", interval_value=2, interval_unit="hours", last_sent=last_sent)
        result = next_fire_time(rule, utc(2026, 3, 2, 11, 0))
        assert result >= last_sent + timedelta(hours=2)
        assert result == utc(2026, 3, 2, 12, 0)

    def test_minutes_and_days(self):
        last_sent = utc(2026, 3, 2, 10, 0)
        minutes = RecurrenceRule(frequency="interval", interval_value=15, interval_unit="minutes", last_sent=last_sent)
        days = RecurrenceRule(frequency="interval", interval_value=3, interval_unit="days", last_sent=last_sent)
        assert next_fire_time(minutes, last_sent) == utc(2026, 3, 2, 10, 15)
        assert next_fire_time(days, last_sent) == utc(2026, 3, 5, 10, 0)


# ---------------------------------------------------------------------------
# parsing
# ---------------------------------------------------------------------------

class TestFromDict:
    def test_reads_camel_case_keys(self):
        rule = RecurrenceRule.from_dict(
            {
                "frequency": "interval",
                "intervalValue": 30,
                "intervalUnit": "minutes",
                "lastSent": "2026-03-02T10:00:00.000Z",
            }
        )
        assert rule.interval == timedelta(minutes=30)
        assert rule.last_sent == utc(2026, 3, 2, 10, 0)

    def test_legacy_day_key_is_day_of_month(self):
        assert RecurrenceRule.from_dict({"frequency": "monthly", "day": 12}).day_of_month == 12

    def test_malformed_values_fall_back_to_defaults(self):
        rule = RecurrenceRule.from_dict(
            {"frequency": "fortnightly", "hour": "late", "minute": 99, "dayOfWeek": 9, "intervalUnit": "weeks"}
        )
        assert rule == RecurrenceRule()

    def test_none_is_the_default_rule(self):
        assert RecurrenceRule.from_dict(None) == RecurrenceRule()

    def test_unparseable_last_sent_is_ignored(self):
        assert RecurrenceRule.from_dict({"frequency": "interval", "last_sent": "yesterday"}).last_sent is None


def test_wall_clock_fields_follow_reference_timezone():
    tz = ZoneInfo("America/New_York")
    rule = RecurrenceRule(frequency="daily", hour=9)
    result = next_fire_time(rule, datetime(2026, 3, 2, 8, 0, tzinfo=tz))
    assert result == datetime(2026, 3, 2, 9, 0, tzinfo=tz)
    assert result.astimezone(timezone.utc) == utc(2026, 3, 2, 14, 0)
