from datetime import datetime, timedelta

import pytest

from seomcp.scheduler.periodicity import calculate_next_run, describe_schedule, validate_schedule


# 2026-03-11 is a Wednesday.
NOW = datetime(2026, 3, 11, 10, 30)


def test_daily_later_today():
    assert calculate_next_run("daily", 14, now=NOW) == datetime(2026, 3, 11, 14, 0)


def test_daily_hour_passed_rolls_to_tomorrow():
    assert calculate_next_run("daily", 6, now=NOW) == datetime(2026, 3, 12, 6, 0)


def test_daily_exact_slot_is_not_now():
    at_slot = datetime(2026, 3, 11, 6, 0)
    assert calculate_next_run("daily", 6, now=at_slot) == datetime(2026, 3, 12, 6, 0)


def test_weekly_next_matching_weekday():
    # Friday
    assert calculate_next_run("weekly", 9, 4, now=NOW) == datetime(2026, 3, 13, 9, 0)


def test_weekly_same_day_hour_passed_goes_a_week_out():
    # Wednesday 06:00 already passed
    assert calculate_next_run("weekly", 6, 2, now=NOW) == datetime(2026, 3, 18, 6, 0)


def test_weekly_defaults_to_monday():
    assert calculate_next_run("weekly", 6, None, now=NOW) == datetime(2026, 3, 16, 6, 0)


def test_monthly_this_month():
    assert calculate_next_run("monthly", 6, 20, now=NOW) == datetime(2026, 3, 20, 6, 0)


def test_monthly_rolls_into_next_month():
    assert calculate_next_run("monthly", 6, 1, now=NOW) == datetime(2026, 4, 1, 6, 0)


def test_monthly_december_rolls_into_next_year():
    assert calculate_next_run("monthly", 0, 5, now=datetime(2026, 12, 20)) == datetime(2027, 1, 5, 0, 0)


def test_monthly_day_capped_at_28():
    assert calculate_next_run("monthly", 6, 31, now=datetime(2026, 2, 1)) == datetime(2026, 2, 28, 6, 0)


def _sweep():
    start = datetime(2026, 1, 31, 23, 59, 59)
    for step in range(0, 24 * 40, 7):
        yield start + timedelta(hours=step)


@pytest.mark.parametrize("schedule, day", [("daily", None), ("weekly", 0), ("weekly", 6), ("monthly", 1), ("monthly", 28)])
def test_next_run_is_strictly_future_and_on_the_hour(schedule, day):
    for now in _sweep():
        nxt = calculate_next_run(schedule, 6, day, now=now)
        assert nxt > now
        assert (nxt.minute, nxt.second, nxt.microsecond) == (0, 0, 0)
        assert nxt.hour == 6


def test_daily_next_run_is_within_a_day():
    for now in _sweep():
        nxt = calculate_next_run("daily", 6, now=now)
        assert now < nxt <= now + timedelta(hours=24)


@pytest.mark.parametrize("day", range(7))
def test_weekly_next_run_lands_on_weekday_within_a_week(day):
    for now in _sweep():
        nxt = calculate_next_run("weekly", 6, day, now=now)
        assert nxt.weekday() == day
        assert now < nxt <= now + timedelta(days=7)


@pytest.mark.parametrize("day", [1, 15, 28, 29, 31])
def test_monthly_next_run_uses_capped_day(day):
    for now in _sweep():
        nxt = calculate_next_run("monthly", 6, day, now=now)
        assert nxt.day == min(day, 28)
        assert now < nxt <= now + timedelta(days=31)


def test_unknown_schedule_type_behaves_like_daily():
    for now in _sweep():
        assert calculate_next_run("hourly", 6, 3, now=now) == calculate_next_run("daily", 6, now=now)


@pytest.mark.parametrize(
    "schedule, hour, day, message",
    [
        ("hourly", 6, None, "Schedule must be 'daily', 'weekly', or 'monthly'"),
        ("daily", 24, None, "Hour must be 0-23 (UTC)"),
        ("daily", -1, None, "Hour must be 0-23 (UTC)"),
        ("daily", "6", None, "Hour must be 0-23 (UTC)"),
        ("daily", True, None, "Hour must be 0-23 (UTC)"),
        ("daily", 1.5, None, "Hour must be 0-23 (UTC)"),
        ("weekly", 6, -1, "Day of week must be 0-6 (Mon=0, Sun=6)"),
        ("weekly", 6, 7, "Day of week must be 0-6 (Mon=0, Sun=6)"),
        ("monthly", 6, 0, "Day of month must be 1-28"),
        ("monthly", 6, 29, "Day of month must be 1-28"),
        ("monthly", 6, 31, "Day of month must be 1-28"),
    ],
)
def test_validate_schedule_rejections(schedule, hour, day, message):
    assert validate_schedule(schedule, hour, day) == (False, message)


@pytest.mark.parametrize(
    "schedule, hour, day",
    [("daily", 0, None), ("daily", 23, 5), ("weekly", 6, None), ("weekly", 6, 6), ("monthly", 6, 28)],
)
def test_validate_schedule_accepts(schedule, hour, day):
    assert validate_schedule(schedule, hour, day) == (True, None)


def test_describe_schedule():
    assert describe_schedule("daily", 6) == "Daily at 06:00 UTC"
    assert describe_schedule("weekly", 14, 4) == "Every Friday at 14:00 UTC"
    assert describe_schedule("monthly", 0, 15) == "Monthly on day 15 at 00:00 UTC"
