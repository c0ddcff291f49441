from datetime import date, datetime

import pytest
import pytz

from recurrence import is_scheduled, occurs_on, scheduled_instant
from schemas import Frequency, RuleStatus, ScheduleRule


def rule(**overrides):
    data = dict(senior_id="s1", name="Metformin", time_slots=["08:00", "20:00"], start_date=date(2024, 1, 1))
    data.update(overrides)
    return ScheduleRule(**data)


def test_daily_returns_every_slot():
    r = rule()
    assert occurs_on(r, date(2024, 3, 15)) == ("08:00", "20:00")


def test_same_answer_every_call():
    r = rule(frequency=Frequency.INTERVAL_DAYS, interval_days=2)
    for day in (date(2024, 1, 1), date(2024, 1, 2), date(2024, 2, 29)):
        assert occurs_on(r, day) == occurs_on(r, day)


def test_interval_days_counts_from_start_date():
    r = rule(frequency=Frequency.INTERVAL_DAYS, interval_days=3)
    for day in (date(2024, 1, 1), date(2024, 1, 4), date(2024, 1, 7)):
        assert occurs_on(r, day)
    for day in (date(2024, 1, 2), date(2024, 1, 3), date(2024, 1, 5)):
        assert occurs_on(r, day) == ()


def test_specific_weekdays_uses_iso_numbers():
    # 2024-01-01 is a Monday
    r = rule(frequency=Frequency.SPECIFIC_WEEKDAYS, specific_week_days=[1, 3, 7])
    assert occurs_on(r, date(2024, 1, 1))
    assert occurs_on(r, date(2024, 1, 2)) == ()
    assert occurs_on(r, date(2024, 1, 3))
    assert occurs_on(r, date(2024, 1, 7))


def test_date_range_is_inclusive():
    r = rule(end_date=date(2024, 1, 10))
    assert occurs_on(r, date(2023, 12, 31)) == ()
    assert occurs_on(r, date(2024, 1, 1))
    assert occurs_on(r, date(2024, 1, 10))
    assert occurs_on(r, date(2024, 1, 11)) == ()


def test_paused_rule_schedules_nothing():
    r = rule(status=RuleStatus.PAUSED)
    assert occurs_on(r, date(2024, 1, 5)) == ()
    assert occurs_on(r, date(2024, 1, 5), include_paused=True) == ("08:00", "20:00")


def test_scheduled_instant_uses_given_time_zone():
    tz = pytz.timezone("Asia/Shanghai")
    at = scheduled_instant(date(2024, 1, 1), "08:00", tz)
    assert at.astimezone(pytz.utc) == datetime(2024, 1, 1, 0, 0, tzinfo=pytz.utc)


def test_is_scheduled():
    r = rule()
    assert is_scheduled(r, datetime(2024, 1, 2, 20, 0, tzinfo=pytz.utc), pytz.utc)
    assert not is_scheduled(r, datetime(2024, 1, 2, 9, 0, tzinfo=pytz.utc), pytz.utc)
    assert not is_scheduled(r, datetime(2023, 12, 31, 8, 0, tzinfo=pytz.utc), pytz.utc)


def test_slots_are_normalized():
    r = rule(time_slots=["20:00", "8:00", "08:00"])
    assert r.time_slots == ["08:00", "20:00"]


@pytest.mark.parametrize("overrides", [
    {"time_slots": []},
    {"time_slots": ["25:00"]},
    {"time_slots": ["noon"]},
    {"frequency": Frequency.INTERVAL_DAYS, "interval_days": 0},
    {"frequency": Frequency.SPECIFIC_WEEKDAYS, "specific_week_days": []},
    {"frequency": Frequency.SPECIFIC_WEEKDAYS, "specific_week_days": [0]},
    {"end_date": date(2023, 12, 31)},
    {"current_stock": -1},
])
def test_invalid_rules_are_rejected(overrides):
    with pytest.raises(ValueError):
        rule(**overrides)


def test_dose_in_dst_gap_is_still_scheduled():
    tz = pytz.timezone("America/New_York")
    r = rule(time_slots=["02:30"], start_date=date(2024, 3, 10))
    at = scheduled_instant(date(2024, 3, 10), "02:30", tz)
    assert at.astimezone(pytz.utc) == datetime(2024, 3, 10, 7, 30, tzinfo=pytz.utc)
    assert is_scheduled(r, datetime(2024, 3, 10, 7, 30, tzinfo=pytz.utc), tz)
    assert is_scheduled(r, datetime(2024, 3, 11, 6, 30, tzinfo=pytz.utc), tz)
    assert not is_scheduled(r, datetime(2024, 3, 11, 7, 30, tzinfo=pytz.utc), tz)
