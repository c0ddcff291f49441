"""
Recurrence evaluation: which time slots of a rule fall on a calendar date.

Everything here is a pure function of its arguments. The senior's time zone
is always passed in; nothing reads the clock.
"""
from datetime import date, datetime, time, timedelta
from typing import Iterator, Tuple

from schemas import Frequency, RuleStatus, ScheduleRule


def _in_range(rule: ScheduleRule, day: date) -> bool:
    if day < rule.start_date:
        return False
    return rule.end_date is None or day <= rule.end_date


def _matches_frequency(rule: ScheduleRule, day: date) -> bool:
    kind = rule.frequency
    if kind is Frequency.DAILY:
        return True
    if kind is Frequency.SPECIFIC_WEEKDAYS:
        return day.isoweekday() in rule.specific_week_days
    if kind is Frequency.INTERVAL_DAYS:
        return (day - rule.start_date).days % rule.interval_days == 0
    raise AssertionError(f"Unhandled frequency: {kind!r}")


def occurs_on(rule: ScheduleRule, day: date, include_paused: bool = False) -> Tuple[str, ...]:
    """Return the HH:MM slots the rule schedules on ``day``, or an empty tuple.

    Paused rules schedule nothing unless ``include_paused`` is set, which is
    used when validating a dose that was due before the rule got paused.
    """
    if rule.status is RuleStatus.PAUSED and not include_paused:
        return ()
    if not _in_range(rule, day) or not _matches_frequency(rule, day):
        return ()
    return tuple(rule.time_slots)


def parse_slot(slot: str) -> time:
    hour, minute = slot.split(":")
    return time(int(hour), int(minute))


def scheduled_instant(day: date, slot: str, tz) -> datetime:
    """Aware instant of ``slot`` on ``day`` in time zone ``tz`` (pytz zone)."""
    local = tz.localize(datetime.combine(day, parse_slot(slot)), is_dst=False)
    return tz.normalize(local)


def local_slot(instant: datetime, tz) -> Tuple[date, str]:
    local = instant.astimezone(tz)
    return local.date(), local.strftime("%H:%M")


def is_scheduled(rule: ScheduleRule, instant: datetime, tz) -> bool:
    """True when ``instant`` is one of the rule's dose instants (pause ignored)."""
    day, _ = local_slot(instant, tz)
    # a slot in a DST gap is shifted forward, possibly past midnight
    for candidate in (day, day - timedelta(days=1)):
        for slot in occurs_on(rule, candidate, include_paused=True):
            if scheduled_instant(candidate, slot, tz) == instant:
                return True
    return False


def iter_days(first: date, last: date) -> Iterator[date]:
    day = first
    while day <= last:
        yield day
        day += timedelta(days=1)
