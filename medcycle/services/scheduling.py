# medcycle/services/scheduling.py
from __future__ import annotations

import datetime as dt
from typing import Any, Dict, List, Optional

DAILY_FREQUENCIES = ("daily", "twice_daily", "three_times_daily", "four_times_daily")
FREQUENCIES = DAILY_FREQUENCIES + ("weekly", "monthly", "as_needed")


def parse_hhmm(value: str) -> dt.time:
    """'08:30' -> time(8, 30). Raises ValueError on anything else."""
    parts = str(value).split(":")
    if len(parts) != 2 or not all(p.isdigit() for p in parts):
        raise ValueError(f"invalid time: {value!r}")
    hours, minutes = int(parts[0]), int(parts[1])
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        raise ValueError(f"invalid time: {value!r}")
    return dt.time(hours, minutes)


def parse_day(value) -> Optional[dt.date]:
    if value is None or value == "":
        return None
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    return dt.date.fromisoformat(str(value)[:10])


def schedule_window(schedule: Dict[str, Any]):
    return parse_day(schedule.get("startDate")), parse_day(schedule.get("endDate"))


def occurs_on(schedule: Dict[str, Any], day: dt.date) -> bool:
    start, end = schedule_window(schedule)
    if start and day < start:
        return False
    if end and day > end:
        return False

    frequency = schedule.get("frequency", "daily")
    if frequency in DAILY_FREQUENCIES:
        return True
    if frequency == "weekly":
        # 0=Monday ... 6=Sunday; no list -> the weekday of startDate
        days = schedule.get("daysOfWeek")
        if not days:
            days = [start.weekday()] if start else []
        return day.weekday() in days
    if frequency == "monthly":
        return day.day == (schedule.get("dayOfMonth") or 1)
    return False


def occurrences_between(
    schedule: Dict[str, Any],
    start: dt.datetime,
    end: dt.datetime,
) -> List[dt.datetime]:
    """
    Every dose time with start < t <= end, ascending, no duplicates.
    `start` is exclusive so "future occurrences only" is simply start=now.
    """
    if schedule.get("frequency") == "as_needed":
        return []

    times = sorted({parse_hhmm(t) for t in schedule.get("times") or []})
    out: List[dt.datetime] = []
    day = start.date()
    while day <= end.date():
        if occurs_on(schedule, day):
            for t in times:
                when = dt.datetime.combine(day, t)
                if start < when <= end:
                    out.append(when)
        day += dt.timedelta(days=1)
    return out


def is_scheduled_occurrence(schedule: Dict[str, Any], when: dt.datetime) -> bool:
    """Is `when` one of the schedule's dose times right now (after any edits)?"""
    if schedule.get("frequency") == "as_needed":
        return False
    if not occurs_on(schedule, when.date()):
        return False
    try:
        times = {parse_hhmm(t) for t in schedule.get("times") or []}
    except ValueError:
        return False
    return when.second == 0 and when.microsecond == 0 and when.time() in times
