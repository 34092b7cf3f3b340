# medcycle/services/grace_period.py
"""
Grace period engine.

Pure functions only: no database, no clock, no module-level cache. Every
input (including the patient's GracePeriodConfig and the holiday calendar)
is passed in, so identical arguments always give an identical result.

Rule order:
  1. base minutes from the type x slot matrix
  2. per-medication override replaces base
  3. else per-patient type/slot override replaces base
  4. holiday / weekend multiplier (both -> the larger one only)
  5. prn -> 0
  6. truncate to int, floor 0
"""
from __future__ import annotations

import datetime as dt
import re
from typing import Iterable, List, Optional

from medcycle.schemas.schema_grace import (
    DEFAULT_GRACE_MATRIX,
    MEDICATION_TYPES,
    TIME_SLOTS,
    GracePeriodConfig,
    GracePeriodResult,
)
from medcycle.services.errors import ValidationError

MAX_GRACE_MINUTES = 480
MIN_MULTIPLIER = 0.1
MAX_MULTIPLIER = 5.0

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

CRITICAL_KEYWORDS = (
    "insulin", "metformin", "lisinopril", "atorvastatin", "metoprolol",
    "warfarin", "digoxin", "levothyroxine", "prednisone", "amlodipine",
    "losartan", "carvedilol", "enalapril", "furosemide", "spironolactone",
    "diltiazem", "verapamil", "propranolol", "atenolol", "bisoprolol",
    "heart", "cardiac", "anticoagulant", "seizure",
)

VITAMIN_KEYWORDS = (
    "vitamin", "supplement", "calcium", "iron", "magnesium", "zinc",
    "multivitamin", "omega", "fish oil", "coq10", "biotin", "folic acid",
    "b12", "b6", "thiamine", "riboflavin", "niacin", "pantothenic",
)


# ---------- calendar ----------

def _nth_weekday(year: int, month: int, weekday: int, n: int) -> dt.date:
    first = dt.date(year, month, 1)
    offset = (weekday - first.weekday()) % 7
    return first + dt.timedelta(days=offset + 7 * (n - 1))


def _last_weekday(year: int, month: int, weekday: int) -> dt.date:
    if month == 12:
        last = dt.date(year, 12, 31)
    else:
        last = dt.date(year, month + 1, 1) - dt.timedelta(days=1)
    return last - dt.timedelta(days=(last.weekday() - weekday) % 7)


def us_federal_holidays(year: int) -> List[dt.date]:
    """Fixed-date holidays are not shifted to the nearest weekday."""
    monday, thursday = 0, 3
    return [
        dt.date(year, 1, 1),                      # New Year's Day
        _nth_weekday(year, 1, monday, 3),         # Martin Luther King Jr. Day
        _nth_weekday(year, 2, monday, 3),         # Presidents Day
        _last_weekday(year, 5, monday),           # Memorial Day
        dt.date(year, 7, 4),                      # Independence Day
        _nth_weekday(year, 9, monday, 1),         # Labor Day
        _nth_weekday(year, 10, monday, 2),        # Columbus Day
        dt.date(year, 11, 11),                    # Veterans Day
        _nth_weekday(year, 11, thursday, 4),      # Thanksgiving
        dt.date(year, 12, 25),                    # Christmas Day
    ]


def is_holiday(day: dt.date, holidays: Optional[Iterable[dt.date]] = None) -> bool:
    if holidays is None:
        holidays = us_federal_holidays(day.year)
    return day in set(holidays)


def is_weekend(day: dt.date) -> bool:
    return day.weekday() >= 5


# ---------- classification ----------

def _in_window(hhmm: str, start: str, end: str) -> bool:
    # overnight window, e.g. 21:00 -> 03:59
    if start > end:
        return hhmm >= start or hhmm <= end
    return start <= hhmm <= end


def resolve_time_slot(when, config: Optional[GracePeriodConfig] = None) -> str:
    """Map a clock time (datetime, time or "HH:MM") to morning/noon/evening/bedtime."""
    if isinstance(when, dt.datetime):
        hhmm = when.strftime("%H:%M")
    elif isinstance(when, dt.time):
        hhmm = when.strftime("%H:%M")
    else:
        hhmm = str(when)[:5]

    windows = (config or GracePeriodConfig()).time_slots
    for slot in TIME_SLOTS:
        window = windows.get(slot)
        if window and _in_window(hhmm, window.start, window.end):
            return slot
    return "bedtime"


def classify_medication_type(
    name: str,
    generic_name: Optional[str] = None,
    is_prn: bool = False,
    frequency: Optional[str] = None,
) -> str:
    if is_prn or frequency == "as_needed":
        return "prn"

    haystack = f"{name or ''} {generic_name or ''}".lower()
    if any(k in haystack for k in CRITICAL_KEYWORDS):
        return "critical"
    if any(k in haystack for k in VITAMIN_KEYWORDS):
        return "vitamin"
    return "standard"


# ---------- the calculation ----------

def calculate_grace_period(
    medication_type: str,
    time_slot: str,
    scheduled_date_time: dt.datetime,
    config: GracePeriodConfig,
    medication_id: Optional[str] = None,
) -> GracePeriodResult:
    if medication_type not in MEDICATION_TYPES:
        raise ValidationError(f"unknown medication type: {medication_type}")
    if time_slot not in TIME_SLOTS:
        raise ValidationError(f"unknown time slot: {time_slot}")

    rules: List[str] = [f"default_{medication_type}_{time_slot}"]

    if medication_type == "prn":
        rules.append("prn_zero")
        return GracePeriodResult(
            grace_period_minutes=0,
            applied_rules=rules,
            grace_period_end_date_time=scheduled_date_time,
        )

    matrix_row = config.default_matrix.get(medication_type) or DEFAULT_GRACE_MATRIX[medication_type]
    base = matrix_row.get(time_slot, DEFAULT_GRACE_MATRIX[medication_type][time_slot])

    patient_row = config.patient_overrides.get(medication_type) or {}
    if medication_id and medication_id in config.medication_overrides:
        base = config.medication_overrides[medication_id]
        rules.append("medication_override")
    elif time_slot in patient_row:
        base = patient_row[time_slot]
        rules.append("patient_override")

    day = scheduled_date_time.date()
    candidates = []
    if is_holiday(day, config.holidays):
        candidates.append(("holiday_multiplier", config.holiday_multiplier))
    if is_weekend(day):
        candidates.append(("weekend_multiplier", config.weekend_multiplier))

    # both apply -> the larger wins, even when it is the neutral 1.0
    multiplier = 1.0
    if candidates:
        rule, multiplier = max(candidates, key=lambda c: c[1])
        if multiplier != 1.0:
            rules.append(rule)

    # round away float noise before truncating (20 * 1.15 must stay 23)
    minutes = max(0, int(round(base * multiplier, 6)))

    return GracePeriodResult(
        grace_period_minutes=minutes,
        applied_rules=rules,
        grace_period_end_date_time=scheduled_date_time + dt.timedelta(minutes=minutes),
    )


# ---------- config validation ----------

def _check_minutes(value, label: str, errors: List[str]) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0 <= value <= MAX_GRACE_MINUTES:
        errors.append(f"{label}: must be between 0 and {MAX_GRACE_MINUTES} minutes")


def validate_grace_config(config: GracePeriodConfig) -> List[str]:
    """Returns a list of problems; empty means valid."""
    errors: List[str] = []

    for med_type, row in config.default_matrix.items():
        if med_type not in MEDICATION_TYPES:
            errors.append(f"unknown medication type in matrix: {med_type}")
            continue
        for slot, value in row.items():
            if slot not in TIME_SLOTS:
                errors.append(f"unknown time slot in matrix: {med_type}.{slot}")
                continue
            _check_minutes(value, f"matrix {med_type}.{slot}", errors)

    for med_type, row in config.patient_overrides.items():
        if med_type not in MEDICATION_TYPES:
            errors.append(f"unknown medication type in patient overrides: {med_type}")
            continue
        for slot, value in row.items():
            if slot not in TIME_SLOTS:
                errors.append(f"unknown time slot in patient overrides: {med_type}.{slot}")
                continue
            _check_minutes(value, f"patient override {med_type}.{slot}", errors)

    for command_id, value in config.medication_overrides.items():
        _check_minutes(value, f"medication override {command_id}", errors)

    if not MIN_MULTIPLIER <= config.weekend_multiplier <= MAX_MULTIPLIER:
        errors.append(f"weekend multiplier must be between {MIN_MULTIPLIER} and {MAX_MULTIPLIER}")
    if not MIN_MULTIPLIER <= config.holiday_multiplier <= MAX_MULTIPLIER:
        errors.append(f"holiday multiplier must be between {MIN_MULTIPLIER} and {MAX_MULTIPLIER}")

    for slot, window in config.time_slots.items():
        if slot not in TIME_SLOTS:
            errors.append(f"unknown time slot window: {slot}")
            continue
        if not (_HHMM.match(window.start) and _HHMM.match(window.end)):
            errors.append(f"time slot {slot}: start/end must be HH:MM")

    return errors
