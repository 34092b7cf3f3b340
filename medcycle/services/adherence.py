# medcycle/services/adherence.py
from __future__ import annotations

import datetime as dt
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from medcycle.models.medication_event import DOSE_EVENT_TYPES, EventType, MedicationEvent
from medcycle.schemas.schema_event import AdherenceOut, EventFilter
from medcycle.services.event_log import SCHEDULED, pick_terminal
from medcycle.services.scheduling import is_scheduled_occurrence

PAGE_SIZE = 5000


def _rate(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


def calculate_adherence(
    db: Session,
    event_log,
    command_store,
    patient_id: str,
    start: dt.datetime,
    end: dt.datetime,
    now: dt.datetime,
    command_id: Optional[str] = None,
) -> AdherenceOut:
    """
    Adherence over scheduled occurrences in [start, min(end, now)], each
    counted once by its derived status. Ad-hoc PRN doses (no dose_scheduled
    event) are not part of the denominator. An occurrence that is still
    open but no longer on its command's schedule (edited away, command
    paused/stopped) is left out rather than counted as pending.
    """
    until = min(end, now)
    flt = EventFilter(
        patient_id=patient_id,
        command_id=command_id,
        event_types=sorted(DOSE_EVENT_TYPES),
        start=start,
        end=until,
        limit=PAGE_SIZE,
    )

    grouped: Dict[Tuple[str, dt.datetime], List[MedicationEvent]] = defaultdict(list)
    # page until exhausted; the (time, sequence, command) order keeps offsets stable
    while True:
        page: List[MedicationEvent] = event_log.query_events(db, flt)
        for ev in page:
            grouped[(ev.command_id, ev.scheduled_date_time)].append(ev)
        if len(page) < flt.limit:
            break
        flt = flt.model_copy(update={"offset": flt.offset + len(page)})

    commands = {}
    totals = defaultdict(int)
    by_medication: Dict[str, Dict] = {}
    delays: List[int] = []

    for (cmd_id, when), occurrence in grouped.items():
        types = [e.event_type for e in occurrence]
        if EventType.dose_scheduled.value not in types:
            continue

        status = pick_terminal(types)
        if status == SCHEDULED:
            if cmd_id not in commands:
                commands[cmd_id] = command_store.get_command(db, cmd_id)
            command = commands[cmd_id]
            if command is None or not command.is_active or not is_scheduled_occurrence(command.schedule, when):
                continue

        med = by_medication.setdefault(
            cmd_id, {"scheduled": 0, "taken": 0, "missed": 0, "skipped": 0, "pending": 0, "adherenceRate": 0.0}
        )
        med["scheduled"] += 1
        totals["scheduled"] += 1

        if status == EventType.dose_taken.value:
            taken = next(e for e in occurrence if e.event_type == EventType.dose_taken.value)
            details = taken.details or {}
            totals["taken"] += 1
            med["taken"] += 1
            if details.get("onTime", True):
                totals["on_time"] += 1
            else:
                totals["late"] += 1
            if details.get("minutesLate"):
                delays.append(int(details["minutesLate"]))
        elif status == EventType.dose_skipped.value:
            totals["skipped"] += 1
            med["skipped"] += 1
        elif status == EventType.dose_missed.value:
            totals["missed"] += 1
            med["missed"] += 1
        else:
            totals["pending"] += 1
            med["pending"] += 1

    for med in by_medication.values():
        med["adherenceRate"] = _rate(med["taken"], med["scheduled"])

    return AdherenceOut(
        patient_id=patient_id,
        command_id=command_id,
        start=start,
        end=until,
        total_scheduled=totals["scheduled"],
        taken=totals["taken"],
        taken_on_time=totals["on_time"],
        taken_late=totals["late"],
        skipped=totals["skipped"],
        missed=totals["missed"],
        pending=totals["pending"],
        adherence_rate=_rate(totals["taken"], totals["scheduled"]),
        on_time_rate=_rate(totals["on_time"], totals["taken"]),
        average_delay_minutes=round(sum(delays) / len(delays), 1) if delays else 0.0,
        by_medication=by_medication,
    )
