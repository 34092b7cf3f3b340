# medcycle/services/event_log.py
"""
Append-only log of medication facts.

- append_event assigns event_sequence_number = max + 1 for the command,
  inside the caller's transaction. Two concurrent appenders that read the
  same max collide on uq_events_command_seq and one of them is rolled back.
- nothing here updates an event; the only delete is the cascade chunk
  delete, which the model guards refuse unless the session is flagged.
"""
from __future__ import annotations

import datetime as dt
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from medcycle.models.detector_run import MissedDoseScanMark
from medcycle.models.medication_event import (
    DOSE_EVENT_TYPES,
    TERMINAL_PRECEDENCE,
    EventType,
    MedicationEvent,
)
from medcycle.schemas.schema_event import EventFilter

SCHEDULED = "scheduled"

# slot-less: any number of snoozes per occurrence
_SLOTTED_TYPES = DOSE_EVENT_TYPES - {EventType.dose_snoozed.value}


def pick_terminal(event_types: Iterable[str]) -> str:
    """dose_taken > dose_skipped > dose_missed, regardless of write order."""
    present = set(event_types)
    for event_type in TERMINAL_PRECEDENCE:
        if event_type in present:
            return event_type
    return SCHEDULED


def occurrence_statuses(events: Iterable[MedicationEvent]) -> Dict[Tuple[str, dt.datetime], str]:
    """Derived status for every occurrence that has a dose event in `events`."""
    grouped: Dict[Tuple[str, dt.datetime], List[str]] = defaultdict(list)
    for ev in events:
        if ev.event_type in DOSE_EVENT_TYPES:
            grouped[(ev.command_id, ev.scheduled_date_time)].append(ev.event_type)
    return {key: pick_terminal(types) for key, types in grouped.items()}


class EventLog:
    def __init__(self, clock):
        self.clock = clock

    # ---------- writes ----------

    def next_sequence_number(self, db: Session, command_id: str) -> int:
        current = db.execute(
            select(func.max(MedicationEvent.event_sequence_number)).where(
                MedicationEvent.command_id == command_id
            )
        ).scalar()
        return (current or 0) + 1

    def append_event(
        self,
        db: Session,
        *,
        command_id: str,
        patient_id: str,
        event_type: str,
        scheduled_date_time: dt.datetime,
        actual_date_time: Optional[dt.datetime] = None,
        grace_period_minutes: int = 0,
        grace_period_rules_applied: Optional[Sequence[str]] = None,
        details: Optional[dict] = None,
    ) -> MedicationEvent:
        event_type = EventType(event_type).value

        event = MedicationEvent(
            command_id=command_id,
            patient_id=patient_id,
            event_type=event_type,
            scheduled_date_time=scheduled_date_time,
            actual_date_time=actual_date_time,
            grace_period_minutes=int(grace_period_minutes or 0),
            grace_period_rules_applied=list(grace_period_rules_applied or []),
            event_sequence_number=self.next_sequence_number(db, command_id),
            occurrence_slot=event_type if event_type in _SLOTTED_TYPES else None,
            details=dict(details or {}),
            created_at=self.clock.now(),
        )
        db.add(event)
        # autoflush is off: the next max() in this transaction must see this row
        db.flush()
        return event

    def delete_events_for_command_chunk(self, db: Session, command_id: str, limit: int) -> int:
        """
        Cascade path only. Removes up to `limit` events of the command (and
        their scan marks) and returns how many events went.
        """
        ids = list(
            db.execute(
                select(MedicationEvent.id)
                .where(MedicationEvent.command_id == command_id)
                .order_by(MedicationEvent.event_sequence_number)
                .limit(limit)
            ).scalars()
        )
        if not ids:
            return 0

        db.execute(
            delete(MissedDoseScanMark).where(MissedDoseScanMark.scheduled_event_id.in_(ids)),
            execution_options={"synchronize_session": False},
        )
        db.execute(
            delete(MedicationEvent).where(MedicationEvent.id.in_(ids)),
            execution_options={"synchronize_session": False},
        )
        return len(ids)

    # ---------- reads ----------

    def query_events(self, db: Session, flt: EventFilter) -> List[MedicationEvent]:
        stmt = select(MedicationEvent)
        if flt.command_id:
            stmt = stmt.where(MedicationEvent.command_id == flt.command_id)
        if flt.patient_id:
            stmt = stmt.where(MedicationEvent.patient_id == flt.patient_id)
        if flt.event_types:
            stmt = stmt.where(MedicationEvent.event_type.in_(flt.event_types))
        if flt.start is not None:
            stmt = stmt.where(MedicationEvent.scheduled_date_time >= flt.start)
        if flt.end is not None:
            stmt = stmt.where(MedicationEvent.scheduled_date_time <= flt.end)

        stmt = (
            stmt.order_by(
                MedicationEvent.scheduled_date_time.asc(),
                MedicationEvent.event_sequence_number.asc(),
                MedicationEvent.command_id.asc(),
            )
            .offset(flt.offset)
            .limit(flt.limit)
        )
        return list(db.execute(stmt).scalars())

    def occurrence_events(
        self, db: Session, command_id: str, scheduled_date_time: dt.datetime
    ) -> List[MedicationEvent]:
        return list(
            db.execute(
                select(MedicationEvent)
                .where(
                    MedicationEvent.command_id == command_id,
                    MedicationEvent.scheduled_date_time == scheduled_date_time,
                    MedicationEvent.event_type.in_(DOSE_EVENT_TYPES),
                )
                .order_by(MedicationEvent.event_sequence_number.asc())
            ).scalars()
        )

    def derive_current_status(
        self, db: Session, command_id: str, scheduled_date_time: dt.datetime
    ) -> str:
        types = db.execute(
            select(MedicationEvent.event_type).where(
                MedicationEvent.command_id == command_id,
                MedicationEvent.scheduled_date_time == scheduled_date_time,
                MedicationEvent.event_type.in_(TERMINAL_PRECEDENCE),
            )
        ).scalars()
        return pick_terminal(types)

    def find_scheduled_event(
        self, db: Session, command_id: str, scheduled_date_time: dt.datetime
    ) -> Optional[MedicationEvent]:
        return db.execute(
            select(MedicationEvent).where(
                MedicationEvent.command_id == command_id,
                MedicationEvent.scheduled_date_time == scheduled_date_time,
                MedicationEvent.event_type == EventType.dose_scheduled.value,
            )
        ).scalars().first()

    def scheduled_times(
        self, db: Session, command_id: str, start: dt.datetime, end: dt.datetime
    ) -> set:
        return set(
            db.execute(
                select(MedicationEvent.scheduled_date_time).where(
                    MedicationEvent.command_id == command_id,
                    MedicationEvent.event_type == EventType.dose_scheduled.value,
                    MedicationEvent.scheduled_date_time > start,
                    MedicationEvent.scheduled_date_time <= end,
                )
            ).scalars()
        )

    def latest_snooze(
        self, db: Session, command_id: str, scheduled_date_time: dt.datetime
    ) -> Optional[MedicationEvent]:
        return db.execute(
            select(MedicationEvent)
            .where(
                MedicationEvent.command_id == command_id,
                MedicationEvent.scheduled_date_time == scheduled_date_time,
                MedicationEvent.event_type == EventType.dose_snoozed.value,
            )
            .order_by(MedicationEvent.event_sequence_number.desc())
            .limit(1)
        ).scalars().first()

    def count_events(self, db: Session, command_id: str) -> int:
        return db.execute(
            select(func.count()).select_from(MedicationEvent).where(
                MedicationEvent.command_id == command_id
            )
        ).scalar_one()
