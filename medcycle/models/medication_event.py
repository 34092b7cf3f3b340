# medcycle/models/medication_event.py
from __future__ import annotations

import datetime as dt
import enum
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, Session, mapped_column

from medcycle.db.database import Base


class EventType(str, enum.Enum):
    dose_scheduled = "dose_scheduled"
    dose_taken = "dose_taken"
    dose_missed = "dose_missed"
    dose_skipped = "dose_skipped"
    dose_snoozed = "dose_snoozed"
    command_created = "command_created"
    command_updated = "command_updated"
    command_discontinued = "command_discontinued"


# terminal events, strongest first: taken beats skipped beats missed
TERMINAL_PRECEDENCE = (
    EventType.dose_taken.value,
    EventType.dose_skipped.value,
    EventType.dose_missed.value,
)

DOSE_EVENT_TYPES = frozenset(
    {
        EventType.dose_scheduled.value,
        EventType.dose_taken.value,
        EventType.dose_missed.value,
        EventType.dose_skipped.value,
        EventType.dose_snoozed.value,
    }
)

# session.info key set only by the cascade-delete path
CASCADE_DELETE_FLAG = "medcycle.cascade_delete"


def _new_id() -> str:
    return uuid.uuid4().hex


class ImmutableEventError(RuntimeError):
    """Raised when something tries to rewrite or drop an event outside cascade delete."""


class MedicationEvent(Base):
    __tablename__ = "medication_events"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)

    # no FK to medication_commands: events are removed explicitly by the
    # cascade workflow, and orphans must stay visible to that sweep
    command_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    patient_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    event_type: Mapped[str] = mapped_column(String(32), nullable=False)

    scheduled_date_time: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    actual_date_time: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)

    grace_period_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    grace_period_rules_applied: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    event_sequence_number: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # one row per (occurrence, slot); NULL for command-level events and snoozes
    occurrence_slot: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    details: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("command_id", "event_sequence_number", name="uq_events_command_seq"),
        UniqueConstraint(
            "command_id", "scheduled_date_time", "occurrence_slot",
            name="uq_events_occurrence_slot",
        ),
        Index("idx_events_command_scheduled", "command_id", "scheduled_date_time"),
        Index("idx_events_type_scheduled", "event_type", "scheduled_date_time"),
        Index("idx_events_patient_scheduled", "patient_id", "scheduled_date_time"),
    )

    def __repr__(self) -> str:
        return (
            f"<MedicationEvent {self.event_type} cmd={self.command_id} "
            f"at={self.scheduled_date_time} seq={self.event_sequence_number}>"
        )


# ---------- immutability guards ----------

@event.listens_for(MedicationEvent, "before_update")
def _reject_event_update(mapper, connection, target):
    raise ImmutableEventError(f"medication event {target.id} is immutable")


@event.listens_for(MedicationEvent, "before_delete")
def _reject_event_delete(mapper, connection, target):
    session = Session.object_session(target)
    if session is None or not session.info.get(CASCADE_DELETE_FLAG):
        raise ImmutableEventError(
            f"medication event {target.id} can only be removed by cascade delete"
        )


@event.listens_for(Session, "do_orm_execute")
def _reject_bulk_event_writes(orm_execute_state):
    # bulk UPDATE/DELETE statements skip the mapper hooks above
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    mapper = orm_execute_state.bind_mapper
    if mapper is None or mapper.class_ is not MedicationEvent:
        return
    if orm_execute_state.is_update:
        raise ImmutableEventError("bulk update of medication events is not allowed")
    if not orm_execute_state.session.info.get(CASCADE_DELETE_FLAG):
        raise ImmutableEventError("bulk delete of medication events requires the cascade path")
