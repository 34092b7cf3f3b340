from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import Field

from medcycle.schemas.schema_base import CamelModel

SkipReason = Literal["forgot", "felt_sick", "ran_out", "side_effects", "other"]
SKIP_REASONS = ("forgot", "felt_sick", "ran_out", "side_effects", "other")


class EventOut(CamelModel):
    id: str
    command_id: str
    patient_id: str
    event_type: str
    scheduled_date_time: datetime
    actual_date_time: Optional[datetime] = None
    grace_period_minutes: int = 0
    grace_period_rules_applied: List[str] = Field(default_factory=list)
    event_sequence_number: int
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @classmethod
    def from_model(cls, event) -> "EventOut":
        return cls(
            id=event.id,
            command_id=event.command_id,
            patient_id=event.patient_id,
            event_type=event.event_type,
            scheduled_date_time=event.scheduled_date_time,
            actual_date_time=event.actual_date_time,
            grace_period_minutes=event.grace_period_minutes,
            grace_period_rules_applied=list(event.grace_period_rules_applied or []),
            event_sequence_number=event.event_sequence_number,
            details=dict(event.details or {}),
            created_at=event.created_at,
        )


class EventFilter(CamelModel):
    command_id: Optional[str] = None
    patient_id: Optional[str] = None
    event_types: Optional[List[str]] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: int = Field(default=500, ge=1, le=5000)
    offset: int = Field(default=0, ge=0)


class TakeDoseRequest(CamelModel):
    # omitted only for ad-hoc PRN doses
    scheduled_date_time: Optional[datetime] = None
    taken_at: Optional[datetime] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class SkipDoseRequest(CamelModel):
    scheduled_date_time: datetime
    reason: SkipReason
    notes: Optional[str] = Field(default=None, max_length=1000)


class SnoozeDoseRequest(CamelModel):
    scheduled_date_time: datetime
    minutes: int


class OccurrenceOut(CamelModel):
    command_id: str
    scheduled_date_time: datetime
    status: str
    grace_period_minutes: Optional[int] = None
    grace_period_end_date_time: Optional[datetime] = None
    snoozed_until: Optional[datetime] = None
    events: List[EventOut] = Field(default_factory=list)


class AdherenceOut(CamelModel):
    patient_id: str
    command_id: Optional[str] = None
    start: datetime
    end: datetime
    total_scheduled: int
    taken: int
    taken_on_time: int
    taken_late: int
    skipped: int
    missed: int
    pending: int
    adherence_rate: float
    on_time_rate: float
    average_delay_minutes: float
    by_medication: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
