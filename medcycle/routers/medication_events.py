# medcycle/routers/medication_events.py
from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends, Query

from medcycle.auth.dependencies import get_current_patient_id, get_orchestrator
from medcycle.config.settings import settings
from medcycle.schemas.schema_event import EventFilter
from medcycle.services.clock import to_local_naive
from medcycle.services.orchestrator import MedicationOrchestrator

router = APIRouter(prefix="/medication-events", tags=["Medication Events"])

_TZ = ZoneInfo(settings.timezone)


@router.get("")
def query_events(
    command_id: Optional[str] = Query(default=None, alias="commandId"),
    event_types: Optional[List[str]] = Query(default=None, alias="eventType"),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    limit: int = Query(default=500, ge=1, le=5000),
    offset: int = Query(default=0, ge=0),
    patient_id: str = Depends(get_current_patient_id),
    orchestrator: MedicationOrchestrator = Depends(get_orchestrator),
):
    """
    The caller's event history, ordered by (scheduledDateTime, eventSequenceNumber).

    📌 Query
    - commandId: one medication only
    - eventType: repeatable, e.g. ?eventType=dose_taken&eventType=dose_missed
    - start / end: inclusive bounds on scheduledDateTime

    📌 Notes for the app
    - a dose can have several events (scheduled, snoozed, missed, taken ...).
      Its status is the strongest terminal one: taken > skipped > missed.
      GET /medication-commands/{id}/occurrence gives that status directly.
    """
    flt = EventFilter(
        command_id=command_id,
        event_types=event_types,
        start=to_local_naive(start, _TZ) if start else None,
        end=to_local_naive(end, _TZ) if end else None,
        limit=limit,
        offset=offset,
    )
    return orchestrator.query_events(patient_id, flt).envelope()


@router.get("/adherence")
def adherence(
    start: datetime = Query(...),
    end: datetime = Query(...),
    command_id: Optional[str] = Query(default=None, alias="commandId"),
    patient_id: str = Depends(get_current_patient_id),
    orchestrator: MedicationOrchestrator = Depends(get_orchestrator),
):
    """
    Adherence over scheduled doses between start and end (capped at now).

    📌 Response data
    - totalScheduled, taken, takenOnTime, takenLate, skipped, missed, pending
    - adherenceRate = taken / totalScheduled * 100
    - onTimeRate = takenOnTime / taken * 100
    - byMedication: the same counts per commandId
    """
    return orchestrator.adherence(
        patient_id,
        to_local_naive(start, _TZ),
        to_local_naive(end, _TZ),
        command_id=command_id,
    ).envelope()
