# medcycle/routers/medication_commands.py
from __future__ import annotations

from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends, Query, status

from medcycle.auth.dependencies import get_current_patient_id, get_orchestrator
from medcycle.config.settings import settings
from medcycle.schemas.schema_command import (
    CreateCommandRequest,
    StatusChangeRequest,
    UpdateCommandRequest,
    create_to_dict,
    patch_to_dict,
)
from medcycle.schemas.schema_event import SkipDoseRequest, SnoozeDoseRequest, TakeDoseRequest
from medcycle.services.clock import to_local_naive
from medcycle.services.orchestrator import MedicationOrchestrator

router = APIRouter(prefix="/medication-commands", tags=["Medication Commands"])

_TZ = ZoneInfo(settings.timezone)


def _local(value: Optional[datetime]) -> Optional[datetime]:
    return to_local_naive(value, _TZ) if value is not None else None


@router.post("", status_code=status.HTTP_201_CREATED)
def create_command(
    body: CreateCommandRequest,
    patient_id: str = Depends(get_current_patient_id),
    orchestrator: MedicationOrchestrator = Depends(get_orchestrator),
):
    """
    Register a medication for the logged-in patient.

    📌 Request
    - POST /medication-commands
    - Headers: Authorization: Bearer <access token>
    - Body:
        {
          "medication": {"name": "Lisinopril", "dosage": "10mg", "medicationType": "critical"},
          "schedule": {"frequency": "daily", "times": ["08:00", "20:00"], "startDate": "2025-01-06"},
          "reminders": {"enabled": true, "minutesBefore": [15]},
          "isPRN": false
        }

    📌 What happens on the server
    1) the command is stored at version 1, status active
    2) a command_created event is appended
    3) dose_scheduled events are written for every future dose time in the
       next 30 days, each with its grace period fixed at that moment

    📌 Response
    - {"success": true, "data": <command>, "sideEffects": {"eventsCreated": N, ...}}
    """
    return orchestrator.create_command(patient_id, create_to_dict(body)).envelope()


@router.get("")
def list_commands(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    patient_id: str = Depends(get_current_patient_id),
    orchestrator: MedicationOrchestrator = Depends(get_orchestrator),
):
    """The caller's medications, oldest first. `?status=active|paused|discontinued`."""
    return orchestrator.list_commands(patient_id, status=status_filter).envelope()


@router.get("/{command_id}")
def get_command(
    command_id: str,
    patient_id: str = Depends(get_current_patient_id),
    orchestrator: MedicationOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.get_command(patient_id, command_id).envelope()


@router.patch("/{command_id}")
def update_command(
    command_id: str,
    body: UpdateCommandRequest,
    patient_id: str = Depends(get_current_patient_id),
    orchestrator: MedicationOrchestrator = Depends(get_orchestrator),
):
    """
    Partial update with optimistic locking.

    📌 Request
    - PATCH /medication-commands/{id}
    - Body: {"expectedVersion": 3, "patch": {"schedule": {"times": ["09:00"]}}}

    📌 Notes for the app
    - expectedVersion is metadata.version from your last read.
      If someone else changed the medication since, the answer is
      409 VERSION_CONFLICT: re-read and apply the edit again.
    - new dose times are added to the schedule right away;
      already-written dose events are never rewritten.
    """
    return orchestrator.update_command(
        patient_id, command_id, patch_to_dict(body.patch), body.expected_version
    ).envelope()


@router.delete("/{command_id}")
def delete_command(
    command_id: str,
    hard_delete: bool = Query(default=False, alias="hardDelete"),
    patient_id: str = Depends(get_current_patient_id),
    orchestrator: MedicationOrchestrator = Depends(get_orchestrator),
):
    """
    Delete a medication and every event it owns.

    📌 hardDelete=false (default): the medication stays as discontinued + deletedAt
    📌 hardDelete=true: the medication row is removed too

    📌 Response data
    - {"commandDeleted": true, "eventsDeleted": N, "totalItemsDeleted": N or N+1}
    - calling it again after a partial failure finishes the job
    """
    return orchestrator.delete_command(patient_id, command_id, hard_delete=hard_delete).envelope()


# ---------- status changes ----------

@router.post("/{command_id}/pause")
def pause_command(
    command_id: str,
    body: Optional[StatusChangeRequest] = None,
    patient_id: str = Depends(get_current_patient_id),
    orchestrator: MedicationOrchestrator = Depends(get_orchestrator),
):
    """No missed-dose alerts while paused."""
    return orchestrator.pause(patient_id, command_id, body.reason if body else None).envelope()


@router.post("/{command_id}/resume")
def resume_command(
    command_id: str,
    body: Optional[StatusChangeRequest] = None,
    patient_id: str = Depends(get_current_patient_id),
    orchestrator: MedicationOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.resume(patient_id, command_id, body.reason if body else None).envelope()


@router.post("/{command_id}/discontinue")
def discontinue_command(
    command_id: str,
    body: Optional[StatusChangeRequest] = None,
    patient_id: str = Depends(get_current_patient_id),
    orchestrator: MedicationOrchestrator = Depends(get_orchestrator),
):
    """Permanent. A discontinued medication cannot be resumed or edited."""
    return orchestrator.discontinue(patient_id, command_id, body.reason if body else None).envelope()


# ---------- doses ----------

@router.post("/{command_id}/take")
def take_dose(
    command_id: str,
    body: TakeDoseRequest,
    patient_id: str = Depends(get_current_patient_id),
    orchestrator: MedicationOrchestrator = Depends(get_orchestrator),
):
    """
    Record a dose as taken.

    📌 Body
    - {"scheduledDateTime": "2025-01-06T08:00:00", "takenAt": "...optional...", "notes": "..."}
    - scheduledDateTime may be left out only for as-needed (PRN) medications

    📌 Rules
    - 404 when no dose was scheduled at that time
    - 422 when the dose is already taken or skipped
    - a dose that was marked missed can still be taken late
    """
    return orchestrator.take_dose(
        patient_id,
        command_id,
        scheduled_date_time=_local(body.scheduled_date_time),
        taken_at=_local(body.taken_at),
        notes=body.notes,
    ).envelope()


@router.post("/{command_id}/skip")
def skip_dose(
    command_id: str,
    body: SkipDoseRequest,
    patient_id: str = Depends(get_current_patient_id),
    orchestrator: MedicationOrchestrator = Depends(get_orchestrator),
):
    """reason: forgot | felt_sick | ran_out | side_effects | other"""
    return orchestrator.skip_dose(
        patient_id, command_id, _local(body.scheduled_date_time), body.reason, body.notes
    ).envelope()


@router.post("/{command_id}/snooze")
def snooze_dose(
    command_id: str,
    body: SnoozeDoseRequest,
    patient_id: str = Depends(get_current_patient_id),
    orchestrator: MedicationOrchestrator = Depends(get_orchestrator),
):
    """
    Push the reminder back by 1..480 minutes.
    The missed-dose deadline moves with it (snoozedUntil + grace period).
    """
    return orchestrator.snooze_dose(
        patient_id, command_id, _local(body.scheduled_date_time), body.minutes
    ).envelope()


@router.get("/{command_id}/occurrence")
def occurrence_status(
    command_id: str,
    scheduled_date_time: datetime = Query(..., alias="scheduledDateTime"),
    patient_id: str = Depends(get_current_patient_id),
    orchestrator: MedicationOrchestrator = Depends(get_orchestrator),
):
    """Derived status of one dose: scheduled | dose_taken | dose_skipped | dose_missed."""
    return orchestrator.occurrence_status(
        patient_id, command_id, _local(scheduled_date_time)
    ).envelope()
