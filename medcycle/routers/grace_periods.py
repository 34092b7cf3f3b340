# medcycle/routers/grace_periods.py
from __future__ import annotations

from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends

from medcycle.auth.dependencies import get_current_patient_id, get_orchestrator
from medcycle.config.settings import settings
from medcycle.schemas.schema_grace import GracePeriodConfig, GracePreviewRequest
from medcycle.services.clock import to_local_naive
from medcycle.services.orchestrator import MedicationOrchestrator

router = APIRouter(prefix="/grace-periods", tags=["Grace Periods"])

_TZ = ZoneInfo(settings.timezone)


@router.get("")
def get_grace_config(
    patient_id: str = Depends(get_current_patient_id),
    orchestrator: MedicationOrchestrator = Depends(get_orchestrator),
):
    """The caller's grace period settings (system defaults until saved once)."""
    return orchestrator.get_grace_config(patient_id).envelope()


@router.put("")
def save_grace_config(
    body: GracePeriodConfig,
    patient_id: str = Depends(get_current_patient_id),
    orchestrator: MedicationOrchestrator = Depends(get_orchestrator),
):
    """
    Replace the caller's grace period settings.

    📌 Limits
    - minutes: 0..480
    - weekendMultiplier / holidayMultiplier: 0.1..5.0
    - timeSlots: {"morning": {"start": "HH:MM", "end": "HH:MM"}, ...}

    📌 Only doses scheduled after this call use the new values.
    Doses already on the schedule keep the grace period they were given.
    """
    return orchestrator.save_grace_config(patient_id, body).envelope()


@router.post("/preview")
def preview_grace_period(
    body: GracePreviewRequest,
    patient_id: str = Depends(get_current_patient_id),
    orchestrator: MedicationOrchestrator = Depends(get_orchestrator),
):
    """What grace period a dose at scheduledDateTime would get, and which rules applied."""
    return orchestrator.preview_grace(
        patient_id,
        body.medication_type,
        to_local_naive(body.scheduled_date_time, _TZ),
        time_slot=body.time_slot,
        medication_id=body.medication_id,
    ).envelope()
