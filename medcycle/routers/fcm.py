# medcycle/routers/fcm.py
from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import Field
from sqlalchemy.orm import Session

from medcycle.auth.dependencies import get_current_patient_id, get_orchestrator
from medcycle.db.database import get_db
from medcycle.schemas.schema_base import CamelModel
from medcycle.services.fcm_push import deactivate_token, register_token
from medcycle.services.orchestrator import MedicationOrchestrator

router = APIRouter(prefix="/fcm", tags=["Push Tokens"])


class PushTokenRequest(CamelModel):
    token: str = Field(..., min_length=10, max_length=255)
    platform: Literal["android", "ios", "web", "unknown"] = "unknown"
    device_id: Optional[str] = Field(default=None, max_length=128)


@router.post("/token", status_code=201)
def register_push_token(
    body: PushTokenRequest,
    db: Session = Depends(get_db),
    patient_id: str = Depends(get_current_patient_id),
    orchestrator: MedicationOrchestrator = Depends(get_orchestrator),
):
    """
    Register this device for missed-dose and medication alerts.

    📌 Call after sign-in and on every FCM token refresh.
    📌 A token already on file is moved to the caller and reactivated.
    """
    row = register_token(db, patient_id, body.token, orchestrator.clock.now(), body.platform, body.device_id)
    db.commit()
    return {"success": True, "data": {"platform": row.platform, "isActive": row.is_active}}


@router.delete("/token")
def unregister_push_token(
    token: str = Query(..., max_length=255),
    db: Session = Depends(get_db),
    patient_id: str = Depends(get_current_patient_id),
):
    """
    Stop alerts to this device (sign-out, notifications turned off).

    📌 `deactivated` is 0 when the token was unknown or already off.
    """
    deactivated = deactivate_token(db, patient_id, token)
    db.commit()
    return {"success": True, "data": {"deactivated": deactivated}}
