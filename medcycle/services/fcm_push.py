# medcycle/services/fcm_push.py
"""
Firebase Cloud Messaging adapter for dose and command events.

Device registrations live in `push_tokens`. A token that FCM reports as
unregistered (or bound to another sender) is switched off immediately; any
other failure bumps `failure_count` and the token is dropped once it reaches
MAX_CONSECUTIVE_FAILURES.
"""
from __future__ import annotations

import dataclasses
import datetime as dt
import logging
import os
from typing import Dict, List, Optional

import firebase_admin
from firebase_admin import credentials, messaging
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from medcycle.models.medication_command import MedicationCommand
from medcycle.models.push_token import PushToken
from medcycle.schemas.schema_event import EventOut

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_FAILURES = 5
PLATFORMS = ("android", "ios", "web", "unknown")

# event_type -> (title, body template)
TEMPLATES: Dict[str, tuple] = {
    "dose_missed": ("Missed dose", "{name} scheduled for {time} was not taken."),
    "dose_taken": ("Dose recorded", "{name} marked as taken."),
    "dose_skipped": ("Dose skipped", "{name} at {time} was skipped."),
    "dose_snoozed": ("Reminder snoozed", "We'll remind you about {name} again soon."),
    "command_created": ("Medication added", "{name} was added to your schedule."),
    "command_updated": ("Medication updated", "{name} was updated."),
    "command_discontinued": ("Medication stopped", "{name} was discontinued."),
}


def firebase_ready() -> bool:
    # set up by init_firebase() when the key file is present
    try:
        firebase_admin.get_app()
    except ValueError:
        return False
    return True


def init_firebase(key_path: str) -> bool:
    """Connect the default Firebase app once; without a key file pushes stay log-only."""
    if firebase_ready():
        return True
    if not os.path.exists(key_path):
        logger.warning("[firebase] '%s' not found; push notifications are log-only", key_path)
        return False
    firebase_admin.initialize_app(credentials.Certificate(key_path))
    logger.info("[firebase] connected to FCM")
    return True


@dataclasses.dataclass
class SendResult:
    sent: int = 0
    failed: int = 0
    deactivated: int = 0


def register_token(
    db: Session,
    patient_id: str,
    token: str,
    now: dt.datetime,
    platform: str = "unknown",
    device_id: Optional[str] = None,
) -> PushToken:
    """A token seen again (reinstall, account switch) is reassigned and revived."""
    row = db.execute(select(PushToken).where(PushToken.token == token)).scalar_one_or_none()
    if row is None:
        row = PushToken(token=token)
        db.add(row)
    row.patient_id = patient_id
    row.platform = platform if platform in PLATFORMS else "unknown"
    row.device_id = device_id
    row.is_active = True
    row.failure_count = 0
    row.deactivated_reason = None
    row.registered_at = now
    db.flush()
    return row


def deactivate_token(db: Session, patient_id: str, token: str, reason: str = "unregistered_by_user") -> int:
    result = db.execute(
        update(PushToken)
        .where(
            PushToken.patient_id == patient_id,
            PushToken.token == token,
            PushToken.is_active.is_(True),
        )
        .values(is_active=False, deactivated_reason=reason)
    )
    return result.rowcount


def active_tokens(db: Session, patient_id: str) -> List[PushToken]:
    return list(
        db.execute(
            select(PushToken)
            .where(PushToken.patient_id == patient_id, PushToken.is_active.is_(True))
            .order_by(PushToken.id)
        ).scalars()
    )


def render(event: EventOut, medication_name: str) -> messaging.Notification:
    title, template = TEMPLATES.get(event.event_type, ("Medication", "{name}"))
    body = template.format(
        name=medication_name or "Your medication",
        time=event.scheduled_date_time.strftime("%H:%M"),
    )
    return messaging.Notification(title=title, body=body)


def payload(event: EventOut) -> Dict[str, str]:
    # FCM data values must be strings
    return {
        "eventType": event.event_type,
        "eventId": event.id,
        "commandId": event.command_id,
        "scheduledDateTime": event.scheduled_date_time.isoformat(),
    }


def _token_is_dead(exc: Optional[Exception]) -> bool:
    return isinstance(exc, (messaging.UnregisteredError, messaging.SenderIdMismatchError))


def send_to_patient(
    db: Session,
    patient_id: str,
    notification: messaging.Notification,
    data: Dict[str, str],
    now: dt.datetime,
) -> SendResult:
    """Multicast to every active token; token bookkeeping is left for the caller to commit."""
    tokens = active_tokens(db, patient_id)
    if not tokens:
        return SendResult()

    response = messaging.send_each_for_multicast(
        messaging.MulticastMessage(tokens=[t.token for t in tokens], notification=notification, data=data)
    )

    result = SendResult(sent=response.success_count, failed=response.failure_count)
    for row, r in zip(tokens, response.responses):
        if r.success:
            row.last_sent_at = now
            row.failure_count = 0
            continue
        row.failure_count += 1
        if _token_is_dead(r.exception):
            row.is_active = False
            row.deactivated_reason = "unregistered"
        elif row.failure_count >= MAX_CONSECUTIVE_FAILURES:
            row.is_active = False
            row.deactivated_reason = "too_many_failures"
        if not row.is_active:
            result.deactivated += 1
    return result


class FcmDispatcher:
    """NotificationDispatcher backed by Firebase Cloud Messaging."""

    def __init__(self, session_factory, clock):
        self.session_factory = session_factory
        self.clock = clock

    def dispatch(self, event: EventOut, recipients: List[str]) -> None:
        if not firebase_ready():
            logger.warning("[fcm] firebase not initialised; dropping %s", event.event_type)
            return

        with self.session_factory() as db:
            command = db.get(MedicationCommand, event.command_id)
            notification = render(event, command.medication_name if command else "")
            data = payload(event)
            now = self.clock.now()
            for patient_id in recipients:
                result = send_to_patient(db, patient_id, notification, data, now)
                logger.info(
                    "[fcm] %s command=%s patient=%s sent=%d failed=%d deactivated=%d",
                    event.event_type, event.command_id, patient_id,
                    result.sent, result.failed, result.deactivated,
                )
            db.commit()
