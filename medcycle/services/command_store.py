# medcycle/services/command_store.py
"""
Command store: the one authoritative row per medication.

All methods take the caller's Session and never commit; the transaction
manager owns commit/rollback. Optimistic concurrency rides on the
`version` column (SQLAlchemy version_id_col): an explicit expected-version
check up front, plus StaleDataError at flush if another writer got in
between.

State machine:
    active <-> paused
    active | paused -> discontinued   (terminal)
"""
from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from medcycle.models.medication_command import CommandStatus, MedicationCommand
from medcycle.schemas.schema_grace import MEDICATION_TYPES
from medcycle.services.errors import (
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
    VersionConflict,
)
from medcycle.services.scheduling import FREQUENCIES, parse_day, parse_hhmm

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    CommandStatus.active.value: {CommandStatus.paused.value, CommandStatus.discontinued.value},
    CommandStatus.paused.value: {CommandStatus.active.value, CommandStatus.discontinued.value},
    CommandStatus.discontinued.value: set(),
}

MEDICATION_FIELDS = ("name", "dosage", "form", "route", "instructions", "genericName", "medicationType")
SCHEDULE_FIELDS = ("frequency", "times", "startDate", "endDate", "isIndefinite", "daysOfWeek", "dayOfMonth")
REMINDER_FIELDS = ("enabled", "minutesBefore")
PATCHABLE = ("medication", "schedule", "reminders", "isPRN")

MAX_REMINDER_MINUTES = 1440


def _text(value) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"expected text, got {type(value).__name__}")
    value = value.strip()
    return value or None


def _unknown_keys(section: str, data: Dict[str, Any], allowed) -> None:
    unknown = sorted(set(data) - set(allowed))
    if unknown:
        raise ValidationError(f"unknown {section} field(s): {', '.join(unknown)}")


# ---------- validation / normalisation ----------

def normalize_medication(data: Any) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValidationError("medication is required")
    _unknown_keys("medication", data, MEDICATION_FIELDS)

    out: Dict[str, Any] = {}
    for key in MEDICATION_FIELDS:
        out[key] = _text(data.get(key))

    if not out["name"]:
        raise ValidationError("medication.name is required")
    if not out["dosage"]:
        raise ValidationError("medication.dosage is required")
    if out["medicationType"] and out["medicationType"] not in MEDICATION_TYPES:
        raise ValidationError(f"medication.medicationType must be one of {', '.join(MEDICATION_TYPES)}")

    return {k: v for k, v in out.items() if v is not None}


def normalize_schedule(data: Any, today: dt.date) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValidationError("schedule is required")
    _unknown_keys("schedule", data, SCHEDULE_FIELDS)

    frequency = data.get("frequency") or "daily"
    if frequency not in FREQUENCIES:
        raise ValidationError(f"schedule.frequency must be one of {', '.join(FREQUENCIES)}")

    times = data.get("times")
    if not isinstance(times, list) or not times:
        raise ValidationError("schedule.times must be a non-empty list")
    try:
        parsed = [parse_hhmm(t) for t in times]
    except ValueError as e:
        raise ValidationError(f"schedule.times: {e}") from e
    if len(set(parsed)) != len(parsed):
        raise ValidationError("schedule.times must not repeat")

    try:
        start = parse_day(data.get("startDate")) or today
        end = parse_day(data.get("endDate"))
    except ValueError as e:
        raise ValidationError(f"schedule dates must be YYYY-MM-DD: {e}") from e
    if end is not None and end < start:
        raise ValidationError("schedule.endDate must not be before startDate")

    out: Dict[str, Any] = {
        "frequency": frequency,
        "times": [t.strftime("%H:%M") for t in sorted(parsed)],
        "startDate": start.isoformat(),
        "endDate": end.isoformat() if end else None,
        "isIndefinite": end is None,
    }

    if frequency == "weekly":
        days = data.get("daysOfWeek")
        if days is not None:
            if not isinstance(days, list) or not days or any(
                isinstance(d, bool) or not isinstance(d, int) or not 0 <= d <= 6 for d in days
            ):
                raise ValidationError("schedule.daysOfWeek must list weekdays 0 (Mon) .. 6 (Sun)")
            out["daysOfWeek"] = sorted(set(days))
    if frequency == "monthly":
        day_of_month = data.get("dayOfMonth") or 1
        if isinstance(day_of_month, bool) or not isinstance(day_of_month, int) or not 1 <= day_of_month <= 31:
            raise ValidationError("schedule.dayOfMonth must be 1..31")
        out["dayOfMonth"] = day_of_month

    return out


def normalize_reminders(data: Any) -> Dict[str, Any]:
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("reminders must be an object")
    _unknown_keys("reminders", data, REMINDER_FIELDS)

    minutes = data.get("minutesBefore")
    if minutes is None:
        minutes = [15]
    if not isinstance(minutes, list) or any(
        isinstance(m, bool) or not isinstance(m, int) or not 0 <= m <= MAX_REMINDER_MINUTES for m in minutes
    ):
        raise ValidationError(f"reminders.minutesBefore must be minutes in 0..{MAX_REMINDER_MINUTES}")

    return {"enabled": bool(data.get("enabled", True)), "minutesBefore": sorted(set(minutes), reverse=True)}


def _changed_fields(section: str, before: Dict[str, Any], after: Dict[str, Any]) -> List[str]:
    keys = sorted(set(before) | set(after))
    return [f"{section}.{k}" for k in keys if before.get(k) != after.get(k)]


class CommandStore:
    def __init__(self, clock):
        self.clock = clock

    # ---------- reads ----------

    def get_command(self, db: Session, command_id: str) -> Optional[MedicationCommand]:
        return db.get(MedicationCommand, command_id)

    def require_command(self, db: Session, command_id: str) -> MedicationCommand:
        command = self.get_command(db, command_id)
        if command is None:
            raise NotFoundError(f"medication command {command_id} not found")
        return command

    def list_commands(
        self,
        db: Session,
        patient_id: str,
        status: Optional[str] = None,
        include_deleted: bool = False,
    ) -> List[MedicationCommand]:
        stmt = select(MedicationCommand).where(MedicationCommand.patient_id == patient_id)
        if status:
            if status not in ALLOWED_TRANSITIONS:
                raise ValidationError(f"unknown status filter: {status}")
            stmt = stmt.where(MedicationCommand.status_current == status)
        if not include_deleted:
            stmt = stmt.where(MedicationCommand.deleted_at.is_(None))
        stmt = stmt.order_by(MedicationCommand.created_at.asc(), MedicationCommand.id.asc())
        return list(db.execute(stmt).scalars())

    def list_active_commands(self, db: Session) -> List[MedicationCommand]:
        return list(
            db.execute(
                select(MedicationCommand)
                .where(
                    MedicationCommand.status_current == CommandStatus.active.value,
                    MedicationCommand.deleted_at.is_(None),
                )
                .order_by(MedicationCommand.id.asc())
            ).scalars()
        )

    @staticmethod
    def assert_owner(command: MedicationCommand, caller_id: str) -> None:
        if command.patient_id != caller_id:
            raise PermissionDeniedError("this medication belongs to another patient")

    # ---------- writes ----------

    def create_command(self, db: Session, patient_id: str, data: Dict[str, Any]) -> MedicationCommand:
        if not patient_id:
            raise ValidationError("patientId is required")
        if not isinstance(data, dict):
            raise ValidationError("request body must be an object")

        now = self.clock.now()
        medication = normalize_medication(data.get("medication"))
        schedule = normalize_schedule(data.get("schedule"), now.date())
        reminders = normalize_reminders(data.get("reminders"))
        is_prn = bool(data.get("isPRN", False)) or schedule["frequency"] == "as_needed"

        command = MedicationCommand(
            patient_id=patient_id,
            medication=medication,
            schedule=schedule,
            reminders=reminders,
            status_current=CommandStatus.active.value,
            is_active=True,
            is_prn=is_prn,
            created_at=now,
            updated_at=now,
        )
        db.add(command)
        db.flush()  # version_id_col sets version=1 here
        logger.info("[command_store] created command=%s patient=%s", command.id, patient_id)
        return command

    def update_command(
        self,
        db: Session,
        command_id: str,
        patch: Dict[str, Any],
        expected_version: int,
    ) -> Tuple[MedicationCommand, List[str]]:
        """Returns (command, changed field paths)."""
        command = self.require_command(db, command_id)

        if command.version != expected_version:
            raise VersionConflict(
                f"command {command_id} is at version {command.version}, not {expected_version}",
                {"currentVersion": command.version, "expectedVersion": expected_version},
            )
        if command.is_discontinued:
            raise ValidationError("discontinued medications cannot be updated")
        if not isinstance(patch, dict) or not patch:
            raise ValidationError("patch must change at least one field")
        _unknown_keys("patch", patch, PATCHABLE)
        for section in ("medication", "schedule", "reminders"):
            if patch.get(section) is not None and not isinstance(patch[section], dict):
                raise ValidationError(f"patch.{section} must be an object")

        changed: List[str] = []

        if patch.get("medication") is not None:
            merged = {**command.medication, **patch["medication"]}
            medication = normalize_medication(merged)
            changed += _changed_fields("medication", command.medication, medication)
        else:
            medication = command.medication

        if patch.get("schedule") is not None:
            merged = {**command.schedule, **patch["schedule"]}
            schedule = normalize_schedule(merged, self.clock.now().date())
            changed += _changed_fields("schedule", command.schedule, schedule)
        else:
            schedule = command.schedule

        if patch.get("reminders") is not None:
            merged = {**command.reminders, **patch["reminders"]}
            reminders = normalize_reminders(merged)
            changed += _changed_fields("reminders", command.reminders, reminders)
        else:
            reminders = command.reminders

        is_prn = command.is_prn
        if patch.get("isPRN") is not None and bool(patch["isPRN"]) != command.is_prn:
            is_prn = bool(patch["isPRN"])
            changed.append("isPRN")
        if schedule["frequency"] == "as_needed" and not is_prn:
            is_prn = True
            changed.append("isPRN")

        if not changed:
            raise ValidationError("patch does not change anything")

        # new dict objects: in-place mutation of JSON columns is not tracked
        command.medication = dict(medication)
        command.schedule = dict(schedule)
        command.reminders = dict(reminders)
        command.is_prn = is_prn
        command.updated_at = self.clock.now()
        db.flush()

        logger.info(
            "[command_store] updated command=%s version=%s fields=%s",
            command.id, command.version, ",".join(changed),
        )
        return command, changed

    def change_status(
        self,
        db: Session,
        command_id: str,
        new_status: str,
        reason: Optional[str] = None,
    ) -> Tuple[MedicationCommand, str]:
        """Returns (command, previous status)."""
        if new_status not in ALLOWED_TRANSITIONS:
            raise ValidationError(f"unknown status: {new_status}")

        command = self.require_command(db, command_id)
        previous = command.status_current

        if previous == CommandStatus.discontinued.value:
            raise ValidationError("discontinued is permanent")
        if new_status == previous:
            raise ValidationError(f"medication is already {previous}")
        if new_status not in ALLOWED_TRANSITIONS[previous]:
            raise ValidationError(f"cannot move from {previous} to {new_status}")

        command.status_current = new_status
        command.is_active = new_status == CommandStatus.active.value
        command.status_reason = reason
        command.updated_at = self.clock.now()
        db.flush()

        logger.info("[command_store] command=%s %s -> %s", command.id, previous, new_status)
        return command, previous

    def delete_command(self, db: Session, command_id: str, hard_delete: bool = False) -> bool:
        """
        Cascade-delete step only (see TransactionManager.cascade_delete).
        Soft: discontinued + deleted_at. Hard: row removed.
        Returns True when the row itself was removed.
        """
        command = self.get_command(db, command_id)
        if command is None:
            return False

        if hard_delete:
            db.delete(command)
            db.flush()
            return True

        if command.deleted_at is None or not command.is_discontinued:
            now = self.clock.now()
            command.status_current = CommandStatus.discontinued.value
            command.is_active = False
            command.deleted_at = command.deleted_at or now
            command.updated_at = now
            db.flush()
        return False
