# medcycle/services/orchestrator.py
"""
Single entry point for every externally triggered medication workflow.

Each workflow is one transaction (command row + every event it implies);
notifications go out only after commit and can never fail the workflow.
All collaborators are handed in at construction (see services/factory.py).
"""
from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from medcycle.models.medication_command import CommandStatus, MedicationCommand
from medcycle.models.medication_event import EventType, MedicationEvent
from medcycle.schemas.schema_command import CommandOut
from medcycle.schemas.schema_event import SKIP_REASONS, EventFilter, EventOut, OccurrenceOut
from medcycle.schemas.schema_grace import GracePeriodConfig, GracePeriodResult
from medcycle.schemas.schema_workflow import SideEffects, WorkflowResult
from medcycle.services.adherence import calculate_adherence
from medcycle.services.errors import NotFoundError, ValidationError
from medcycle.services.event_log import SCHEDULED
from medcycle.services.grace_period import (
    calculate_grace_period,
    classify_medication_type,
    resolve_time_slot,
)
from medcycle.services.notification_dispatch import dispatch_safely
from medcycle.services.scheduling import occurrences_between

logger = logging.getLogger(__name__)

MIN_SNOOZE_MINUTES = 1
MAX_SNOOZE_MINUTES = 480

CLOSED_FOR_DOSES = (EventType.dose_taken.value, EventType.dose_skipped.value)


class MedicationOrchestrator:
    def __init__(
        self,
        tx,
        command_store,
        event_log,
        grace_configs,
        dispatcher,
        clock,
        horizon_days: int = 30,
    ):
        self.tx = tx
        self.command_store = command_store
        self.event_log = event_log
        self.grace_configs = grace_configs
        self.dispatcher = dispatcher
        self.clock = clock
        self.horizon_days = horizon_days

    # ---------- helpers ----------

    def _finish(
        self,
        data: Any,
        created: Sequence[EventOut] = (),
        deleted: int = 0,
        notify: Sequence[EventOut] = (),
    ) -> WorkflowResult:
        queued = 0
        for event in notify:
            if dispatch_safely(self.dispatcher, event, [event.patient_id]):
                queued += 1
        return WorkflowResult(
            success=True,
            data=data,
            side_effects=SideEffects(
                events_created=len(created),
                events_deleted=deleted,
                notifications_queued=queued,
            ),
        )

    def _owned(self, db: Session, caller_id: str, command_id: str) -> MedicationCommand:
        command = self.command_store.require_command(db, command_id)
        self.command_store.assert_owner(command, caller_id)
        return command

    def _require_active(self, command: MedicationCommand) -> None:
        if command.status_current != CommandStatus.active.value:
            raise ValidationError(f"medication is {command.status_current}")

    def medication_type_of(self, command: MedicationCommand) -> str:
        medication = command.medication or {}
        if command.is_prn:
            return "prn"
        return medication.get("medicationType") or classify_medication_type(
            medication.get("name", ""),
            medication.get("genericName"),
            command.is_prn,
            (command.schedule or {}).get("frequency"),
        )

    def grace_for(
        self, command: MedicationCommand, config: GracePeriodConfig, when: dt.datetime
    ) -> GracePeriodResult:
        return calculate_grace_period(
            self.medication_type_of(command),
            resolve_time_slot(when, config),
            when,
            config,
            medication_id=command.id,
        )

    def _append(self, db: Session, command: MedicationCommand, event_type: str, when: dt.datetime, **kw) -> MedicationEvent:
        return self.event_log.append_event(
            db,
            command_id=command.id,
            patient_id=command.patient_id,
            event_type=event_type,
            scheduled_date_time=when,
            **kw,
        )

    def _fill_horizon(self, db: Session, command: MedicationCommand, now: dt.datetime) -> List[EventOut]:
        """
        dose_scheduled for every future occurrence in (now, now + horizon]
        that does not have one yet. Grace minutes are snapshotted per event.
        """
        if command.is_prn or command.status_current != CommandStatus.active.value:
            return []

        end = now + dt.timedelta(days=self.horizon_days)
        existing = self.event_log.scheduled_times(db, command.id, now, end)
        wanted = [t for t in occurrences_between(command.schedule, now, end) if t not in existing]
        if not wanted:
            return []

        config = self.grace_configs.get_config(db, command.patient_id)
        created = []
        for when in wanted:
            grace = self.grace_for(command, config, when)
            event = self._append(
                db, command, EventType.dose_scheduled.value, when,
                grace_period_minutes=grace.grace_period_minutes,
                grace_period_rules_applied=grace.applied_rules,
                details={"gracePeriodEnd": grace.grace_period_end_date_time.isoformat()},
            )
            created.append(EventOut.from_model(event))
        return created

    # ---------- command workflows ----------

    def create_command(self, caller_id: str, data: Dict[str, Any]) -> WorkflowResult:
        def work(db: Session):
            now = self.clock.now()
            command = self.command_store.create_command(db, caller_id, data)
            created_event = EventOut.from_model(
                self._append(
                    db, command, EventType.command_created.value, now,
                    actual_date_time=now,
                    details={"version": command.version, "medicationName": command.medication_name},
                )
            )
            horizon = self._fill_horizon(db, command, now)
            return CommandOut.from_model(command), [created_event] + horizon, created_event

        command_out, created, primary = self.tx.run(work)
        logger.info(
            "[orchestrator] create command=%s scheduled=%d", command_out.id, len(created) - 1
        )
        return self._finish(command_out, created=created, notify=[primary])

    def update_command(
        self, caller_id: str, command_id: str, patch: Dict[str, Any], expected_version: int
    ) -> WorkflowResult:
        # no retry: expected_version comes from the caller, who has to re-read
        def work(db: Session):
            now = self.clock.now()
            self._owned(db, caller_id, command_id)
            command, changed = self.command_store.update_command(db, command_id, patch, expected_version)
            updated_event = EventOut.from_model(
                self._append(
                    db, command, EventType.command_updated.value, now,
                    actual_date_time=now,
                    details={"changedFields": changed, "version": command.version},
                )
            )
            horizon = self._fill_horizon(db, command, now)
            return CommandOut.from_model(command), [updated_event] + horizon, updated_event

        command_out, created, primary = self.tx.run(work)
        return self._finish(command_out, created=created, notify=[primary])

    def _change_status(
        self, caller_id: str, command_id: str, new_status: str, reason: Optional[str]
    ) -> WorkflowResult:
        def work(db: Session):
            now = self.clock.now()
            self._owned(db, caller_id, command_id)
            command, previous = self.command_store.change_status(db, command_id, new_status, reason)
            event_type = (
                EventType.command_discontinued.value
                if new_status == CommandStatus.discontinued.value
                else EventType.command_updated.value
            )
            status_event = EventOut.from_model(
                self._append(
                    db, command, event_type, now,
                    actual_date_time=now,
                    details={
                        "changedFields": ["status"],
                        "previousStatus": previous,
                        "newStatus": new_status,
                        "reason": reason,
                        "version": command.version,
                    },
                )
            )
            horizon = self._fill_horizon(db, command, now) if new_status == CommandStatus.active.value else []
            return CommandOut.from_model(command), [status_event] + horizon, status_event

        # status changes re-read inside each attempt, so a lost race is retried
        command_out, created, primary = self.tx.run(work, retry=True)
        logger.info("[orchestrator] command=%s -> %s", command_id, new_status)
        return self._finish(command_out, created=created, notify=[primary])

    def pause(self, caller_id: str, command_id: str, reason: Optional[str] = None) -> WorkflowResult:
        return self._change_status(caller_id, command_id, CommandStatus.paused.value, reason)

    def resume(self, caller_id: str, command_id: str, reason: Optional[str] = None) -> WorkflowResult:
        return self._change_status(caller_id, command_id, CommandStatus.active.value, reason)

    def discontinue(self, caller_id: str, command_id: str, reason: Optional[str] = None) -> WorkflowResult:
        return self._change_status(caller_id, command_id, CommandStatus.discontinued.value, reason)

    def delete_command(self, caller_id: str, command_id: str, hard_delete: bool = False) -> WorkflowResult:
        def check_owner(db: Session) -> None:
            command = self.command_store.get_command(db, command_id)
            # already gone: cascade_delete still sweeps orphans or raises NotFound
            if command is not None:
                self.command_store.assert_owner(command, caller_id)

        self.tx.run(check_owner)
        summary = self.tx.cascade_delete(command_id, hard_delete=hard_delete)
        return self._finish(summary, deleted=summary.events_deleted)

    # ---------- dose workflows ----------

    def take_dose(
        self,
        caller_id: str,
        command_id: str,
        scheduled_date_time: Optional[dt.datetime] = None,
        taken_at: Optional[dt.datetime] = None,
        notes: Optional[str] = None,
    ) -> WorkflowResult:
        def work(db: Session):
            now = self.clock.now()
            command = self._owned(db, caller_id, command_id)
            self._require_active(command)

            actual = taken_at or now
            if actual > now:
                raise ValidationError("takenAt cannot be in the future")

            if scheduled_date_time is None:
                if not command.is_prn:
                    raise ValidationError("scheduledDateTime is required")
                when, scheduled = actual, None
            else:
                when = scheduled_date_time
                scheduled = self.event_log.find_scheduled_event(db, command_id, when)
                if scheduled is None and not command.is_prn:
                    raise NotFoundError(f"no scheduled dose at {when.isoformat()}")

            status = self.event_log.derive_current_status(db, command_id, when)
            if status in CLOSED_FOR_DOSES:
                raise ValidationError(f"dose already recorded as {status}")

            grace_minutes = scheduled.grace_period_minutes if scheduled else 0
            minutes_late = max(0, int((actual - when).total_seconds() // 60))
            details = {
                "minutesLate": minutes_late,
                "onTime": actual <= when + dt.timedelta(minutes=grace_minutes),
            }
            if status == EventType.dose_missed.value:
                details["afterMissed"] = True
            if scheduled is None:
                details["adHoc"] = True
            if notes:
                details["notes"] = notes

            event = self._append(
                db, command, EventType.dose_taken.value, when,
                actual_date_time=actual,
                grace_period_minutes=grace_minutes,
                grace_period_rules_applied=list(scheduled.grace_period_rules_applied) if scheduled else [],
                details=details,
            )
            return EventOut.from_model(event)

        event_out = self.tx.run(work, retry=True)
        return self._finish(event_out, created=[event_out], notify=[event_out])

    def skip_dose(
        self,
        caller_id: str,
        command_id: str,
        scheduled_date_time: dt.datetime,
        reason: str,
        notes: Optional[str] = None,
    ) -> WorkflowResult:
        if reason not in SKIP_REASONS:
            raise ValidationError(f"reason must be one of {', '.join(SKIP_REASONS)}")

        def work(db: Session):
            now = self.clock.now()
            command = self._owned(db, caller_id, command_id)
            self._require_active(command)

            scheduled = self.event_log.find_scheduled_event(db, command_id, scheduled_date_time)
            if scheduled is None:
                raise NotFoundError(f"no scheduled dose at {scheduled_date_time.isoformat()}")

            status = self.event_log.derive_current_status(db, command_id, scheduled_date_time)
            if status in CLOSED_FOR_DOSES:
                raise ValidationError(f"dose already recorded as {status}")

            details = {"reason": reason}
            if notes:
                details["notes"] = notes
            event = self._append(
                db, command, EventType.dose_skipped.value, scheduled_date_time,
                actual_date_time=now,
                grace_period_minutes=scheduled.grace_period_minutes,
                grace_period_rules_applied=list(scheduled.grace_period_rules_applied),
                details=details,
            )
            return EventOut.from_model(event)

        event_out = self.tx.run(work, retry=True)
        return self._finish(event_out, created=[event_out], notify=[event_out])

    def snooze_dose(
        self, caller_id: str, command_id: str, scheduled_date_time: dt.datetime, minutes: int
    ) -> WorkflowResult:
        if isinstance(minutes, bool) or not isinstance(minutes, int) or not (
            MIN_SNOOZE_MINUTES <= minutes <= MAX_SNOOZE_MINUTES
        ):
            raise ValidationError(f"snooze must be {MIN_SNOOZE_MINUTES}..{MAX_SNOOZE_MINUTES} minutes")

        def work(db: Session):
            now = self.clock.now()
            command = self._owned(db, caller_id, command_id)
            self._require_active(command)

            scheduled = self.event_log.find_scheduled_event(db, command_id, scheduled_date_time)
            if scheduled is None:
                raise NotFoundError(f"no scheduled dose at {scheduled_date_time.isoformat()}")

            status = self.event_log.derive_current_status(db, command_id, scheduled_date_time)
            if status != SCHEDULED:
                raise ValidationError(f"cannot snooze a dose already recorded as {status}")

            snoozed_until = now + dt.timedelta(minutes=minutes)
            event = self._append(
                db, command, EventType.dose_snoozed.value, scheduled_date_time,
                actual_date_time=now,
                grace_period_minutes=scheduled.grace_period_minutes,
                grace_period_rules_applied=list(scheduled.grace_period_rules_applied),
                details={"snoozeMinutes": minutes, "snoozedUntil": snoozed_until.isoformat()},
            )
            return EventOut.from_model(event)

        event_out = self.tx.run(work, retry=True)
        return self._finish(event_out, created=[event_out], notify=[event_out])

    # ---------- reads ----------

    def get_command(self, caller_id: str, command_id: str) -> WorkflowResult:
        command_out = self.tx.run(
            lambda db: CommandOut.from_model(self._owned(db, caller_id, command_id))
        )
        return self._finish(command_out)

    def list_commands(self, caller_id: str, status: Optional[str] = None) -> WorkflowResult:
        commands = self.tx.run(
            lambda db: [
                CommandOut.from_model(c)
                for c in self.command_store.list_commands(db, caller_id, status=status)
            ]
        )
        return self._finish(commands)

    def query_events(self, caller_id: str, flt: EventFilter) -> WorkflowResult:
        flt = flt.model_copy(update={"patient_id": caller_id})

        def work(db: Session):
            if flt.command_id:
                command = self.command_store.get_command(db, flt.command_id)
                if command is not None:
                    self.command_store.assert_owner(command, caller_id)
            return [EventOut.from_model(e) for e in self.event_log.query_events(db, flt)]

        return self._finish(self.tx.run(work))

    def occurrence_status(
        self, caller_id: str, command_id: str, scheduled_date_time: dt.datetime
    ) -> WorkflowResult:
        def work(db: Session):
            self._owned(db, caller_id, command_id)
            events = self.event_log.occurrence_events(db, command_id, scheduled_date_time)
            if not events:
                raise NotFoundError(f"no dose events at {scheduled_date_time.isoformat()}")

            scheduled = next(
                (e for e in events if e.event_type == EventType.dose_scheduled.value), None
            )
            snoozes = [e for e in events if e.event_type == EventType.dose_snoozed.value]
            snoozed_until = None
            if snoozes and (snoozes[-1].details or {}).get("snoozedUntil"):
                snoozed_until = dt.datetime.fromisoformat(snoozes[-1].details["snoozedUntil"])

            grace_end = None
            if scheduled is not None:
                grace = dt.timedelta(minutes=scheduled.grace_period_minutes)
                grace_end = scheduled_date_time + grace
                if snoozed_until is not None:
                    grace_end = max(grace_end, snoozed_until + grace)

            return OccurrenceOut(
                command_id=command_id,
                scheduled_date_time=scheduled_date_time,
                status=self.event_log.derive_current_status(db, command_id, scheduled_date_time),
                grace_period_minutes=scheduled.grace_period_minutes if scheduled else None,
                grace_period_end_date_time=grace_end,
                snoozed_until=snoozed_until,
                events=[EventOut.from_model(e) for e in events],
            )

        return self._finish(self.tx.run(work))

    def adherence(
        self,
        caller_id: str,
        start: dt.datetime,
        end: dt.datetime,
        command_id: Optional[str] = None,
    ) -> WorkflowResult:
        if end < start:
            raise ValidationError("end must not be before start")

        def work(db: Session):
            if command_id:
                self._owned(db, caller_id, command_id)
            return calculate_adherence(
                db, self.event_log, self.command_store, caller_id, start, end,
                self.clock.now(), command_id=command_id,
            )

        return self._finish(self.tx.run(work))

    # ---------- grace period settings ----------

    def get_grace_config(self, caller_id: str) -> WorkflowResult:
        return self._finish(self.tx.run(lambda db: self.grace_configs.get_config(db, caller_id)))

    def save_grace_config(self, caller_id: str, config: GracePeriodConfig) -> WorkflowResult:
        """Applies to dose_scheduled events created from now on; existing snapshots keep their minutes."""
        saved = self.tx.run(lambda db: self.grace_configs.save_config(db, caller_id, config))
        logger.info("[grace] patient=%s config saved", caller_id)
        return self._finish(saved)

    def preview_grace(
        self,
        caller_id: str,
        medication_type: str,
        scheduled_date_time: dt.datetime,
        time_slot: Optional[str] = None,
        medication_id: Optional[str] = None,
    ) -> WorkflowResult:
        def work(db: Session) -> GracePeriodResult:
            config = self.grace_configs.get_config(db, caller_id)
            slot = time_slot or resolve_time_slot(scheduled_date_time, config)
            return calculate_grace_period(
                medication_type, slot, scheduled_date_time, config, medication_id=medication_id
            )

        return self._finish(self.tx.run(work))

    # ---------- scheduled maintenance ----------

    def extend_horizons(self) -> Dict[str, int]:
        """Daily job: keep every active, scheduled command topped up to the horizon."""
        command_ids = self.tx.run(
            lambda db: [c.id for c in self.command_store.list_active_commands(db) if not c.is_prn]
        )

        created = failed = 0
        for command_id in command_ids:
            def work(db: Session, command_id=command_id):
                command = self.command_store.get_command(db, command_id)
                if command is None:
                    return 0
                return len(self._fill_horizon(db, command, self.clock.now()))

            try:
                created += self.tx.run(work, retry=True)
            except Exception:
                failed += 1
                logger.exception("[horizon] command=%s extension failed", command_id)

        logger.info(
            "[horizon] commands=%d events_created=%d failed=%d", len(command_ids), created, failed
        )
        return {"commands": len(command_ids), "eventsCreated": created, "failed": failed}
