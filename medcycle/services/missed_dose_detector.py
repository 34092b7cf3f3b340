# medcycle/services/missed_dose_detector.py
"""
Missed dose detector.

Runs on a timer (every 15 minutes by default). Each run:
  - pages through dose_scheduled events in [now - lookback, now] that have
    no terminal event and no scan mark, oldest first, keyset-paged
  - per candidate, in its own transaction: recompute the deadline from the
    grace minutes snapshotted on the dose_scheduled event (pushed out by
    the latest snooze), re-check the occurrence, then write dose_missed or
    a resolved/suppressed mark
  - a failing candidate is recorded as a PartialBatchError; the rest of the
    batch carries on
  - stops early when the candidate cap or the time budget is hit; the
    unmarked remainder is picked up by the next run
"""
from __future__ import annotations

import datetime as dt
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, exists, or_, select
from sqlalchemy.orm import Session, aliased

from medcycle.models.detector_run import DetectorRun, MissedDoseScanMark, ScanOutcome
from medcycle.models.medication_command import CommandStatus
from medcycle.models.medication_event import TERMINAL_PRECEDENCE, EventType, MedicationEvent
from medcycle.schemas.schema_event import EventOut
from medcycle.services.errors import PartialBatchError
from medcycle.services.event_log import SCHEDULED
from medcycle.services.notification_dispatch import dispatch_safely
from medcycle.services.scheduling import is_scheduled_occurrence

logger = logging.getLogger(__name__)

MAX_ERROR_SAMPLES = 20


@dataclass(frozen=True)
class Candidate:
    event_id: str
    command_id: str
    patient_id: str
    scheduled_date_time: dt.datetime
    grace_period_minutes: int
    grace_period_rules_applied: Tuple[str, ...]


@dataclass
class DetectorReport:
    run_id: str
    started_at: dt.datetime
    finished_at: Optional[dt.datetime] = None
    candidates: int = 0
    processed: int = 0
    missed: int = 0
    resolved: int = 0
    suppressed: int = 0
    not_due: int = 0
    failed: int = 0
    completed: bool = True
    errors: List[PartialBatchError] = field(default_factory=list)
    missed_events: List[EventOut] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "candidates": self.candidates,
            "processed": self.processed,
            "missed": self.missed,
            "resolved": self.resolved,
            "suppressed": self.suppressed,
            "notDue": self.not_due,
            "failed": self.failed,
            "completed": self.completed,
            "errors": [e.to_dict() for e in self.errors],
        }


def deadline_for(candidate: Candidate, snoozed_until: Optional[dt.datetime]) -> dt.datetime:
    grace = dt.timedelta(minutes=candidate.grace_period_minutes)
    deadline = candidate.scheduled_date_time + grace
    if snoozed_until is not None:
        deadline = max(deadline, snoozed_until + grace)
    return deadline


class MissedDoseDetector:
    def __init__(
        self,
        tx,
        command_store,
        event_log,
        dispatcher,
        clock,
        lookback_hours: int = 72,
        batch_size: int = 50,
        max_candidates_per_run: int = 2000,
        time_budget_seconds: float = 240.0,
    ):
        self.tx = tx
        self.command_store = command_store
        self.event_log = event_log
        self.dispatcher = dispatcher
        self.clock = clock
        self.lookback = dt.timedelta(hours=lookback_hours)
        self.batch_size = batch_size
        self.max_candidates_per_run = max_candidates_per_run
        self.time_budget_seconds = time_budget_seconds

    # ---------- public ----------

    def run(self) -> DetectorReport:
        now = self.clock.now()
        started = time.monotonic()

        run_id = self.tx.run(lambda db: self._start_run(db, now))
        report = DetectorReport(run_id=run_id, started_at=now)
        logger.info("[missed_dose] run=%s start now=%s lookback=%s", run_id, now, self.lookback)

        cursor: Optional[Tuple[dt.datetime, str]] = None
        while report.completed:
            batch = self.tx.run(lambda db: self._fetch_batch(db, now, cursor))
            if not batch:
                break

            for candidate in batch:
                if report.candidates >= self.max_candidates_per_run:
                    report.completed = False
                    logger.info("[missed_dose] run=%s candidate cap %s reached", run_id, self.max_candidates_per_run)
                    break
                if time.monotonic() - started > self.time_budget_seconds:
                    report.completed = False
                    logger.info("[missed_dose] run=%s time budget %.0fs used up", run_id, self.time_budget_seconds)
                    break

                cursor = (candidate.scheduled_date_time, candidate.event_id)
                report.candidates += 1
                self._handle(candidate, now, report)

            if len(batch) < self.batch_size:
                break

        report.finished_at = self.clock.now()
        self.tx.run(lambda db: self._finish_run(db, report))

        logger.info(
            "[missed_dose] run=%s done candidates=%d missed=%d resolved=%d suppressed=%d failed=%d completed=%s",
            run_id, report.candidates, report.missed, report.resolved,
            report.suppressed, report.failed, report.completed,
        )
        return report

    # ---------- per candidate ----------

    def _handle(self, candidate: Candidate, now: dt.datetime, report: DetectorReport) -> None:
        try:
            outcome, missed_event = self.tx.run(
                lambda db: self._process(db, candidate, now, report.run_id),
                retry=True,
            )
        except Exception as e:
            err = PartialBatchError(candidate.event_id, candidate.command_id, e)
            report.failed += 1
            report.errors.append(err)
            logger.exception(
                "[missed_dose] candidate failed event=%s command=%s",
                candidate.event_id, candidate.command_id,
            )
            return

        if outcome is None:
            report.not_due += 1
            return

        report.processed += 1
        if outcome == ScanOutcome.missed.value:
            report.missed += 1
        elif outcome == ScanOutcome.resolved.value:
            report.resolved += 1
        else:
            report.suppressed += 1

        if missed_event is not None:
            report.missed_events.append(missed_event)
            dispatch_safely(self.dispatcher, missed_event, [missed_event.patient_id])

    def _process(
        self, db: Session, candidate: Candidate, now: dt.datetime, run_id: str
    ) -> Tuple[Optional[str], Optional[EventOut]]:
        if db.get(MissedDoseScanMark, candidate.event_id) is not None:
            # another run got here first
            return ScanOutcome.resolved.value, None
        if db.get(MedicationEvent, candidate.event_id) is None:
            # cascade-deleted since the batch was read; nothing left to mark
            return ScanOutcome.suppressed.value, None

        snooze = self.event_log.latest_snooze(db, candidate.command_id, candidate.scheduled_date_time)
        snoozed_until = None
        if snooze is not None and (snooze.details or {}).get("snoozedUntil"):
            snoozed_until = dt.datetime.fromisoformat(snooze.details["snoozedUntil"])

        deadline = deadline_for(candidate, snoozed_until)
        if now <= deadline:
            return None, None

        # check-then-act inside this one transaction
        status = self.event_log.derive_current_status(db, candidate.command_id, candidate.scheduled_date_time)
        command = self.command_store.get_command(db, candidate.command_id)

        missed_event = None
        if status != SCHEDULED:
            outcome = ScanOutcome.resolved.value
        elif (
            command is None
            or command.status_current != CommandStatus.active.value
            or command.deleted_at is not None
            or not is_scheduled_occurrence(command.schedule, candidate.scheduled_date_time)
        ):
            outcome = ScanOutcome.suppressed.value
        else:
            event = self.event_log.append_event(
                db,
                command_id=candidate.command_id,
                patient_id=candidate.patient_id,
                event_type=EventType.dose_missed.value,
                scheduled_date_time=candidate.scheduled_date_time,
                grace_period_minutes=candidate.grace_period_minutes,
                grace_period_rules_applied=list(candidate.grace_period_rules_applied),
                details={
                    "gracePeriodEnd": deadline.isoformat(),
                    "detectedAt": now.isoformat(),
                    "runId": run_id,
                },
            )
            missed_event = EventOut.from_model(event)
            outcome = ScanOutcome.missed.value

        db.add(
            MissedDoseScanMark(
                scheduled_event_id=candidate.event_id,
                command_id=candidate.command_id,
                outcome=outcome,
                run_id=run_id,
                processed_at=now,
            )
        )
        db.flush()
        return outcome, missed_event

    # ---------- queries ----------

    def _fetch_batch(
        self, db: Session, now: dt.datetime, cursor: Optional[Tuple[dt.datetime, str]]
    ) -> List[Candidate]:
        terminal = aliased(MedicationEvent)
        has_terminal = exists().where(
            terminal.command_id == MedicationEvent.command_id,
            terminal.scheduled_date_time == MedicationEvent.scheduled_date_time,
            terminal.event_type.in_(TERMINAL_PRECEDENCE),
        )
        has_mark = exists().where(MissedDoseScanMark.scheduled_event_id == MedicationEvent.id)

        stmt = select(MedicationEvent).where(
            MedicationEvent.event_type == EventType.dose_scheduled.value,
            MedicationEvent.scheduled_date_time >= now - self.lookback,
            MedicationEvent.scheduled_date_time <= now,
            ~has_terminal,
            ~has_mark,
        )
        if cursor is not None:
            after_time, after_id = cursor
            stmt = stmt.where(
                or_(
                    MedicationEvent.scheduled_date_time > after_time,
                    and_(
                        MedicationEvent.scheduled_date_time == after_time,
                        MedicationEvent.id > after_id,
                    ),
                )
            )
        stmt = stmt.order_by(
            MedicationEvent.scheduled_date_time.asc(), MedicationEvent.id.asc()
        ).limit(self.batch_size)

        return [
            Candidate(
                event_id=ev.id,
                command_id=ev.command_id,
                patient_id=ev.patient_id,
                scheduled_date_time=ev.scheduled_date_time,
                grace_period_minutes=ev.grace_period_minutes,
                grace_period_rules_applied=tuple(ev.grace_period_rules_applied or ()),
            )
            for ev in db.execute(stmt).scalars()
        ]

    # ---------- run bookkeeping ----------

    def _start_run(self, db: Session, now: dt.datetime) -> str:
        run = DetectorRun(started_at=now)
        db.add(run)
        db.flush()
        return run.id

    def _finish_run(self, db: Session, report: DetectorReport) -> None:
        run = db.get(DetectorRun, report.run_id)
        if run is None:
            return
        run.finished_at = report.finished_at
        run.candidates = report.candidates
        run.processed = report.processed
        run.missed = report.missed
        run.resolved = report.resolved
        run.suppressed = report.suppressed
        run.failed = report.failed
        run.completed = report.completed
        run.error_samples = [e.to_dict() for e in report.errors[:MAX_ERROR_SAMPLES]]
