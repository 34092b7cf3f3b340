# medcycle/models/detector_run.py
from __future__ import annotations

import datetime as dt
import enum
import uuid
from typing import Any, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from medcycle.db.database import Base


class ScanOutcome(str, enum.Enum):
    missed = "missed"          # dose_missed appended
    resolved = "resolved"      # a terminal event already existed
    suppressed = "suppressed"  # command gone / paused / discontinued / off-schedule


def _new_id() -> str:
    return uuid.uuid4().hex


class MissedDoseScanMark(Base):
    """
    One row per dose_scheduled event the detector has finished with.
    Written in the same transaction as the outcome, so a run that dies
    halfway leaves exactly the unfinished candidates unmarked.
    """

    __tablename__ = "missed_dose_scan_marks"

    scheduled_event_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("medication_events.id", ondelete="CASCADE"),
        primary_key=True,
    )
    command_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)
    run_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    processed_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)


class DetectorRun(Base):
    __tablename__ = "detector_runs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)

    started_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    finished_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)

    candidates: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    missed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    resolved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    suppressed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # first few failures, [{scheduledEventId, commandId, error}]
    error_samples: Mapped[List[Any]] = mapped_column(JSON, nullable=False, default=list)
