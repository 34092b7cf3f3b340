# medcycle/models/medication_command.py
from __future__ import annotations

import datetime as dt
import enum
import uuid
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from medcycle.db.database import Base


class CommandStatus(str, enum.Enum):
    active = "active"
    paused = "paused"
    discontinued = "discontinued"


def _new_id() -> str:
    return uuid.uuid4().hex


class MedicationCommand(Base):
    """
    The single authoritative record of one medication for one patient.
    Schedule and reminder settings are embedded (JSON), never split out.
    """

    __tablename__ = "medication_commands"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)

    patient_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # {name, dosage, form, route, instructions, medicationType}
    medication: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    # {frequency, times[], startDate, endDate, isIndefinite, daysOfWeek, dayOfMonth}
    schedule: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    # {enabled, minutesBefore[]}
    reminders: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)

    status_current: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CommandStatus.active.value
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_prn: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    deleted_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)

    # optimistic concurrency: SQLAlchemy bumps this on every UPDATE and
    # raises StaleDataError when the row moved underneath us
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_commands_patient_status", "patient_id", "status_current"),
    )

    @property
    def medication_name(self) -> str:
        return (self.medication or {}).get("name", "")

    @property
    def is_discontinued(self) -> bool:
        return self.status_current == CommandStatus.discontinued.value

    def __repr__(self) -> str:
        return f"<MedicationCommand {self.id} {self.medication_name!r} {self.status_current} v{self.version}>"
