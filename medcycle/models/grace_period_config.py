from __future__ import annotations

import datetime as dt
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, DateTime, Float, String, func
from sqlalchemy.orm import Mapped, mapped_column

from medcycle.db.database import Base


class GracePeriodSetting(Base):
    """Stored per-patient grace configuration. Missing row = system defaults."""

    __tablename__ = "grace_period_configs"

    patient_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # {type: {slot: minutes}}; NULL means the built-in matrix
    default_matrix: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    medication_overrides: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    patient_overrides: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    weekend_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=1.5)
    holiday_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=2.0)

    # ISO dates; NULL means the computed US federal calendar
    holidays: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)
    time_slots: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False, server_default=func.now())
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
