from __future__ import annotations

import datetime as dt
from typing import Optional

from sqlalchemy import BigInteger, Boolean, DateTime, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from medcycle.db.database import Base


class PushToken(Base):
    """A patient's device registration for medication alerts."""

    __tablename__ = "push_tokens"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    patient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    token: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    platform: Mapped[str] = mapped_column(String(20), nullable=False, default="unknown")
    device_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # consecutive transient send failures; reset by a successful send
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deactivated_reason: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    registered_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False, server_default=func.now())
    last_sent_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_push_tokens_patient_active", "patient_id", "is_active"),
    )
