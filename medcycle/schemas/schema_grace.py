from __future__ import annotations

import copy
from datetime import date, datetime
from typing import Dict, List, Optional

from pydantic import ConfigDict, Field
from pydantic.alias_generators import to_camel

from medcycle.schemas.schema_base import CamelModel

MEDICATION_TYPES = ("critical", "standard", "vitamin", "prn")
TIME_SLOTS = ("morning", "noon", "evening", "bedtime")

DEFAULT_GRACE_MATRIX: Dict[str, Dict[str, int]] = {
    "critical": {"morning": 15, "noon": 20, "evening": 15, "bedtime": 30},
    "standard": {"morning": 30, "noon": 45, "evening": 30, "bedtime": 60},
    "vitamin": {"morning": 120, "noon": 180, "evening": 120, "bedtime": 240},
    "prn": {"morning": 0, "noon": 0, "evening": 0, "bedtime": 0},
}

DEFAULT_TIME_SLOTS: Dict[str, Dict[str, str]] = {
    "morning": {"start": "04:00", "end": "10:59"},
    "noon": {"start": "11:00", "end": "15:59"},
    "evening": {"start": "16:00", "end": "20:59"},
    "bedtime": {"start": "21:00", "end": "03:59"},
}


class TimeWindow(CamelModel):
    start: str
    end: str


class GracePeriodConfig(CamelModel):
    """
    Everything the grace engine needs, passed in explicitly per call.
    An empty GracePeriodConfig() is the system default.
    """

    default_matrix: Dict[str, Dict[str, int]] = Field(
        default_factory=lambda: copy.deepcopy(DEFAULT_GRACE_MATRIX)
    )
    # {commandId: minutes}
    medication_overrides: Dict[str, int] = Field(default_factory=dict)
    # {medicationType: {timeSlot: minutes}}
    patient_overrides: Dict[str, Dict[str, int]] = Field(default_factory=dict)

    weekend_multiplier: float = 1.5
    holiday_multiplier: float = 2.0

    # None -> US federal holidays for the year in question
    holidays: Optional[List[date]] = None

    time_slots: Dict[str, TimeWindow] = Field(
        default_factory=lambda: {k: TimeWindow(**v) for k, v in DEFAULT_TIME_SLOTS.items()}
    )


class GracePeriodResult(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    grace_period_minutes: int
    applied_rules: List[str]
    grace_period_end_date_time: datetime


class GracePreviewRequest(CamelModel):
    medication_type: str
    scheduled_date_time: datetime
    time_slot: Optional[str] = None
    medication_id: Optional[str] = None
