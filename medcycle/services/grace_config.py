from __future__ import annotations

import copy
from typing import Optional

from sqlalchemy.orm import Session

from medcycle.models.grace_period_config import GracePeriodSetting
from medcycle.schemas.schema_grace import DEFAULT_GRACE_MATRIX, GracePeriodConfig
from medcycle.services.errors import ValidationError
from medcycle.services.grace_period import validate_grace_config


class GraceConfigRepository:
    """Loads/saves a patient's GracePeriodConfig. No caching: every read hits the row."""

    def get_config(self, db: Session, patient_id: str) -> GracePeriodConfig:
        row = db.get(GracePeriodSetting, patient_id)
        if row is None:
            return GracePeriodConfig()

        data = {
            "default_matrix": row.default_matrix or copy.deepcopy(DEFAULT_GRACE_MATRIX),
            "medication_overrides": row.medication_overrides or {},
            "patient_overrides": row.patient_overrides or {},
            "weekend_multiplier": row.weekend_multiplier,
            "holiday_multiplier": row.holiday_multiplier,
            "holidays": row.holidays,
        }
        if row.time_slots:
            data["time_slots"] = row.time_slots
        return GracePeriodConfig(**data)

    def save_config(self, db: Session, patient_id: str, config: GracePeriodConfig) -> GracePeriodConfig:
        errors = validate_grace_config(config)
        if errors:
            raise ValidationError("invalid grace period configuration", {"errors": errors})

        row: Optional[GracePeriodSetting] = db.get(GracePeriodSetting, patient_id)
        if row is None:
            row = GracePeriodSetting(patient_id=patient_id)
            db.add(row)

        row.default_matrix = copy.deepcopy(config.default_matrix)
        row.medication_overrides = dict(config.medication_overrides)
        row.patient_overrides = copy.deepcopy(config.patient_overrides)
        row.weekend_multiplier = config.weekend_multiplier
        row.holiday_multiplier = config.holiday_multiplier
        row.holidays = [d.isoformat() for d in config.holidays] if config.holidays is not None else None
        row.time_slots = {k: v.model_dump() for k, v in config.time_slots.items()}
        db.flush()
        return config

