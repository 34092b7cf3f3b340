from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import Field, model_validator

from medcycle.schemas.schema_base import CamelModel


class MedicationInfo(CamelModel):
    name: Optional[str] = None
    dosage: Optional[str] = None
    form: Optional[str] = None
    route: Optional[str] = None
    instructions: Optional[str] = None
    generic_name: Optional[str] = None
    medication_type: Optional[str] = None


class ScheduleInfo(CamelModel):
    frequency: str = "daily"
    times: List[str] = Field(default_factory=list)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_indefinite: Optional[bool] = None
    days_of_week: Optional[List[int]] = None
    day_of_month: Optional[int] = None


class ReminderSettings(CamelModel):
    enabled: bool = True
    minutes_before: List[int] = Field(default_factory=lambda: [15])


class CreateCommandRequest(CamelModel):
    medication: MedicationInfo
    schedule: ScheduleInfo
    reminders: ReminderSettings = Field(default_factory=ReminderSettings)
    is_prn: bool = Field(default=False, alias="isPRN")


class MedicationPatch(CamelModel):
    name: Optional[str] = None
    dosage: Optional[str] = None
    form: Optional[str] = None
    route: Optional[str] = None
    instructions: Optional[str] = None
    generic_name: Optional[str] = None
    medication_type: Optional[str] = None


class SchedulePatch(CamelModel):
    frequency: Optional[str] = None
    times: Optional[List[str]] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_indefinite: Optional[bool] = None
    days_of_week: Optional[List[int]] = None
    day_of_month: Optional[int] = None


class RemindersPatch(CamelModel):
    enabled: Optional[bool] = None
    minutes_before: Optional[List[int]] = None


class CommandPatch(CamelModel):
    medication: Optional[MedicationPatch] = None
    schedule: Optional[SchedulePatch] = None
    reminders: Optional[RemindersPatch] = None
    is_prn: Optional[bool] = Field(default=None, alias="isPRN")

    @model_validator(mode="after")
    def validate_at_least_one_field(self):
        if not self.model_fields_set:
            raise ValueError("patch must change at least one field")
        return self


class UpdateCommandRequest(CamelModel):
    expected_version: int = Field(..., ge=1)
    patch: CommandPatch


class StatusChangeRequest(CamelModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class CommandStatusOut(CamelModel):
    current: str
    is_active: bool
    is_prn: bool = Field(alias="isPRN")
    reason: Optional[str] = None


class CommandMetadataOut(CamelModel):
    created_at: datetime
    updated_at: datetime
    version: int
    deleted_at: Optional[datetime] = None


class CommandOut(CamelModel):
    id: str
    patient_id: str
    medication: Dict[str, Any]
    schedule: Dict[str, Any]
    reminders: Dict[str, Any]
    status: CommandStatusOut
    metadata: CommandMetadataOut

    @classmethod
    def from_model(cls, command) -> "CommandOut":
        return cls(
            id=command.id,
            patient_id=command.patient_id,
            medication=dict(command.medication or {}),
            schedule=dict(command.schedule or {}),
            reminders=dict(command.reminders or {}),
            status=CommandStatusOut(
                current=command.status_current,
                is_active=command.is_active,
                is_prn=command.is_prn,
                reason=command.status_reason,
            ),
            metadata=CommandMetadataOut(
                created_at=command.created_at,
                updated_at=command.updated_at,
                version=command.version,
                deleted_at=command.deleted_at,
            ),
        )


def patch_to_dict(patch: CommandPatch) -> Dict[str, Any]:
    """Only the fields the caller actually sent, in wire (camelCase) form."""
    return patch.model_dump(mode="json", by_alias=True, exclude_unset=True)


def create_to_dict(body: CreateCommandRequest) -> Dict[str, Any]:
    return body.model_dump(mode="json", by_alias=True, exclude_none=True)
