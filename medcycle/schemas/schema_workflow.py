from __future__ import annotations

from typing import Any, Optional

from pydantic import Field

from medcycle.schemas.schema_base import CamelModel


class SideEffects(CamelModel):
    events_created: int = 0
    events_deleted: int = 0
    notifications_queued: int = 0


class WorkflowResult(CamelModel):
    success: bool = True
    data: Optional[Any] = None
    side_effects: SideEffects = Field(default_factory=SideEffects)

    def envelope(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class DeletionSummary(CamelModel):
    command_deleted: bool
    events_deleted: int
    total_items_deleted: int
