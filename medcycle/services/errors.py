# medcycle/services/errors.py
from __future__ import annotations

from typing import Any, Dict, Optional


class MedicationError(Exception):
    """Base for every typed failure a workflow can surface."""

    code = "MEDICATION_ERROR"
    http_status = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(MedicationError):
    code = "VALIDATION_ERROR"
    http_status = 422


class VersionConflict(MedicationError):
    """Optimistic-concurrency loss. Re-read and retry."""

    code = "VERSION_CONFLICT"
    http_status = 409


class NotFoundError(MedicationError):
    code = "NOT_FOUND"
    http_status = 404


class PermissionDeniedError(MedicationError):
    code = "PERMISSION_DENIED"
    http_status = 403


class TransactionAbortError(MedicationError):
    """The commit failed and everything was rolled back; safe to retry from scratch."""

    code = "TRANSACTION_ABORTED"
    http_status = 503


class PartialBatchError(MedicationError):
    """
    One detector candidate failed. Collected on the run report and logged,
    never raised out of a batch.
    """

    code = "PARTIAL_BATCH_ERROR"
    http_status = 500

    def __init__(self, scheduled_event_id: str, command_id: Optional[str], cause: BaseException):
        super().__init__(
            f"candidate {scheduled_event_id} failed: {cause}",
            {"scheduledEventId": scheduled_event_id, "commandId": command_id},
        )
        self.scheduled_event_id = scheduled_event_id
        self.command_id = command_id
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scheduledEventId": self.scheduled_event_id,
            "commandId": self.command_id,
            "error": f"{type(self.cause).__name__}: {self.cause}",
        }
