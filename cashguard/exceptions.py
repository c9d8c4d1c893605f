"""
CashGuard Exceptions.

Error taxonomy for the trigger engine:
- Input validation: rejected before evaluation, nothing mutated
- Storage: retryable per condition; total unavailability is fatal
- Delivery: never raised — recorded on the AlertEvent instead
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Application error codes."""

    INTERNAL_ERROR = "E1000"
    VALIDATION_ERROR = "E1001"
    NOT_FOUND = "E1002"
    UNKNOWN_CONDITION = "E1003"
    TRIGGER_DISABLED = "E1004"

    STORAGE_ERROR = "E5000"
    STORAGE_UNAVAILABLE = "E5001"


class CashGuardError(Exception):
    """Base exception for CashGuard."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.retryable = retryable
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "code": self.code.value,
            "retryable": self.retryable,
            "details": self.details,
        }


class SnapshotValidationError(CashGuardError):
    """Malformed or inconsistent metrics snapshot."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            code=ErrorCode.VALIDATION_ERROR,
            status_code=422,
            details=details,
        )


class UnknownConditionError(SnapshotValidationError):
    """Caller selected a condition id that is not in the RuleSet."""

    def __init__(self, condition_ids: list[str]):
        super().__init__(
            message=f"Unknown condition ids: {', '.join(sorted(condition_ids))}",
            details={"condition_ids": sorted(condition_ids)},
        )
        self.code = ErrorCode.UNKNOWN_CONDITION


class NotFoundError(CashGuardError):
    """Resource not found."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            code=ErrorCode.NOT_FOUND,
            status_code=404,
            details={"resource": resource, "identifier": identifier},
        )


class StorageError(CashGuardError):
    """A read or compare-and-set against the alert store failed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            code=ErrorCode.STORAGE_ERROR,
            status_code=503,
            retryable=True,
            details=details,
        )


class StorageUnavailableError(StorageError):
    """Every condition in an evaluation failed on storage."""

    def __init__(self, organization_id: str, reasons: list[str]):
        super().__init__(
            message=f"Alert store unavailable for organization {organization_id}",
            details={"organization_id": organization_id, "reasons": reasons},
        )
        self.code = ErrorCode.STORAGE_UNAVAILABLE


class TriggerDisabledError(CashGuardError):
    """On-demand alert requested for a trigger the organization switched off."""

    def __init__(self, organization_id: str, condition_id: str):
        super().__init__(
            message=f"Trigger is not enabled: {condition_id}",
            code=ErrorCode.TRIGGER_DISABLED,
            status_code=400,
            details={"organization_id": organization_id, "condition_id": condition_id},
        )
