from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class AppError(Exception):
    code: str
    message: str
    status_code: int
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_response(self, trace_id: str | None) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details or {},
                "trace_id": trace_id,
            }
        }


class ErrorCodes:
    INVALID_TRANSITION = "INVALID_TRANSITION"
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"
    UNSUPPORTED_EMERGENCY_TYPE = "UNSUPPORTED_EMERGENCY_TYPE"
    RESOURCE_UNAVAILABLE = "RESOURCE_UNAVAILABLE"
    DISPATCH_CLOSED = "DISPATCH_CLOSED"
    NOT_FOUND = "NOT_FOUND"
    RETRY_EXHAUSTED = "RETRY_EXHAUSTED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class InvalidTransition(AppError):
    def __init__(self, *, entity_kind: str, from_status: str, to_status: str, allowed_targets: list[str]) -> None:
        super().__init__(
            code=ErrorCodes.INVALID_TRANSITION,
            message=f"Transition of {entity_kind} from {from_status} to {to_status} is not allowed.",
            status_code=422,
            details={
                "entity_kind": entity_kind,
                "from_status": from_status,
                "to_status": to_status,
                "allowed_targets": allowed_targets,
            },
        )


class ConcurrentModification(AppError):
    def __init__(self, *, entity_kind: str, entity_id: str, expected_version: int, server_version: int | None) -> None:
        super().__init__(
            code=ErrorCodes.CONCURRENCY_CONFLICT,
            message=f"{entity_kind} version conflict.",
            status_code=409,
            details={
                "entity_kind": entity_kind,
                "entity_id": entity_id,
                "expected_version": expected_version,
                "server_version": server_version,
            },
        )


class UnsupportedEmergencyType(AppError):
    def __init__(self, emergency_type: object) -> None:
        super().__init__(
            code=ErrorCodes.UNSUPPORTED_EMERGENCY_TYPE,
            message=f"No dispatch type is mapped for emergency type {emergency_type!s}.",
            status_code=422,
            details={"emergency_type": str(emergency_type)},
        )


class NotFound(AppError):
    def __init__(self, *, entity_kind: str, key: str, value: object) -> None:
        super().__init__(
            code=ErrorCodes.NOT_FOUND,
            message=f"{entity_kind} not found.",
            status_code=404,
            details={key: str(value)},
        )


class RetryExhausted(AppError):
    def __init__(self, *, operation: str, attempts: int, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            code=ErrorCodes.RETRY_EXHAUSTED,
            message=f"{operation} did not succeed after {attempts} attempts.",
            status_code=409,
            details={"operation": operation, "attempts": attempts, **(details or {})},
        )
