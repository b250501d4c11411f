from __future__ import annotations

from dataclasses import dataclass
from typing import Any

SESSION_EXISTS = "SESSION_EXISTS"
SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
SESSION_ENDED = "SESSION_ENDED"
SESSION_CLAIMED = "SESSION_CLAIMED"
PERMISSION_DENIED = "PERMISSION_DENIED"
INVALID_ARGUMENT = "INVALID_ARGUMENT"
REQUEST_NOT_FOUND = "REQUEST_NOT_FOUND"
REQUEST_EXPIRED = "REQUEST_EXPIRED"
REQUEST_NOT_PENDING = "REQUEST_NOT_PENDING"
RETRY_FAILED = "RETRY_FAILED"
INTERNAL_ERROR = "INTERNAL_ERROR"

NON_RETRYABLE = frozenset(
    {
        SESSION_NOT_FOUND,
        SESSION_ENDED,
        SESSION_CLAIMED,
        PERMISSION_DENIED,
        INVALID_ARGUMENT,
        REQUEST_NOT_FOUND,
        REQUEST_EXPIRED,
        REQUEST_NOT_PENDING,
    }
)


@dataclass(frozen=True)
class OperationResult:
    """Tagged result of an atomic backend operation."""

    success: bool
    data: Any = None
    error_code: str | None = None
    error_message: str | None = None

    @classmethod
    def ok(cls, data: Any = None) -> OperationResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, code: str, message: str, data: Any = None) -> OperationResult:
        return cls(success=False, data=data, error_code=code, error_message=message)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            out["data"] = self.data
        if self.error_code:
            out["error_code"] = self.error_code
            out["error_message"] = self.error_message
        return out


class ChatOperationError(Exception):
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    @classmethod
    def from_result(cls, result: OperationResult) -> ChatOperationError:
        return cls(result.error_code or INTERNAL_ERROR, result.error_message or "Operation failed")
