"""
Typed success/failure values shared by the pipeline collaborators.

Collaborators return an Outcome instead of an ad hoc default so the pipeline
can decide, per call, whether a failure is degraded-continue or fatal.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    NO_MODEL = "no_model"
    MISSING_API_KEY = "missing_api_key"
    PROVIDER_ERROR = "provider_error"
    RATE_LIMITED = "rate_limited"
    EMPTY_RESPONSE = "empty_response"
    INVALID_RESPONSE = "invalid_response"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class Outcome(Generic[T]):
    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ErrorKind, detail: str = "") -> "Outcome[T]":
        return cls(error=error, detail=detail)

    def unwrap_or(self, default: Optional[T] = None) -> Optional[T]:
        return self.value if self.ok else default


@dataclass
class ApiResponse:
    """Status code and JSON body produced by a route handler."""
    status_code: int
    body: Dict[str, Any]


def api_error(status_code: int, message: str, details: Optional[str] = None, **extra: Any) -> ApiResponse:
    body: Dict[str, Any] = {**extra, "error": message}
    if details is not None:
        body["details"] = details
    return ApiResponse(status_code, body)
