from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class AppError(Exception):
    code: str
    message: str
    status_code: int
    details: Optional[list[dict[str, str]]] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "error": self.message}
        if self.details:
            payload["details"] = self.details
        payload.update(self.extra)
        return payload


class GuardError(AppError):
    """Request rejected before any business logic ran."""

    def __init__(self, code: str, message: str, status_code: int = 403):
        super().__init__(code=code, message=message, status_code=status_code)


class MalformedRequestError(GuardError):
    def __init__(self, message: str):
        super().__init__(code="MALFORMED_REQUEST", message=message, status_code=400)


class ValidationError(AppError):
    def __init__(self, message: str, details: Optional[list[dict[str, str]]] = None):
        super().__init__(code="VALIDATION_ERROR", message=message, status_code=400, details=details)


class CapacityConflictError(AppError):
    def __init__(self, message: str, available_spots: Optional[int] = None):
        extra = {} if available_spots is None else {"availableSpots": available_spots}
        super().__init__(code="CAPACITY_CONFLICT", message=message, status_code=409, extra=extra)


class ConflictError(AppError):
    def __init__(self, code: str, message: str, **extra: Any):
        super().__init__(code=code, message=message, status_code=409, extra=extra)


class RateLimitedError(AppError):
    def __init__(self, message: str, reset_time: int, retry_after: int):
        super().__init__(
            code="RATE_LIMITED",
            message=message,
            status_code=429,
            extra={"resetTime": reset_time},
        )
        self.retry_after = retry_after


class ProviderError(AppError):
    """Scheduling backend failure. The message never names the backend."""

    def __init__(
        self,
        message: str = "Booking service temporarily unavailable",
        code: str = "PROVIDER_ERROR",
        status_code: int = 502,
    ):
        super().__init__(code=code, message=message, status_code=status_code)


class ProviderTimeoutError(ProviderError):
    def __init__(self, operation: str):
        super().__init__(
            message="Booking service did not respond in time",
            code="PROVIDER_TIMEOUT",
            status_code=504,
        )
        self.operation = operation


class NotFoundError(AppError):
    def __init__(self, message: str, code: str = "NOT_FOUND"):
        super().__init__(code=code, message=message, status_code=404)


class InvalidTransitionError(ValueError):
    """Raised when a booking status change would break the status lifecycle."""
