"""Abuse prevention for mutating booking requests.

Checks run in a fixed order (origin, required headers, anti-forgery token,
rate limit) and each failure raises before any business logic runs. The
suspicious-activity heuristics never reject anything; they only report.
"""

from __future__ import annotations

import logging
import math
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Mapping, Optional

from .errors import GuardError, MalformedRequestError, RateLimitedError
from .models import RateLimitRecord, SessionData
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


class GuardAction(str, Enum):
    BOOKING = "booking"
    CANCELLATION = "cancel"


@dataclass
class RequestContext:
    """Framework-independent view of an inbound request."""

    method: str
    path: str
    client_host: Optional[str] = None
    headers: Mapping[str, str] = field(default_factory=dict)
    session: Optional[SessionData] = None
    consent: set[str] = field(default_factory=set)

    def __post_init__(self) -> None:
        self.method = self.method.upper()
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_time: int
    retry_after: int


class RateLimiter:
    """Fixed-size window per identity, anchored at the first attempt."""

    def __init__(
        self,
        store: KeyValueStore,
        limit: int,
        window_seconds: int,
        prefix: str = "rate_limit",
        clock: Callable[[], float] = time.time,
    ) -> None:
        if limit < 1 or window_seconds <= 0:
            raise ValueError("rate limit and window must be positive")
        self._store = store
        self.limit = limit
        self.window_seconds = window_seconds
        self._prefix = prefix
        self._clock = clock

    def check(self, identity: str) -> RateLimitDecision:
        now = self._clock()
        allowed = False

        def bump(record: Optional[RateLimitRecord]) -> RateLimitRecord:
            nonlocal allowed
            if record is None or now >= record.reset_time:
                record = RateLimitRecord(count=0, reset_time=now + self.window_seconds)
            else:
                record = RateLimitRecord(count=record.count, reset_time=record.reset_time)
            allowed = record.count < self.limit
            if allowed:
                record.count += 1
            return record

        record = self._store.update(f"{self._prefix}:{identity}", bump, ttl_seconds=self.window_seconds)
        return RateLimitDecision(
            allowed=allowed,
            limit=self.limit,
            remaining=max(0, self.limit - record.count),
            reset_time=math.ceil(record.reset_time),
            retry_after=max(0, math.ceil(record.reset_time - now)),
        )


def client_identity(context: RequestContext, trust_forwarded_for: bool = False) -> str:
    forwarded = context.header("x-forwarded-for")
    forwarded_ip = forwarded.split(",")[0].strip() if forwarded else None
    if trust_forwarded_for and forwarded_ip:
        return forwarded_ip
    if context.client_host:
        return context.client_host
    return forwarded_ip or context.header("x-real-ip") or "unknown"


def validate_origin(origin: Optional[str], allowed_origins: list[str]) -> bool:
    if not origin:
        return False
    allowed = {o.rstrip("/") for o in allowed_origins if o}
    return origin.rstrip("/") in allowed


def validate_headers(context: RequestContext) -> Optional[str]:
    if context.method not in MUTATING_METHODS:
        return None
    content_type = context.header("content-type") or ""
    if "application/json" not in content_type.lower():
        return "Invalid content type"
    if not (context.header("user-agent") or "").strip():
        return "Missing user agent"
    return None


def validate_csrf_token(session: Optional[SessionData], provided: Optional[str]) -> bool:
    if session is None or not provided:
        return False
    return secrets.compare_digest(session.csrf_token.encode(), provided.encode())


def detect_suspicious_activity(context: RequestContext) -> list[str]:
    reasons = []
    user_agent = (context.header("user-agent") or "").lower()
    if not user_agent:
        reasons.append("Missing user agent")
    elif "bot" in user_agent and "googlebot" not in user_agent:
        reasons.append("Suspicious user agent")
    if not context.header("accept"):
        reasons.append("Missing accept header")
    if ".." in context.path or "%2e%2e" in context.path.lower():
        reasons.append("Path traversal attempt")
    return reasons


class AbuseGuard:
    def __init__(
        self,
        booking_limiter: RateLimiter,
        cancel_limiter: RateLimiter,
        allowed_origins: list[str],
        enforce_origin: bool = True,
        trust_forwarded_for: bool = False,
    ) -> None:
        self._limiters = {GuardAction.BOOKING: booking_limiter, GuardAction.CANCELLATION: cancel_limiter}
        self._allowed_origins = allowed_origins
        self._enforce_origin = enforce_origin
        self._trust_forwarded_for = trust_forwarded_for

    def check(self, context: RequestContext, action: GuardAction, csrf_token: Optional[str]) -> list[str]:
        """Raise on the first failed check; return advisory suspicious-activity reasons."""
        identity = client_identity(context, self._trust_forwarded_for)

        if self._enforce_origin and not validate_origin(context.header("origin"), self._allowed_origins):
            logger.warning("Rejected request origin", extra={"client": identity, "origin": context.header("origin")})
            raise GuardError("INVALID_ORIGIN", "Invalid request origin")

        header_error = validate_headers(context)
        if header_error:
            logger.warning("Rejected malformed request", extra={"client": identity, "reason": header_error})
            raise MalformedRequestError(header_error)

        if not validate_csrf_token(context.session, csrf_token):
            logger.warning("Rejected anti-forgery token", extra={"client": identity, "path": context.path})
            raise GuardError("INVALID_CSRF_TOKEN", "Invalid CSRF token")

        decision = self._limiters[action].check(identity)
        if not decision.allowed:
            logger.warning(
                "Rate limit exceeded",
                extra={"client": identity, "action": action.value, "limit": decision.limit},
            )
            noun = "booking" if action is GuardAction.BOOKING else "cancellation"
            raise RateLimitedError(
                f"Too many {noun} attempts. Please try again later.",
                reset_time=decision.reset_time,
                retry_after=decision.retry_after,
            )

        reasons = detect_suspicious_activity(context)
        if reasons:
            logger.warning(
                "Suspicious booking request",
                extra={"client": identity, "reasons": reasons, "user_agent": context.header("user-agent")},
            )
        return reasons
