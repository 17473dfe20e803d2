from __future__ import annotations

import pytest

from booking_core.errors import GuardError, MalformedRequestError, RateLimitedError
from booking_core.guard import (
    AbuseGuard,
    GuardAction,
    RateLimiter,
    RequestContext,
    client_identity,
    detect_suspicious_activity,
    validate_csrf_token,
    validate_origin,
)
from booking_core.models import SessionData
from booking_core.storage import InMemoryKeyValueStore

from conftest import ORIGIN, SecondsClock, make_context


def _limiter(clock: SecondsClock, limit: int = 10, window: int = 60, prefix: str = "booking") -> RateLimiter:
    return RateLimiter(InMemoryKeyValueStore(clock=clock), limit, window, prefix=prefix, clock=clock)


def _guard(clock: SecondsClock, booking_limit: int = 10, cancel_limit: int = 5) -> AbuseGuard:
    store = InMemoryKeyValueStore(clock=clock)
    return AbuseGuard(
        booking_limiter=RateLimiter(store, booking_limit, 900, prefix="booking", clock=clock),
        cancel_limiter=RateLimiter(store, cancel_limit, 900, prefix="cancel", clock=clock),
        allowed_origins=[ORIGIN],
    )


def test_eleventh_attempt_in_window_is_rejected_until_reset() -> None:
    clock = SecondsClock()
    limiter = _limiter(clock)

    decisions = [limiter.check("203.0.113.7") for _ in range(10)]
    assert all(d.allowed for d in decisions)
    assert decisions[-1].remaining == 0

    clock.value += 30
    rejected = limiter.check("203.0.113.7")
    assert rejected.allowed is False
    assert rejected.reset_time > clock.value
    assert rejected.retry_after == 30

    clock.value += 31
    assert limiter.check("203.0.113.7").allowed is True


def test_limits_are_tracked_per_identity() -> None:
    clock = SecondsClock()
    limiter = _limiter(clock, limit=1)

    assert limiter.check("a").allowed
    assert not limiter.check("a").allowed
    assert limiter.check("b").allowed


def test_limiter_rejects_nonsense_configuration() -> None:
    with pytest.raises(ValueError):
        RateLimiter(InMemoryKeyValueStore(), 0, 60)


def test_client_identity_prefers_socket_address() -> None:
    context = RequestContext(
        method="POST", path="/booking", client_host="10.0.0.5", headers={"X-Forwarded-For": "198.51.100.1, 10.0.0.1"}
    )
    assert client_identity(context) == "10.0.0.5"
    assert client_identity(context, trust_forwarded_for=True) == "198.51.100.1"

    no_socket = RequestContext(method="POST", path="/booking", headers={"X-Forwarded-For": "198.51.100.1"})
    assert client_identity(no_socket) == "198.51.100.1"
    assert client_identity(RequestContext(method="POST", path="/booking")) == "unknown"


def test_origin_must_match_configured_site() -> None:
    assert validate_origin("https://tours.example.com/", [ORIGIN])
    assert not validate_origin("https://evil.example.com", [ORIGIN])
    assert not validate_origin(None, [ORIGIN])


def test_csrf_token_compared_against_session(session: SessionData) -> None:
    assert validate_csrf_token(session, session.csrf_token)
    assert not validate_csrf_token(session, session.csrf_token + "x")
    assert not validate_csrf_token(session, None)
    assert not validate_csrf_token(None, session.csrf_token)


def test_suspicious_activity_is_reported_not_enforced(session: SessionData) -> None:
    clock = SecondsClock()
    context = make_context(session, user_agent="python-scraper-bot/1.0", accept="")

    assert detect_suspicious_activity(context) == ["Suspicious user agent", "Missing accept header"]
    reasons = _guard(clock).check(context, GuardAction.BOOKING, session.csrf_token)
    assert reasons == ["Suspicious user agent", "Missing accept header"]

    googlebot = make_context(session, user_agent="Mozilla/5.0 (compatible; Googlebot/2.1)")
    assert detect_suspicious_activity(googlebot) == []


def test_checks_run_in_order(session: SessionData) -> None:
    guard = _guard(SecondsClock())

    bad_everything = make_context(session, origin="https://evil.example.com", content_type="text/plain")
    with pytest.raises(GuardError) as origin_error:
        guard.check(bad_everything, GuardAction.BOOKING, "wrong-token")
    assert origin_error.value.code == "INVALID_ORIGIN"

    bad_headers = make_context(session, content_type="text/plain")
    with pytest.raises(MalformedRequestError) as header_error:
        guard.check(bad_headers, GuardAction.BOOKING, "wrong-token")
    assert header_error.value.status_code == 400

    with pytest.raises(GuardError) as csrf_error:
        guard.check(make_context(session), GuardAction.BOOKING, "wrong-token")
    assert csrf_error.value.code == "INVALID_CSRF_TOKEN"


def test_missing_user_agent_is_malformed(session: SessionData) -> None:
    with pytest.raises(MalformedRequestError, match="Missing user agent"):
        _guard(SecondsClock()).check(make_context(session, user_agent=""), GuardAction.BOOKING, session.csrf_token)


def test_missing_session_fails_csrf() -> None:
    with pytest.raises(GuardError) as exc:
        _guard(SecondsClock()).check(make_context(None), GuardAction.BOOKING, "anything")
    assert exc.value.code == "INVALID_CSRF_TOKEN"


def test_cancellation_uses_its_own_stricter_counter(session: SessionData) -> None:
    guard = _guard(SecondsClock(), booking_limit=10, cancel_limit=2)
    context = make_context(session, path="/booking/cancel")

    for _ in range(2):
        guard.check(context, GuardAction.CANCELLATION, session.csrf_token)
    with pytest.raises(RateLimitedError) as exc:
        guard.check(context, GuardAction.CANCELLATION, session.csrf_token)

    assert exc.value.to_dict()["resetTime"] > 0
    assert exc.value.retry_after == 900
    # Booking attempts are unaffected.
    assert guard.check(make_context(session), GuardAction.BOOKING, session.csrf_token) == []
