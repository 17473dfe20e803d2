from __future__ import annotations

from datetime import datetime, timezone

import jwt
import pytest

from booking_core.sessions import SessionManager, build_consent_cookie, parse_consent_cookie

from conftest import SecondsClock


def test_session_round_trip() -> None:
    manager = SessionManager("secret", ttl_seconds=600)
    token, created = manager.create_session(ip_address="203.0.113.7", user_agent="pytest")

    restored = manager.validate(token)

    assert restored is not None
    assert restored.session_id == created.session_id
    assert restored.csrf_token == created.csrf_token
    assert restored.ip_address == "203.0.113.7"
    assert restored.last_booking_id is None


def test_tampered_or_foreign_tokens_are_rejected() -> None:
    manager = SessionManager("secret", ttl_seconds=600)
    token, _ = manager.create_session()

    assert SessionManager("other-secret", ttl_seconds=600).validate(token) is None
    other_token, _ = manager.create_session()
    header, _, signature = token.split(".")
    forged = ".".join([header, other_token.split(".")[1], signature])
    assert manager.validate(forged) is None
    assert manager.validate("") is None
    assert manager.validate(None) is None

    missing_csrf = jwt.encode({"sid": "s", "exp": 9_999_999_999}, "secret", algorithm="HS256")
    assert manager.validate(missing_csrf) is None


def test_session_expires_by_injected_clock() -> None:
    clock = SecondsClock(start=1_800_000_000.0)
    manager = SessionManager("secret", ttl_seconds=60, clock=clock)
    token, _ = manager.create_session()

    clock.value += 59
    assert manager.validate(token) is not None
    clock.value += 1
    assert manager.validate(token) is None


def test_annotation_keeps_csrf_secret() -> None:
    manager = SessionManager("secret", ttl_seconds=600)
    _, session = manager.create_session()

    token = manager.annotate(session, "bk_123")
    restored = manager.validate(token)

    assert restored is not None
    assert restored.last_booking_id == "bk_123"
    assert restored.csrf_token == session.csrf_token


def test_empty_secret_is_refused() -> None:
    with pytest.raises(ValueError):
        SessionManager("", ttl_seconds=60)


def test_consent_cookie_round_trip() -> None:
    raw = build_consent_cookie(["booking_data", "analytics"], datetime(2026, 6, 1, tzinfo=timezone.utc))

    assert ";" not in raw and '"' not in raw and " " not in raw
    assert parse_consent_cookie(raw) == {"necessary", "booking_data", "analytics"}


@pytest.mark.parametrize("raw", [None, "", "not-json", '{"types": "booking_data"}', "[1, 2]"])
def test_bad_consent_cookie_means_necessary_only(raw) -> None:
    assert parse_consent_cookie(raw) == {"necessary"}


def test_plain_json_consent_cookie_is_accepted() -> None:
    assert parse_consent_cookie('{"types": ["booking_data"]}') == {"necessary", "booking_data"}
