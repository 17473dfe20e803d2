"""Signed visitor sessions carrying the anti-forgery secret, plus consent cookies."""

from __future__ import annotations

import json
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional
from urllib.parse import quote, unquote
from uuid import uuid4

import jwt

from .models import SessionData

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "session-token"
CSRF_COOKIE_NAME = "csrf-token"
CSRF_HEADER_NAME = "X-CSRF-Token"
CONSENT_COOKIE_NAME = "gdpr-consent"
ALGORITHM = "HS256"


def generate_csrf_token() -> str:
    return secrets.token_urlsafe(32)


class SessionManager:
    """Mints and verifies HS256-signed session tokens.

    Sessions are stateless: everything needed to verify an anti-forgery token
    lives in the signed cookie, so any process holding the secret can check it.
    """

    def __init__(self, secret: str, ttl_seconds: int, clock: Callable[[], float] = time.time) -> None:
        if not secret:
            raise ValueError("session secret must not be empty")
        self._secret = secret
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    def create_session(self, ip_address: str = "unknown", user_agent: str = "") -> tuple[str, SessionData]:
        now = self._clock()
        session = SessionData(
            session_id=f"sess_{uuid4().hex}",
            csrf_token=generate_csrf_token(),
            created_at=datetime.fromtimestamp(now, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(now + self._ttl_seconds, tz=timezone.utc),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info("Session created", extra={"session_id": session.session_id})
        return self.encode(session), session

    def encode(self, session: SessionData) -> str:
        payload = {
            "sid": session.session_id,
            "csrf": session.csrf_token,
            "iat": int(session.created_at.timestamp()),
            "exp": int(session.expires_at.timestamp()),
            "ip": session.ip_address,
            "ua": session.user_agent,
        }
        if session.last_booking_id:
            payload["lbid"] = session.last_booking_id
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def validate(self, token: Optional[str]) -> Optional[SessionData]:
        if not token:
            return None
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={"require": ["exp", "sid", "csrf"], "verify_exp": False, "verify_iat": False},
            )
        except jwt.InvalidTokenError as exc:
            logger.warning("Session token rejected", extra={"reason": str(exc)})
            return None
        if payload["exp"] <= self._clock():
            logger.info("Session expired", extra={"session_id": payload["sid"]})
            return None
        return SessionData(
            session_id=payload["sid"],
            csrf_token=payload["csrf"],
            created_at=datetime.fromtimestamp(payload.get("iat", payload["exp"]), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            ip_address=payload.get("ip", "unknown"),
            user_agent=payload.get("ua", ""),
            last_booking_id=payload.get("lbid"),
        )

    def annotate(self, session: SessionData, last_booking_id: str) -> str:
        session.last_booking_id = last_booking_id
        return self.encode(session)


def parse_consent_cookie(raw: Optional[str]) -> set[str]:
    """Consent categories granted by the visitor; ``necessary`` is always implied."""
    granted = {"necessary"}
    if not raw:
        return granted
    try:
        data = json.loads(unquote(raw))
    except ValueError:
        logger.warning("Unparsable consent cookie ignored")
        return granted
    types = data.get("types") if isinstance(data, dict) else None
    if isinstance(types, list):
        granted.update(str(t) for t in types)
    return granted


def build_consent_cookie(consent_types: Iterable[str], now: datetime) -> str:
    """Percent-encoded JSON, safe to store in a cookie without quoting."""
    payload = json.dumps({"types": sorted(set(consent_types)), "date": now.isoformat()}, separators=(",", ":"))
    return quote(payload, safe="")
