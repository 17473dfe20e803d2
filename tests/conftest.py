from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import pytest

from booking_core.catalog import TourCatalog, load_catalog
from booking_core.config import Settings
from booking_core.guard import AbuseGuard, RateLimiter, RequestContext
from booking_core.models import SessionData
from booking_core.providers import BookingProvider, InMemoryProvider
from booking_core.service import BookingOrchestrator
from booking_core.sessions import SessionManager
from booking_core.storage import InMemoryKeyValueStore
from booking_core.telemetry import Alert, AlertDispatcher, AlertSink, BookingMonitor

ORIGIN = "https://tours.example.com"

# Monday 1 June 2026, 08:00 in Prague.
NOW = datetime(2026, 6, 1, 6, 0, tzinfo=timezone.utc)


class MutableClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class SecondsClock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.value = start

    def __call__(self) -> float:
        return self.value


class RecordingAlertSink(AlertSink):
    def __init__(self) -> None:
        self.bursts: list[list[Alert]] = []

    async def send(self, alerts: list[Alert]) -> None:
        self.bursts.append(list(alerts))


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "SITE_ORIGIN": ORIGIN,
        "SESSION_SECRET": "test-session-secret",
        "PROVIDER_TIMEOUT_SECONDS": 2.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_context(
    session: Optional[SessionData],
    path: str = "/booking",
    consent: Optional[set[str]] = None,
    **headers: str,
) -> RequestContext:
    base_headers = {
        "origin": ORIGIN,
        "content-type": "application/json",
        "user-agent": "Mozilla/5.0 (X11; Linux x86_64)",
        "accept": "application/json",
    }
    base_headers.update({k.replace("_", "-"): v for k, v in headers.items()})
    return RequestContext(
        method="POST",
        path=path,
        client_host="203.0.113.7",
        headers=base_headers,
        session=session,
        consent={"necessary", "booking_data"} if consent is None else consent,
    )


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def catalog() -> TourCatalog:
    return load_catalog()


@pytest.fixture
def session_manager() -> SessionManager:
    return SessionManager("test-session-secret", ttl_seconds=3600)


@pytest.fixture
def session(session_manager: SessionManager) -> SessionData:
    _, data = session_manager.create_session(ip_address="203.0.113.7", user_agent="pytest")
    return data


@pytest.fixture
def alert_sink() -> RecordingAlertSink:
    return RecordingAlertSink()


@pytest.fixture
def make_orchestrator(
    clock: MutableClock, catalog: TourCatalog, alert_sink: RecordingAlertSink
) -> Callable[..., BookingOrchestrator]:
    def factory(
        provider: Optional[BookingProvider] = None,
        tours: Optional[TourCatalog] = None,
        **setting_overrides: Any,
    ) -> BookingOrchestrator:
        settings = make_settings(**setting_overrides)
        tour_catalog = tours or catalog
        store = InMemoryKeyValueStore()
        guard = AbuseGuard(
            booking_limiter=RateLimiter(
                store, settings.BOOKING_RATE_LIMIT, settings.BOOKING_RATE_WINDOW_SECONDS, prefix="booking"
            ),
            cancel_limiter=RateLimiter(
                store, settings.CANCEL_RATE_LIMIT, settings.CANCEL_RATE_WINDOW_SECONDS, prefix="cancel"
            ),
            allowed_origins=settings.allowed_origins,
        )
        monitor = BookingMonitor(clock=clock)
        alerts = AlertDispatcher(monitor, sinks=[alert_sink], cooldown_seconds=settings.ALERT_COOLDOWN_SECONDS)
        return BookingOrchestrator(
            provider=provider or InMemoryProvider(tour_catalog),
            catalog=tour_catalog,
            guard=guard,
            monitor=monitor,
            alerts=alerts,
            store=store,
            settings=settings,
            clock=clock,
        )

    return factory
