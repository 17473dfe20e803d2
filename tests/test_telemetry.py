from __future__ import annotations

import threading

import httpx
import pytest

from booking_core.models import EventType, HealthStatus
from booking_core.telemetry import (
    AlertDispatcher,
    AlertKind,
    BookingMonitor,
    WebhookAlertSink,
    mask_email,
)

from conftest import MutableClock, RecordingAlertSink, SecondsClock


def _record_mix(monitor: BookingMonitor, total: int, failures: int, duration_ms: float = 50.0) -> None:
    for i in range(total):
        if i < failures:
            monitor.record(EventType.BOOKING_FAILED, duration_ms=duration_ms, error="Booking service unavailable")
        else:
            monitor.record(EventType.BOOKING_CREATED, duration_ms=duration_ms)


@pytest.mark.parametrize(
    "total,failures,expected",
    [
        (10, 6, HealthStatus.UNHEALTHY),
        (10, 3, HealthStatus.DEGRADED),
        (20, 1, HealthStatus.HEALTHY),
    ],
)
def test_health_follows_error_rate(total: int, failures: int, expected: HealthStatus) -> None:
    monitor = BookingMonitor(clock=MutableClock())
    _record_mix(monitor, total, failures)

    report = monitor.health()

    assert report.status is expected
    assert report.error_rate == pytest.approx(failures / total * 100)


def test_duration_status_is_independent_and_worst_wins() -> None:
    monitor = BookingMonitor(clock=MutableClock(), degraded_duration_ms=100, unhealthy_duration_ms=1000)
    _record_mix(monitor, 10, 3, duration_ms=2000)

    report = monitor.health()

    assert report.status is HealthStatus.UNHEALTHY
    assert len(report.issues) == 2

    slow_only = BookingMonitor(clock=MutableClock(), degraded_duration_ms=100, unhealthy_duration_ms=1000)
    _record_mix(slow_only, 4, 0, duration_ms=500)
    assert slow_only.health().status is HealthStatus.DEGRADED


def test_error_rate_uses_trailing_window() -> None:
    clock = MutableClock()
    monitor = BookingMonitor(clock=clock, health_window_minutes=30)
    _record_mix(monitor, 4, 4)

    clock.advance(minutes=31)
    monitor.record(EventType.BOOKING_CREATED, duration_ms=10)

    assert monitor.error_rate() == 0.0
    assert monitor.error_rate(window_minutes=60) == pytest.approx(80.0)


def test_counters_and_running_mean() -> None:
    monitor = BookingMonitor(clock=MutableClock())
    monitor.record(EventType.BOOKING_CREATED, duration_ms=100)
    monitor.record(EventType.BOOKING_FAILED, duration_ms=300, error="boom")
    monitor.record(EventType.AVAILABILITY_CHECKED, duration_ms=200)
    monitor.record(EventType.BOOKING_CANCELLED)
    monitor.record_rejection("validation")
    monitor.record_rejection("guard")
    monitor.record_suspicious(["Missing accept header"])

    metrics = monitor.metrics()

    assert metrics.booking_attempts == 2
    assert metrics.successful_bookings == 1
    assert metrics.failed_bookings == 1
    assert metrics.availability_checks == 1
    assert metrics.cancellations == 1
    assert metrics.average_duration_ms == pytest.approx(200.0)
    assert (metrics.guard_rejections, metrics.validation_rejections, metrics.suspicious_requests) == (1, 1, 1)


def test_consecutive_failures_reset_on_success_and_ignore_conflicts() -> None:
    monitor = BookingMonitor(clock=MutableClock())
    monitor.record(EventType.BOOKING_FAILED, error="boom")
    monitor.record(EventType.BOOKING_FAILED, error="boom")
    monitor.record(EventType.BOOKING_FAILED, data={"errorCode": "CAPACITY_CONFLICT"})
    assert monitor.consecutive_failures == 2

    monitor.record(EventType.BOOKING_CREATED)
    assert monitor.consecutive_failures == 0


def test_event_log_is_bounded() -> None:
    monitor = BookingMonitor(max_events=5, clock=MutableClock())
    for i in range(8):
        monitor.record(EventType.AVAILABILITY_CHECKED, data={"i": i})

    events = monitor.recent_events()
    assert [e.data["i"] for e in events] == [3, 4, 5, 6, 7]
    assert monitor.metrics().availability_checks == 8
    assert len(monitor.events_by_type(EventType.AVAILABILITY_CHECKED, limit=2)) == 2


def test_concurrent_recording_keeps_counts() -> None:
    monitor = BookingMonitor(clock=MutableClock())

    def worker() -> None:
        for _ in range(200):
            monitor.record(EventType.AVAILABILITY_CHECKED, duration_ms=1)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert monitor.metrics().availability_checks == 1600


def test_error_summary_groups_by_type() -> None:
    monitor = BookingMonitor(clock=MutableClock())
    monitor.record(EventType.BOOKING_FAILED, error="a")
    monitor.record(EventType.BOOKING_FAILED, error="b")
    monitor.record(EventType.BOOKING_CANCELLED, error="c")
    monitor.record(EventType.BOOKING_CREATED)

    summary = monitor.error_summary()

    assert summary["totalErrors"] == 3
    assert summary["errorsByType"]["booking_failed"]["count"] == 2
    assert [e["error"] for e in summary["recentErrors"]] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_simultaneous_breaches_send_one_burst_then_cool_down() -> None:
    monitor = BookingMonitor(clock=MutableClock())
    sink = RecordingAlertSink()
    seconds = SecondsClock()
    dispatcher = AlertDispatcher(
        monitor, sinks=[sink], consecutive_failures_threshold=5, cooldown_seconds=300, clock=seconds
    )

    for _ in range(6):
        monitor.record(EventType.BOOKING_FAILED, duration_ms=10, error="boom")
        await dispatcher.evaluate()

    assert len(sink.bursts) == 1
    assert [a.kind for a in sink.bursts[0]] == [AlertKind.HIGH_ERROR_RATE, AlertKind.SYSTEM_UNHEALTHY]

    seconds.value += 299
    assert await dispatcher.evaluate() == []

    seconds.value += 1
    resent = await dispatcher.evaluate()
    assert {a.kind for a in resent} == {
        AlertKind.HIGH_ERROR_RATE,
        AlertKind.CONSECUTIVE_FAILURES,
        AlertKind.SYSTEM_UNHEALTHY,
    }
    assert len(sink.bursts) == 2


@pytest.mark.asyncio
async def test_no_alert_when_healthy() -> None:
    monitor = BookingMonitor(clock=MutableClock())
    sink = RecordingAlertSink()
    dispatcher = AlertDispatcher(monitor, sinks=[sink])
    monitor.record(EventType.BOOKING_FAILED, duration_ms=5, data={"errorCode": "CAPACITY_CONFLICT"})

    assert await dispatcher.evaluate() == []
    assert sink.bursts == []


@pytest.mark.asyncio
async def test_webhook_sink_posts_burst_and_survives_failures() -> None:
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(500 if len(received) > 1 else 204)

    sink = WebhookAlertSink("https://hooks.example.com/alerts", transport=httpx.MockTransport(handler))
    monitor = BookingMonitor(clock=MutableClock())
    monitor.record(EventType.BOOKING_FAILED, error="boom")
    alerts = AlertDispatcher(monitor).breaches()

    await sink.send(alerts)
    await sink.send(alerts)

    assert len(received) == 2
    assert b"HIGH_ERROR_RATE" in received[0].content


def test_mask_email() -> None:
    assert mask_email("jana.novak@example.com") == "j***@example.com"
    assert mask_email("") == "***"
