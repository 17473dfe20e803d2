"""In-process booking telemetry: event log, derived health, threshold alerts."""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Deque, Dict, Iterable, Optional

import httpx

from .models import EventType, HealthStatus, MetricEvent

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def mask_email(email: Optional[str]) -> str:
    if not email or "@" not in email:
        return "***"
    local, domain = email.split("@", 1)
    return f"{local[:1]}***@{domain}"


@dataclass
class BookingMetrics:
    booking_attempts: int = 0
    successful_bookings: int = 0
    failed_bookings: int = 0
    availability_checks: int = 0
    cancellations: int = 0
    average_duration_ms: float = 0.0
    timed_events: int = 0
    suspicious_requests: int = 0
    guard_rejections: int = 0
    validation_rejections: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bookingAttempts": self.booking_attempts,
            "successfulBookings": self.successful_bookings,
            "failedBookings": self.failed_bookings,
            "availabilityChecks": self.availability_checks,
            "cancellations": self.cancellations,
            "averageResponseTime": round(self.average_duration_ms, 1),
            "suspiciousRequests": self.suspicious_requests,
            "guardRejections": self.guard_rejections,
            "validationRejections": self.validation_rejections,
        }


@dataclass(frozen=True)
class HealthReport:
    status: HealthStatus
    error_rate: float
    average_duration_ms: float
    issues: list[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "errorRate": round(self.error_rate, 1),
            "averageResponseTime": round(self.average_duration_ms, 1),
            "issues": list(self.issues),
        }


class BookingMonitor:
    """Thread-safe counters and a bounded event log for one process.

    Counters and the duration mean are updated per event and never
    recomputed from history; the event log only feeds the trailing error
    rate and the monitoring views.
    """

    def __init__(
        self,
        max_events: int = 1000,
        health_window_minutes: int = 30,
        degraded_error_rate: float = 20.0,
        unhealthy_error_rate: float = 50.0,
        degraded_duration_ms: float = 5000.0,
        unhealthy_duration_ms: float = 10000.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._lock = threading.Lock()
        self._events: Deque[MetricEvent] = deque(maxlen=max_events)
        self._metrics = BookingMetrics()
        self._consecutive_failures = 0
        self._clock = clock
        self.health_window_minutes = health_window_minutes
        self.degraded_error_rate = degraded_error_rate
        self.unhealthy_error_rate = unhealthy_error_rate
        self.degraded_duration_ms = degraded_duration_ms
        self.unhealthy_duration_ms = unhealthy_duration_ms

    def record(
        self,
        event_type: EventType,
        duration_ms: Optional[float] = None,
        error: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> MetricEvent:
        event = MetricEvent(
            type=event_type,
            timestamp=self._clock(),
            duration_ms=duration_ms,
            error=error,
            data=dict(data or {}),
        )
        with self._lock:
            self._events.append(event)
            self._apply(event)
        log = logger.warning if error else logger.info
        log(
            "Booking event recorded",
            extra={"event_type": event_type.value, "duration_ms": duration_ms, "error": error},
        )
        return event

    def record_rejection(self, kind: str) -> None:
        with self._lock:
            if kind == "validation":
                self._metrics.validation_rejections += 1
            else:
                self._metrics.guard_rejections += 1

    def record_suspicious(self, reasons: Iterable[str]) -> None:
        with self._lock:
            self._metrics.suspicious_requests += 1
        logger.info("Suspicious request counted", extra={"reasons": list(reasons)})

    def _apply(self, event: MetricEvent) -> None:
        metrics = self._metrics
        if event.type is EventType.BOOKING_CREATED:
            metrics.booking_attempts += 1
            metrics.successful_bookings += 1
            self._consecutive_failures = 0
        elif event.type is EventType.BOOKING_FAILED:
            metrics.booking_attempts += 1
            metrics.failed_bookings += 1
            if event.error:
                self._consecutive_failures += 1
        elif event.type is EventType.AVAILABILITY_CHECKED:
            metrics.availability_checks += 1
        elif event.type is EventType.BOOKING_CANCELLED and not event.error:
            metrics.cancellations += 1

        if event.duration_ms is not None:
            metrics.timed_events += 1
            metrics.average_duration_ms += (event.duration_ms - metrics.average_duration_ms) / metrics.timed_events

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    @property
    def average_duration_ms(self) -> float:
        with self._lock:
            return self._metrics.average_duration_ms

    def metrics(self) -> BookingMetrics:
        with self._lock:
            return BookingMetrics(**asdict(self._metrics))

    def error_rate(self, window_minutes: Optional[int] = None) -> float:
        """Percentage of events carrying an error within the trailing window."""
        minutes = self.health_window_minutes if window_minutes is None else window_minutes
        cutoff = self._clock() - timedelta(minutes=minutes)
        with self._lock:
            recent = [event for event in self._events if event.timestamp > cutoff]
        if not recent:
            return 0.0
        errors = sum(1 for event in recent if event.error)
        return errors / len(recent) * 100

    def health(self) -> HealthReport:
        error_rate = self.error_rate()
        average = self.average_duration_ms
        issues = []

        rate_status = HealthStatus.HEALTHY
        if error_rate > self.unhealthy_error_rate:
            rate_status = HealthStatus.UNHEALTHY
            issues.append(f"High error rate: {error_rate:.1f}%")
        elif error_rate > self.degraded_error_rate:
            rate_status = HealthStatus.DEGRADED
            issues.append(f"Elevated error rate: {error_rate:.1f}%")

        duration_status = HealthStatus.HEALTHY
        if average > self.unhealthy_duration_ms:
            duration_status = HealthStatus.UNHEALTHY
            issues.append(f"Very slow response time: {average:.0f}ms")
        elif average > self.degraded_duration_ms:
            duration_status = HealthStatus.DEGRADED
            issues.append(f"Slow response time: {average:.0f}ms")

        return HealthReport(
            status=HealthStatus.worst(rate_status, duration_status),
            error_rate=error_rate,
            average_duration_ms=average,
            issues=issues,
        )

    def recent_events(self, limit: int = 100) -> list[MetricEvent]:
        with self._lock:
            events = list(self._events)
        return events[-limit:] if limit > 0 else []

    def events_by_type(self, event_type: EventType, limit: int = 50) -> list[MetricEvent]:
        with self._lock:
            matching = [event for event in self._events if event.type is event_type]
        return matching[-limit:] if limit > 0 else []

    def error_summary(self, hours: int = 24) -> Dict[str, Any]:
        cutoff = self._clock() - timedelta(hours=hours)
        with self._lock:
            errors = [event for event in self._events if event.timestamp > cutoff and event.error]

        by_type: Dict[str, Dict[str, Any]] = {}
        for event in errors:
            entry = by_type.setdefault(event.type.value, {"count": 0, "lastOccurrence": event.timestamp})
            entry["count"] += 1
            if event.timestamp > entry["lastOccurrence"]:
                entry["lastOccurrence"] = event.timestamp

        return {
            "totalErrors": len(errors),
            "timeRange": f"{hours} hours",
            "errorsByType": {
                key: {"count": value["count"], "lastOccurrence": value["lastOccurrence"].isoformat()}
                for key, value in by_type.items()
            },
            "recentErrors": [
                {"type": e.type.value, "error": e.error, "timestamp": e.timestamp.isoformat(), "data": e.data}
                for e in errors[-10:]
            ],
        }


class AlertKind:
    HIGH_ERROR_RATE = "HIGH_ERROR_RATE"
    SLOW_RESPONSE_TIME = "SLOW_RESPONSE_TIME"
    CONSECUTIVE_FAILURES = "CONSECUTIVE_FAILURES"
    SYSTEM_UNHEALTHY = "SYSTEM_UNHEALTHY"


@dataclass(frozen=True)
class Alert:
    kind: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "data": self.data}


class AlertSink(ABC):
    @abstractmethod
    async def send(self, alerts: list[Alert]) -> None:
        ...


class LoggingAlertSink(AlertSink):
    async def send(self, alerts: list[Alert]) -> None:
        for alert in alerts:
            logger.error("Booking system alert", extra={"alert": alert.kind, "alert_data": alert.data})


class WebhookAlertSink(AlertSink):
    """Posts each burst as one JSON document; delivery failures are logged and dropped."""

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self._timeout = timeout_seconds
        self._transport = transport

    async def send(self, alerts: list[Alert]) -> None:
        payload = {"source": "booking-core", "alerts": [alert.to_dict() for alert in alerts]}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(self.url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Alert webhook delivery failed", extra={"error_type": type(exc).__name__})


class AlertDispatcher:
    """Evaluates thresholds after each operation and sends breaches as one burst.

    A single cooldown covers every alert kind, so simultaneous breaches
    notify once and later evaluations stay quiet until it lapses.
    """

    def __init__(
        self,
        monitor: BookingMonitor,
        sinks: Optional[list[AlertSink]] = None,
        error_rate_threshold: float = 25.0,
        duration_threshold_ms: float = 3000.0,
        consecutive_failures_threshold: int = 5,
        cooldown_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.monitor = monitor
        self.sinks = list(sinks) if sinks is not None else [LoggingAlertSink()]
        self.error_rate_threshold = error_rate_threshold
        self.duration_threshold_ms = duration_threshold_ms
        self.consecutive_failures_threshold = consecutive_failures_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._last_alert_at: Optional[float] = None
        self.bursts_sent = 0

    def breaches(self) -> list[Alert]:
        health = self.monitor.health()
        failures = self.monitor.consecutive_failures
        alerts = []
        if health.error_rate > self.error_rate_threshold:
            alerts.append(
                Alert(
                    AlertKind.HIGH_ERROR_RATE,
                    f"Error rate {health.error_rate:.1f}% above {self.error_rate_threshold:g}%",
                    {"errorRate": health.error_rate, "threshold": self.error_rate_threshold},
                )
            )
        if health.average_duration_ms > self.duration_threshold_ms:
            alerts.append(
                Alert(
                    AlertKind.SLOW_RESPONSE_TIME,
                    f"Average response time {health.average_duration_ms:.0f}ms",
                    {"responseTime": health.average_duration_ms, "threshold": self.duration_threshold_ms},
                )
            )
        if failures >= self.consecutive_failures_threshold:
            alerts.append(
                Alert(
                    AlertKind.CONSECUTIVE_FAILURES,
                    f"{failures} consecutive booking failures",
                    {"failures": failures, "threshold": self.consecutive_failures_threshold},
                )
            )
        if health.status is HealthStatus.UNHEALTHY:
            alerts.append(
                Alert(AlertKind.SYSTEM_UNHEALTHY, "Booking system unhealthy", {"issues": list(health.issues)})
            )
        return alerts

    async def evaluate(self) -> list[Alert]:
        """Send pending breaches unless the shared cooldown is active; return what was sent."""
        now = self._clock()
        with self._lock:
            if self._last_alert_at is not None and now - self._last_alert_at < self.cooldown_seconds:
                return []
            alerts = self.breaches()
            if not alerts:
                return []
            self._last_alert_at = now
            self.bursts_sent += 1

        logger.warning("Dispatching alert burst", extra={"alerts": [a.kind for a in alerts]})
        for sink in self.sinks:
            await sink.send(alerts)
        return alerts
