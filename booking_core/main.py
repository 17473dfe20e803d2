from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import AsyncIterator, Callable, Optional

from fastapi import Depends, FastAPI, Header, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .catalog import load_catalog
from .config import Settings, get_settings
from .errors import AppError, MalformedRequestError, RateLimitedError
from .guard import AbuseGuard, RateLimiter, RequestContext
from .models import HealthStatus
from .providers import BookingProvider, get_booking_provider
from .schemas import (
    AvailabilityRangeRequest,
    AvailabilityRangeResponse,
    AvailabilityResponse,
    BookingCreatedResponse,
    BookingCreateRequest,
    BookingResponse,
    CancelBookingRequest,
    CancellationPreviewResponse,
    CancellationResponse,
    ConsentRequest,
    ConsentResponse,
    CsrfResponse,
    HealthResponse,
)
from .service import BookingOrchestrator
from .sessions import (
    CONSENT_COOKIE_NAME,
    CSRF_COOKIE_NAME,
    CSRF_HEADER_NAME,
    SESSION_COOKIE_NAME,
    SessionManager,
    build_consent_cookie,
    parse_consent_cookie,
)
from .storage import InMemoryKeyValueStore
from .telemetry import AlertDispatcher, AlertSink, BookingMonitor, LoggingAlertSink, WebhookAlertSink, utcnow

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

MONITORING_TYPES = ("health", "errors", "performance")


def build_orchestrator(
    settings: Settings,
    provider: Optional[BookingProvider] = None,
    alert_sinks: Optional[list[AlertSink]] = None,
    clock: Callable = utcnow,
) -> BookingOrchestrator:
    catalog = load_catalog(settings.CATALOG_PATH, currency=settings.CURRENCY)
    store = InMemoryKeyValueStore()
    guard = AbuseGuard(
        booking_limiter=RateLimiter(
            store, settings.BOOKING_RATE_LIMIT, settings.BOOKING_RATE_WINDOW_SECONDS, prefix="booking"
        ),
        cancel_limiter=RateLimiter(
            store, settings.CANCEL_RATE_LIMIT, settings.CANCEL_RATE_WINDOW_SECONDS, prefix="cancel"
        ),
        allowed_origins=settings.allowed_origins,
        enforce_origin=settings.ENFORCE_ORIGIN,
        trust_forwarded_for=settings.TRUST_FORWARDED_FOR,
    )
    monitor = BookingMonitor(
        max_events=settings.MONITOR_MAX_EVENTS,
        health_window_minutes=settings.HEALTH_WINDOW_MINUTES,
        degraded_error_rate=settings.DEGRADED_ERROR_RATE,
        unhealthy_error_rate=settings.UNHEALTHY_ERROR_RATE,
        degraded_duration_ms=settings.DEGRADED_DURATION_MS,
        unhealthy_duration_ms=settings.UNHEALTHY_DURATION_MS,
        clock=clock,
    )
    if alert_sinks is None:
        alert_sinks = [LoggingAlertSink()]
        if settings.ALERT_WEBHOOK_URL:
            alert_sinks.append(WebhookAlertSink(settings.ALERT_WEBHOOK_URL))
    alerts = AlertDispatcher(
        monitor,
        sinks=alert_sinks,
        error_rate_threshold=settings.ALERT_ERROR_RATE,
        duration_threshold_ms=settings.ALERT_DURATION_MS,
        consecutive_failures_threshold=settings.ALERT_CONSECUTIVE_FAILURES,
        cooldown_seconds=settings.ALERT_COOLDOWN_SECONDS,
    )
    return BookingOrchestrator(
        provider=provider or get_booking_provider(settings, catalog),
        catalog=catalog,
        guard=guard,
        monitor=monitor,
        alerts=alerts,
        store=store,
        settings=settings,
        clock=clock,
    )


def get_orchestrator() -> BookingOrchestrator:
    if not hasattr(get_orchestrator, "_instance"):
        get_orchestrator._instance = build_orchestrator(get_settings())  # type: ignore[attr-defined]
    return get_orchestrator._instance  # type: ignore[attr-defined]


def get_session_manager() -> SessionManager:
    if not hasattr(get_session_manager, "_instance"):
        settings = get_settings()
        get_session_manager._instance = SessionManager(  # type: ignore[attr-defined]
            settings.SESSION_SECRET.get_secret_value(), settings.SESSION_TTL_SECONDS
        )
    return get_session_manager._instance  # type: ignore[attr-defined]


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    yield
    if hasattr(get_orchestrator, "_instance"):
        await get_orchestrator._instance.provider.aclose()  # type: ignore[attr-defined]


settings = get_settings()
app = FastAPI(title=settings.PROJECT_NAME, version=settings.VERSION, lifespan=lifespan)


@app.exception_handler(AppError)
async def handle_app_error(request: Request, exc: AppError) -> JSONResponse:
    logger.warning(
        "Request failed",
        extra={"code": exc.code, "error_message": exc.message, "path": request.url.path},
    )
    headers = None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"field": ".".join(str(part) for part in err.get("loc", ())[1:]), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    error = MalformedRequestError("Malformed request")
    error.details = details
    return await handle_app_error(request, error)


def request_context(
    request: Request, sessions: SessionManager = Depends(get_session_manager)
) -> RequestContext:
    return RequestContext(
        method=request.method,
        path=request.url.path,
        client_host=request.client.host if request.client else None,
        headers=dict(request.headers),
        session=sessions.validate(request.cookies.get(SESSION_COOKIE_NAME)),
        consent=parse_consent_cookie(request.cookies.get(CONSENT_COOKIE_NAME)),
    )


def _set_session_cookies(response: Response, token: str, csrf_token: str) -> None:
    cfg = get_settings()
    response.set_cookie(
        SESSION_COOKIE_NAME,
        token,
        max_age=cfg.SESSION_TTL_SECONDS,
        httponly=True,
        secure=cfg.SESSION_COOKIE_SECURE,
        samesite="strict",
    )
    response.set_cookie(
        CSRF_COOKIE_NAME,
        csrf_token,
        max_age=cfg.SESSION_TTL_SECONDS,
        httponly=False,
        secure=cfg.SESSION_COOKIE_SECURE,
        samesite="strict",
    )


@app.get("/availability", response_model=AvailabilityResponse)
async def get_availability(
    tour_id: str = Query(..., alias="tourId", min_length=1),
    day: date = Query(..., alias="date"),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> AvailabilityResponse:
    view = await orchestrator.check_availability(tour_id, day)
    return AvailabilityResponse.from_domain(view)


@app.post("/availability", response_model=AvailabilityRangeResponse)
async def post_availability(
    payload: AvailabilityRangeRequest,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> AvailabilityRangeResponse:
    days = await orchestrator.check_availability_range(payload.tour_id, payload.start_date, payload.end_date)
    return AvailabilityRangeResponse.from_domain(payload.tour_id, payload.start_date, payload.end_date, days)


@app.post("/booking", response_model=BookingCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    payload: BookingCreateRequest,
    response: Response,
    context: RequestContext = Depends(request_context),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
    sessions: SessionManager = Depends(get_session_manager),
    csrf_token: Optional[str] = Header(default=None, alias=CSRF_HEADER_NAME),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
) -> BookingCreatedResponse:
    outcome = await orchestrator.create_booking(
        payload.to_domain(), context, csrf_token=csrf_token, idempotency_key=idempotency_key
    )
    if not outcome.created:
        response.status_code = status.HTTP_200_OK
    if context.session is not None:
        token = sessions.annotate(context.session, outcome.booking.id)
        _set_session_cookies(response, token, context.session.csrf_token)
    return BookingCreatedResponse.from_domain(outcome)


@app.get("/booking", response_model=BookingResponse)
async def get_booking(
    booking_id: str = Query(..., alias="id", min_length=1),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> BookingResponse:
    booking = await orchestrator.get_booking(booking_id)
    return BookingResponse.from_domain(booking, masked=True)


@app.post("/booking/cancel", response_model=CancellationResponse)
async def cancel_booking(
    payload: CancelBookingRequest,
    context: RequestContext = Depends(request_context),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
    csrf_token: Optional[str] = Header(default=None, alias=CSRF_HEADER_NAME),
) -> CancellationResponse:
    outcome = await orchestrator.cancel_booking(
        payload.booking_id,
        payload.customer_email,
        context,
        csrf_token=csrf_token,
        reason=payload.reason,
    )
    return CancellationResponse.from_domain(outcome)


@app.get("/booking/cancel", response_model=CancellationPreviewResponse)
async def preview_cancellation(
    booking_id: Optional[str] = Query(default=None, alias="bookingId"),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> CancellationPreviewResponse:
    preview = await orchestrator.cancellation_preview(booking_id)
    return CancellationPreviewResponse.from_domain(preview)


@app.get("/csrf", response_model=CsrfResponse)
async def issue_csrf_token(
    request: Request,
    response: Response,
    context: RequestContext = Depends(request_context),
    sessions: SessionManager = Depends(get_session_manager),
) -> CsrfResponse:
    session = context.session
    if session is None:
        token, session = sessions.create_session(
            ip_address=context.client_host or "unknown",
            user_agent=request.headers.get("user-agent", ""),
        )
    else:
        token = request.cookies[SESSION_COOKIE_NAME]
    _set_session_cookies(response, token, session.csrf_token)
    return CsrfResponse(csrf_token=session.csrf_token, expires_at=session.expires_at)


@app.post("/consent", response_model=ConsentResponse)
async def record_consent(payload: ConsentRequest, response: Response) -> ConsentResponse:
    now = utcnow()
    types = sorted(set(payload.types) | {"necessary"})
    response.set_cookie(
        CONSENT_COOKIE_NAME,
        build_consent_cookie(types, now),
        max_age=365 * 24 * 60 * 60,
        secure=get_settings().SESSION_COOKIE_SECURE,
        samesite="lax",
    )
    logger.info("Consent recorded", extra={"consent_types": types})
    return ConsentResponse(types=types, date=now)


@app.get("/health", response_model=HealthResponse)
async def health(
    response: Response, orchestrator: BookingOrchestrator = Depends(get_orchestrator)
) -> HealthResponse:
    report = orchestrator.monitor.health()
    if report.status is HealthStatus.UNHEALTHY:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return HealthResponse(
        status=report.status.value,
        timestamp=utcnow(),
        error_rate=round(report.error_rate, 1),
        average_response_time=round(report.average_duration_ms, 1),
        issues=report.issues,
        metrics=orchestrator.monitor.metrics().to_dict(),
    )


@app.get("/monitoring")
async def monitoring(
    monitoring_type: str = Query(default="health", alias="type"),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> dict:
    monitor = orchestrator.monitor
    if monitoring_type not in MONITORING_TYPES:
        raise MalformedRequestError("Invalid monitoring type")
    if monitoring_type == "errors":
        return {"summary": monitor.error_summary(hours=24)}

    metrics = monitor.metrics()
    if monitoring_type == "performance":
        durations = {}
        for event in monitor.recent_events(limit=orchestrator.settings.MONITOR_MAX_EVENTS):
            if event.duration_ms is None:
                continue
            bucket = durations.setdefault(event.type.value, [])
            bucket.append(event.duration_ms)
        return {
            "averageResponseTime": round(metrics.average_duration_ms, 1),
            "byType": {
                kind: {
                    "count": len(values),
                    "averageMs": round(sum(values) / len(values), 1),
                    "maxMs": round(max(values), 1),
                }
                for kind, values in durations.items()
            },
            "consecutiveFailures": monitor.consecutive_failures,
        }

    report = monitor.health()
    return {
        "status": report.status.value,
        "timestamp": utcnow().isoformat(),
        "services": {"booking": report.to_dict(), "api": {"status": "healthy"}},
        "metrics": metrics.to_dict(),
        "alerts": {"burstsSent": orchestrator.alerts.bursts_sent},
    }
