from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar
from zoneinfo import ZoneInfo

from .catalog import TourCatalog
from .config import Settings
from .errors import (
    AppError,
    CapacityConflictError,
    ConflictError,
    GuardError,
    InvalidTransitionError,
    NotFoundError,
    ProviderError,
    ProviderTimeoutError,
    ValidationError,
)
from .guard import AbuseGuard, GuardAction, RequestContext
from .models import (
    AttemptState,
    Booking,
    BookingOutcome,
    BookingRequest,
    BookingStatus,
    EventType,
    IdempotencyRecord,
    Pricing,
    RefundQuote,
    TimeSlot,
    Tour,
    to_money,
)
from .providers import ALREADY_CANCELLED, NOT_FOUND, SLOT_FULL, BookingProvider
from .storage import KeyValueStore
from .telemetry import AlertDispatcher, BookingMonitor, mask_email, utcnow
from .validation import (
    REFUND_TIERS,
    PricingOption,
    hours_until,
    pricing_options,
    refund_quote,
    validate_booking_date,
    validate_booking_request,
    validate_consent,
    validate_notice,
    validate_tour_day,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ATTEMPT_TRANSITIONS = {
    AttemptState.RECEIVED: {AttemptState.GUARDED},
    AttemptState.GUARDED: {AttemptState.VALIDATED},
    AttemptState.VALIDATED: {AttemptState.AVAILABILITY_CONFIRMED},
    AttemptState.AVAILABILITY_CONFIRMED: {AttemptState.SUBMITTED},
    AttemptState.SUBMITTED: {AttemptState.CONFIRMED},
}
_TERMINAL_STATES = {AttemptState.CONFIRMED, AttemptState.REJECTED}


@dataclass
class BookingAttempt:
    """Lifecycle of one booking creation request."""

    request: BookingRequest
    state: AttemptState = AttemptState.RECEIVED
    history: list[AttemptState] = field(default_factory=lambda: [AttemptState.RECEIVED])
    rejection_code: Optional[str] = None
    started_at: float = field(default_factory=time.perf_counter)

    def advance(self, state: AttemptState) -> None:
        if state not in _ATTEMPT_TRANSITIONS.get(self.state, set()):
            raise InvalidTransitionError(f"cannot move booking attempt from {self.state.value} to {state.value}")
        self.state = state
        self.history.append(state)

    def reject(self, code: str) -> None:
        if self.state in _TERMINAL_STATES:
            raise InvalidTransitionError(f"booking attempt already {self.state.value}")
        self.state = AttemptState.REJECTED
        self.rejection_code = code
        self.history.append(AttemptState.REJECTED)


@dataclass
class AvailabilityView:
    tour: Tour
    date: date
    available: bool
    slots: list[TimeSlot] = field(default_factory=list)
    max_group_size: int = 0
    pricing: Optional[Pricing] = None
    options: list[PricingOption] = field(default_factory=list)
    reason: Optional[str] = None


@dataclass
class DayAvailability:
    available: bool
    slots_count: Optional[int] = None
    reason: Optional[str] = None


@dataclass
class CancellationPreview:
    tiers: tuple[tuple[float, int], ...]
    processing_time: str
    booking: Optional[Booking] = None
    quote: Optional[RefundQuote] = None
    reason: Optional[str] = None


@dataclass
class CancellationOutcome:
    booking: Booking
    quote: RefundQuote
    currency: str
    processing_time: str
    cancelled_at: datetime
    reason: Optional[str] = None


def generate_confirmation_code() -> str:
    return f"PRG-{secrets.token_hex(4).upper()}"


class BookingOrchestrator:
    """Sequences guard, validation and provider calls for bookings and cancellations.

    Every provider call is bounded by ``PROVIDER_TIMEOUT_SECONDS`` and never
    retried here. Guard and validation rejections are counted but never
    recorded as failures; provider failures always are.
    """

    def __init__(
        self,
        provider: BookingProvider,
        catalog: TourCatalog,
        guard: AbuseGuard,
        monitor: BookingMonitor,
        alerts: AlertDispatcher,
        store: KeyValueStore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.provider = provider
        self.catalog = catalog
        self.guard = guard
        self.monitor = monitor
        self.alerts = alerts
        self.store = store
        self.settings = settings
        self.tz = ZoneInfo(settings.TIMEZONE)
        self._clock = clock

    def today(self) -> date:
        return self._clock().astimezone(self.tz).date()

    def get_tour(self, tour_id: str) -> Tour:
        tour = self.catalog.get(tour_id)
        if tour is None:
            raise NotFoundError("Tour not found", code="TOUR_NOT_FOUND")
        return tour

    async def check_availability(self, tour_id: str, day: date) -> AvailabilityView:
        tour = self.get_tour(tour_id)
        reason = self._availability_rule_violation(tour, day)
        if reason:
            return AvailabilityView(tour=tour, date=day, available=False, reason=reason)

        started = time.perf_counter()
        try:
            result = await self._call("check_availability", self.provider.check_availability(tour_id, day))
        except ProviderError as exc:
            await self._record(EventType.AVAILABILITY_CHECKED, started, error=exc.message, data={"tourId": tour_id})
            return AvailabilityView(tour=tour, date=day, available=False, reason="Availability temporarily unavailable")

        if result.error:
            await self._record(EventType.AVAILABILITY_CHECKED, started, error=result.error, data={"tourId": tour_id})
            return AvailabilityView(tour=tour, date=day, available=False, reason="Availability temporarily unavailable")

        now = self._clock()
        open_slots = [
            slot
            for slot in result.slots
            if slot.available_spots > 0
            and validate_notice(day, slot.start_time, now, self.tz, self.settings.MIN_NOTICE_HOURS).valid
        ]
        available = bool(open_slots)
        await self._record(
            EventType.AVAILABILITY_CHECKED,
            started,
            data={"tourId": tour_id, "date": day.isoformat(), "available": available},
        )
        return AvailabilityView(
            tour=tour,
            date=day,
            available=available,
            slots=open_slots,
            max_group_size=result.max_group_size,
            pricing=result.pricing,
            options=pricing_options(tour, self.settings.PRICING_OPTION_GROUP_SIZES),
            reason=None if available else "No availability for the selected date",
        )

    async def check_availability_range(self, tour_id: str, start: date, end: date) -> Dict[date, DayAvailability]:
        self.get_tour(tour_id)
        if end < start:
            raise ValidationError(
                "End date must not be before start date",
                details=[{"field": "endDate", "message": "End date must not be before start date"}],
            )
        span = (end - start).days
        if span > self.settings.BULK_MAX_DAYS:
            message = f"Date range cannot exceed {self.settings.BULK_MAX_DAYS} days"
            raise ValidationError(message, details=[{"field": "endDate", "message": message}])

        dates = [start + timedelta(days=offset) for offset in range(span + 1)]
        views = await asyncio.gather(*(self.check_availability(tour_id, day) for day in dates))
        return {
            view.date: DayAvailability(
                available=view.available,
                slots_count=len(view.slots) if view.available else None,
                reason=view.reason,
            )
            for view in views
        }

    async def create_booking(
        self,
        request: BookingRequest,
        context: RequestContext,
        csrf_token: Optional[str],
        idempotency_key: Optional[str] = None,
    ) -> BookingOutcome:
        attempt = BookingAttempt(request=request)

        try:
            suspicious = self.guard.check(context, GuardAction.BOOKING, csrf_token)
            if not validate_consent(context.consent).valid:
                raise GuardError("CONSENT_REQUIRED", "Consent required for booking data processing")
        except AppError as exc:
            attempt.reject(exc.code)
            self.monitor.record_rejection("guard")
            raise
        if suspicious:
            self.monitor.record_suspicious(suspicious)
        attempt.advance(AttemptState.GUARDED)

        try:
            tour = self.get_tour(request.tour_id)
            failures = validate_booking_request(
                request,
                tour,
                now=self._clock(),
                tz=self.tz,
                min_notice_hours=self.settings.MIN_NOTICE_HOURS,
                max_advance_days=self.settings.MAX_ADVANCE_DAYS,
            )
            if failures:
                raise ValidationError(failures[0].error or "Invalid booking request", [f.to_detail() for f in failures])
        except AppError as exc:
            attempt.reject(exc.code)
            self.monitor.record_rejection("validation")
            logger.info("Booking request rejected", extra={"tour_id": request.tour_id, "code": exc.code})
            raise
        attempt.advance(AttemptState.VALIDATED)

        if idempotency_key:
            replay = self._claim_idempotency_key(idempotency_key, request.fingerprint())
            if replay is not None:
                return replay

        try:
            outcome = await self._submit(attempt, tour)
        except Exception:
            if idempotency_key:
                self.store.delete(self._idempotency_store_key(idempotency_key))
            raise

        if idempotency_key:
            self.store.set(
                self._idempotency_store_key(idempotency_key),
                IdempotencyRecord(
                    key=idempotency_key,
                    fingerprint=request.fingerprint(),
                    created_at=self._clock(),
                    outcome=outcome,
                ),
                ttl_seconds=self.settings.IDEMPOTENCY_TTL_SECONDS,
            )
        return outcome

    async def _submit(self, attempt: BookingAttempt, tour: Tour) -> BookingOutcome:
        request = attempt.request
        event_data: Dict[str, Any] = {
            "tourId": request.tour_id,
            "date": request.date.isoformat(),
            "startTime": request.start_time.strftime("%H:%M"),
            "groupSize": request.group_size,
        }
        try:
            availability = await self._call(
                "check_availability", self.provider.check_availability(request.tour_id, request.date)
            )
            if availability.error:
                raise ProviderError()
            slot = availability.find_slot(request.start_time)
            spots = slot.available_spots if slot is not None else 0
            if spots < request.group_size:
                raise CapacityConflictError(
                    "The selected time slot no longer has enough spots", available_spots=spots
                )
            attempt.advance(AttemptState.AVAILABILITY_CONFIRMED)

            attempt.advance(AttemptState.SUBMITTED)
            result = await self._call("create_booking", self.provider.create_booking(request))
            if not result.success:
                if result.error_code == SLOT_FULL:
                    raise CapacityConflictError("The selected time slot is no longer available")
                logger.error(
                    "Provider rejected booking",
                    extra={"tour_id": request.tour_id, "error_code": result.error_code},
                )
                raise ProviderError()
        except CapacityConflictError as exc:
            attempt.reject(exc.code)
            await self._record(
                EventType.BOOKING_FAILED, attempt.started_at, data={**event_data, "errorCode": exc.code}
            )
            logger.info("Capacity conflict", extra=event_data)
            raise
        except ProviderError as exc:
            attempt.reject(exc.code)
            await self._record(
                EventType.BOOKING_FAILED,
                attempt.started_at,
                error=exc.message,
                data={**event_data, "errorCode": exc.code},
            )
            raise

        booking = result.booking or Booking(
            id=result.booking_id or "",
            tour_id=request.tour_id,
            date=request.date,
            start_time=request.start_time,
            group_size=request.group_size,
            total_price=to_money(request.total_price),
            customer=request.customer,
            status=BookingStatus.CONFIRMED,
        )
        code = result.confirmation_code or booking.confirmation_code or generate_confirmation_code()
        booking.confirmation_code = code
        attempt.advance(AttemptState.CONFIRMED)

        await self._record(
            EventType.BOOKING_CREATED,
            attempt.started_at,
            data={**event_data, "bookingId": booking.id, "totalPrice": str(booking.total_price)},
        )
        logger.info(
            "Booking confirmed",
            extra={
                "booking_id": booking.id,
                "tour_id": booking.tour_id,
                "customer": mask_email(booking.customer.email),
            },
        )
        return BookingOutcome(booking=booking, confirmation_code=code)

    def _idempotency_store_key(self, key: str) -> str:
        return f"idempotency:{key}"

    def _claim_idempotency_key(self, key: str, fingerprint: str) -> Optional[BookingOutcome]:
        now = self._clock()
        existing: list[IdempotencyRecord] = []

        def claim(current: Optional[IdempotencyRecord]) -> IdempotencyRecord:
            if current is not None:
                existing.append(current)
                return current
            return IdempotencyRecord(key=key, fingerprint=fingerprint, created_at=now)

        self.store.update(
            self._idempotency_store_key(key), claim, ttl_seconds=self.settings.IDEMPOTENCY_TTL_SECONDS
        )
        if not existing:
            return None
        record = existing[0]
        if record.fingerprint != fingerprint:
            raise ConflictError("IDEMPOTENCY_CONFLICT", "Idempotency key already used with a different request")
        if record.in_flight or record.outcome is None:
            raise ConflictError("IDEMPOTENCY_CONFLICT", "A request with this idempotency key is still in progress")
        logger.info("Idempotent booking replay", extra={"booking_id": record.outcome.booking.id})
        return replace(record.outcome, created=False)

    async def get_booking(self, booking_id: str, event_type: EventType = EventType.BOOKING_LOOKUP) -> Booking:
        """Fetch a booking; provider failures are recorded as ``event_type`` errors."""
        started = time.perf_counter()
        event_data = {"bookingId": booking_id}
        try:
            result = await self._call("get_booking", self.provider.get_booking(booking_id))
        except ProviderError as exc:
            await self._record(event_type, started, error=exc.message, data=event_data)
            raise
        if not result.success or result.booking is None:
            if result.error_code == NOT_FOUND:
                raise NotFoundError("Booking not found", code="BOOKING_NOT_FOUND")
            logger.error("Booking lookup failed", extra={"booking_id": booking_id, "error_code": result.error_code})
            await self._record(
                event_type, started, error=result.error or "Booking lookup failed", data=event_data
            )
            raise ProviderError()
        return result.booking

    async def cancellation_preview(self, booking_id: Optional[str] = None) -> CancellationPreview:
        preview = CancellationPreview(tiers=REFUND_TIERS, processing_time=self.settings.REFUND_PROCESSING_TIME)
        if not booking_id:
            return preview
        booking = await self.get_booking(booking_id)
        preview.booking = booking
        if booking.status == BookingStatus.CANCELLED:
            preview.reason = "Booking is already cancelled"
            return preview
        preview.quote = refund_quote(booking.total_price, self._hours_until(booking))
        if not preview.quote.can_cancel:
            preview.reason = "Cancellations are not possible within 24 hours of the tour"
        return preview

    async def cancel_booking(
        self,
        booking_id: str,
        customer_email: str,
        context: RequestContext,
        csrf_token: Optional[str],
        reason: Optional[str] = None,
    ) -> CancellationOutcome:
        try:
            suspicious = self.guard.check(context, GuardAction.CANCELLATION, csrf_token)
        except AppError:
            self.monitor.record_rejection("guard")
            raise
        if suspicious:
            self.monitor.record_suspicious(suspicious)

        started = time.perf_counter()
        booking = await self.get_booking(booking_id, EventType.BOOKING_CANCELLED)
        if booking.customer.email.strip().lower() != customer_email.strip().lower():
            self.monitor.record_rejection("guard")
            logger.warning("Cancellation email mismatch", extra={"booking_id": booking_id})
            raise GuardError("EMAIL_MISMATCH", "Email does not match booking records")
        if booking.status == BookingStatus.CANCELLED:
            raise ConflictError("ALREADY_CANCELLED", "Booking is already cancelled")

        quote = refund_quote(booking.total_price, self._hours_until(booking))
        if not quote.can_cancel:
            raise ConflictError(
                "CANCELLATION_WINDOW_CLOSED",
                "Cancellations are not possible within 24 hours of the tour",
                canCancel=False,
                hoursUntilTour=round(quote.hours_until_start, 2),
            )

        event_data = {"bookingId": booking_id, "tourId": booking.tour_id}
        try:
            result = await self._call("cancel_booking", self.provider.cancel_booking(booking_id))
        except ProviderError as exc:
            await self._record(EventType.BOOKING_CANCELLED, started, error=exc.message, data=event_data)
            raise
        if not result.success:
            if result.error_code == ALREADY_CANCELLED:
                raise ConflictError("ALREADY_CANCELLED", "Booking is already cancelled")
            if result.error_code == NOT_FOUND:
                raise NotFoundError("Booking not found", code="BOOKING_NOT_FOUND")
            await self._record(
                EventType.BOOKING_CANCELLED, started, error=result.error or "Cancellation failed", data=event_data
            )
            raise ProviderError()

        if booking.status != BookingStatus.CANCELLED:
            booking.cancel()
        await self._record(
            EventType.BOOKING_CANCELLED,
            started,
            data={**event_data, "refundAmount": str(quote.amount), "refundPercent": quote.percent, "reason": reason},
        )
        logger.info(
            "Booking cancelled",
            extra={"booking_id": booking_id, "refund_amount": str(quote.amount), "refund_percent": quote.percent},
        )
        tour = self.catalog.get(booking.tour_id)
        return CancellationOutcome(
            booking=booking,
            quote=quote,
            currency=tour.currency if tour else self.settings.CURRENCY,
            processing_time=self.settings.REFUND_PROCESSING_TIME,
            cancelled_at=self._clock(),
            reason=reason,
        )

    def _availability_rule_violation(self, tour: Tour, day: date) -> Optional[str]:
        date_check = validate_booking_date(day, self.today(), self.settings.MAX_ADVANCE_DAYS)
        if not date_check.valid:
            return date_check.error
        day_check = validate_tour_day(tour, day)
        if not day_check.valid:
            return day_check.error
        return None

    def _hours_until(self, booking: Booking) -> float:
        return hours_until(booking.date, booking.start_time, self._clock(), self.tz)

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.settings.PROVIDER_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.error(
                "Provider call timed out",
                extra={"operation": operation, "timeout_seconds": self.settings.PROVIDER_TIMEOUT_SECONDS},
            )
            raise ProviderTimeoutError(operation) from None
        except ProviderError:
            raise
        except Exception as exc:
            logger.exception("Provider call failed unexpectedly", extra={"operation": operation})
            raise ProviderError() from exc

    async def _record(
        self,
        event_type: EventType,
        started: float,
        error: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        duration_ms = (time.perf_counter() - started) * 1000
        self.monitor.record(event_type, duration_ms=duration_ms, error=error, data=data)
        await self.alerts.evaluate()
