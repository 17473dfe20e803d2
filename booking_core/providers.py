"""Scheduling backends behind one async capability interface.

The orchestrator only ever talks to ``BookingProvider``; which concrete
backend is active is decided once, at startup, by ``get_booking_provider``.
Backends report failures through result objects instead of raising, and
never retry a call themselves.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Mapping, Optional, Tuple
from uuid import uuid4

import httpx

from .catalog import TourCatalog
from .config import Settings
from .errors import InvalidTransitionError
from .models import (
    AvailabilityResult,
    Booking,
    BookingRequest,
    BookingResult,
    BookingStatus,
    CancelResult,
    CustomerInfo,
    Pricing,
    TimeSlot,
    Tour,
    to_money,
)

logger = logging.getLogger(__name__)

SLOT_FULL = "SLOT_FULL"
NOT_FOUND = "NOT_FOUND"
PROVIDER_ERROR = "PROVIDER_ERROR"
ALREADY_CANCELLED = "ALREADY_CANCELLED"

# Raised while reading a vendor payload whose shape does not match the adapter.
_MALFORMED = (KeyError, IndexError, TypeError, ValueError, AttributeError, ArithmeticError)

_PEEK_STATUSES = {
    "pending": BookingStatus.PENDING,
    "confirmed": BookingStatus.CONFIRMED,
    "booked": BookingStatus.CONFIRMED,
    "cancelled": BookingStatus.CANCELLED,
    "canceled": BookingStatus.CANCELLED,
}


def clamp_spots(spots: Any, max_group_size: int) -> int:
    try:
        value = int(spots)
    except (TypeError, ValueError):
        return 0
    return max(0, min(value, max_group_size))


def end_of(start: time, duration_minutes: int) -> time:
    return (datetime.combine(date.min, start) + timedelta(minutes=duration_minutes)).time()


def _parse_clock(value: str) -> time:
    """Start time from ``HH:MM`` or from the time part of an ISO datetime."""
    clock = value.split("T")[-1][:5]
    hours, minutes = clock.split(":")
    return time(int(hours), int(minutes))


def _peek_status(value: Any, default: BookingStatus = BookingStatus.CONFIRMED) -> BookingStatus:
    if value is None:
        return default
    status = _PEEK_STATUSES.get(str(value).strip().lower())
    if status is None:
        logger.warning("Unrecognised booking status from provider", extra={"provider": "peek", "status": value})
        return default
    return status


def _pricing_for(tour: Tour) -> Pricing:
    return Pricing(base_price=tour.base_price, currency=tour.currency, group_discounts=tour.discount_tiers)


class BookingProvider(ABC):
    name: str = "provider"

    @abstractmethod
    async def check_availability(self, tour_id: str, day: date) -> AvailabilityResult:
        """Free slots for ``tour_id`` on ``day``. Never mutates the backend."""

    @abstractmethod
    async def create_booking(self, request: BookingRequest) -> BookingResult:
        ...

    @abstractmethod
    async def get_booking(self, booking_id: str) -> BookingResult:
        ...

    @abstractmethod
    async def cancel_booking(self, booking_id: str) -> CancelResult:
        ...

    async def aclose(self) -> None:
        return None


class ProviderHTTPError(Exception):
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code


class HTTPBookingProvider(BookingProvider):
    """Shared plumbing for vendors reached over a JSON REST API."""

    def __init__(
        self,
        catalog: TourCatalog,
        base_url: str,
        headers: Mapping[str, str],
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        auth: Optional[httpx.Auth] = None,
    ) -> None:
        self.catalog = catalog
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=auth,
            headers={"Content-Type": "application/json", "Accept": "application/json", **headers},
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.error(
                "Provider transport failure",
                extra={"provider": self.name, "path": path, "error_type": type(exc).__name__},
            )
            raise ProviderHTTPError(PROVIDER_ERROR, "Booking service unreachable") from exc

        if response.status_code == 404:
            raise ProviderHTTPError(NOT_FOUND, "Booking not found")
        if response.status_code == 409:
            raise ProviderHTTPError(SLOT_FULL, "The selected time slot is no longer available")
        if response.is_error:
            logger.error(
                "Provider returned an error status",
                extra={"provider": self.name, "path": path, "status_code": response.status_code},
            )
            raise ProviderHTTPError(PROVIDER_ERROR, f"Booking service error ({response.status_code})")
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderHTTPError(PROVIDER_ERROR, "Unreadable booking service response") from exc

    def _unknown_tour(self, tour_id: str) -> AvailabilityResult:
        logger.warning("Availability requested for unknown tour", extra={"provider": self.name, "tour_id": tour_id})
        return AvailabilityResult.unavailable(error="Unknown tour")

    def _availability_failed(self, tour_id: str, day: date, exc: ProviderHTTPError, tour: Tour) -> AvailabilityResult:
        logger.error(
            "Availability check failed",
            extra={"provider": self.name, "tour_id": tour_id, "date": day.isoformat(), "error_code": exc.code},
        )
        return AvailabilityResult.unavailable(error=str(exc), currency=tour.currency)

    def _unreadable(self, operation: str, exc: Exception) -> ProviderHTTPError:
        logger.error(
            "Unreadable provider payload",
            extra={"provider": self.name, "operation": operation, "error_type": type(exc).__name__},
        )
        return ProviderHTTPError(PROVIDER_ERROR, "Unreadable booking service response")

    def _booking_unreadable(self, operation: str, exc: Exception) -> BookingResult:
        error = self._unreadable(operation, exc)
        return BookingResult(success=False, error=str(error), error_code=error.code)


class AcuitySchedulingProvider(HTTPBookingProvider):
    """Acuity Scheduling: tours map to appointment types, group size lives in an intake form field."""

    name = "acuity"

    def __init__(
        self,
        catalog: TourCatalog,
        base_url: str,
        user_id: str,
        api_key: str,
        appointment_types: Optional[Mapping[str, str]] = None,
        group_size_field_id: int = 1,
        special_requests_field_id: int = 2,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(
            catalog,
            base_url,
            headers={},
            timeout_seconds=timeout_seconds,
            transport=transport,
            auth=httpx.BasicAuth(user_id, api_key),
        )
        self.appointment_types = dict(appointment_types or {})
        self._tours_by_type = {str(v): k for k, v in self.appointment_types.items()}
        self.group_size_field_id = group_size_field_id
        self.special_requests_field_id = special_requests_field_id

    def _type_id(self, tour_id: str) -> str:
        return self.appointment_types.get(tour_id, tour_id)

    async def check_availability(self, tour_id: str, day: date) -> AvailabilityResult:
        tour = self.catalog.get(tour_id)
        if tour is None:
            return self._unknown_tour(tour_id)
        try:
            data = await self._request(
                "GET",
                "/availability/times",
                params={"appointmentTypeID": self._type_id(tour_id), "date": day.isoformat()},
            )
        except ProviderHTTPError as exc:
            return self._availability_failed(tour_id, day, exc, tour)

        slots = []
        try:
            for item in data or []:
                start = _parse_clock(item["time"])
                slots.append(
                    TimeSlot(
                        tour_id=tour_id,
                        date=day,
                        start_time=start,
                        end_time=end_of(start, tour.duration_minutes),
                        available_spots=clamp_spots(item.get("slotsAvailable", 1), tour.max_group_size),
                        price=tour.base_price,
                    )
                )
        except _MALFORMED as exc:
            return self._availability_failed(tour_id, day, self._unreadable("check_availability", exc), tour)
        return AvailabilityResult(
            available=any(slot.available_spots > 0 for slot in slots),
            slots=slots,
            max_group_size=tour.max_group_size,
            pricing=_pricing_for(tour),
        )

    async def create_booking(self, request: BookingRequest) -> BookingResult:
        payload = {
            "appointmentTypeID": self._type_id(request.tour_id),
            "datetime": f"{request.date.isoformat()}T{request.start_time:%H:%M}",
            "firstName": request.customer.first_name,
            "lastName": request.customer.last_name,
            "email": request.customer.email,
            "phone": request.customer.phone,
            "fields": [
                {"id": self.group_size_field_id, "value": str(request.group_size)},
                {"id": self.special_requests_field_id, "value": request.special_requests or ""},
            ],
        }
        try:
            data = await self._request("POST", "/appointments", json=payload)
        except ProviderHTTPError as exc:
            return BookingResult(success=False, error=str(exc), error_code=exc.code)

        try:
            booking_id = str(data["id"])
        except _MALFORMED as exc:
            return self._booking_unreadable("create_booking", exc)
        booking = Booking(
            id=booking_id,
            tour_id=request.tour_id,
            date=request.date,
            start_time=request.start_time,
            group_size=request.group_size,
            total_price=to_money(request.total_price),
            customer=request.customer,
            status=BookingStatus.CONFIRMED,
        )
        return BookingResult(success=True, booking_id=booking_id, booking=booking)

    async def get_booking(self, booking_id: str) -> BookingResult:
        try:
            data = await self._request("GET", f"/appointments/{booking_id}")
        except ProviderHTTPError as exc:
            return BookingResult(success=False, error=str(exc), error_code=exc.code)

        try:
            type_id = str(data.get("appointmentTypeID", ""))
            starts_at = data.get("datetime") or data.get("time") or "00:00"
            booking = Booking(
                id=str(data["id"]),
                tour_id=self._tours_by_type.get(type_id, type_id),
                date=date.fromisoformat(str(starts_at)[:10]),
                start_time=_parse_clock(str(starts_at)),
                group_size=self._group_size(data.get("forms") or []),
                total_price=to_money(data.get("price") or 0),
                customer=CustomerInfo(
                    first_name=data.get("firstName", ""),
                    last_name=data.get("lastName", ""),
                    email=data.get("email", ""),
                    phone=data.get("phone", ""),
                ),
                status=BookingStatus.CANCELLED if data.get("canceled") else BookingStatus.CONFIRMED,
            )
        except _MALFORMED as exc:
            return self._booking_unreadable("get_booking", exc)
        return BookingResult(success=True, booking_id=booking.id, booking=booking)

    async def cancel_booking(self, booking_id: str) -> CancelResult:
        try:
            await self._request("PUT", f"/appointments/{booking_id}/cancel")
        except ProviderHTTPError as exc:
            return CancelResult(success=False, error=str(exc), error_code=exc.code)
        return CancelResult(success=True)

    def _group_size(self, forms: list[dict[str, Any]]) -> int:
        for form in forms:
            for value in form.get("values", []):
                if value.get("fieldID") == self.group_size_field_id:
                    try:
                        return max(1, int(value.get("value")))
                    except (TypeError, ValueError):
                        return 1
        return 1


class PeekProProvider(HTTPBookingProvider):
    name = "peek"

    def __init__(
        self,
        catalog: TourCatalog,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(
            catalog,
            base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout_seconds=timeout_seconds,
            transport=transport,
        )

    async def check_availability(self, tour_id: str, day: date) -> AvailabilityResult:
        tour = self.catalog.get(tour_id)
        if tour is None:
            return self._unknown_tour(tour_id)
        try:
            data = await self._request("GET", f"/products/{tour_id}/availability", params={"date": day.isoformat()})
        except ProviderHTTPError as exc:
            return self._availability_failed(tour_id, day, exc, tour)

        try:
            max_group_size = min(int(data.get("max_group_size") or tour.max_group_size), tour.max_group_size)
            slots = []
            for item in data.get("available_times") or []:
                start = _parse_clock(item["start_time"])
                end = _parse_clock(item["end_time"]) if item.get("end_time") else end_of(start, tour.duration_minutes)
                slots.append(
                    TimeSlot(
                        tour_id=tour_id,
                        date=day,
                        start_time=start,
                        end_time=end,
                        available_spots=clamp_spots(item.get("capacity"), max_group_size),
                        price=to_money(item.get("price") or tour.base_price),
                    )
                )
            pricing = Pricing(
                base_price=to_money(data.get("base_price") or tour.base_price),
                currency=data.get("currency") or tour.currency,
                group_discounts=tour.discount_tiers,
            )
        except _MALFORMED as exc:
            return self._availability_failed(tour_id, day, self._unreadable("check_availability", exc), tour)
        return AvailabilityResult(
            available=any(slot.available_spots > 0 for slot in slots),
            slots=slots,
            max_group_size=max_group_size,
            pricing=pricing,
        )

    async def create_booking(self, request: BookingRequest) -> BookingResult:
        payload = {
            "product_id": request.tour_id,
            "start_time": f"{request.date.isoformat()}T{request.start_time:%H:%M}",
            "party_size": request.group_size,
            "customer": {
                "first_name": request.customer.first_name,
                "last_name": request.customer.last_name,
                "email": request.customer.email,
                "phone": request.customer.phone,
            },
            "special_requests": request.special_requests,
            "total_price": str(to_money(request.total_price)),
        }
        try:
            data = await self._request("POST", "/bookings", json=payload)
        except ProviderHTTPError as exc:
            return BookingResult(success=False, error=str(exc), error_code=exc.code)

        try:
            booking_id = str(data["id"])
            status = _peek_status(data.get("status"))
            confirmation_code = data.get("confirmation_code")
        except _MALFORMED as exc:
            return self._booking_unreadable("create_booking", exc)
        booking = Booking(
            id=booking_id,
            tour_id=request.tour_id,
            date=request.date,
            start_time=request.start_time,
            group_size=request.group_size,
            total_price=to_money(request.total_price),
            customer=request.customer,
            status=status,
            confirmation_code=confirmation_code,
        )
        return BookingResult(
            success=True,
            booking_id=booking.id,
            confirmation_code=booking.confirmation_code,
            booking=booking,
        )

    async def get_booking(self, booking_id: str) -> BookingResult:
        try:
            data = await self._request("GET", f"/bookings/{booking_id}")
        except ProviderHTTPError as exc:
            return BookingResult(success=False, error=str(exc), error_code=exc.code)

        try:
            customer = data.get("customer") or {}
            booking = Booking(
                id=str(data["id"]),
                tour_id=data["product_id"],
                date=date.fromisoformat(data["start_time"][:10]),
                start_time=_parse_clock(data["start_time"]),
                group_size=int(data.get("party_size") or 1),
                total_price=to_money(data.get("total_price") or 0),
                customer=CustomerInfo(
                    first_name=customer.get("first_name", ""),
                    last_name=customer.get("last_name", ""),
                    email=customer.get("email", ""),
                    phone=customer.get("phone", ""),
                ),
                status=_peek_status(data.get("status")),
                confirmation_code=data.get("confirmation_code"),
            )
        except _MALFORMED as exc:
            return self._booking_unreadable("get_booking", exc)
        return BookingResult(
            success=True, booking_id=booking.id, confirmation_code=booking.confirmation_code, booking=booking
        )

    async def cancel_booking(self, booking_id: str) -> CancelResult:
        try:
            data = await self._request("POST", f"/bookings/{booking_id}/cancel")
        except ProviderHTTPError as exc:
            return CancelResult(success=False, error=str(exc), error_code=exc.code)
        refund = data.get("refund_amount") if isinstance(data, dict) else None
        try:
            refund_amount = None if refund is None else to_money(refund)
        except _MALFORMED as exc:
            # The cancellation itself went through; only the amount is unknown.
            self._unreadable("cancel_booking", exc)
            refund_amount = None
        return CancelResult(success=True, refund_amount=refund_amount)


SlotKey = Tuple[str, date, time]


class InMemoryProvider(BookingProvider):
    """Process-local backend that generates slots from the tour availability template.

    Final capacity rejection happens under one ``asyncio.Lock``, so concurrent
    creations for the same slot can never oversell it.
    """

    name = "memory"

    def __init__(self, catalog: TourCatalog, slot_interval_minutes: int = 60, latency_seconds: float = 0.0) -> None:
        if slot_interval_minutes <= 0:
            raise ValueError("slot_interval_minutes must be positive")
        self.catalog = catalog
        self.slot_interval_minutes = slot_interval_minutes
        self.latency_seconds = latency_seconds
        self._bookings: Dict[str, Booking] = {}
        self._capacity: Dict[SlotKey, int] = {}
        self._failures: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    def set_slot_capacity(self, tour_id: str, day: date, start: time, spots: int) -> None:
        """Fix the total number of spots a slot offers, before bookings are subtracted."""
        self._capacity[(tour_id, day, start)] = spots

    def fail_next(self, operation: str, error: str = "Backend unavailable") -> None:
        self._failures[operation] = error

    @property
    def bookings(self) -> list[Booking]:
        return list(self._bookings.values())

    async def check_availability(self, tour_id: str, day: date) -> AvailabilityResult:
        await self._simulate_latency()
        tour = self.catalog.get(tour_id)
        if tour is None:
            return AvailabilityResult.unavailable(error="Unknown tour")
        failure = self._failures.pop("check_availability", None)
        if failure:
            logger.error("Availability check failed", extra={"provider": self.name, "tour_id": tour_id})
            return AvailabilityResult.unavailable(error=failure, currency=tour.currency)

        slots = [
            TimeSlot(
                tour_id=tour_id,
                date=day,
                start_time=start,
                end_time=end_of(start, tour.duration_minutes),
                available_spots=self._remaining(tour, day, start),
                price=tour.base_price,
            )
            for start in self._slot_starts(tour, day)
        ]
        return AvailabilityResult(
            available=any(slot.available_spots > 0 for slot in slots),
            slots=slots,
            max_group_size=tour.max_group_size,
            pricing=_pricing_for(tour),
        )

    async def create_booking(self, request: BookingRequest) -> BookingResult:
        await self._simulate_latency()
        failure = self._failures.pop("create_booking", None)
        if failure:
            return BookingResult(success=False, error=failure, error_code=PROVIDER_ERROR)
        tour = self.catalog.get(request.tour_id)
        if tour is None:
            return BookingResult(success=False, error="Unknown tour", error_code=NOT_FOUND)

        async with self._lock:
            if request.start_time not in self._slot_starts(tour, request.date):
                return BookingResult(success=False, error="No such time slot", error_code=SLOT_FULL)
            remaining = self._remaining(tour, request.date, request.start_time)
            if request.group_size > remaining:
                return BookingResult(
                    success=False,
                    error="The selected time slot is no longer available",
                    error_code=SLOT_FULL,
                )
            booking = Booking(
                id=f"bk_{uuid4().hex[:16]}",
                tour_id=request.tour_id,
                date=request.date,
                start_time=request.start_time,
                group_size=request.group_size,
                total_price=to_money(request.total_price),
                customer=request.customer,
            )
            booking.confirm()
            self._bookings[booking.id] = booking
        return BookingResult(success=True, booking_id=booking.id, booking=booking)

    async def get_booking(self, booking_id: str) -> BookingResult:
        await self._simulate_latency()
        failure = self._failures.pop("get_booking", None)
        if failure:
            return BookingResult(success=False, error=failure, error_code=PROVIDER_ERROR)
        booking = self._bookings.get(booking_id)
        if booking is None:
            return BookingResult(success=False, error="Booking not found", error_code=NOT_FOUND)
        return BookingResult(
            success=True, booking_id=booking.id, confirmation_code=booking.confirmation_code, booking=booking
        )

    async def cancel_booking(self, booking_id: str) -> CancelResult:
        await self._simulate_latency()
        failure = self._failures.pop("cancel_booking", None)
        if failure:
            return CancelResult(success=False, error=failure, error_code=PROVIDER_ERROR)
        async with self._lock:
            booking = self._bookings.get(booking_id)
            if booking is None:
                return CancelResult(success=False, error="Booking not found", error_code=NOT_FOUND)
            try:
                booking.cancel()
            except InvalidTransitionError as exc:
                return CancelResult(success=False, error=str(exc), error_code=ALREADY_CANCELLED)
        return CancelResult(success=True)

    def _slot_starts(self, tour: Tour, day: date) -> list[time]:
        window = tour.window_for(day)
        if window is None:
            return []
        starts = []
        current = datetime.combine(day, window.start_time)
        end = datetime.combine(day, window.end_time)
        while current < end:
            starts.append(current.time())
            current += timedelta(minutes=self.slot_interval_minutes)
        return starts

    def _remaining(self, tour: Tour, day: date, start: time) -> int:
        active = [
            b
            for b in self._bookings.values()
            if (b.tour_id, b.date, b.start_time) == (tour.id, day, start) and b.status != BookingStatus.CANCELLED
        ]
        sold = sum(b.group_size for b in active)
        window = tour.window_for(day)
        if window is not None and len(active) >= window.max_bookings:
            return 0
        capacity = self._capacity.get((tour.id, day, start), tour.max_group_size)
        return clamp_spots(capacity - sold, tour.max_group_size)

    async def _simulate_latency(self) -> None:
        if self.latency_seconds > 0:
            await asyncio.sleep(self.latency_seconds)


def get_booking_provider(
    settings: Settings,
    catalog: TourCatalog,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> BookingProvider:
    if settings.BOOKING_PROVIDER == "acuity":
        provider: BookingProvider = AcuitySchedulingProvider(
            catalog,
            base_url=settings.ACUITY_API_URL,
            user_id=settings.ACUITY_USER_ID,
            api_key=settings.ACUITY_API_KEY.get_secret_value(),
            appointment_types=settings.ACUITY_APPOINTMENT_TYPES,
            group_size_field_id=settings.ACUITY_GROUP_SIZE_FIELD_ID,
            special_requests_field_id=settings.ACUITY_SPECIAL_REQUESTS_FIELD_ID,
            timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
            transport=transport,
        )
    elif settings.BOOKING_PROVIDER == "peek":
        provider = PeekProProvider(
            catalog,
            base_url=settings.PEEK_API_URL,
            api_key=settings.PEEK_API_KEY.get_secret_value(),
            timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
            transport=transport,
        )
    else:
        provider = InMemoryProvider(catalog)
    logger.info("Booking provider selected", extra={"provider": provider.name})
    return provider
