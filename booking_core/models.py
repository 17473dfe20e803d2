from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Optional

from .errors import InvalidTransitionError

CENTS = Decimal("0.01")


def to_money(value: Decimal | int | float | str) -> Decimal:
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class EventType(str, Enum):
    BOOKING_CREATED = "booking_created"
    BOOKING_FAILED = "booking_failed"
    AVAILABILITY_CHECKED = "availability_checked"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_LOOKUP = "booking_lookup"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @classmethod
    def worst(cls, *statuses: "HealthStatus") -> "HealthStatus":
        return max(statuses, key=lambda s: s.severity)


_SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.DEGRADED: 1, HealthStatus.UNHEALTHY: 2}


class AttemptState(str, Enum):
    RECEIVED = "received"
    GUARDED = "guarded"
    VALIDATED = "validated"
    AVAILABILITY_CONFIRMED = "availability_confirmed"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


@dataclass(frozen=True)
class AvailabilityWindow:
    day_of_week: int  # 0 = Monday
    start_time: time
    end_time: time
    max_bookings: int

    def contains(self, start: time) -> bool:
        return self.start_time <= start < self.end_time


@dataclass(frozen=True)
class DiscountTier:
    min_size: int
    percent_off: Decimal


@dataclass(frozen=True)
class Tour:
    id: str
    title: str
    duration_minutes: int
    max_group_size: int
    base_price: Decimal
    currency: str
    availability: tuple[AvailabilityWindow, ...] = ()
    discount_tiers: tuple[DiscountTier, ...] = ()

    def window_for(self, day: date) -> Optional[AvailabilityWindow]:
        for window in self.availability:
            if window.day_of_week == day.weekday():
                return window
        return None

    @property
    def operating_days(self) -> list[int]:
        return sorted({window.day_of_week for window in self.availability})


@dataclass
class TimeSlot:
    tour_id: str
    date: date
    start_time: time
    end_time: time
    available_spots: int
    price: Decimal

    def __post_init__(self) -> None:
        if self.available_spots < 0:
            raise ValueError("available_spots cannot be negative")


@dataclass(frozen=True)
class CustomerInfo:
    first_name: str
    last_name: str
    email: str
    phone: str
    country: str = ""


@dataclass(frozen=True)
class BookingRequest:
    tour_id: str
    date: date
    start_time: time
    group_size: int
    customer: CustomerInfo
    total_price: Decimal
    special_requests: Optional[str] = None

    def fingerprint(self) -> str:
        return "|".join(
            [
                self.tour_id,
                self.date.isoformat(),
                self.start_time.strftime("%H:%M"),
                str(self.group_size),
                self.customer.email.lower(),
                str(to_money(self.total_price)),
            ]
        )


@dataclass
class Booking:
    id: str
    tour_id: str
    date: date
    start_time: time
    group_size: int
    total_price: Decimal
    customer: CustomerInfo
    status: BookingStatus = BookingStatus.PENDING
    confirmation_code: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def confirm(self) -> None:
        if self.status != BookingStatus.PENDING:
            raise InvalidTransitionError(f"cannot confirm a {self.status.value} booking")
        self.status = BookingStatus.CONFIRMED

    def cancel(self) -> None:
        if self.status == BookingStatus.CANCELLED:
            raise InvalidTransitionError("booking is already cancelled")
        self.status = BookingStatus.CANCELLED


@dataclass
class Pricing:
    base_price: Decimal
    currency: str
    group_discounts: tuple[DiscountTier, ...] = ()


@dataclass
class AvailabilityResult:
    available: bool
    slots: list[TimeSlot]
    max_group_size: int
    pricing: Pricing
    error: Optional[str] = None

    @classmethod
    def unavailable(cls, error: Optional[str] = None, currency: str = "EUR") -> "AvailabilityResult":
        return cls(
            available=False,
            slots=[],
            max_group_size=0,
            pricing=Pricing(base_price=Decimal("0"), currency=currency),
            error=error,
        )

    def find_slot(self, start: time) -> Optional[TimeSlot]:
        for slot in self.slots:
            if slot.start_time == start:
                return slot
        return None


@dataclass
class BookingResult:
    success: bool
    booking_id: Optional[str] = None
    confirmation_code: Optional[str] = None
    booking: Optional[Booking] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class CancelResult:
    success: bool
    refund_amount: Optional[Decimal] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class RateLimitRecord:
    count: int
    reset_time: float


@dataclass
class MetricEvent:
    type: EventType
    timestamp: datetime
    duration_ms: Optional[float] = None
    error: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionData:
    session_id: str
    csrf_token: str
    created_at: datetime
    expires_at: datetime
    ip_address: str = "unknown"
    user_agent: str = ""
    last_booking_id: Optional[str] = None


@dataclass
class RefundQuote:
    can_cancel: bool
    percent: int
    amount: Decimal
    hours_until_start: float


@dataclass
class BookingOutcome:
    booking: Booking
    confirmation_code: str
    created: bool = True


@dataclass
class IdempotencyRecord:
    key: str
    fingerprint: str
    created_at: datetime
    outcome: Optional[BookingOutcome] = None

    @property
    def in_flight(self) -> bool:
        return self.outcome is None
