"""Business-rule checks for availability queries and bookings.

Everything here is pure: callers pass the clock reading, timezone and
configured limits in, and get plain results back. Validators return a
``ValidationResult`` instead of raising so the orchestrator can collect every
problem with a request in one pass.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from .models import BookingRequest, DiscountTier, RefundQuote, Tour, to_money

DAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

# Consent category covering processing needed to perform the booking contract.
BOOKING_CONSENT = "booking_data"

# (minimum hours before start, refund percent), checked in order.
REFUND_TIERS: tuple[tuple[float, int], ...] = ((48.0, 100), (24.0, 50))


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    error: Optional[str] = None
    field: Optional[str] = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(valid=True)

    @classmethod
    def fail(cls, error: str, field: Optional[str] = None) -> "ValidationResult":
        return cls(valid=False, error=error, field=field)

    def to_detail(self) -> dict[str, str]:
        detail = {"message": self.error or ""}
        if self.field:
            detail["field"] = self.field
        return detail


@dataclass(frozen=True)
class PricingOption:
    group_size: int
    total_price: Decimal
    price_per_person: Decimal


def validate_booking_date(day: date, today: date, max_advance_days: Optional[int] = None) -> ValidationResult:
    if day < today:
        return ValidationResult.fail("Cannot book tours in the past", field="date")
    if max_advance_days is not None and day > today + timedelta(days=max_advance_days):
        return ValidationResult.fail(
            f"Cannot book tours more than {max_advance_days} days in advance", field="date"
        )
    return ValidationResult.ok()


def validate_tour_day(tour: Tour, day: date) -> ValidationResult:
    if tour.window_for(day) is not None:
        return ValidationResult.ok()
    names = ", ".join(DAY_NAMES[d] for d in tour.operating_days)
    return ValidationResult.fail(f"This tour is only available on: {names}", field="date")


def validate_start_time(tour: Tour, day: date, start_time: time) -> ValidationResult:
    window = tour.window_for(day)
    if window is None:
        return validate_tour_day(tour, day)
    if not window.contains(start_time):
        return ValidationResult.fail(
            f"Start time must be between {window.start_time:%H:%M} and {window.end_time:%H:%M}",
            field="startTime",
        )
    return ValidationResult.ok()


def slot_start(day: date, start_time: time, tz: tzinfo) -> datetime:
    return datetime.combine(day, start_time, tzinfo=tz)


def hours_until(day: date, start_time: time, now: datetime, tz: tzinfo) -> float:
    return (slot_start(day, start_time, tz) - now).total_seconds() / 3600


def validate_notice(
    day: date, start_time: time, now: datetime, tz: tzinfo, min_notice_hours: float
) -> ValidationResult:
    if hours_until(day, start_time, now, tz) < min_notice_hours:
        return ValidationResult.fail(
            f"Bookings require at least {min_notice_hours:g} hours advance notice", field="startTime"
        )
    return ValidationResult.ok()


def validate_group_size(tour: Tour, group_size: int) -> ValidationResult:
    if group_size < 1:
        return ValidationResult.fail("Group size must be at least 1", field="groupSize")
    if group_size > tour.max_group_size:
        return ValidationResult.fail(
            f"Maximum group size for this tour is {tour.max_group_size} people", field="groupSize"
        )
    return ValidationResult.ok()


def applicable_discount(group_size: int, tiers: Iterable[DiscountTier]) -> Decimal:
    percents = [tier.percent_off for tier in tiers if group_size >= tier.min_size]
    return max(percents, default=Decimal("0"))


def calculate_total_price(
    base_price: Decimal | int | str, group_size: int, discount_tiers: Iterable[DiscountTier] = ()
) -> Decimal:
    """``base_price * group_size`` less the best discount tier the group qualifies for."""
    subtotal = Decimal(str(base_price)) * group_size
    discount = applicable_discount(group_size, discount_tiers)
    return to_money(subtotal * (Decimal("100") - discount) / Decimal("100"))


def validate_total_price(tour: Tour, group_size: int, submitted: Decimal) -> ValidationResult:
    expected = calculate_total_price(tour.base_price, group_size, tour.discount_tiers)
    if Decimal(str(submitted)) != expected:
        return ValidationResult.fail(
            "Price mismatch detected. Please refresh and try again.", field="totalPrice"
        )
    return ValidationResult.ok()


def validate_consent(consent_types: Iterable[str]) -> ValidationResult:
    if BOOKING_CONSENT in set(consent_types):
        return ValidationResult.ok()
    return ValidationResult.fail("Consent required for booking data processing", field="consent")


def validate_booking_request(
    request: BookingRequest,
    tour: Tour,
    now: datetime,
    tz: tzinfo,
    min_notice_hours: float = 0.0,
    max_advance_days: Optional[int] = None,
) -> list[ValidationResult]:
    """Return every failed check for ``request``; an empty list means valid."""
    today = now.astimezone(tz).date()
    failures: list[ValidationResult] = []

    date_check = validate_booking_date(request.date, today, max_advance_days)
    failures.append(date_check)
    day_check = validate_tour_day(tour, request.date)
    failures.append(day_check)
    if day_check.valid:
        failures.append(validate_start_time(tour, request.date, request.start_time))
    if date_check.valid:
        failures.append(validate_notice(request.date, request.start_time, now, tz, min_notice_hours))

    size_check = validate_group_size(tour, request.group_size)
    failures.append(size_check)
    if size_check.valid:
        failures.append(validate_total_price(tour, request.group_size, request.total_price))

    return [result for result in failures if not result.valid]


def refund_quote(
    total_price: Decimal,
    hours_until_start: float,
    tiers: Sequence[tuple[float, int]] = REFUND_TIERS,
) -> RefundQuote:
    for min_hours, percent in tiers:
        if hours_until_start >= min_hours:
            amount = to_money(Decimal(str(total_price)) * percent / 100)
            return RefundQuote(
                can_cancel=True, percent=percent, amount=amount, hours_until_start=hours_until_start
            )
    return RefundQuote(can_cancel=False, percent=0, amount=to_money(0), hours_until_start=hours_until_start)


def pricing_options(tour: Tour, group_sizes: Iterable[int]) -> list[PricingOption]:
    options = []
    for size in group_sizes:
        if size < 1 or size > tour.max_group_size:
            continue
        total = calculate_total_price(tour.base_price, size, tour.discount_tiers)
        options.append(PricingOption(group_size=size, total_price=total, price_per_person=to_money(total / size)))
    return options
