from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import Booking, BookingOutcome, BookingRequest, CustomerInfo, TimeSlot, Tour
from .service import AvailabilityView, CancellationOutcome, CancellationPreview, DayAvailability
from .telemetry import mask_email
from .validation import DAY_NAMES, REFUND_TIERS


def describe_operating_days(tour: Tour) -> list[str]:
    return [DAY_NAMES[day] for day in tour.operating_days]


def refund_policy(tiers: tuple[tuple[float, int], ...] = REFUND_TIERS) -> list[Dict[str, Any]]:
    policy = [{"minHoursBefore": hours, "refundPercent": percent} for hours, percent in tiers]
    policy.append({"minHoursBefore": 0, "refundPercent": 0, "canCancel": False})
    return policy


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _clock(value: time) -> str:
    return value.strftime("%H:%M")


class CustomerInfoPayload(CamelModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3, max_length=254, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    phone: str = Field(..., min_length=5, max_length=40)
    country: str = Field(default="", max_length=100)


class BookingCreateRequest(CamelModel):
    tour_id: str = Field(..., min_length=1)
    date: date
    start_time: time
    group_size: int
    customer_info: CustomerInfoPayload
    special_requests: Optional[str] = Field(default=None, max_length=1000)
    total_price: Decimal

    def to_domain(self) -> BookingRequest:
        return BookingRequest(
            tour_id=self.tour_id,
            date=self.date,
            start_time=self.start_time.replace(second=0, microsecond=0),
            group_size=self.group_size,
            customer=CustomerInfo(
                first_name=self.customer_info.first_name.strip(),
                last_name=self.customer_info.last_name.strip(),
                email=self.customer_info.email.strip(),
                phone=self.customer_info.phone.strip(),
                country=self.customer_info.country.strip(),
            ),
            total_price=self.total_price,
            special_requests=self.special_requests,
        )


class AvailabilityRangeRequest(CamelModel):
    tour_id: str = Field(..., min_length=1)
    start_date: date
    end_date: date


class CancelBookingRequest(CamelModel):
    booking_id: str = Field(..., min_length=1)
    customer_email: str = Field(..., min_length=3, max_length=254)
    reason: Optional[str] = Field(default=None, max_length=500)


class ConsentRequest(CamelModel):
    types: List[str] = Field(default_factory=list)


class TimeSlotResponse(CamelModel):
    start_time: str
    end_time: str
    available_spots: int
    price: float

    @classmethod
    def from_domain(cls, slot: TimeSlot) -> "TimeSlotResponse":
        return cls(
            start_time=_clock(slot.start_time),
            end_time=_clock(slot.end_time),
            available_spots=slot.available_spots,
            price=float(slot.price),
        )


class GroupDiscountResponse(CamelModel):
    min_size: int
    discount_percent: float


class PricingOptionResponse(CamelModel):
    group_size: int
    total_price: float
    price_per_person: float


class PricingResponse(CamelModel):
    base_price: float
    currency: str
    group_discounts: List[GroupDiscountResponse] = Field(default_factory=list)
    options: List[PricingOptionResponse] = Field(default_factory=list)


class TourInfoResponse(CamelModel):
    id: str
    title: str
    duration_minutes: int
    max_group_size: int
    operating_days: List[str]


class AvailabilityResponse(CamelModel):
    tour_id: str
    date: date
    available: bool
    available_slots: List[TimeSlotResponse] = Field(default_factory=list)
    max_group_size: int = 0
    pricing: Optional[PricingResponse] = None
    tour_info: TourInfoResponse
    reason: Optional[str] = None

    @classmethod
    def from_domain(cls, view: AvailabilityView) -> "AvailabilityResponse":
        tour = view.tour
        pricing = None
        if view.pricing is not None:
            pricing = PricingResponse(
                base_price=float(view.pricing.base_price),
                currency=view.pricing.currency,
                group_discounts=[
                    GroupDiscountResponse(min_size=tier.min_size, discount_percent=float(tier.percent_off))
                    for tier in view.pricing.group_discounts
                ],
                options=[
                    PricingOptionResponse(
                        group_size=option.group_size,
                        total_price=float(option.total_price),
                        price_per_person=float(option.price_per_person),
                    )
                    for option in view.options
                ],
            )
        return cls(
            tour_id=tour.id,
            date=view.date,
            available=view.available,
            available_slots=[TimeSlotResponse.from_domain(slot) for slot in view.slots],
            max_group_size=view.max_group_size,
            pricing=pricing,
            tour_info=TourInfoResponse(
                id=tour.id,
                title=tour.title,
                duration_minutes=tour.duration_minutes,
                max_group_size=tour.max_group_size,
                operating_days=describe_operating_days(tour),
            ),
            reason=view.reason,
        )


class DayAvailabilityResponse(CamelModel):
    available: bool
    slots_count: Optional[int] = None
    reason: Optional[str] = None


class AvailabilityRangeResponse(CamelModel):
    tour_id: str
    date_range: Dict[str, date]
    availability: Dict[str, DayAvailabilityResponse]

    @classmethod
    def from_domain(
        cls, tour_id: str, start: date, end: date, days: Dict[date, DayAvailability]
    ) -> "AvailabilityRangeResponse":
        return cls(
            tour_id=tour_id,
            date_range={"start": start, "end": end},
            availability={
                day.isoformat(): DayAvailabilityResponse(
                    available=entry.available, slots_count=entry.slots_count, reason=entry.reason
                )
                for day, entry in sorted(days.items())
            },
        )


class CustomerResponse(CamelModel):
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None


class BookingResponse(CamelModel):
    id: str
    tour_id: str
    date: date
    start_time: str
    group_size: int
    total_price: float
    status: str
    confirmation_code: Optional[str] = None
    customer_info: CustomerResponse

    @classmethod
    def from_domain(cls, booking: Booking, masked: bool = False) -> "BookingResponse":
        customer = booking.customer
        return cls(
            id=booking.id,
            tour_id=booking.tour_id,
            date=booking.date,
            start_time=_clock(booking.start_time),
            group_size=booking.group_size,
            total_price=float(booking.total_price),
            status=booking.status.value,
            confirmation_code=booking.confirmation_code,
            customer_info=CustomerResponse(
                first_name=customer.first_name,
                last_name=customer.last_name,
                email=mask_email(customer.email) if masked else customer.email,
                phone=None if masked else customer.phone,
            ),
        )


class BookingCreatedResponse(CamelModel):
    success: bool = True
    booking: BookingResponse
    confirmation_code: str

    @classmethod
    def from_domain(cls, outcome: BookingOutcome) -> "BookingCreatedResponse":
        return cls(booking=BookingResponse.from_domain(outcome.booking), confirmation_code=outcome.confirmation_code)


class RefundResponse(CamelModel):
    amount: float
    percent: int
    currency: str
    processing_time: str


class CancellationDetails(CamelModel):
    booking_id: str
    cancelled_at: datetime
    reason: Optional[str] = None


class CancellationResponse(CamelModel):
    success: bool = True
    message: str
    refund: RefundResponse
    cancellation: CancellationDetails

    @classmethod
    def from_domain(cls, outcome: CancellationOutcome) -> "CancellationResponse":
        quote = outcome.quote
        return cls(
            message=f"Booking cancelled. {quote.percent}% of the booking amount will be refunded.",
            refund=RefundResponse(
                amount=float(quote.amount),
                percent=quote.percent,
                currency=outcome.currency,
                processing_time=outcome.processing_time,
            ),
            cancellation=CancellationDetails(
                booking_id=outcome.booking.id, cancelled_at=outcome.cancelled_at, reason=outcome.reason
            ),
        )


class CancellationPreviewResponse(CamelModel):
    policy: List[Dict[str, Any]]
    processing_time: str
    booking_id: Optional[str] = None
    can_cancel: Optional[bool] = None
    refund_percent: Optional[int] = None
    refund_amount: Optional[float] = None
    hours_until_tour: Optional[float] = None
    reason: Optional[str] = None

    @classmethod
    def from_domain(cls, preview: CancellationPreview) -> "CancellationPreviewResponse":
        response = cls(policy=refund_policy(preview.tiers), processing_time=preview.processing_time)
        if preview.booking is not None:
            response.booking_id = preview.booking.id
            response.can_cancel = False
        if preview.quote is not None:
            response.can_cancel = preview.quote.can_cancel
            response.refund_percent = preview.quote.percent
            response.refund_amount = float(preview.quote.amount)
            response.hours_until_tour = round(preview.quote.hours_until_start, 2)
        response.reason = preview.reason
        return response


class CsrfResponse(CamelModel):
    csrf_token: str
    expires_at: datetime


class ConsentResponse(CamelModel):
    types: List[str]
    date: datetime


class HealthResponse(CamelModel):
    status: str
    timestamp: datetime
    error_rate: float
    average_response_time: float
    issues: List[str]
    metrics: Dict[str, Any]
