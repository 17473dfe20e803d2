from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from booking_core.catalog import TourCatalog
from booking_core.models import AvailabilityWindow, BookingRequest, CustomerInfo, DiscountTier, Tour
from booking_core.validation import (
    calculate_total_price,
    pricing_options,
    refund_quote,
    validate_booking_date,
    validate_booking_request,
    validate_consent,
    validate_group_size,
    validate_start_time,
    validate_total_price,
    validate_tour_day,
)

PRAGUE = ZoneInfo("Europe/Prague")
NOW = datetime(2026, 6, 1, 6, 0, tzinfo=timezone.utc)
WEDNESDAY = date(2026, 6, 3)


def _castle_tour(tiers: tuple[DiscountTier, ...] = (DiscountTier(4, Decimal("10")),)) -> Tour:
    return Tour(
        id="prague-castle-tour",
        title="Prague Castle",
        duration_minutes=180,
        max_group_size=8,
        base_price=Decimal("45"),
        currency="EUR",
        availability=(
            AvailabilityWindow(0, time(9), time(15), 2),
            AvailabilityWindow(2, time(9), time(15), 2),
        ),
        discount_tiers=tiers,
    )


def _request(**overrides) -> BookingRequest:
    values = dict(
        tour_id="prague-castle-tour",
        date=WEDNESDAY,
        start_time=time(10),
        group_size=4,
        customer=CustomerInfo("Jana", "Novak", "jana@example.com", "+420123456789"),
        total_price=Decimal("162.00"),
    )
    values.update(overrides)
    return BookingRequest(**values)


def test_group_discount_applies_highest_tier() -> None:
    assert calculate_total_price(45, 4, (DiscountTier(4, Decimal("10")),)) == Decimal("162.00")
    tiers = (DiscountTier(4, Decimal("5")), DiscountTier(6, Decimal("10")))
    assert calculate_total_price(Decimal("45"), 6, tiers) == Decimal("243.00")
    assert calculate_total_price(Decimal("45"), 3, tiers) == Decimal("135.00")


def test_price_rounds_half_up_to_cents() -> None:
    tiers = (DiscountTier(1, Decimal("12.5")),)
    # 19.99 * 0.875 = 17.49125
    assert calculate_total_price(Decimal("19.99"), 1, tiers) == Decimal("17.49")
    # 0.35 * 0.9 = 0.315
    assert calculate_total_price(Decimal("0.35"), 1, (DiscountTier(1, Decimal("10")),)) == Decimal("0.32")


def test_submitted_price_must_match_exactly() -> None:
    tour = _castle_tour()
    assert validate_total_price(tour, 4, Decimal("162.00")).valid
    assert validate_total_price(tour, 4, Decimal("162")).valid

    mismatch = validate_total_price(tour, 4, Decimal("162.01"))
    assert not mismatch.valid
    assert mismatch.field == "totalPrice"


def test_past_dates_are_rejected_and_horizon_is_optional() -> None:
    today = date(2026, 6, 1)
    assert not validate_booking_date(today - timedelta(days=1), today).valid
    assert validate_booking_date(today, today).valid
    assert validate_booking_date(today + timedelta(days=400), today).valid
    assert not validate_booking_date(today + timedelta(days=31), today, max_advance_days=30).valid


def test_tour_must_operate_on_weekday() -> None:
    tour = _castle_tour()
    result = validate_tour_day(tour, date(2026, 6, 2))
    assert not result.valid
    assert "Monday, Wednesday" in (result.error or "")


def test_start_time_window_is_half_open() -> None:
    tour = _castle_tour()
    assert validate_start_time(tour, WEDNESDAY, time(9)).valid
    assert validate_start_time(tour, WEDNESDAY, time(14, 59)).valid
    assert not validate_start_time(tour, WEDNESDAY, time(15)).valid
    assert not validate_start_time(tour, WEDNESDAY, time(8, 30)).valid


@pytest.mark.parametrize("size,valid", [(0, False), (1, True), (8, True), (9, False)])
def test_group_size_bounds(size: int, valid: bool) -> None:
    assert validate_group_size(_castle_tour(), size).valid is valid


def test_consent_requires_booking_category() -> None:
    assert validate_consent({"necessary", "booking_data"}).valid
    assert not validate_consent({"necessary", "analytics"}).valid


def test_request_aggregates_every_failure() -> None:
    request = _request(date=date(2026, 5, 30), start_time=time(7), group_size=12, total_price=Decimal("1"))
    failures = validate_booking_request(request, _castle_tour(), NOW, PRAGUE)
    fields = [f.field for f in failures]

    # 30 May 2026 is a Saturday: past date, wrong weekday, oversize group.
    assert fields == ["date", "date", "groupSize"]


def test_price_only_checked_for_valid_group_size() -> None:
    failures = validate_booking_request(
        _request(group_size=0, total_price=Decimal("999")), _castle_tour(), NOW, PRAGUE
    )
    assert [f.field for f in failures] == ["groupSize"]


def test_same_day_booking_needs_notice() -> None:
    tour = _castle_tour()
    # 08:00 local now; 09:00 is one hour away.
    too_soon = validate_booking_request(
        _request(date=date(2026, 6, 1), start_time=time(9)), tour, NOW, PRAGUE, min_notice_hours=2
    )
    assert [f.field for f in too_soon] == ["startTime"]

    in_time = validate_booking_request(
        _request(date=date(2026, 6, 1), start_time=time(10)), tour, NOW, PRAGUE, min_notice_hours=2
    )
    assert in_time == []


def test_valid_request_has_no_failures() -> None:
    assert validate_booking_request(_request(), _castle_tour(), NOW, PRAGUE) == []


@pytest.mark.parametrize(
    "hours,can_cancel,percent,amount",
    [
        (72.0, True, 100, Decimal("162.00")),
        (48.0, True, 100, Decimal("162.00")),
        (47.99, True, 50, Decimal("81.00")),
        (24.0, True, 50, Decimal("81.00")),
        (23.99, False, 0, Decimal("0.00")),
        (-1.0, False, 0, Decimal("0.00")),
    ],
)
def test_refund_tiers(hours: float, can_cancel: bool, percent: int, amount: Decimal) -> None:
    quote = refund_quote(Decimal("162.00"), hours)
    assert quote.can_cancel is can_cancel
    assert quote.percent == percent
    assert quote.amount == amount


def test_pricing_options_skip_sizes_over_limit(catalog: TourCatalog) -> None:
    tour = catalog.get("food-tour")
    assert tour is not None
    options = pricing_options(tour, [1, 2, 4, 6, 8])

    assert [o.group_size for o in options] == [1, 2, 4]
    assert options[-1].total_price == Decimal("247.00")
    assert options[-1].price_per_person == Decimal("61.75")
