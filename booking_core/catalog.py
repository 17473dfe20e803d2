"""Read-only tour catalog loaded once at startup."""

from __future__ import annotations

import json
import logging
from datetime import time
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Optional

from .models import AvailabilityWindow, DiscountTier, Tour

logger = logging.getLogger(__name__)

DEFAULT_DISCOUNT_TIERS = (
    DiscountTier(min_size=4, percent_off=Decimal("5")),
    DiscountTier(min_size=6, percent_off=Decimal("10")),
)

DEFAULT_TOURS: list[dict[str, Any]] = [
    {
        "id": "prague-castle-tour",
        "title": "Prague Castle & Lesser Town",
        "duration_minutes": 180,
        "max_group_size": 12,
        "base_price": "45",
        "availability": [
            {"day_of_week": 0, "start_time": "09:00", "end_time": "15:00", "max_bookings": 2},
            {"day_of_week": 2, "start_time": "09:00", "end_time": "15:00", "max_bookings": 2},
            {"day_of_week": 4, "start_time": "09:00", "end_time": "15:00", "max_bookings": 2},
        ],
    },
    {
        "id": "old-town-tour",
        "title": "Old Town & Jewish Quarter",
        "duration_minutes": 150,
        "max_group_size": 15,
        "base_price": "35",
        "availability": [
            {"day_of_week": 1, "start_time": "10:00", "end_time": "16:00", "max_bookings": 2},
            {"day_of_week": 3, "start_time": "10:00", "end_time": "16:00", "max_bookings": 2},
            {"day_of_week": 5, "start_time": "10:00", "end_time": "16:00", "max_bookings": 2},
        ],
    },
    {
        "id": "jewish-quarter-tour",
        "title": "Jewish Quarter Stories",
        "duration_minutes": 150,
        "max_group_size": 6,
        "base_price": "40",
        "availability": [
            {"day_of_week": day, "start_time": "10:00", "end_time": "15:00", "max_bookings": 1}
            for day in range(0, 5)
        ],
    },
    {
        "id": "food-tour",
        "title": "Czech Food & Beer Evening",
        "duration_minutes": 240,
        "max_group_size": 4,
        "base_price": "65",
        "availability": [
            {"day_of_week": day, "start_time": "17:00", "end_time": "19:00", "max_bookings": 1}
            for day in (3, 4, 5)
        ],
    },
]


def _parse_time(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def tour_from_dict(raw: dict[str, Any], currency: str = "EUR") -> Tour:
    windows = tuple(
        AvailabilityWindow(
            day_of_week=int(item["day_of_week"]),
            start_time=_parse_time(item["start_time"]),
            end_time=_parse_time(item["end_time"]),
            max_bookings=int(item.get("max_bookings", 1)),
        )
        for item in raw.get("availability", [])
    )
    if "discount_tiers" in raw:
        tiers = tuple(
            DiscountTier(min_size=int(item["min_size"]), percent_off=Decimal(str(item["percent_off"])))
            for item in raw["discount_tiers"]
        )
    else:
        tiers = DEFAULT_DISCOUNT_TIERS
    tour = Tour(
        id=raw["id"],
        title=raw.get("title", raw["id"]),
        duration_minutes=int(raw["duration_minutes"]),
        max_group_size=int(raw["max_group_size"]),
        base_price=Decimal(str(raw["base_price"])),
        currency=raw.get("currency", currency),
        availability=windows,
        discount_tiers=tiers,
    )
    if tour.max_group_size < 1:
        raise ValueError(f"tour {tour.id} must allow at least one guest")
    return tour


class TourCatalog:
    def __init__(self, tours: Iterable[Tour]) -> None:
        self._tours: Dict[str, Tour] = {tour.id: tour for tour in tours}

    def get(self, tour_id: str) -> Optional[Tour]:
        return self._tours.get(tour_id)

    def __contains__(self, tour_id: object) -> bool:
        return tour_id in self._tours

    def __iter__(self) -> Iterator[Tour]:
        return iter(self._tours.values())

    def __len__(self) -> int:
        return len(self._tours)


def load_catalog(path: Optional[Path] = None, currency: str = "EUR") -> TourCatalog:
    """Build the catalog from a JSON file, or from the bundled tours."""
    if path is None:
        raw_tours = DEFAULT_TOURS
    else:
        with Path(path).open(encoding="utf-8") as handle:
            raw_tours = json.load(handle)
    catalog = TourCatalog(tour_from_dict(raw, currency=currency) for raw in raw_tours)
    logger.info("Tour catalog loaded", extra={"tours": len(catalog), "source": str(path or "builtin")})
    return catalog
