from __future__ import annotations

import json
import threading
from datetime import date, time
from decimal import Decimal

import pytest

from booking_core.catalog import DEFAULT_DISCOUNT_TIERS, load_catalog, tour_from_dict
from booking_core.guard import RateLimiter
from booking_core.storage import InMemoryKeyValueStore

from conftest import SecondsClock


def test_values_expire_by_clock() -> None:
    clock = SecondsClock()
    store = InMemoryKeyValueStore(clock=clock)
    store.set("a", 1, ttl_seconds=10)
    store.set("b", 2)

    clock.value += 10

    assert store.get("a") is None
    assert store.get("b") == 2
    assert store.cleanup() == 0
    assert len(store) == 1


def test_update_keeps_expiry_when_ttl_omitted() -> None:
    clock = SecondsClock()
    store = InMemoryKeyValueStore(clock=clock)
    store.set("counter", 1, ttl_seconds=10)

    clock.value += 5
    store.update("counter", lambda current: current + 1)
    clock.value += 5

    assert store.get("counter") is None


def test_writes_sweep_keys_that_are_never_read_again() -> None:
    clock = SecondsClock()
    store = InMemoryKeyValueStore(clock=clock, sweep_interval_seconds=60)
    limiter = RateLimiter(store, 10, 60, clock=clock)
    for n in range(500):
        limiter.check(f"203.0.113.{n}")
    assert len(store) == 500

    clock.value += 3600
    limiter.check("198.51.100.1")

    assert len(store) == 1


def test_sweep_waits_for_interval() -> None:
    clock = SecondsClock()
    store = InMemoryKeyValueStore(clock=clock, sweep_interval_seconds=60)
    store.set("a", 1, ttl_seconds=5)

    clock.value += 10
    store.set("b", 2)
    assert len(store) == 2

    clock.value += 50
    store.set("c", 3)
    assert len(store) == 2
    assert store.get("a") is None


def test_update_is_atomic_across_threads() -> None:
    store = InMemoryKeyValueStore()

    def worker() -> None:
        for _ in range(500):
            store.update("n", lambda current: (current or 0) + 1)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert store.get("n") == 2000


def test_builtin_catalog() -> None:
    catalog = load_catalog()
    castle = catalog.get("prague-castle-tour")

    assert len(catalog) == 4
    assert "food-tour" in catalog
    assert castle is not None
    assert castle.operating_days == [0, 2, 4]
    assert castle.window_for(date(2026, 6, 3)).start_time == time(9)
    assert castle.discount_tiers == DEFAULT_DISCOUNT_TIERS


def test_catalog_from_file(tmp_path) -> None:
    path = tmp_path / "tours.json"
    path.write_text(
        json.dumps(
            [
                {
                    "id": "brewery-tour",
                    "title": "Brewery Tour",
                    "duration_minutes": 120,
                    "max_group_size": 10,
                    "base_price": "30.50",
                    "availability": [
                        {"day_of_week": 5, "start_time": "14:00", "end_time": "18:00", "max_bookings": 3}
                    ],
                    "discount_tiers": [{"min_size": 5, "percent_off": 15}],
                }
            ]
        ),
        encoding="utf-8",
    )

    catalog = load_catalog(path, currency="CZK")
    tour = catalog.get("brewery-tour")

    assert tour is not None
    assert tour.currency == "CZK"
    assert tour.base_price == Decimal("30.50")
    assert tour.discount_tiers[0].percent_off == Decimal("15")
    assert tour.window_for(date(2026, 6, 6)).max_bookings == 3


def test_catalog_rejects_empty_group() -> None:
    with pytest.raises(ValueError):
        tour_from_dict({"id": "x", "duration_minutes": 60, "max_group_size": 0, "base_price": 10})
