from __future__ import annotations

import time
from abc import ABC, abstractmethod
from threading import RLock
from typing import Any, Callable, Dict, Optional, Tuple


class KeyValueStore(ABC):
    """Small key-value interface for process-local defensive state.

    Rate-limit counters and idempotency records go through this so a shared
    store can replace the in-memory one without touching callers.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def update(
        self,
        key: str,
        fn: Callable[[Optional[Any]], Any],
        ttl_seconds: Optional[float] = None,
    ) -> Any:
        """Atomically replace the value under ``key`` with ``fn(current)``.

        When ``ttl_seconds`` is None an existing expiry is kept.
        """


class InMemoryKeyValueStore(KeyValueStore):
    """Thread-safe in-memory store with per-key expiry.

    Expired keys are dropped when read, and writes sweep the whole map at most
    once per ``sweep_interval_seconds`` so keys that are never read again do
    not accumulate.
    """

    def __init__(self, clock: Callable[[], float] = time.time, sweep_interval_seconds: float = 60.0) -> None:
        self._lock = RLock()
        self._clock = clock
        self._items: Dict[str, Tuple[Any, Optional[float]]] = {}
        self.sweep_interval_seconds = sweep_interval_seconds
        self._last_sweep = clock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._live_value(key)

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        with self._lock:
            self._maybe_sweep()
            self._items[key] = (value, self._expiry(ttl_seconds))

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def update(
        self,
        key: str,
        fn: Callable[[Optional[Any]], Any],
        ttl_seconds: Optional[float] = None,
    ) -> Any:
        with self._lock:
            self._maybe_sweep()
            current = self._live_value(key)
            new_value = fn(current)
            if ttl_seconds is None and key in self._items:
                expires_at = self._items[key][1]
            else:
                expires_at = self._expiry(ttl_seconds)
            self._items[key] = (new_value, expires_at)
            return new_value

    def cleanup(self) -> int:
        with self._lock:
            return self._sweep(self._clock())

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def _maybe_sweep(self) -> None:
        now = self._clock()
        if now - self._last_sweep >= self.sweep_interval_seconds:
            self._sweep(now)

    def _sweep(self, now: float) -> int:
        expired = [k for k, (_, exp) in self._items.items() if exp is not None and exp <= now]
        for key in expired:
            del self._items[key]
        self._last_sweep = now
        return len(expired)

    def _live_value(self, key: str) -> Optional[Any]:
        item = self._items.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at <= self._clock():
            del self._items[key]
            return None
        return value

    def _expiry(self, ttl_seconds: Optional[float]) -> Optional[float]:
        if ttl_seconds is None:
            return None
        return self._clock() + ttl_seconds
