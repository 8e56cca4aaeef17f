from __future__ import annotations

import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

T = TypeVar("T")


@dataclass
class _Entry(Generic[T]):
    value: T
    stored_at: float


class TTLCache(Generic[T]):
    """Per-key TTL cache that coalesces concurrent loads.

    While a load for a key is in flight, other callers asking for the same key
    wait for that load instead of starting their own. Entries expire by age
    only; there is no explicit invalidation.
    """

    def __init__(self, ttl_sec: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_sec = max(float(ttl_sec), 0.0)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, _Entry[T]] = {}
        self._inflight: dict[str, Future] = {}

    def get(self, key: str) -> T | None:
        with self._lock:
            entry = self._fresh_entry(key)
        return entry.value if entry is not None else None

    def put(self, key: str, value: T) -> None:
        with self._lock:
            self._entries[key] = _Entry(value=value, stored_at=self._clock())

    def get_or_load(self, key: str, loader: Callable[[], T]) -> T:
        with self._lock:
            entry = self._fresh_entry(key)
            if entry is not None:
                return entry.value
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[key] = future

        if not owner:
            return future.result()

        try:
            value = loader()
        except BaseException as exc:
            with self._lock:
                self._inflight.pop(key, None)
            future.set_exception(exc)
            raise

        with self._lock:
            self._entries[key] = _Entry(value=value, stored_at=self._clock())
            self._inflight.pop(key, None)
        future.set_result(value)
        return value

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for key in list(self._entries) if self._fresh_entry(key) is not None)

    def _fresh_entry(self, key: str) -> _Entry[T] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.stored_at >= self.ttl_sec:
            self._entries.pop(key, None)
            return None
        return entry
