"""In-process stores.

Notes:
- Per-process only: running multiple workers multiplies every limit and
  splits sessions between workers. Use the Redis stores for real deployments.
- Thread-safe: each operation runs under a single lock, which makes it atomic
  with respect to every other operation on the same store.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Generic, Iterator, Sequence, TypeVar

from .base import AdmitOutcome, CounterLimit, CounterStore, SessionStore

V = TypeVar("V")


@dataclass
class _Entry(Generic[V]):
    value: V
    expires_at: float | None


class _ExpiringDict(Generic[V]):
    def __init__(self, clock: Callable[[], float]):
        self._clock = clock
        self._data: dict[str, _Entry[V]] = {}

    def live(self, key: str) -> _Entry[V] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def set(self, key: str, value: V, ttl_seconds: int | None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._data[key] = _Entry(value=value, expires_at=expires_at)

    def pop(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def keys_with_prefix(self, prefix: str) -> list[str]:
        return [k for k in list(self._data) if k.startswith(prefix) and self.live(k) is not None]

    def remaining(self, key: str) -> int:
        entry = self.live(key)
        if entry is None or entry.expires_at is None:
            return 0
        return max(0, int(math.ceil(entry.expires_at - self._clock())))


class InMemoryCounterStore(CounterStore):
    """Counter store backed by a dict with lazy expiry."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._lock = threading.RLock()
        self._data: _ExpiringDict[int] = _ExpiringDict(clock)

    def get(self, key: str) -> int:
        with self._lock:
            entry = self._data.live(key)
            return entry.value if entry else 0

    def ttl(self, key: str) -> int:
        with self._lock:
            return self._data.remaining(key)

    def incr_with_expiry(self, key: str, ttl_seconds: int) -> int:
        if ttl_seconds < 1:
            raise ValueError("ttl_seconds must be >= 1")
        with self._lock:
            return self._incr(key, ttl_seconds)

    def admit(self, windows: Sequence[CounterLimit], ceiling: CounterLimit | None = None) -> AdmitOutcome:
        ordered = [*windows, ceiling] if ceiling else list(windows)
        if any(w.ttl_seconds < 1 for w in ordered):
            raise ValueError("ttl_seconds must be >= 1")
        checks = [ceiling, *windows] if ceiling else list(windows)
        with self._lock:
            for window in checks:
                entry = self._data.live(window.key)
                if (entry.value if entry else 0) >= window.limit:
                    return AdmitOutcome(
                        allowed=False,
                        denied_key=window.key,
                        retry_after=self._data.remaining(window.key),
                    )
            return AdmitOutcome(
                allowed=True,
                counts={w.key: self._incr(w.key, w.ttl_seconds) for w in ordered},
            )

    def delete(self, *keys: str) -> int:
        with self._lock:
            return sum(1 for key in keys if self._data.live(key) is not None and self._data.pop(key))

    def _incr(self, key: str, ttl_seconds: int) -> int:
        entry = self._data.live(key)
        if entry is None:
            self._data.set(key, 1, ttl_seconds)
            return 1
        entry.value += 1
        return entry.value

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = self._data.keys_with_prefix(prefix)
            for key in keys:
                self._data.pop(key)
            return len(keys)


class InMemorySessionStore(SessionStore):
    """Session store backed by a dict with lazy expiry."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._lock = threading.RLock()
        self._data: _ExpiringDict[str] = _ExpiringDict(clock)

    def create_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        if ttl_seconds < 1:
            raise ValueError("ttl_seconds must be >= 1")
        with self._lock:
            if self._data.live(key) is not None:
                return False
            self._data.set(key, value, ttl_seconds)
            return True

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._data.live(key)
            return entry.value if entry else None

    def compare_and_delete(self, key: str, expected: str) -> bool:
        with self._lock:
            entry = self._data.live(key)
            if entry is None or entry.value != expected:
                return False
            return self._data.pop(key)

    def scan(self, prefix: str) -> Iterator[tuple[str, str]]:
        with self._lock:
            snapshot = [(k, self._data.live(k)) for k in self._data.keys_with_prefix(prefix)]
        for key, entry in snapshot:
            if entry is not None:
                yield key, entry.value
