"""Shared store interfaces.

Both stores are external to any single process in production (Redis); the
in-memory implementations exist for tests and single-process development.
Every mutation is a single store-native atomic operation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterator, Sequence


class StoreUnavailableError(RuntimeError):
    """Raised when the backing store cannot be reached or answers with an error."""


@dataclass(frozen=True)
class KeySpace:
    """Key layout for both namespaces.

    counters:{scope}:{operation_class}:{subject} -> integer with TTL
    sessions:{token} -> serialized session record with TTL
    """

    prefix: str = "toolgate:"

    @property
    def counters_prefix(self) -> str:
        return f"{self.prefix}counters:"

    @property
    def sessions_prefix(self) -> str:
        return f"{self.prefix}sessions:"

    def counter(self, scope: str, operation_class: str, subject: str) -> str:
        return f"{self.counters_prefix}{scope}:{operation_class}:{subject}"

    def global_counter(self) -> str:
        return f"{self.counters_prefix}global:all:all"

    def session(self, token: str) -> str:
        return f"{self.sessions_prefix}{token}"

    def token_from_session_key(self, key: str) -> str:
        return key[len(self.sessions_prefix):]


@dataclass(frozen=True)
class CounterLimit:
    key: str
    limit: int
    ttl_seconds: int


@dataclass(frozen=True)
class AdmitOutcome:
    """Result of ``CounterStore.admit``.

    On success ``counts`` maps every key to its post-increment value. On
    denial ``denied_key`` is the first key found at its limit and
    ``retry_after`` its remaining TTL (0 when unknown).
    """

    allowed: bool
    counts: dict[str, int] = field(default_factory=dict)
    denied_key: str | None = None
    retry_after: int = 0


class CounterStore(ABC):
    """TTL-bound key -> integer store."""

    @abstractmethod
    def admit(self, windows: Sequence[CounterLimit], ceiling: CounterLimit | None = None) -> AdmitOutcome:
        """Check every limit and, only if all pass, increment every key; one atomic step.

        ``ceiling`` is checked before ``windows`` and incremented after them.
        A denial writes nothing.
        """
        raise NotImplementedError

    @abstractmethod
    def get(self, key: str) -> int:
        """Current value, 0 when the key is absent or expired."""
        raise NotImplementedError

    @abstractmethod
    def ttl(self, key: str) -> int:
        """Remaining lifetime in whole seconds, 0 when absent or without expiry."""
        raise NotImplementedError

    @abstractmethod
    def incr_with_expiry(self, key: str, ttl_seconds: int) -> int:
        """Atomically increment; a fresh key starts at 1 and carries ``ttl_seconds``."""
        raise NotImplementedError

    @abstractmethod
    def delete(self, *keys: str) -> int:
        raise NotImplementedError

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        raise NotImplementedError


class SessionStore(ABC):
    """TTL-bound key -> record store."""

    @abstractmethod
    def create_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Atomically store ``value`` only when ``key`` does not exist."""
        raise NotImplementedError

    @abstractmethod
    def get(self, key: str) -> str | None:
        raise NotImplementedError

    @abstractmethod
    def compare_and_delete(self, key: str, expected: str) -> bool:
        """Atomically delete ``key`` if it still holds ``expected``.

        Returns True for exactly one of any number of concurrent callers.
        """
        raise NotImplementedError

    @abstractmethod
    def scan(self, prefix: str) -> Iterator[tuple[str, str]]:
        """Yield live (key, value) pairs under ``prefix``; for audit only."""
        raise NotImplementedError
