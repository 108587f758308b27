"""Counter and session stores."""

from .base import AdmitOutcome, CounterLimit, CounterStore, KeySpace, SessionStore, StoreUnavailableError
from .factory import StoreBundle, build_stores
from .memory import InMemoryCounterStore, InMemorySessionStore

__all__ = [
    "AdmitOutcome",
    "CounterLimit",
    "CounterStore",
    "SessionStore",
    "KeySpace",
    "StoreUnavailableError",
    "StoreBundle",
    "build_stores",
    "InMemoryCounterStore",
    "InMemorySessionStore",
]
