"""Store selection from environment."""

from __future__ import annotations

import os
from dataclasses import dataclass

from ..utils.logging_config import StructuredLogger
from .base import CounterStore, KeySpace, SessionStore
from .memory import InMemoryCounterStore, InMemorySessionStore

logger = StructuredLogger(__name__)


@dataclass
class StoreBundle:
    counters: CounterStore
    sessions: SessionStore
    keys: KeySpace
    backend: str


def build_stores() -> StoreBundle:
    """Build the counter and session stores.

    TOOLGATE_STORE=redis requires TOOLGATE_REDIS_URL; when unset, the presence of
    TOOLGATE_REDIS_URL selects Redis and its absence selects the in-process stores.
    A configured but unreachable Redis raises instead of silently degrading.
    """
    keys = KeySpace(prefix=os.getenv("TOOLGATE_KEY_PREFIX", "toolgate:"))
    backend = (os.getenv("TOOLGATE_STORE") or "").strip().lower()
    url = (os.getenv("TOOLGATE_REDIS_URL") or "").strip()

    if backend not in {"", "memory", "redis"}:
        raise ValueError(f"Unsupported TOOLGATE_STORE '{backend}' (expected memory or redis)")
    if backend == "redis" and not url:
        raise ValueError("TOOLGATE_STORE=redis requires TOOLGATE_REDIS_URL")

    if backend == "redis" or (backend == "" and url):
        from .redis_store import RedisCounterStore, RedisSessionStore, connect_redis

        client = connect_redis(url)
        return StoreBundle(
            counters=RedisCounterStore(client),
            sessions=RedisSessionStore(client),
            keys=keys,
            backend="redis",
        )

    logger.warning("Using in-process stores; limits and sessions are not shared across workers")
    return StoreBundle(
        counters=InMemoryCounterStore(),
        sessions=InMemorySessionStore(),
        keys=keys,
        backend="memory",
    )
