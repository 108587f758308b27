"""Redis-backed stores shared by every gateway process.

Admission (check then increment), increment-with-expiry and compare-and-delete
run as Lua scripts so each is a single atomic step on the server;
create-if-absent is ``SET NX EX``.
"""

from __future__ import annotations

from typing import Iterator, Sequence

import redis
from redis.exceptions import RedisError

from ..utils.logging_config import StructuredLogger
from .base import AdmitOutcome, CounterLimit, CounterStore, SessionStore, StoreUnavailableError

logger = StructuredLogger(__name__)

# A key that somehow lost its TTL would never reset; re-arm it.
_INCR_WITH_EXPIRY = """
local count = redis.call('INCR', KEYS[1])
if count == 1 or redis.call('TTL', KEYS[1]) < 0 then
    redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return count
"""

# KEYS: window keys in increment order, then the ceiling key when ARGV[1] == '1'.
# ARGV[2i], ARGV[2i+1]: limit and ttl of KEYS[i].
# Returns {1, count_1, ..., count_n} or {0, denied_index, denied_ttl}.
_ADMIT = """
local n = #KEYS
local has_ceiling = ARGV[1] == '1'

local function at_limit(i)
    local current = tonumber(redis.call('GET', KEYS[i]) or '0')
    return current >= tonumber(ARGV[2 * i])
end

if has_ceiling and at_limit(n) then
    return {0, n, redis.call('TTL', KEYS[n])}
end
local last_window = n
if has_ceiling then
    last_window = n - 1
end
for i = 1, last_window do
    if at_limit(i) then
        return {0, i, redis.call('TTL', KEYS[i])}
    end
end

local result = {1}
for i = 1, n do
    local count = redis.call('INCR', KEYS[i])
    if count == 1 or redis.call('TTL', KEYS[i]) < 0 then
        redis.call('EXPIRE', KEYS[i], ARGV[2 * i + 1])
    end
    result[i + 1] = count
end
return result
"""

_COMPARE_AND_DELETE = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

_DELETE_BATCH = 500


def connect_redis(url: str) -> redis.Redis:
    """Open and verify a Redis connection; raises StoreUnavailableError."""
    try:
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=1.5,
            socket_timeout=1.5,
        )
        client.ping()
    except RedisError as exc:
        logger.error("Redis store backend unavailable", error=str(exc))
        raise StoreUnavailableError(f"Redis unavailable: {exc}") from exc
    logger.info("Redis store backend enabled")
    return client


class RedisCounterStore(CounterStore):
    def __init__(self, client: redis.Redis) -> None:
        self._client = client
        self._incr = client.register_script(_INCR_WITH_EXPIRY)
        self._admit = client.register_script(_ADMIT)

    def admit(self, windows: Sequence[CounterLimit], ceiling: CounterLimit | None = None) -> AdmitOutcome:
        ordered = [*windows, ceiling] if ceiling else list(windows)
        if any(w.ttl_seconds < 1 for w in ordered):
            raise ValueError("ttl_seconds must be >= 1")
        args: list[int] = [1 if ceiling else 0]
        for w in ordered:
            args.extend((int(w.limit), int(w.ttl_seconds)))
        try:
            reply = [int(v) for v in self._admit(keys=[w.key for w in ordered], args=args)]
        except RedisError as exc:
            raise StoreUnavailableError(str(exc)) from exc

        if reply[0] == 1:
            return AdmitOutcome(allowed=True, counts={w.key: c for w, c in zip(ordered, reply[1:])})
        # -2 missing, -1 no expiry
        return AdmitOutcome(allowed=False, denied_key=ordered[reply[1] - 1].key, retry_after=max(0, reply[2]))

    def get(self, key: str) -> int:
        try:
            return int(self._client.get(key) or 0)
        except RedisError as exc:
            raise StoreUnavailableError(str(exc)) from exc

    def ttl(self, key: str) -> int:
        try:
            remaining = int(self._client.ttl(key))
        except RedisError as exc:
            raise StoreUnavailableError(str(exc)) from exc
        # -2 missing, -1 no expiry
        return max(0, remaining)

    def incr_with_expiry(self, key: str, ttl_seconds: int) -> int:
        if ttl_seconds < 1:
            raise ValueError("ttl_seconds must be >= 1")
        try:
            return int(self._incr(keys=[key], args=[int(ttl_seconds)]))
        except RedisError as exc:
            raise StoreUnavailableError(str(exc)) from exc

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(self._client.delete(*keys))
        except RedisError as exc:
            raise StoreUnavailableError(str(exc)) from exc

    def delete_prefix(self, prefix: str) -> int:
        deleted = 0
        batch: list[str] = []
        try:
            for key in self._client.scan_iter(match=f"{prefix}*", count=_DELETE_BATCH):
                batch.append(key)
                if len(batch) >= _DELETE_BATCH:
                    deleted += int(self._client.delete(*batch))
                    batch = []
            if batch:
                deleted += int(self._client.delete(*batch))
        except RedisError as exc:
            raise StoreUnavailableError(str(exc)) from exc
        return deleted


class RedisSessionStore(SessionStore):
    def __init__(self, client: redis.Redis) -> None:
        self._client = client
        self._cas_delete = client.register_script(_COMPARE_AND_DELETE)

    def create_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        if ttl_seconds < 1:
            raise ValueError("ttl_seconds must be >= 1")
        try:
            return bool(self._client.set(key, value, nx=True, ex=int(ttl_seconds)))
        except RedisError as exc:
            raise StoreUnavailableError(str(exc)) from exc

    def get(self, key: str) -> str | None:
        try:
            return self._client.get(key)
        except RedisError as exc:
            raise StoreUnavailableError(str(exc)) from exc

    def compare_and_delete(self, key: str, expected: str) -> bool:
        try:
            return int(self._cas_delete(keys=[key], args=[expected])) == 1
        except RedisError as exc:
            raise StoreUnavailableError(str(exc)) from exc

    def scan(self, prefix: str) -> Iterator[tuple[str, str]]:
        try:
            for key in self._client.scan_iter(match=f"{prefix}*", count=_DELETE_BATCH):
                value = self._client.get(key)
                if value is not None:
                    yield key, value
        except RedisError as exc:
            raise StoreUnavailableError(str(exc)) from exc
