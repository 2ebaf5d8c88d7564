"""
Shared key-value store used for refresh sessions and rate-limit counters.

Two implementations share one surface:
- `RedisKeyValueStore` for real deployments (any number of workers);
- `InMemoryKeyValueStore` for tests and single-process dev (`REDIS_URL=memory://`).

Every backend error is re-raised as `KeyValueStoreError` so callers can pick
their own failure policy (the rate limiter fails open, the refresh path fails closed).
"""
from __future__ import annotations

import enum
import math
import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis
from redis.exceptions import RedisError

from authcore.core.errors import KeyValueStoreError


class CasResult(str, enum.Enum):
    SWAPPED = "swapped"
    MISMATCH = "mismatch"
    MISSING = "missing"


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    def delete(self, *keys: str) -> int: ...

    def incr(self, key: str) -> int: ...

    def expire(self, key: str, seconds: int) -> bool: ...

    def ttl(self, key: str) -> int: ...

    def compare_and_set(self, key: str, expected: str, new: str, ttl_seconds: int) -> CasResult: ...

    def ping(self) -> bool: ...


# Swap only if the stored value is still the one the caller read.
# Returns -1 when the key is gone, 0 on mismatch, 1 when swapped.
_CAS_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if not current then
    return -1
end
if current ~= ARGV[1] then
    return 0
end
redis.call('SET', KEYS[1], ARGV[2], 'EX', tonumber(ARGV[3]))
return 1
"""

_CAS_CODES = {1: CasResult.SWAPPED, 0: CasResult.MISMATCH, -1: CasResult.MISSING}


class RedisKeyValueStore:
    def __init__(self, client: "redis.Redis"):
        self._client = client
        self._cas = client.register_script(_CAS_SCRIPT)

    @classmethod
    def from_url(cls, url: str) -> "RedisKeyValueStore":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=2,
            socket_connect_timeout=2,
        )
        return cls(client)

    def _call(self, fn: Callable, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except RedisError as exc:
            raise KeyValueStoreError(str(exc)) from exc

    def get(self, key: str) -> Optional[str]:
        return self._call(self._client.get, key)

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        self._call(self._client.set, key, value, ex=int(ttl_seconds) if ttl_seconds else None)

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self._call(self._client.delete, *keys))

    def incr(self, key: str) -> int:
        return int(self._call(self._client.incr, key))

    def expire(self, key: str, seconds: int) -> bool:
        return bool(self._call(self._client.expire, key, int(seconds)))

    def ttl(self, key: str) -> int:
        return int(self._call(self._client.ttl, key))

    def compare_and_set(self, key: str, expected: str, new: str, ttl_seconds: int) -> CasResult:
        code = int(self._call(self._cas, keys=[key], args=[expected, new, int(ttl_seconds)]))
        return _CAS_CODES[code]

    def ping(self) -> bool:
        return bool(self._call(self._client.ping))


class InMemoryKeyValueStore:
    """Process-local store with the same TTL semantics as Redis."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        # key -> (value, expires_at or None)
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        item = self._data.get(key)
        if item is None:
            return None
        _value, expires_at = item
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return item

    def _expiry(self, ttl_seconds: Optional[int]) -> Optional[float]:
        return self._clock() + ttl_seconds if ttl_seconds else None

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            item = self._live(key)
            return item[0] if item else None

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        with self._lock:
            self._data[key] = (value, self._expiry(ttl_seconds))

    def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    del self._data[key]
                    removed += 1
        return removed

    def incr(self, key: str) -> int:
        with self._lock:
            item = self._live(key)
            if item is None:
                self._data[key] = ("1", None)
                return 1
            value, expires_at = item
            try:
                count = int(value) + 1
            except ValueError as exc:
                raise KeyValueStoreError(f"value at {key!r} is not an integer") from exc
            self._data[key] = (str(count), expires_at)
            return count

    def expire(self, key: str, seconds: int) -> bool:
        with self._lock:
            item = self._live(key)
            if item is None:
                return False
            self._data[key] = (item[0], self._clock() + seconds)
            return True

    def ttl(self, key: str) -> int:
        with self._lock:
            item = self._live(key)
            if item is None:
                return -2
            if item[1] is None:
                return -1
            return int(math.ceil(item[1] - self._clock()))

    def compare_and_set(self, key: str, expected: str, new: str, ttl_seconds: int) -> CasResult:
        with self._lock:
            item = self._live(key)
            if item is None:
                return CasResult.MISSING
            if item[0] != expected:
                return CasResult.MISMATCH
            self._data[key] = (new, self._expiry(ttl_seconds))
            return CasResult.SWAPPED

    def ping(self) -> bool:
        return True


def build_kv_store(url: str) -> KeyValueStore:
    if url.startswith("memory://"):
        return InMemoryKeyValueStore()
    return RedisKeyValueStore.from_url(url)
