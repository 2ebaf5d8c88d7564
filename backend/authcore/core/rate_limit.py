import hashlib
import logging
from dataclasses import dataclass
from typing import Tuple

from fastapi import Request

from authcore.core.errors import KeyValueStoreError, RateLimited
from authcore.core.kv import KeyValueStore

logger = logging.getLogger("authcore.ratelimit")


def get_client_ip(request: Request, trust_proxy: bool = False) -> str:
    """
    Best-effort client IP extraction.

    - Behind a trusted proxy we take the first X-Forwarded-For hop.
    - Otherwise (and in tests) fall back to request.client.host.
    """
    if trust_proxy:
        xff = (request.headers.get("x-forwarded-for") or "").strip()
        if xff:
            # XFF may contain a chain: client, proxy1, proxy2
            return xff.split(",")[0].strip() or "unknown"
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _hash(s: str) -> str:
    s = (s or "").strip().lower()
    if not s:
        return "empty"
    return hashlib.sha256(s.encode("utf-8")).hexdigest()[:32]


@dataclass(frozen=True)
class LimitResult:
    allowed: bool
    retry_after_seconds: int


class RateLimiter:
    """
    Fixed-window counters in the shared key-value store.

    Bursts at window boundaries are accepted. Store failures fail open: an
    outage of the limiter must not take authentication down with it.
    """

    def __init__(self, kv: KeyValueStore, prefix: str = "", enabled: bool = True):
        self._kv = kv
        self._prefix = prefix
        self.enabled = enabled

    def _incr_window(self, full_key: str, window_seconds: int) -> Tuple[int, int]:
        """
        Increment a fixed-window counter. Returns (count, seconds left in window).

        The expiry is re-applied whenever the key has none, so a counter whose
        first `expire` was lost still resets instead of blocking forever.
        """
        count = self._kv.incr(full_key)
        remaining = self._kv.ttl(full_key) if count > 1 else -1
        if remaining < 0:
            self._kv.expire(full_key, int(window_seconds))
            remaining = int(window_seconds)
        return count, remaining

    def hit(self, key: str, window_seconds: int, limit: int) -> LimitResult:
        """Increment the counter for `key` and report whether the call is within `limit`."""
        full_key = f"{self._prefix}rl:{key}"
        try:
            count, remaining = self._incr_window(full_key, window_seconds)
            if count <= limit:
                return LimitResult(allowed=True, retry_after_seconds=0)
            return LimitResult(allowed=False, retry_after_seconds=remaining)
        except KeyValueStoreError as exc:
            logger.warning("rate_limit_fail_open key=%s error=%s", key, exc)
            return LimitResult(allowed=True, retry_after_seconds=0)

    def allow(self, key: str, window_seconds: int, limit: int) -> bool:
        return self.hit(key, window_seconds, limit).allowed

    # --- login lockout (per email + ip), independent of the generic counters ---

    def _lockout_keys(self, email: str, ip: str):
        eh = _hash(email)
        return f"{self._prefix}bf:fail:{eh}:{ip}", f"{self._prefix}bf:lock:{eh}:{ip}"

    def lockout_remaining(self, email: str, ip: str) -> int:
        """Seconds left on an active lockout, 0 when not locked."""
        _fail_key, lock_key = self._lockout_keys(email, ip)
        try:
            if self._kv.get(lock_key) is None:
                return 0
            return max(1, self._kv.ttl(lock_key))
        except KeyValueStoreError as exc:
            logger.warning("lockout_check_fail_open error=%s", exc)
            return 0

    def record_failure(self, email: str, ip: str, *, max_failures: int, window_seconds: int, lockout_seconds: int) -> bool:
        """Count a failed attempt; returns True when this failure triggered a lockout."""
        fail_key, lock_key = self._lockout_keys(email, ip)
        try:
            n, _ = self._incr_window(fail_key, window_seconds)
            if n >= max_failures:
                # Lock out for lockout_seconds (independent of fail window)
                self._kv.set(lock_key, "1", ttl_seconds=int(lockout_seconds))
                self._kv.delete(fail_key)
                return True
        except KeyValueStoreError as exc:
            logger.warning("lockout_record_fail_open error=%s", exc)
        return False

    def clear_failures(self, email: str, ip: str) -> None:
        try:
            self._kv.delete(*self._lockout_keys(email, ip))
        except KeyValueStoreError as exc:
            logger.warning("lockout_clear_failed error=%s", exc)


def enforce_rate_limit(
    request: Request,
    limiter: RateLimiter,
    *,
    scope: str,
    limit: int,
    window_seconds: int,
    discriminator: str = "",
    trust_proxy: bool = False,
) -> None:
    """
    Rate limit helper. Raises RateLimited (HTTP 429) when exceeded.
    """
    if not limiter.enabled:
        return
    ip = get_client_ip(request, trust_proxy)
    d = _hash(discriminator) if discriminator else ""
    res = limiter.hit(f"{scope}:{ip}:{d}", window_seconds, limit)
    if not res.allowed:
        logger.warning("rate_limited scope=%s ip=%s path=%s", scope, ip, request.url.path)
        raise RateLimited(retry_after_seconds=res.retry_after_seconds)


def enforce_bruteforce_protection(request: Request, limiter: RateLimiter, *, email: str, trust_proxy: bool = False) -> None:
    """
    Checks if login attempts for (email, ip) are currently locked.
    """
    if not limiter.enabled:
        return
    remaining = limiter.lockout_remaining(email, get_client_ip(request, trust_proxy))
    if remaining:
        raise RateLimited("Too many attempts. Try again later.", retry_after_seconds=remaining)


def record_login_failure(
    request: Request,
    limiter: RateLimiter,
    *,
    email: str,
    max_failures: int,
    window_seconds: int,
    lockout_seconds: int,
    trust_proxy: bool = False,
) -> None:
    """
    Record a failed login attempt and lock out if threshold reached.
    """
    if not limiter.enabled:
        return
    ip = get_client_ip(request, trust_proxy)
    if limiter.record_failure(
        email, ip, max_failures=max_failures, window_seconds=window_seconds, lockout_seconds=lockout_seconds
    ):
        logger.warning("login_locked_out ip=%s email_hash=%s", ip, _hash(email))


def record_login_success(request: Request, limiter: RateLimiter, *, email: str, trust_proxy: bool = False) -> None:
    """
    Clear brute-force counters on successful login.
    """
    limiter.clear_failures(email, get_client_ip(request, trust_proxy))
