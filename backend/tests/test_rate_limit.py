import pytest

from authcore.core.errors import KeyValueStoreError
from authcore.core.kv import InMemoryKeyValueStore
from authcore.core.rate_limit import RateLimiter


class BrokenStore:
    """Every call fails the way an unreachable Redis does."""

    def __getattr__(self, name):
        def _fail(*args, **kwargs):
            raise KeyValueStoreError("connection refused")

        return _fail


@pytest.fixture
def limiter(kv):
    return RateLimiter(kv, prefix="t:")


def test_allows_up_to_limit_then_blocks(limiter):
    results = [limiter.allow("login:1.2.3.4", 60, 3) for _ in range(5)]
    assert results == [True, True, True, False, False]


def test_blocked_hit_reports_retry_after(limiter, clock):
    for _ in range(2):
        limiter.hit("k", 60, 2)
    clock.advance(20)
    res = limiter.hit("k", 60, 2)
    assert not res.allowed
    assert res.retry_after_seconds == 40


def test_window_resets_after_expiry(limiter, clock):
    for _ in range(3):
        limiter.allow("k", 60, 3)
    assert not limiter.allow("k", 60, 3)
    clock.advance(61)
    assert limiter.allow("k", 60, 3)


def test_keys_are_independent(limiter):
    assert limiter.allow("a", 60, 1)
    assert not limiter.allow("a", 60, 1)
    assert limiter.allow("b", 60, 1)


def test_store_failure_fails_open():
    limiter = RateLimiter(BrokenStore())
    assert all(limiter.allow("k", 60, 1) for _ in range(5))
    assert limiter.lockout_remaining("a@example.com", "1.1.1.1") == 0
    assert limiter.record_failure("a@example.com", "1.1.1.1", max_failures=1, window_seconds=60, lockout_seconds=60) is False


def test_lockout_after_max_failures(limiter, clock):
    email, ip = "victim@example.com", "9.9.9.9"
    for _ in range(2):
        assert limiter.record_failure(email, ip, max_failures=3, window_seconds=900, lockout_seconds=900) is False
    assert limiter.lockout_remaining(email, ip) == 0
    assert limiter.record_failure(email, ip, max_failures=3, window_seconds=900, lockout_seconds=900) is True
    assert limiter.lockout_remaining(email, ip) == 900

    # Different IP is not locked
    assert limiter.lockout_remaining(email, "8.8.8.8") == 0

    clock.advance(901)
    assert limiter.lockout_remaining(email, ip) == 0


def test_clear_failures_resets_counter(limiter):
    email, ip = "user@example.com", "1.1.1.1"
    limiter.record_failure(email, ip, max_failures=2, window_seconds=900, lockout_seconds=900)
    limiter.clear_failures(email, ip)
    assert limiter.record_failure(email, ip, max_failures=2, window_seconds=900, lockout_seconds=900) is False


class LostExpireStore(InMemoryKeyValueStore):
    """The first `expire` call fails after its `incr` already landed."""

    def __init__(self, clock):
        super().__init__(clock=clock)
        self.expire_failures = 1

    def expire(self, key, seconds):
        if self.expire_failures:
            self.expire_failures -= 1
            raise KeyValueStoreError("timeout")
        return super().expire(key, seconds)


def test_counter_missing_expiry_is_repaired_on_next_hit(clock):
    limiter = RateLimiter(LostExpireStore(clock))
    assert limiter.allow("k", 60, 1)  # expire lost, fails open

    res = limiter.hit("k", 60, 1)
    assert not res.allowed
    assert res.retry_after_seconds == 60

    clock.advance(61)
    assert limiter.allow("k", 60, 1)


def test_lockout_counter_without_expiry_still_resets(clock):
    store = LostExpireStore(clock)
    limiter = RateLimiter(store)
    email, ip = "slow@example.com", "1.1.1.1"
    limiter.record_failure(email, ip, max_failures=3, window_seconds=900, lockout_seconds=900)
    limiter.record_failure(email, ip, max_failures=3, window_seconds=900, lockout_seconds=900)

    clock.advance(901)
    # The window restarted, so this is failure one again, not three.
    assert limiter.record_failure(email, ip, max_failures=3, window_seconds=900, lockout_seconds=900) is False
