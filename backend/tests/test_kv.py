import pytest

from authcore.core.errors import KeyValueStoreError
from authcore.core.kv import CasResult, InMemoryKeyValueStore, RedisKeyValueStore, build_kv_store


def test_ttl_follows_redis_conventions(kv, clock):
    assert kv.ttl("missing") == -2
    kv.set("forever", "v")
    assert kv.ttl("forever") == -1
    kv.set("short", "v", ttl_seconds=10)
    clock.advance(4)
    assert kv.ttl("short") == 6
    clock.advance(6)
    assert kv.get("short") is None


def test_incr_keeps_existing_expiry(kv, clock):
    assert kv.incr("n") == 1
    kv.expire("n", 30)
    clock.advance(10)
    assert kv.incr("n") == 2
    assert kv.ttl("n") == 20


def test_incr_on_non_integer_is_a_store_error(kv):
    kv.set("text", "abc")
    with pytest.raises(KeyValueStoreError):
        kv.incr("text")


def test_compare_and_set(kv):
    assert kv.compare_and_set("k", "a", "b", 60) is CasResult.MISSING
    kv.set("k", "a")
    assert kv.compare_and_set("k", "x", "b", 60) is CasResult.MISMATCH
    assert kv.compare_and_set("k", "a", "b", 60) is CasResult.SWAPPED
    assert kv.get("k") == "b"
    assert kv.ttl("k") == 60


def test_delete_counts_live_keys(kv):
    kv.set("a", "1")
    kv.set("b", "2")
    assert kv.delete("a", "b", "c") == 2


def test_build_kv_store_selects_backend():
    assert isinstance(build_kv_store("memory://"), InMemoryKeyValueStore)
    assert isinstance(build_kv_store("redis://localhost:6379/0"), RedisKeyValueStore)


def test_redis_errors_are_wrapped():
    # Nothing listens on port 1.
    store = RedisKeyValueStore.from_url("redis://127.0.0.1:1/0")
    with pytest.raises(KeyValueStoreError):
        store.ping()
