import pytest

from authcore.core.errors import KeyValueStoreError
from authcore.core.kv import CasResult
from authcore.core.refresh_store import RefreshSessionRecord, RefreshSessionStore, RotateOutcome

TTL = 3600


@pytest.fixture
def store(kv):
    return RefreshSessionStore(kv, TTL, prefix="t:")


def test_create_then_get(store, kv):
    session_id, jti = store.create(42)
    record = store.get(session_id)
    assert record.userId == 42
    assert record.jti == jti
    assert session_id != jti
    assert 0 < kv.ttl(f"t:rt:{session_id}") <= TTL


def test_rotate_replaces_jti_and_keeps_created_at(store):
    session_id, jti = store.create(1)
    before = store.get(session_id)

    assert store.rotate(session_id, "next-jti", expected_jti=jti) is RotateOutcome.ROTATED
    after = store.get(session_id)
    assert after.jti == "next-jti"
    assert after.createdAt == before.createdAt


def test_rotate_slides_the_ttl_window(store, kv, clock):
    session_id, jti = store.create(1)
    clock.advance(TTL - 10)
    store.rotate(session_id, "next-jti", expected_jti=jti)
    clock.advance(100)
    assert store.get(session_id) is not None


def test_session_expires_with_ttl(store, clock):
    session_id, _ = store.create(1)
    clock.advance(TTL + 1)
    assert store.get(session_id) is None
    assert store.rotate(session_id, "x") is RotateOutcome.ABSENT


def test_rotate_with_stale_expected_jti_conflicts(store):
    session_id, jti = store.create(1)
    store.rotate(session_id, "second", expected_jti=jti)
    assert store.rotate(session_id, "third", expected_jti=jti) is RotateOutcome.CONFLICT
    assert store.get(session_id).jti == "second"


def test_concurrent_write_between_read_and_swap_is_a_conflict(store, kv):
    session_id, jti = store.create(1)
    key = f"t:rt:{session_id}"
    original = kv.get(key)

    # Another worker wins the race after we read the record.
    kv.set(key, RefreshSessionRecord(userId=1, jti="winner", createdAt=0).to_json(), ttl_seconds=TTL)
    assert kv.compare_and_set(key, original, "ignored", TTL) is CasResult.MISMATCH
    assert store.rotate(session_id, "loser", expected_jti=jti) is RotateOutcome.CONFLICT


def test_revoke_is_idempotent(store):
    session_id, _ = store.create(1)
    store.revoke(session_id)
    store.revoke(session_id)
    assert store.get(session_id) is None


def test_corrupt_record_surfaces_as_store_error(store, kv):
    kv.set("t:rt:broken", "{not json", ttl_seconds=TTL)
    with pytest.raises(KeyValueStoreError):
        store.get("broken")
