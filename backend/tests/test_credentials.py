import pytest

from authcore.core.errors import Conflict, InvalidCredentials, InvalidPurposeToken, Unauthorized
from authcore.core.passwords import hash_password, verify_password
from authcore.core.refresh_store import RefreshSessionRecord
from authcore.services.credentials import CredentialService
from authcore.services.users import SqlAlchemyUserStore

PASSWORD = "password123"


@pytest.fixture
def service(app, db_session):
    runtime = app.state.auth
    return CredentialService(runtime.settings, runtime.codec, runtime.sessions, SqlAlchemyUserStore(db_session))


def test_signup_normalizes_email_and_provisions_org(service):
    issued = service.signup("  Mixed@Example.COM ", PASSWORD)
    assert issued.user.email == "mixed@example.com"
    assert issued.user.token_version == 0
    memberships = service.users.memberships_for(issued.user.id)
    assert [m.role.value for m in memberships] == ["OWNER"]

    with pytest.raises(Conflict):
        service.signup("mixed@example.com", PASSWORD)


def test_login_unknown_and_wrong_password_raise_the_same_error(service):
    service.signup("known@example.com", PASSWORD)
    with pytest.raises(InvalidCredentials):
        service.login("known@example.com", "wrong-password")
    with pytest.raises(InvalidCredentials):
        service.login("unknown@example.com", PASSWORD)


def test_refresh_keeps_the_session_id(service):
    issued = service.signup("keep@example.com", PASSWORD)
    rotated = service.refresh(issued.refresh_token)
    assert rotated.session_id == issued.session_id
    assert rotated.refresh_token != issued.refresh_token


def test_lost_rotation_race_is_treated_as_reuse(service, kv, monkeypatch):
    issued = service.signup("race@example.com", PASSWORD)
    key = f"{service.settings.kv_key_prefix}rt:{issued.session_id}"
    real_cas = kv.compare_and_set

    def racing_cas(k, expected, new, ttl_seconds):
        # A concurrent request rotates the same token first.
        winner = RefreshSessionRecord(userId=issued.user.id, jti="winner", createdAt=0)
        kv.set(k, winner.to_json(), ttl_seconds=ttl_seconds)
        return real_cas(k, expected, new, ttl_seconds)

    monkeypatch.setattr(kv, "compare_and_set", racing_cas)
    with pytest.raises(Unauthorized):
        service.refresh(issued.refresh_token)

    assert kv.get(key) is None
    assert service.users.find_by_id(issued.user.id).token_version == 1


def test_refresh_rejects_session_of_another_user(service, kv):
    alice = service.signup("alice@example.com", PASSWORD)
    bob = service.signup("bob@example.com", PASSWORD)
    forged = service.codec.sign_refresh(bob.user.id, alice.session_id, "whatever", 0)
    with pytest.raises(Unauthorized):
        service.refresh(forged)
    # Alice's session is untouched by the forgery.
    assert service.refresh(alice.refresh_token).session_id == alice.session_id


def test_reset_token_for_unknown_email_is_none(service):
    assert service.request_password_reset("nobody@example.com") is None


def test_reset_with_garbage_token(service):
    with pytest.raises(InvalidPurposeToken):
        service.reset_password("definitely-not-a-token", "brand-new-pass")


def test_hash_password_refuses_more_than_72_bytes():
    with pytest.raises(ValueError):
        hash_password("é" * 37, rounds=4)
    assert verify_password("a" * 80, hash_password("a" * 72, rounds=4)) is False
