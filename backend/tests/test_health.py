from fastapi import status
from fastapi.testclient import TestClient

from authcore.core.errors import KeyValueStoreError
from authcore.core.kv import InMemoryKeyValueStore
from authcore.main import create_app

from conftest import make_settings


class FlakyStore(InMemoryKeyValueStore):
    """In-memory store that can be switched into an outage."""

    broken = False

    def _check(self):
        if self.broken:
            raise KeyValueStoreError("connection refused")

    def get(self, key):
        self._check()
        return super().get(key)

    def set(self, key, value, ttl_seconds=None):
        self._check()
        return super().set(key, value, ttl_seconds)

    def delete(self, *keys):
        self._check()
        return super().delete(*keys)

    def incr(self, key):
        self._check()
        return super().incr(key)

    def expire(self, key, seconds):
        self._check()
        return super().expire(key, seconds)

    def ttl(self, key):
        self._check()
        return super().ttl(key)

    def compare_and_set(self, key, expected, new, ttl_seconds):
        self._check()
        return super().compare_and_set(key, expected, new, ttl_seconds)

    def ping(self):
        self._check()
        return super().ping()


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == status.HTTP_200_OK
    assert resp.json()["status"] == "ok"
    assert resp.headers["x-request-id"]


def test_request_id_is_propagated(client):
    resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert resp.headers["x-request-id"] == "req-123"


def test_readyz_reports_db_and_store(client):
    resp = client.get("/readyz")
    assert resp.status_code == status.HTTP_200_OK
    assert resp.json()["checks"] == {"db": "ok", "kv": "ok"}


def test_store_outage_fails_refresh_closed_and_rate_limits_open():
    store = FlakyStore()
    client = TestClient(create_app(settings=make_settings(), kv=store))

    resp = client.post("/auth/signup", json={"email": "outage@example.com", "password": "password123"})
    assert resp.status_code == status.HTTP_201_CREATED

    store.broken = True
    assert client.get("/readyz").status_code == status.HTTP_503_SERVICE_UNAVAILABLE
    # Session record unreachable: refresh is refused.
    assert client.post("/auth/refresh").status_code == status.HTTP_401_UNAUTHORIZED
    # Limiter lets the request through; creating the session then fails with 503.
    login = client.post("/auth/login", json={"email": "outage@example.com", "password": "password123"})
    assert login.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
    # Logout never fails.
    assert client.post("/auth/logout").status_code == status.HTTP_200_OK


def test_metrics_exposed_outside_production(client):
    client.get("/healthz")
    client.post("/auth/signup", json={"email": "metrics@example.com", "password": "password123"})
    resp = client.get("/metrics")
    assert resp.status_code == status.HTTP_200_OK
    assert "authcore_http_requests_total" in resp.text
    assert "authcore_auth_events_total" in resp.text


def test_metrics_require_token_in_production(make_client):
    prod = dict(environment="production", debug=False, redis_url="redis://localhost:6379/0")
    assert make_client(**prod).get("/metrics").status_code == status.HTTP_404_NOT_FOUND

    client = make_client(metrics_token="scrape-token", **prod)
    assert client.get("/metrics").status_code == status.HTTP_403_FORBIDDEN
    resp = client.get("/metrics", headers={"Authorization": "Bearer scrape-token"})
    assert resp.status_code == status.HTTP_200_OK


def test_metrics_can_be_disabled(make_client):
    assert make_client(metrics_enabled=False).get("/metrics").status_code == status.HTTP_404_NOT_FOUND
