import json
import logging
import time
import uuid

from fastapi import FastAPI, Request
from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware


_REQ_COUNT = Counter(
    "authcore_http_requests_total",
    "Total HTTP requests",
    ["method", "route", "status"],
)
_REQ_LATENCY = Histogram(
    "authcore_http_request_duration_seconds",
    "HTTP request duration (seconds)",
    ["method", "route"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)
AUTH_EVENTS = Counter(
    "authcore_auth_events_total",
    "Credential protocol outcomes",
    ["event"],
)

_SKIP_METRICS = ("/metrics", "/healthz", "/readyz")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Adds a request ID and logs one JSON line per request. Never logs cookies
    or the Authorization header.
    """

    async def dispatch(self, request: Request, call_next):
        # Propagate a request id if provided by upstream (e.g. proxy), else generate.
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        start = time.time()
        logger = logging.getLogger("authcore.http")
        payload = {
            "event": "http_request",
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "client_ip": request.client.host if request.client else None,
        }
        try:
            response = await call_next(request)
        except Exception:
            payload.update(event="http_exception", status_code=500, duration_ms=int((time.time() - start) * 1000))
            logger.exception(json.dumps(payload, ensure_ascii=False))
            raise

        route_obj = request.scope.get("route")
        route = getattr(route_obj, "path", None) or request.url.path
        payload.update(
            route=route,
            status_code=response.status_code,
            duration_ms=int((time.time() - start) * 1000),
        )

        # Log level by status family
        if response.status_code >= 500:
            logger.error(json.dumps(payload, ensure_ascii=False))
        elif response.status_code >= 400:
            logger.warning(json.dumps(payload, ensure_ascii=False))
        else:
            logger.info(json.dumps(payload, ensure_ascii=False))

        if route not in _SKIP_METRICS:
            _REQ_COUNT.labels(request.method, route, str(response.status_code)).inc()
            _REQ_LATENCY.labels(request.method, route).observe(time.time() - start)

        response.headers["X-Request-ID"] = request_id
        return response


def configure_logging() -> None:
    """Configure a sane default logging setup for the backend."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    # Ensure our loggers are visible even if uvicorn already configured logging
    for name in ("authcore.http", "authcore.auth", "authcore.ratelimit"):
        logging.getLogger(name).setLevel(logging.INFO)


def init_tracing(app: FastAPI) -> None:
    """Attach request logging. Safe to call once per app instance."""
    configure_logging()
    app.add_middleware(RequestLoggingMiddleware)
