from fastapi import APIRouter, Depends, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from authcore.api.deps import get_settings_dep
from authcore.core.config import Settings
from authcore.core.errors import Forbidden, NotFound

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
def metrics(request: Request, settings: Settings = Depends(get_settings_dep)) -> Response:
    """
    Prometheus metrics endpoint.

    - Disabled entirely with METRICS_ENABLED=false.
    - In production it also requires METRICS_TOKEN to be set and sent as
      `Authorization: Bearer <token>`.
    """
    if not settings.metrics_enabled:
        raise NotFound("Not found")
    if settings.is_production:
        if not settings.metrics_token:
            raise NotFound("Not found")
        auth = request.headers.get("authorization") or ""
        if auth != f"Bearer {settings.metrics_token}":
            raise Forbidden("Forbidden")

    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
