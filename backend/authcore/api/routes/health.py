import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy import text

from authcore.api.deps import AuthRuntime, get_runtime
from authcore.core.errors import KeyValueStoreError

router = APIRouter(tags=["health"])
logger = logging.getLogger("authcore.http")


@router.get("/healthz")
def health(runtime: AuthRuntime = Depends(get_runtime)) -> dict:
    return {
        "status": "ok",
        "service": runtime.settings.app_name,
        "environment": runtime.settings.environment,
        "time": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/readyz")
def readyz(request: Request, response: Response, runtime: AuthRuntime = Depends(get_runtime)) -> dict:
    """
    Readiness check: database connectivity and key-value store reachability.
    Returns 503 when not ready. Rate limiting fails open without the store,
    but refresh rotation does not, so a dead store means not ready.
    """
    checks: dict = {}
    ok = True

    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("select 1"))
        checks["db"] = "ok"
    except Exception as e:
        ok = False
        checks["db"] = "error"
        logger.error("readyz_db_failed error=%s", e)

    try:
        runtime.kv.ping()
        checks["kv"] = "ok"
    except KeyValueStoreError as e:
        ok = False
        checks["kv"] = "error"
        logger.error("readyz_kv_failed error=%s", e)

    if not ok:
        response.status_code = 503
    return {
        "status": "ok" if ok else "not_ready",
        "service": runtime.settings.app_name,
        "checks": checks,
        "time": datetime.now(timezone.utc).isoformat(),
    }
