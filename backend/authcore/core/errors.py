"""Error taxonomy for the auth core and its HTTP rendering.

Services raise these plain exceptions; `register_exception_handlers` turns
them into `{"detail": ...}` responses. Token verification failures of any
kind are surfaced as a single generic `Unauthorized`.
"""
import logging
from typing import Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class AuthError(Exception):
    status_code: int = 400
    detail: str = "Bad request"

    def __init__(self, detail: Optional[str] = None, headers: Optional[Dict[str, str]] = None):
        super().__init__(detail or self.detail)
        if detail:
            self.detail = detail
        self.headers = headers


class InvalidCredentials(AuthError):
    status_code = 401
    detail = "Invalid credentials"


class Unauthorized(AuthError):
    status_code = 401
    detail = "Unauthorized"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail, headers={"WWW-Authenticate": "Bearer"})


class Conflict(AuthError):
    status_code = 409
    detail = "Email already in use"


class ValidationFailed(AuthError):
    status_code = 400
    detail = "Validation error"


class InvalidPurposeToken(AuthError):
    status_code = 400
    detail = "Invalid or expired token"


class CsrfInvalid(AuthError):
    status_code = 403
    detail = "CSRF token invalid"


class Forbidden(AuthError):
    status_code = 403
    detail = "Forbidden"


class NotFound(AuthError):
    status_code = 404
    detail = "Not found"


class RateLimited(AuthError):
    status_code = 429
    detail = "Too many requests"

    def __init__(self, detail: Optional[str] = None, retry_after_seconds: int = 0):
        headers = {"Retry-After": str(retry_after_seconds)} if retry_after_seconds > 0 else None
        super().__init__(detail, headers=headers)
        self.retry_after_seconds = retry_after_seconds


class ServiceUnavailable(AuthError):
    status_code = 503
    detail = "Service unavailable"


class InvalidToken(Exception):
    """Raised by the token codec. `reason` is for logs only."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class KeyValueStoreError(Exception):
    """The shared key-value store could not be reached or answered garbage."""


def register_exception_handlers(app: FastAPI) -> None:
    logger = logging.getLogger("authcore.http")

    @app.exception_handler(AuthError)
    async def _auth_error(request: Request, exc: AuthError):
        return JSONResponse({"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
            for e in exc.errors()
        ]
        return JSONResponse({"detail": ValidationFailed.detail, "errors": errors}, status_code=400)

    @app.exception_handler(KeyValueStoreError)
    async def _kv_error(request: Request, exc: KeyValueStoreError):
        logger.error("kv_unavailable method=%s path=%s error=%s", request.method, request.url.path, exc)
        return JSONResponse({"detail": ServiceUnavailable.detail}, status_code=503)
