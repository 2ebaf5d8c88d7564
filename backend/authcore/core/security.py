import hmac
import logging
import secrets

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from authcore.core.config import Settings
from authcore.core.errors import CsrfInvalid

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def issue_csrf_token(request: Request, response: Response, settings: Settings) -> str:
    """
    Return the caller's CSRF token, minting and setting the cookie if absent.

    The cookie is deliberately readable by scripts: the frontend mirrors it
    into the `x-csrf-token` header on state-changing requests.
    """
    token = request.cookies.get(settings.cookie_csrf_name)
    if token:
        return token
    token = secrets.token_hex(24)
    response.set_cookie(
        key=settings.cookie_csrf_name,
        value=token,
        httponly=False,
        secure=settings.secure_cookies,
        samesite="strict",
        path="/",
        domain=settings.cookie_domain,
        max_age=settings.csrf_cookie_max_age_days * 24 * 60 * 60,
    )
    return token


def verify_csrf(request: Request, settings: Settings) -> None:
    """Double-submit check: header must byte-equal the cookie. Raises CsrfInvalid."""
    if request.method in SAFE_METHODS:
        return
    cookie = request.cookies.get(settings.cookie_csrf_name) or ""
    header = request.headers.get(settings.csrf_header_name) or ""
    if not cookie or not header or not hmac.compare_digest(cookie.encode("utf-8"), header.encode("utf-8")):
        raise CsrfInvalid()


class CSRFMiddleware(BaseHTTPMiddleware):
    """CSRF protection for state-changing requests.

    - Unsafe methods (POST/PUT/PATCH/DELETE) need `x-csrf-token` equal to the
      non-HttpOnly `csrfToken` cookie.
    - Auth endpoints that run before a CSRF cookie can exist (signup, login,
      refresh, ...) are exempt; CORS origin restriction covers those.
    - Skips GET/HEAD/OPTIONS.
    """

    def __init__(self, app, settings: Settings):
        super().__init__(app)
        self.settings = settings
        self.exempt = settings.csrf_exempt_path_set

    async def dispatch(self, request: Request, call_next):
        if request.method in SAFE_METHODS:
            return await call_next(request)
        if request.url.path.rstrip("/") in self.exempt:
            return await call_next(request)

        try:
            verify_csrf(request, self.settings)
        except CsrfInvalid as exc:
            logging.getLogger("authcore.http").warning(
                "csrf_blocked method=%s path=%s cookie_present=%s header_present=%s",
                request.method,
                request.url.path,
                bool(request.cookies.get(self.settings.cookie_csrf_name)),
                bool(request.headers.get(self.settings.csrf_header_name)),
            )
            return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)

        return await call_next(request)
