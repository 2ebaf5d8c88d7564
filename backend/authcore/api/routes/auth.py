import logging

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field, validator

from authcore.api.deps import (
    AuthContext,
    AuthRuntime,
    get_auth_context,
    get_current_user,
    get_credential_service,
    get_runtime,
)
from authcore.core.config import Settings
from authcore.core.errors import InvalidCredentials, Unauthorized
from authcore.core.passwords import check_password_length
from authcore.core.rate_limit import (
    enforce_bruteforce_protection,
    enforce_rate_limit,
    record_login_failure,
    record_login_success,
)
from authcore.core.security import issue_csrf_token
from authcore.models.user import User
from authcore.services.credentials import CredentialService, IssuedTokens

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger("authcore.auth")


class SignupRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=100)

    @validator("password")
    def password_fits_bcrypt(cls, v: str) -> str:
        return check_password_length(v)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=100)


class TokenRequest(BaseModel):
    token: str = Field(min_length=10)


class PasswordResetRequest(BaseModel):
    email: EmailStr


class PasswordResetConfirm(BaseModel):
    token: str = Field(min_length=10)
    password: str = Field(min_length=8, max_length=100)

    @validator("password")
    def password_fits_bcrypt(cls, v: str) -> str:
        return check_password_length(v)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=100)
    new_password: str = Field(min_length=8, max_length=100)

    @validator("new_password")
    def password_fits_bcrypt(cls, v: str) -> str:
        return check_password_length(v)


def _user_out(user: User) -> dict:
    return {"id": user.id, "email": user.email, "emailVerified": bool(user.email_verified)}


def _set_auth_cookies(response: Response, issued: IssuedTokens, settings: Settings) -> None:
    response.set_cookie(
        key=settings.cookie_access_name,
        value=issued.access_token,
        httponly=True,
        secure=settings.secure_cookies,
        samesite=settings.cookie_samesite,
        path="/",
        domain=settings.cookie_domain,
        max_age=settings.access_token_ttl_seconds,
    )
    # Refresh token: restrict to /auth to reduce exposure surface
    response.set_cookie(
        key=settings.cookie_refresh_name,
        value=issued.refresh_token,
        httponly=True,
        secure=settings.secure_cookies,
        samesite=settings.cookie_samesite,
        path=settings.cookie_refresh_path,
        domain=settings.cookie_domain,
        max_age=settings.refresh_token_ttl_seconds,
    )


def _clear_auth_cookies(response: Response, settings: Settings) -> None:
    response.delete_cookie(settings.cookie_access_name, path="/", domain=settings.cookie_domain)
    response.delete_cookie(settings.cookie_refresh_name, path=settings.cookie_refresh_path, domain=settings.cookie_domain)


def _limit_auth_ip(request: Request, runtime: AuthRuntime) -> None:
    settings = runtime.settings
    enforce_rate_limit(
        request,
        runtime.limiter,
        scope="auth_ip",
        limit=settings.auth_rl_ip_per_minute,
        window_seconds=60,
        trust_proxy=settings.trust_proxy,
    )


def _limit_auth_email(request: Request, runtime: AuthRuntime, email: str) -> None:
    settings = runtime.settings
    enforce_rate_limit(
        request,
        runtime.limiter,
        scope="auth_email",
        limit=settings.auth_rl_email_per_15_minutes,
        window_seconds=15 * 60,
        discriminator=email,
        trust_proxy=settings.trust_proxy,
    )


@router.get("/csrf")
def csrf_token(request: Request, response: Response, runtime: AuthRuntime = Depends(get_runtime)):
    return {"csrfToken": issue_csrf_token(request, response, runtime.settings)}


@router.post("/signup", status_code=201)
def signup(
    body: SignupRequest,
    request: Request,
    response: Response,
    runtime: AuthRuntime = Depends(get_runtime),
    service: CredentialService = Depends(get_credential_service),
):
    _limit_auth_ip(request, runtime)
    _limit_auth_email(request, runtime, body.email)
    issued = service.signup(body.email, body.password)
    _set_auth_cookies(response, issued, runtime.settings)
    return {"user": _user_out(issued.user)}


@router.post("/login")
def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    runtime: AuthRuntime = Depends(get_runtime),
    service: CredentialService = Depends(get_credential_service),
):
    settings = runtime.settings
    _limit_auth_ip(request, runtime)
    _limit_auth_email(request, runtime, body.email)
    enforce_bruteforce_protection(request, runtime.limiter, email=body.email, trust_proxy=settings.trust_proxy)

    try:
        issued = service.login(body.email, body.password)
    except InvalidCredentials:
        record_login_failure(
            request,
            runtime.limiter,
            email=body.email,
            max_failures=settings.auth_bruteforce_max_failures,
            window_seconds=settings.auth_bruteforce_window_seconds,
            lockout_seconds=settings.auth_bruteforce_lockout_seconds,
            trust_proxy=settings.trust_proxy,
        )
        raise

    record_login_success(request, runtime.limiter, email=body.email, trust_proxy=settings.trust_proxy)
    _set_auth_cookies(response, issued, settings)
    return {"user": _user_out(issued.user)}


@router.post("/refresh")
def refresh(
    request: Request,
    response: Response,
    runtime: AuthRuntime = Depends(get_runtime),
    service: CredentialService = Depends(get_credential_service),
):
    """
    Rotate the refresh token and issue a new access token.
    """
    settings = runtime.settings
    enforce_rate_limit(
        request,
        runtime.limiter,
        scope="auth_refresh_ip",
        limit=settings.auth_refresh_rl_ip_per_minute,
        window_seconds=60,
        trust_proxy=settings.trust_proxy,
    )
    try:
        issued = service.refresh(request.cookies.get(settings.cookie_refresh_name))
    except Unauthorized as exc:
        # Drop dead cookies so the client stops retrying with them.
        failed = JSONResponse({"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
        _clear_auth_cookies(failed, settings)
        return failed
    _set_auth_cookies(response, issued, settings)
    return {"success": True}


@router.post("/logout")
def logout(
    request: Request,
    response: Response,
    runtime: AuthRuntime = Depends(get_runtime),
    service: CredentialService = Depends(get_credential_service),
):
    settings = runtime.settings
    service.logout(request.cookies.get(settings.cookie_refresh_name))
    _clear_auth_cookies(response, settings)
    return {"success": True}


@router.get("/me")
def me(user: User = Depends(get_current_user)):
    return {"user": _user_out(user)}


@router.post("/verify/request")
def verify_request(
    runtime: AuthRuntime = Depends(get_runtime),
    ctx: AuthContext = Depends(get_auth_context),
    service: CredentialService = Depends(get_credential_service),
):
    token = service.request_email_verification(ctx.user)
    # Mail delivery is external; hand the token back only for manual testing.
    if runtime.settings.expose_debug_tokens:
        return {"success": True, "token": token}
    logger.info("email_verify_token_issued user_id=%s token=<redacted>", ctx.user.id)
    return {"success": True}


@router.post("/verify/confirm")
def verify_confirm(
    body: TokenRequest,
    ctx: AuthContext = Depends(get_auth_context),
    service: CredentialService = Depends(get_credential_service),
):
    service.confirm_email_verification(ctx.user, body.token)
    return {"success": True}


@router.post("/password/request")
def password_request(
    body: PasswordResetRequest,
    request: Request,
    runtime: AuthRuntime = Depends(get_runtime),
    service: CredentialService = Depends(get_credential_service),
):
    settings = runtime.settings
    enforce_rate_limit(
        request,
        runtime.limiter,
        scope="auth_reset_ip",
        limit=settings.auth_reset_rl_ip_per_hour,
        window_seconds=60 * 60,
        trust_proxy=settings.trust_proxy,
    )
    token = service.request_password_reset(body.email)
    # Same answer whether or not the account exists.
    if token and settings.expose_debug_tokens:
        return {"success": True, "token": token}
    if token:
        logger.info("password_reset_token_issued token=<redacted>")
    return {"success": True}


@router.post("/password/reset")
def password_reset(
    body: PasswordResetConfirm,
    request: Request,
    runtime: AuthRuntime = Depends(get_runtime),
    service: CredentialService = Depends(get_credential_service),
):
    settings = runtime.settings
    enforce_rate_limit(
        request,
        runtime.limiter,
        scope="auth_reset_ip",
        limit=settings.auth_reset_rl_ip_per_hour,
        window_seconds=60 * 60,
        trust_proxy=settings.trust_proxy,
    )
    service.reset_password(body.token, body.password)
    return {"success": True}


@router.post("/password/change")
def password_change(
    body: PasswordChangeRequest,
    response: Response,
    runtime: AuthRuntime = Depends(get_runtime),
    ctx: AuthContext = Depends(get_auth_context),
    service: CredentialService = Depends(get_credential_service),
):
    issued = service.change_password(ctx.user, body.current_password, body.new_password)
    _set_auth_cookies(response, issued, runtime.settings)
    return {"success": True}
