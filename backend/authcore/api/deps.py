import logging
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from authcore.core.config import Settings
from authcore.core.errors import Forbidden, InvalidToken, NotFound, Unauthorized
from authcore.core.kv import KeyValueStore
from authcore.core.rate_limit import RateLimiter
from authcore.core.refresh_store import RefreshSessionStore
from authcore.core.tokens import AccessTokenClaims, TokenCodec
from authcore.db.session import get_db_session
from authcore.models.organization import Membership, MembershipRole
from authcore.models.user import User
from authcore.services.credentials import CredentialService
from authcore.services.users import SqlAlchemyUserStore

logger = logging.getLogger("authcore.auth")


@dataclass
class AuthRuntime:
    """Process-wide components, built once from Settings in create_app()."""

    settings: Settings
    kv: KeyValueStore
    codec: TokenCodec
    sessions: RefreshSessionStore
    limiter: RateLimiter

    @classmethod
    def build(cls, settings: Settings, kv: KeyValueStore) -> "AuthRuntime":
        return cls(
            settings=settings,
            kv=kv,
            codec=TokenCodec(settings),
            sessions=RefreshSessionStore(kv, settings.refresh_token_ttl_seconds, prefix=settings.kv_key_prefix),
            limiter=RateLimiter(kv, prefix=settings.kv_key_prefix, enabled=settings.auth_rate_limit_enabled),
        )


@dataclass(frozen=True)
class AuthContext:
    """Identity resolved for the current request; passed explicitly to handlers."""

    user: User
    claims: AccessTokenClaims


def get_runtime(request: Request) -> AuthRuntime:
    return request.app.state.auth


def get_settings_dep(runtime: AuthRuntime = Depends(get_runtime)) -> Settings:
    return runtime.settings


def get_user_store(db: Session = Depends(get_db_session)) -> SqlAlchemyUserStore:
    return SqlAlchemyUserStore(db)


def get_credential_service(
    runtime: AuthRuntime = Depends(get_runtime),
    users: SqlAlchemyUserStore = Depends(get_user_store),
) -> CredentialService:
    return CredentialService(runtime.settings, runtime.codec, runtime.sessions, users)


def extract_access_token(request: Request, settings: Settings) -> Optional[str]:
    """Access cookie first, then `Authorization: Bearer <token>`."""
    token = request.cookies.get(settings.cookie_access_name)
    if token:
        return token
    header = request.headers.get("authorization") or ""
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


def get_auth_context(
    request: Request,
    runtime: AuthRuntime = Depends(get_runtime),
    users: SqlAlchemyUserStore = Depends(get_user_store),
) -> AuthContext:
    """
    Resolve the caller for a protected route. Raises Unauthorized if:
    - no access token is presented;
    - the token fails verification (reason is logged, never returned);
    - the user is gone or its token_version moved past the token's snapshot
      (password reset / refresh reuse invalidate tokens this way).
    """
    token = extract_access_token(request, runtime.settings)
    if not token:
        raise Unauthorized()
    try:
        claims = runtime.codec.verify_access(token)
    except InvalidToken as exc:
        logger.info("access_rejected reason=%s path=%s", exc.reason, request.url.path)
        raise Unauthorized()

    user = users.find_by_id(claims.user_id)
    if user is None:
        logger.info("access_rejected reason=user_missing user_id=%s", claims.user_id)
        raise Unauthorized()
    if int(user.token_version) != claims.token_version:
        logger.info(
            "access_rejected reason=stale_version user_id=%s token=%s current=%s",
            user.id,
            claims.token_version,
            user.token_version,
        )
        raise Unauthorized()
    return AuthContext(user=user, claims=claims)


def get_current_user(ctx: AuthContext = Depends(get_auth_context)) -> User:
    return ctx.user


def require_org_role(*allowed_roles: MembershipRole) -> Callable:
    """Create dependency that requires the caller's role in path org `org_id` to be one of `allowed_roles`."""

    def role_checker(
        org_id: int,
        ctx: AuthContext = Depends(get_auth_context),
        users: SqlAlchemyUserStore = Depends(get_user_store),
    ) -> Membership:
        membership = users.membership(ctx.user.id, org_id)
        if membership is None:
            # Do not reveal whether the organization exists.
            raise NotFound("Organization not found")
        if membership.role not in allowed_roles:
            raise Forbidden("Insufficient permissions")
        return membership

    return role_checker
