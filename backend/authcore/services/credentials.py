"""
Credential protocol: signup, login, refresh rotation, logout, password flows.

Per-session lifecycle:
  Active  -- refresh -->  Rotated (new jti, old refresh token dead forever)
  Active/Rotated -- logout | reuse detected -->  Revoked (terminal)
  Active/Rotated -- TTL lapses -->  Expired (terminal)

A refresh token whose jti is not the session's current one is a replay of an
already-rotated token: the session is revoked and the user's token version is
bumped, which kills every access token issued to that user so far.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from authcore.core.config import Settings
from authcore.core.errors import (
    Conflict,
    InvalidCredentials,
    InvalidPurposeToken,
    InvalidToken,
    KeyValueStoreError,
    Unauthorized,
)
from authcore.core.passwords import burn_password_check, hash_password, verify_password
from authcore.core.refresh_store import RefreshSessionStore, RotateOutcome
from authcore.core.tokens import TYP_EMAIL_VERIFY, TYP_PASSWORD_RESET, TokenCodec, new_token_id
from authcore.core.tracing import AUTH_EVENTS
from authcore.models.user import User
from authcore.services.users import UserStore, normalize_email

logger = logging.getLogger("authcore.auth")


@dataclass(frozen=True)
class IssuedTokens:
    user: User
    session_id: str
    access_token: str
    refresh_token: str


class CredentialService:
    def __init__(self, settings: Settings, codec: TokenCodec, sessions: RefreshSessionStore, users: UserStore):
        self.settings = settings
        self.codec = codec
        self.sessions = sessions
        self.users = users

    # --- issuance ---

    def _issue(self, user: User, session_id: str, jti: str) -> IssuedTokens:
        version = int(user.token_version)
        return IssuedTokens(
            user=user,
            session_id=session_id,
            access_token=self.codec.sign_access(user.id, version),
            refresh_token=self.codec.sign_refresh(user.id, session_id, jti, version),
        )

    def _start_session(self, user: User) -> IssuedTokens:
        session_id, jti = self.sessions.create(user.id)
        return self._issue(user, session_id, jti)

    def _hash(self, password: str) -> str:
        return hash_password(password, self.settings.bcrypt_rounds)

    # --- protocol ---

    def signup(self, email: str, password: str) -> IssuedTokens:
        email = normalize_email(email)
        if self.users.find_by_email(email) is not None:
            raise Conflict()
        user = self.users.create(email, self._hash(password))
        issued = self._start_session(user)
        AUTH_EVENTS.labels("signup").inc()
        logger.info("signup user_id=%s session_id=%s", user.id, issued.session_id)
        return issued

    def login(self, email: str, password: str) -> IssuedTokens:
        user = self.users.find_by_email(normalize_email(email))
        if user is None:
            burn_password_check(password, self.settings.bcrypt_rounds)
            AUTH_EVENTS.labels("login_failed").inc()
            raise InvalidCredentials()
        if not verify_password(password, user.hashed_password):
            AUTH_EVENTS.labels("login_failed").inc()
            raise InvalidCredentials()
        issued = self._start_session(user)
        AUTH_EVENTS.labels("login").inc()
        logger.info("login user_id=%s session_id=%s", user.id, issued.session_id)
        return issued

    def refresh(self, refresh_token: Optional[str]) -> IssuedTokens:
        try:
            claims = self.codec.verify_refresh(refresh_token or "")
        except InvalidToken as exc:
            logger.info("refresh_rejected reason=%s", exc.reason)
            raise Unauthorized()

        try:
            record = self.sessions.get(claims.session_id)
            if record is None:
                logger.info("refresh_rejected reason=session_absent session_id=%s", claims.session_id)
                raise Unauthorized()
            if record.userId != claims.user_id:
                logger.warning("refresh_rejected reason=user_mismatch session_id=%s", claims.session_id)
                raise Unauthorized()
            if record.jti != claims.jti:
                self._handle_reuse(claims.user_id, claims.session_id)
                raise Unauthorized()

            # Sessions minted before a password reset or a reuse event die here.
            user = self.users.find_by_id(claims.user_id)
            if user is None or int(user.token_version) != claims.token_version:
                logger.info("refresh_rejected reason=stale_version session_id=%s", claims.session_id)
                self.sessions.revoke(claims.session_id)
                raise Unauthorized()

            next_jti = new_token_id()
            outcome = self.sessions.rotate(claims.session_id, next_jti, expected_jti=claims.jti)
            if outcome is RotateOutcome.ABSENT:
                raise Unauthorized()
            if outcome is RotateOutcome.CONFLICT:
                # Another request rotated this very token between our read and write.
                self._handle_reuse(claims.user_id, claims.session_id)
                raise Unauthorized()
        except KeyValueStoreError as exc:
            # Without the session record reuse detection is impossible: fail closed.
            logger.error("refresh_rejected reason=kv_unavailable error=%s", exc)
            raise Unauthorized()

        AUTH_EVENTS.labels("refresh_rotated").inc()
        logger.info("refresh_rotated user_id=%s session_id=%s", user.id, claims.session_id)
        return self._issue(user, claims.session_id, next_jti)

    def _handle_reuse(self, user_id: int, session_id: str) -> None:
        # Version first: even if the store write below fails, every token dies.
        new_version = self.users.increment_token_version(user_id)
        self.sessions.revoke(session_id)
        AUTH_EVENTS.labels("refresh_reuse").inc()
        logger.warning(
            "refresh_reuse_detected user_id=%s session_id=%s token_version=%s",
            user_id,
            session_id,
            new_version,
        )

    def logout(self, refresh_token: Optional[str]) -> None:
        """Best effort; never raises. Cookies are cleared by the caller regardless."""
        if not refresh_token:
            return
        try:
            claims = self.codec.verify_refresh(refresh_token)
        except InvalidToken as exc:
            logger.info("logout_token_ignored reason=%s", exc.reason)
            return
        try:
            self.sessions.revoke(claims.session_id)
        except KeyValueStoreError as exc:
            logger.warning("logout_revoke_failed session_id=%s error=%s", claims.session_id, exc)
            return
        logger.info("logout user_id=%s session_id=%s", claims.user_id, claims.session_id)

    # --- password flows ---

    def request_password_reset(self, email: str) -> Optional[str]:
        """Returns a reset token for known emails, None otherwise. Callers must answer identically."""
        user = self.users.find_by_email(normalize_email(email))
        if user is None:
            logger.info("password_reset_requested known=False")
            return None
        token = self.codec.sign_purpose(
            user.id,
            TYP_PASSWORD_RESET,
            self.settings.password_reset_expire_minutes,
            tokenVersion=int(user.token_version),
        )
        logger.info("password_reset_requested known=True user_id=%s", user.id)
        return token

    def reset_password(self, token: str, new_password: str) -> None:
        try:
            payload = self.codec.verify_purpose(token, TYP_PASSWORD_RESET)
        except InvalidToken as exc:
            logger.info("password_reset_rejected reason=%s", exc.reason)
            raise InvalidPurposeToken()
        user = self.users.find_by_id(payload["sub"])
        # A reset bumps the version, so each token works at most once.
        if user is None or payload.get("tokenVersion") != int(user.token_version):
            logger.info("password_reset_rejected reason=stale_or_unknown user_id=%s", payload["sub"])
            raise InvalidPurposeToken()
        new_version = self.users.update_password_hash(user.id, self._hash(new_password))
        AUTH_EVENTS.labels("password_reset").inc()
        logger.info("password_reset user_id=%s token_version=%s", user.id, new_version)

    def change_password(self, user: User, current_password: str, new_password: str) -> IssuedTokens:
        """Replace the password, kill every other token, and keep the caller signed in on a new session."""
        if not verify_password(current_password, user.hashed_password):
            raise InvalidCredentials()
        self.users.update_password_hash(user.id, self._hash(new_password))
        fresh = self.users.find_by_id(user.id)
        issued = self._start_session(fresh)
        logger.info("password_changed user_id=%s token_version=%s", fresh.id, fresh.token_version)
        return issued

    # --- email verification ---

    def request_email_verification(self, user: User) -> str:
        return self.codec.sign_purpose(
            user.id,
            TYP_EMAIL_VERIFY,
            self.settings.email_verify_expire_minutes,
            email=user.email,
        )

    def confirm_email_verification(self, user: User, token: str) -> None:
        try:
            payload = self.codec.verify_purpose(token, TYP_EMAIL_VERIFY)
        except InvalidToken as exc:
            logger.info("email_verify_rejected reason=%s", exc.reason)
            raise InvalidPurposeToken()
        if payload["sub"] != user.id or payload.get("email") != user.email:
            raise InvalidPurposeToken("Invalid token")
        self.users.mark_email_verified(user.id)
        logger.info("email_verified user_id=%s", user.id)
