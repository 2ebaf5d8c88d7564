"""Token codec: signs and verifies access, refresh and single-purpose tokens.

Claims are signed, not encrypted; nothing beyond the user id, the session
correlation ids and the token version is embedded.
"""
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from jose import ExpiredSignatureError, JWTError, jwt

from authcore.core.config import Settings
from authcore.core.errors import InvalidToken

TYP_ACCESS = "access"
TYP_REFRESH = "refresh"
TYP_PASSWORD_RESET = "password-reset"
TYP_EMAIL_VERIFY = "email-verify"


def new_token_id() -> str:
    """Random identifier used for both session ids and refresh `jti`s."""
    return secrets.token_urlsafe(24)


@dataclass(frozen=True)
class AccessTokenClaims:
    user_id: int
    token_version: int
    expires_at: int


@dataclass(frozen=True)
class RefreshTokenClaims:
    user_id: int
    session_id: str
    jti: str
    token_version: int
    expires_at: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenCodec:
    def __init__(self, settings: Settings):
        self._algorithm = settings.jwt_algorithm
        self._issuer = settings.jwt_issuer
        self._audience = settings.jwt_audience
        self._access_ttl = timedelta(minutes=settings.access_token_expire_minutes)
        self._refresh_ttl = timedelta(days=settings.refresh_token_expire_days)
        if self._algorithm.startswith(("RS", "ES", "PS")):
            if not settings.jwt_private_key or not settings.jwt_public_key:
                raise ValueError(f"{self._algorithm} requires JWT_PRIVATE_KEY and JWT_PUBLIC_KEY")
            self._signing_key = settings.jwt_private_key
            self._verifying_key = settings.jwt_public_key
        else:
            self._signing_key = settings.jwt_secret_key
            self._verifying_key = settings.jwt_secret_key

    def _encode(self, claims: Dict[str, Any], ttl: timedelta) -> str:
        now = _utcnow()
        payload = {
            "iss": self._issuer,
            "aud": self._audience,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            **claims,
        }
        return jwt.encode(payload, self._signing_key, algorithm=self._algorithm)

    def _decode(self, token: str, expected_typ: str) -> Dict[str, Any]:
        if not token:
            raise InvalidToken("missing")
        try:
            payload = jwt.decode(
                token,
                self._verifying_key,
                algorithms=[self._algorithm],
                audience=self._audience,
                issuer=self._issuer,
                options={"require_exp": True, "require_sub": True, "require_aud": True, "require_iss": True},
            )
        except ExpiredSignatureError:
            raise InvalidToken("expired")
        except JWTError as exc:
            raise InvalidToken(f"malformed: {exc}")
        typ = payload.get("typ")
        if typ != expected_typ:
            raise InvalidToken(f"wrong type: expected {expected_typ}, got {typ}")
        return payload

    @staticmethod
    def _int_claim(payload: Dict[str, Any], name: str) -> int:
        value = payload.get(name)
        # bool is an int subclass; never accept it as a counter or id
        if isinstance(value, bool):
            raise InvalidToken(f"bad claim {name}")
        try:
            return int(value)
        except (TypeError, ValueError):
            raise InvalidToken(f"bad claim {name}")

    @staticmethod
    def _str_claim(payload: Dict[str, Any], name: str) -> str:
        value = payload.get(name)
        if not isinstance(value, str) or not value:
            raise InvalidToken(f"bad claim {name}")
        return value

    def sign_access(self, user_id: int, token_version: int) -> str:
        return self._encode(
            {"sub": str(user_id), "tokenVersion": int(token_version), "typ": TYP_ACCESS},
            self._access_ttl,
        )

    def sign_refresh(self, user_id: int, session_id: str, jti: str, token_version: int) -> str:
        return self._encode(
            {
                "sub": str(user_id),
                "sessionId": session_id,
                "jti": jti,
                "tokenVersion": int(token_version),
                "typ": TYP_REFRESH,
            },
            self._refresh_ttl,
        )

    def verify_access(self, token: str) -> AccessTokenClaims:
        payload = self._decode(token, TYP_ACCESS)
        return AccessTokenClaims(
            user_id=self._int_claim(payload, "sub"),
            token_version=self._int_claim(payload, "tokenVersion"),
            expires_at=self._int_claim(payload, "exp"),
        )

    def verify_refresh(self, token: str) -> RefreshTokenClaims:
        payload = self._decode(token, TYP_REFRESH)
        return RefreshTokenClaims(
            user_id=self._int_claim(payload, "sub"),
            session_id=self._str_claim(payload, "sessionId"),
            jti=self._str_claim(payload, "jti"),
            token_version=self._int_claim(payload, "tokenVersion"),
            expires_at=self._int_claim(payload, "exp"),
        )

    def sign_purpose(self, user_id: int, typ: str, minutes: int, **claims: Any) -> str:
        """Short-lived token for out-of-band flows (password reset, email verification)."""
        if typ in (TYP_ACCESS, TYP_REFRESH):
            raise ValueError("purpose tokens cannot use session token types")
        return self._encode({**claims, "sub": str(user_id), "typ": typ}, timedelta(minutes=minutes))

    def verify_purpose(self, token: str, typ: str) -> Dict[str, Any]:
        payload = self._decode(token, typ)
        payload["sub"] = self._int_claim(payload, "sub")
        return payload
