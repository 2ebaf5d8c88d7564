import os
from functools import lru_cache
from pydantic_settings import BaseSettings
from pydantic import Field, validator
from typing import List, Optional


class Settings(BaseSettings):
    """
    Application settings with Pydantic validation.
    Loads from environment variables with type checking and validation.
    """
    app_name: str = Field(default="authcore", env="APP_NAME")
    environment: str = Field(default="development", env="ENVIRONMENT")
    debug: bool = Field(default=True, env="DEBUG")

    backend_cors_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000",
        env="BACKEND_CORS_ORIGINS"
    )
    # Only honour X-Forwarded-For when running behind a trusted proxy.
    trust_proxy: bool = Field(default=False, env="TRUST_PROXY")

    database_url: str = Field(
        default="sqlite:///./authcore.db",
        env="DATABASE_URL"
    )

    # Key-value store for refresh sessions and rate-limit counters.
    # "memory://" selects the in-process store (single worker only).
    redis_url: str = Field(default="redis://localhost:6379/0", env="REDIS_URL")
    kv_key_prefix: str = Field(default="ac:", env="KV_KEY_PREFIX")

    # JWT signing - validate non-default
    jwt_secret_key: str = Field(default="dev-secret-key-change-in-production-d8f7g6h5j4k3l2m1n0", env="JWT_SECRET_KEY", min_length=32)
    jwt_algorithm: str = Field(default="HS256", env="JWT_ALGORITHM")
    # PEM keys, only used with RS*/ES* algorithms
    jwt_private_key: Optional[str] = Field(default=None, env="JWT_PRIVATE_KEY")
    jwt_public_key: Optional[str] = Field(default=None, env="JWT_PUBLIC_KEY")
    jwt_issuer: str = Field(default="authcore-api", env="JWT_ISSUER")
    jwt_audience: str = Field(default="authcore-client", env="JWT_AUDIENCE")
    access_token_expire_minutes: int = Field(default=15, env="ACCESS_TOKEN_EXPIRE_MINUTES")
    refresh_token_expire_days: int = Field(default=30, env="REFRESH_TOKEN_EXPIRE_DAYS")
    password_reset_expire_minutes: int = Field(default=60, env="PASSWORD_RESET_EXPIRE_MINUTES")
    email_verify_expire_minutes: int = Field(default=60 * 24, env="EMAIL_VERIFY_EXPIRE_MINUTES")

    bcrypt_rounds: int = Field(default=12, env="BCRYPT_ROUNDS")

    # Cookie settings
    cookie_domain: Optional[str] = Field(default=None, env="COOKIE_DOMAIN")
    # None -> Secure only in production
    cookie_secure: Optional[bool] = Field(default=None, env="COOKIE_SECURE")
    cookie_samesite: str = Field(default="lax", env="COOKIE_SAMESITE")
    cookie_access_name: str = Field(default="access_token", env="COOKIE_ACCESS_NAME")
    cookie_refresh_name: str = Field(default="refresh_token", env="COOKIE_REFRESH_NAME")
    cookie_refresh_path: str = Field(default="/auth", env="COOKIE_REFRESH_PATH")

    # CSRF Protection (double-submit cookie)
    cookie_csrf_name: str = Field(default="csrfToken", env="COOKIE_CSRF_NAME")
    csrf_header_name: str = Field(default="x-csrf-token", env="CSRF_HEADER_NAME")
    csrf_cookie_max_age_days: int = Field(default=30, env="CSRF_COOKIE_MAX_AGE_DAYS")
    # Auth endpoints that run before a CSRF cookie can exist
    csrf_exempt_paths: str = Field(
        default="/auth/signup,/auth/login,/auth/refresh,/auth/logout,/auth/password/request,/auth/password/reset",
        env="CSRF_EXEMPT_PATHS",
    )

    # Rate limiting
    auth_rate_limit_enabled: bool = Field(default=True, env="AUTH_RATE_LIMIT_ENABLED")
    auth_rl_ip_per_minute: int = Field(default=15, env="AUTH_RL_IP_PER_MINUTE")
    auth_rl_email_per_15_minutes: int = Field(default=50, env="AUTH_RL_EMAIL_PER_15_MINUTES")
    auth_refresh_rl_ip_per_minute: int = Field(default=15, env="AUTH_REFRESH_RL_IP_PER_MINUTE")
    auth_reset_rl_ip_per_hour: int = Field(default=30, env="AUTH_RESET_RL_IP_PER_HOUR")
    auth_bruteforce_max_failures: int = Field(default=10, env="AUTH_BRUTEFORCE_MAX_FAILURES")
    auth_bruteforce_window_seconds: int = Field(default=15 * 60, env="AUTH_BRUTEFORCE_WINDOW_SECONDS")
    auth_bruteforce_lockout_seconds: int = Field(default=15 * 60, env="AUTH_BRUTEFORCE_LOCKOUT_SECONDS")

    metrics_enabled: bool = Field(default=True, env="METRICS_ENABLED")
    metrics_token: Optional[str] = Field(default=None, env="METRICS_TOKEN")

    @validator("jwt_secret_key")
    def validate_jwt_secret(cls, v: str, values: dict) -> str:
        """Ensure JWT secret is strong in production"""
        env = values.get("environment")
        if env == "production":
            if len(v) < 32 or "dev-secret" in v or "change" in v.lower():
                raise ValueError(
                    "JWT_SECRET_KEY must be a strong, unique secret (min 32 chars) in production. "
                    "Generate with: python3 -c \"import secrets; print(secrets.token_urlsafe(64))\""
                )
        return v

    @validator("redis_url")
    def validate_redis_url(cls, v: str, values: dict) -> str:
        """The in-memory store cannot be shared between workers; disallow it in production."""
        if values.get("environment") == "production" and v.startswith("memory://"):
            raise ValueError("REDIS_URL=memory:// is not allowed in production.")
        return v

    @validator("debug")
    def validate_debug(cls, v: bool, values: dict) -> bool:
        """Never allow DEBUG=true in production."""
        if values.get("environment") == "production" and v:
            raise ValueError("DEBUG must be false in production.")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def secure_cookies(self) -> bool:
        if self.cookie_secure is None:
            return self.is_production
        return self.cookie_secure

    @property
    def expose_debug_tokens(self) -> bool:
        """Return reset/verification tokens in API bodies (manual testing only)."""
        return not self.is_production and self.debug

    @property
    def cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.backend_cors_origins.split(",") if o.strip()]

    @property
    def csrf_exempt_path_set(self) -> frozenset:
        return frozenset(p.strip().rstrip("/") for p in self.csrf_exempt_paths.split(",") if p.strip())

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_expire_minutes * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_expire_days * 24 * 60 * 60

    class Config:
        # Load env file based on ENVIRONMENT; default to development
        env_file = ".env.production" if os.getenv("ENVIRONMENT") == "production" else ".env.development"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Validates all environment variables on first access.
    Raises ValidationError if configuration is invalid.
    """
    return Settings()
