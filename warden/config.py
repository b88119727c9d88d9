from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from warden.logging import get_logger

logger = get_logger(__name__)

MAX_POLICY_CACHE_TTL_SECONDS = 60


class EmailProvider(str, Enum):
    """Send sinks understood by the email dispatcher."""

    SMTP = "smtp"
    SENDGRID = "sendgrid"
    LOG = "log"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _default_fs_root() -> Path:
    return Path(os.getenv("SHARED_FS_ROOT", "/srv/warden"))


def _load_or_create_secret(filename: str) -> str:
    """Read a persisted secret from SHARED_FS_ROOT or generate and store one.

    Persisting keeps signed tokens and encrypted TOTP secrets valid across
    restarts when the operator has not provided explicit values.
    """

    fs_root = _default_fs_root()
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning(
            "secret_dir_setup",
            error=str(exc),
            path=str(fs_root),
            message="Could not set directory permissions",
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path: str | None = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the env var or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the identity service."""

    database_url: str = env_field("postgresql://localhost:5432/warden", "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/warden", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for CI: in-process rate limits, no timing floor.",
    )

    # Signing and encryption material
    access_token_secret: str | None = env_field(None, "ACCESS_TOKEN_SECRET")
    refresh_token_secret: str | None = env_field(None, "REFRESH_TOKEN_SECRET")
    totp_encryption_key: str | None = env_field(None, "TOTP_ENCRYPTION_KEY")
    jwt_issuer: str = env_field("warden", "JWT_ISSUER")
    jwt_audience: str = env_field("warden-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    challenge_token_ttl_minutes: int = env_field(5, "CHALLENGE_TOKEN_TTL_MINUTES")
    token_clock_skew_seconds: int = env_field(30, "TOKEN_CLOCK_SKEW_SECONDS")
    totp_issuer: str = env_field("Warden", "TOTP_ISSUER")

    # Sessions
    session_idle_timeout_minutes: int = env_field(
        60 * 24, "SESSION_IDLE_TIMEOUT_MINUTES"
    )
    session_cleanup_interval_seconds: int = env_field(
        15 * 60, "SESSION_CLEANUP_INTERVAL_SECONDS"
    )

    # Policy, login and surveillance tuning
    policy_cache_ttl_seconds: int = env_field(30, "POLICY_CACHE_TTL_SECONDS")
    login_min_duration_ms: int = env_field(
        250,
        "LOGIN_MIN_DURATION_MS",
        description="Floor for failed primary-auth responses before success timings are known",
    )
    anomaly_queue_size: int = env_field(1000, "ANOMALY_QUEUE_SIZE")
    anomaly_workers: int = env_field(2, "ANOMALY_WORKERS")
    request_timeout_seconds: float = env_field(30.0, "REQUEST_TIMEOUT_SECONDS")
    allow_registration: bool = env_field(True, "ALLOW_REGISTRATION")

    # Rate limits (per minute)
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(5, "REGISTER_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    mfa_rate_limit_per_minute: int = env_field(10, "MFA_RATE_LIMIT_PER_MINUTE")
    admin_rate_limit_per_minute: int = env_field(60, "ADMIN_RATE_LIMIT_PER_MINUTE")

    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_microsoft_client_id: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_ID")
    oauth_microsoft_client_secret: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")

    # Email settings (env vars are fallbacks - prefer admin-managed email services)
    default_email_provider: EmailProvider = env_field(
        EmailProvider.LOG, "DEFAULT_EMAIL_PROVIDER"
    )
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    sendgrid_api_key: str | None = env_field(None, "SENDGRID_API_KEY")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Warden", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # HTTP surface
    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("default_email_provider")
    @classmethod
    def _validate_email_provider(cls, value: EmailProvider) -> EmailProvider:
        return EmailProvider(value)

    @field_validator("access_token_secret")
    @classmethod
    def _ensure_access_secret(cls, value: str | None) -> str:
        return value or _load_or_create_secret(".access_token_secret")

    @field_validator("refresh_token_secret")
    @classmethod
    def _ensure_refresh_secret(cls, value: str | None) -> str:
        return value or _load_or_create_secret(".refresh_token_secret")

    @field_validator("totp_encryption_key")
    @classmethod
    def _ensure_totp_key(cls, value: str | None) -> str:
        return value or _load_or_create_secret(".totp_encryption_key")

    @field_validator("policy_cache_ttl_seconds")
    @classmethod
    def _bound_policy_cache(cls, value: int) -> int:
        if value < 0:
            raise ValueError("POLICY_CACHE_TTL_SECONDS must be non-negative")
        return min(value, MAX_POLICY_CACHE_TTL_SECONDS)

    @field_validator("anomaly_queue_size", "anomaly_workers")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @model_validator(mode="after")
    def _distinct_lane_secrets(self) -> "Settings":
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must differ")
        return self

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
