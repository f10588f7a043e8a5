from __future__ import annotations

import os
import secrets
import tempfile
from contextlib import suppress
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from dormauth.logging import get_logger

logger = get_logger(__name__)


class AppEnvironment(str, Enum):
    """Deployment environments recognised by the cookie and error layers."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    app_env: AppEnvironment = env_field(AppEnvironment.DEVELOPMENT, "APP_ENV")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/dormauth", "SHARED_FS_ROOT")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors (in-memory limiter fallback, runtime resets).",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("dormauth", "JWT_ISSUER")
    jwt_audience: str = env_field("dormauth-mfa", "JWT_AUDIENCE")
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting TOTP secrets at rest; falls back to JWT_SECRET",
    )

    # Password lifecycle
    password_min_length: int = env_field(12, "PASSWORD_MIN_LENGTH", ge=1)
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH", ge=1)
    password_expiry_days: int = env_field(90, "PASSWORD_EXPIRY_DAYS", ge=1)
    password_warning_days: int = env_field(14, "PASSWORD_WARNING_DAYS", ge=0)

    # Account lockout
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", ge=1)
    lockout_minutes: int = env_field(30, "LOCKOUT_MINUTES", ge=1)
    lockout_warning_threshold: int = env_field(
        3,
        "LOCKOUT_WARNING_THRESHOLD",
        description="Surface the remaining-attempts warning once this many attempts or fewer remain",
    )

    # IP guard
    ip_window_minutes: int = env_field(15, "IP_WINDOW_MINUTES", ge=1)
    ip_block_threshold: int = env_field(10, "IP_BLOCK_THRESHOLD", ge=1)
    ip_block_minutes: int = env_field(15, "IP_BLOCK_MINUTES", ge=1)
    ip_block_max_minutes: int = env_field(60, "IP_BLOCK_MAX_MINUTES", ge=1)
    ip_strike_memory_hours: int = env_field(24, "IP_STRIKE_MEMORY_HOURS", ge=1)
    reset_rate_limit_per_hour: int = env_field(3, "RESET_RATE_LIMIT_PER_HOUR")
    reset_verify_rate_limit_per_hour: int = env_field(10, "RESET_VERIFY_RATE_LIMIT_PER_HOUR")

    # Sessions
    max_concurrent_sessions: int = env_field(3, "MAX_CONCURRENT_SESSIONS", ge=1)
    session_idle_minutes: int = env_field(15, "SESSION_IDLE_MINUTES", ge=1)
    session_absolute_hours: int = env_field(8, "SESSION_ABSOLUTE_HOURS", ge=1)
    session_cookie_name: str = env_field("dormaxis_token", "SESSION_COOKIE_NAME")
    session_cookie_samesite: str = env_field("lax", "SESSION_COOKIE_SAMESITE")

    # MFA
    mfa_issuer: str = env_field("DormAxis", "MFA_ISSUER")
    mfa_challenge_ttl_minutes: int = env_field(5, "MFA_CHALLENGE_TTL_MINUTES", ge=1)
    mfa_backup_code_count: int = env_field(10, "MFA_BACKUP_CODE_COUNT", ge=1)
    mfa_backup_code_warning: int = env_field(3, "MFA_BACKUP_CODE_WARNING")
    mfa_max_attempts: int = env_field(5, "MFA_MAX_ATTEMPTS", ge=1)
    mfa_lockout_minutes: int = env_field(5, "MFA_LOCKOUT_MINUTES", ge=1)

    # Password reset
    reset_code_ttl_minutes: int = env_field(15, "RESET_CODE_TTL_MINUTES", ge=1)
    reset_token_ttl_minutes: int = env_field(10, "RESET_TOKEN_TTL_MINUTES", ge=1)
    reset_max_attempts: int = env_field(5, "RESET_MAX_ATTEMPTS", ge=1)

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("DormAxis", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # HTTP
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000"],
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of origins allowed to send credentialed requests",
    )
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    trusted_proxy_count: int = env_field(
        0,
        "TRUSTED_PROXY_COUNT",
        ge=0,
        description="Reverse proxies in front of the app whose X-Forwarded-For hops are trusted",
    )
    cleanup_interval_seconds: int = env_field(300, "CLEANUP_INTERVAL_SECONDS", ge=1)

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

    @property
    def is_production(self) -> bool:
        return self.app_env == AppEnvironment.PRODUCTION

    @field_validator("app_env", mode="before")
    @classmethod
    def _validate_app_env(cls, value: Any) -> AppEnvironment:
        if isinstance(value, str):
            value = value.strip().lower()
        return AppEnvironment(value)

    @field_validator("session_cookie_samesite")
    @classmethod
    def _validate_samesite(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"lax", "strict"}:
            raise ValueError("SESSION_COOKIE_SAMESITE must be 'lax' or 'strict'")
        return normalized

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so challenge tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/dormauth"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
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
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            # Atomic write: temp file then rename
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path:
                with suppress(OSError):
                    os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


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
