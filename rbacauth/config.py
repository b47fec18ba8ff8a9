from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from rbacauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth backend, resolved from env and `.env`."""

    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/rbacauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and runtime resets",
    )
    app_name: str = env_field("RBAC Auth", "APP_NAME")
    frontend_url: str = env_field("http://localhost:5173", "FRONTEND_URL")
    trust_proxy_headers: bool = env_field(
        False,
        "TRUST_PROXY_HEADERS",
        description="Read the client IP from X-Forwarded-For / X-Real-IP",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("rbacauth", "JWT_ISSUER")
    jwt_audience: str = env_field("rbacauth-clients", "JWT_AUDIENCE")
    token_ttl_days: int = env_field(7, "TOKEN_TTL_DAYS")
    remember_me_ttl_days: int = env_field(30, "REMEMBER_ME_TTL_DAYS")
    enforce_session_revocation: bool = env_field(
        False,
        "ENFORCE_SESSION_REVOCATION",
        description="Reject tokens whose session row was terminated",
    )

    # Verification challenges
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES")
    otp_length: int = env_field(6, "OTP_LENGTH")
    reset_token_ttl_minutes: int = env_field(10, "RESET_TOKEN_TTL_MINUTES")
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")

    # Sessions
    session_cap: int = env_field(20, "SESSION_CAP")
    session_retention_days: int = env_field(30, "SESSION_RETENTION_DAYS")
    cleanup_interval_seconds: int = env_field(3600, "CLEANUP_INTERVAL_SECONDS")

    # Lockout and bans
    lockout_window_seconds: int = env_field(3600, "LOCKOUT_WINDOW_SECONDS")
    lockout_max_attempts: int = env_field(10, "LOCKOUT_MAX_ATTEMPTS")
    lockout_ban_hours: float = env_field(0.5, "LOCKOUT_BAN_HOURS")
    privileged_lockout_max_attempts: int = env_field(
        5, "PRIVILEGED_LOCKOUT_MAX_ATTEMPTS"
    )
    privileged_ban_hours: float = env_field(1.0, "PRIVILEGED_BAN_HOURS")
    bot_ban_hours: float = env_field(24.0, "BOT_BAN_HOURS")

    # Geolocation
    geo_lookup_enabled: bool = env_field(True, "GEO_LOOKUP_ENABLED")
    geo_lookup_url: str = env_field("https://ip-api.com/json", "GEO_LOOKUP_URL")
    geo_timeout_seconds: float = env_field(3.0, "GEO_TIMEOUT_SECONDS")

    # OAuth
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(
        None, "OAUTH_GOOGLE_CLIENT_SECRET"
    )
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")

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

    @field_validator(
        "session_cap", "otp_length", "lockout_max_attempts", "privileged_lockout_max_attempts"
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("frontend_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/rbacauth"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
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
            if tmp_path and os.path.exists(tmp_path):
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
