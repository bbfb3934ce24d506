from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tessera.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _persisted_secret(directory: str, filename: str) -> str:
    """Load a generated secret from the state dir, creating it on first use."""
    state_dir = Path(directory)
    secret_path = state_dir / filename

    try:
        state_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(state_dir, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning("state_dir_setup_failed", error=str(exc), path=str(state_dir))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(state_dir), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path is not None and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret explicitly or make TESSERA_STATE_DIR writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the authentication engine."""

    state_dir: str = env_field("/srv/tessera", "TESSERA_STATE_DIR")
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Redis URL for the shared login-attempt log; memory store when unset",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; skips secret persistence",
    )
    access_token_secret: str | None = env_field(None, "JWT_SECRET")
    refresh_token_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting TOTP secrets at rest; derived from JWT_SECRET when unset",
    )
    access_token_ttl_seconds: int = env_field(30 * 60, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(7 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS")
    otp_ttl_seconds: int = env_field(120, "OTP_TTL_SECONDS")
    password_reset_ttl_seconds: int = env_field(60 * 60, "PASSWORD_RESET_TTL_SECONDS")
    login_max_failures: int = env_field(
        5,
        "LOGIN_MAX_FAILURES",
        description="Failed logins per window before an email is blocked",
    )
    login_window_seconds: int = env_field(60 * 60, "LOGIN_WINDOW_SECONDS")
    session_check_interval_seconds: int = env_field(
        60,
        "SESSION_CHECK_INTERVAL_SECONDS",
        description="Period of the session-timeout monitor",
    )
    totp_step_seconds: int = env_field(30, "TOTP_STEP_SECONDS")
    totp_drift_steps: int = env_field(1, "TOTP_DRIFT_STEPS")
    totp_issuer: str = env_field("Tessera", "TOTP_ISSUER")
    backup_code_count: int = env_field(8, "BACKUP_CODE_COUNT")
    email_from_name: str = env_field("Tessera", "EMAIL_FROM_NAME")
    app_base_url: str = env_field(
        "http://localhost:8000",
        "APP_BASE_URL",
        description="Origin used to build password reset links",
    )

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
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "otp_ttl_seconds",
        "password_reset_ttl_seconds",
        "login_max_failures",
        "login_window_seconds",
        "session_check_interval_seconds",
        "totp_step_seconds",
        "backup_code_count",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("totp_drift_steps")
    @classmethod
    def _validate_drift(cls, value: int) -> int:
        if value < 0:
            raise ValueError("totp drift cannot be negative")
        return value

    @model_validator(mode="after")
    def _ensure_token_secrets(self) -> "Settings":
        if not self.access_token_secret:
            self.access_token_secret = (
                secrets.token_urlsafe(64)
                if self.test_mode
                else _persisted_secret(self.state_dir, ".jwt_secret")
            )
        if not self.refresh_token_secret:
            self.refresh_token_secret = (
                secrets.token_urlsafe(64)
                if self.test_mode
                else _persisted_secret(self.state_dir, ".jwt_refresh_secret")
            )
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("access and refresh token secrets must differ")
        return self


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
