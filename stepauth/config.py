from __future__ import annotations

import os
import secrets
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from stepauth.logging import get_logger

logger = get_logger(__name__)


class OTPHashScheme(str, Enum):
    """How one-time codes are hashed at rest.

    - HMAC_SHA256: keyed MAC with a server-side pepper; offline brute force of
      the 10^6 code space needs the pepper as well as the database.
    - ARGON2ID: slow salted password hash; costs more per verify but does not
      depend on keeping a pepper secret.
    """

    HMAC_SHA256 = "hmac-sha256"
    ARGON2ID = "argon2id"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_env_values(model: type[BaseModel]) -> dict[str, str]:
    env_file_values = dotenv_values(".env")
    merged: dict[str, str] = {}
    for name, field in model.model_fields.items():
        extra = field.json_schema_extra or {}
        env_key = extra.get("env") if isinstance(extra, dict) else None
        env_name = env_key or name.upper()
        if env_name in os.environ:
            merged[name] = os.environ[env_name]
        elif env_name in env_file_values:
            merged[name] = env_file_values[env_name]
    return merged


class Settings(BaseModel):
    """Server runtime settings."""

    database_url: str | None = env_field(None, "DATABASE_URL")
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/stepauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    allow_outbox_notifier_dev: bool = env_field(False, "ALLOW_OUTBOX_NOTIFIER_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (in-memory notifier, runtime reset).",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("stepauth", "JWT_ISSUER")
    jwt_audience: str = env_field("stepauth-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    # One-time passcodes
    otp_ttl_minutes: int = env_field(
        2, "OTP_EXPIRE_MINUTES", description="Lifetime of an issued one-time code"
    )
    otp_hash_scheme: OTPHashScheme = env_field(OTPHashScheme.HMAC_SHA256, "OTP_HASH_SCHEME")
    otp_pepper: str | None = env_field(
        None,
        "OTP_PEPPER",
        description="HMAC key for one-time code hashes; derived from JWT_SECRET when unset",
    )
    # Notifier
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("stepauth", "EMAIL_FROM_NAME")
    notifier_max_attempts: int = env_field(3, "NOTIFIER_MAX_ATTEMPTS")
    notifier_backoff_seconds: float = env_field(0.5, "NOTIFIER_BACKOFF_SECONDS")
    # Rate limits (per minute)
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    otp_issue_rate_limit_per_minute: int = env_field(5, "OTP_ISSUE_RATE_LIMIT_PER_MINUTE")
    otp_verify_rate_limit_per_minute: int = env_field(10, "OTP_VERIFY_RATE_LIMIT_PER_MINUTE")
    refresh_rate_limit_per_minute: int = env_field(30, "REFRESH_RATE_LIMIT_PER_MINUTE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(**_load_env_values(cls))

    @field_validator("otp_hash_scheme")
    @classmethod
    def _validate_hash_scheme(cls, value: OTPHashScheme) -> OTPHashScheme:
        return OTPHashScheme(value)

    @field_validator("otp_ttl_minutes")
    @classmethod
    def _validate_otp_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("OTP_EXPIRE_MINUTES must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated JWT secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/stepauth"))
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
        import tempfile

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


class ClientSettings(BaseModel):
    """Settings for the token-refreshing API client."""

    api_base_url: str = env_field("http://localhost:8000", "API_BASE_URL")
    request_timeout_seconds: float = env_field(30.0, "REQUEST_TIMEOUT_SECONDS")
    refresh_timeout_seconds: float = env_field(
        5.0,
        "REFRESH_TIMEOUT_SECONDS",
        description="Upper bound on one refresh exchange, retries included",
    )
    refresh_max_attempts: int = env_field(2, "REFRESH_MAX_ATTEMPTS")
    refresh_backoff_seconds: float = env_field(0.25, "REFRESH_BACKOFF_SECONDS")
    token_store_path: str | None = env_field(None, "TOKEN_STORE_PATH")
    token_store_key: str | None = env_field(None, "TOKEN_STORE_KEY")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "ClientSettings":
        return cls(**_load_env_values(cls))

    @field_validator("refresh_timeout_seconds")
    @classmethod
    def _validate_refresh_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("REFRESH_TIMEOUT_SECONDS must be positive")
        return value


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
