from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from passless.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/passless", "DATABASE_URL"
    )
    db_pool_min_size: int = env_field(2, "DB_POOL_MIN_SIZE", ge=1)
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE", ge=1)
    db_pool_timeout_seconds: float = env_field(10.0, "DB_POOL_TIMEOUT_SECONDS", gt=0)
    shared_fs_root: str = env_field("/srv/passless", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviours; implies expose_codes.",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("passless", "JWT_ISSUER")
    jwt_audience: str = env_field("passless-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(
        60 * 24 * 7, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )

    verification_code_ttl_minutes: int = env_field(
        15, "VERIFICATION_CODE_TTL_MINUTES", gt=0, le=15
    )
    max_code_attempts: int = env_field(
        5,
        "MAX_CODE_ATTEMPTS",
        ge=1,
        description="Failed confirmations allowed before a pending session is dropped",
    )
    expose_codes: bool = env_field(
        False,
        "EXPOSE_CODES",
        description="Echo one-time codes in API responses (never enable in production)",
    )
    mask_missing_registration_session: bool = env_field(
        True,
        "MASK_MISSING_REGISTRATION_SESSION",
        description="Answer resend requests for unknown sessions with a fabricated response",
    )

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Passless", "EMAIL_FROM_NAME")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    session_cleanup_interval_seconds: int = env_field(
        300, "SESSION_CLEANUP_INTERVAL_SECONDS", ge=0
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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @model_validator(mode="after")
    def _check_pool_bounds(self) -> "Settings":
        if self.db_pool_min_size > self.db_pool_max_size:
            raise ValueError("DB_POOL_MIN_SIZE must not exceed DB_POOL_MAX_SIZE")
        return self

    @property
    def codes_exposed(self) -> bool:
        return self.expose_codes or self.test_mode

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < _MIN_SECRET_LENGTH:
                logger.warning("jwt_secret_short", length=len(value))
            return value
        # Persist a generated secret so tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/passless"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))
            else:
                if len(persisted) >= _MIN_SECRET_LENGTH:
                    return persisted

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.replace(tmp_path, secret_path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        logger.info("jwt_secret_generated", path=str(secret_path))
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
