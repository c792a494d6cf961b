from __future__ import annotations

import hashlib
import hmac
import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from accountcore.logging import get_logger

logger = get_logger(__name__)


class TokenPurpose(str, Enum):
    """Each purpose gets its own signing secret and lifetime."""

    ACCESS = "access"
    REFRESH = "refresh"
    RESET = "reset"
    VERIFY = "verify"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the account service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/accountcore", "DATABASE_URL"
    )
    shared_fs_root: str = env_field("/srv/accountcore", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and other test-only behaviors.",
    )

    # Token signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("accountcore", "JWT_ISSUER")
    jwt_audience: str = env_field("accountcore-clients", "JWT_AUDIENCE")
    access_token_secret: str | None = env_field(None, "ACCESS_TOKEN_SECRET")
    refresh_token_secret: str | None = env_field(None, "REFRESH_TOKEN_SECRET")
    reset_token_secret: str | None = env_field(None, "RESET_TOKEN_SECRET")
    verify_token_secret: str | None = env_field(None, "VERIFY_TOKEN_SECRET")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        10 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    reset_token_ttl_minutes: int = env_field(15, "RESET_TOKEN_TTL_MINUTES")
    verify_token_ttl_minutes: int = env_field(24 * 60, "VERIFY_TOKEN_TTL_MINUTES")

    # argon2id work factor
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(
        65536, "PASSWORD_HASH_MEMORY_COST", description="Memory cost in KiB"
    )
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")

    # Account policy
    require_verified_email: bool = env_field(
        False,
        "REQUIRE_VERIFIED_EMAIL",
        description="Refuse authentication for accounts whose email is unverified",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    # Transport
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cookie_samesite: str = env_field("lax", "COOKIE_SAMESITE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("AccountCore", "EMAIL_FROM_NAME")

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
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("cookie_samesite")
    @classmethod
    def _validate_samesite(cls, value: str) -> str:
        normalized = value.lower()
        if normalized not in {"lax", "strict", "none"}:
            raise ValueError("cookie_samesite must be lax, strict or none")
        return normalized

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "reset_token_ttl_minutes",
        "verify_token_ttl_minutes",
    )
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token lifetimes must be positive")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/accountcore"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # directory may be owned by someone else (e.g. a mounted volume)
            pass

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
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        logger.info("jwt_secret_generated", path=str(secret_path))
        return generated

    @model_validator(mode="after")
    def _distinct_purpose_secrets(self) -> "Settings":
        resolved = [self.token_secret(purpose) for purpose in TokenPurpose]
        if len(set(resolved)) != len(resolved):
            raise ValueError("each token purpose must use a distinct signing secret")
        return self

    def token_secret(self, purpose: TokenPurpose) -> str:
        """Return the signing secret for ``purpose``.

        An explicit ``<PURPOSE>_TOKEN_SECRET`` wins; otherwise the secret is
        derived from ``jwt_secret`` so one master value still yields four
        independent keys.
        """
        explicit = getattr(self, f"{purpose.value}_token_secret")
        if explicit:
            return explicit
        return hmac.new(
            self.jwt_secret.encode(), purpose.value.encode(), hashlib.sha256
        ).hexdigest()

    def token_ttl_minutes(self, purpose: TokenPurpose) -> int:
        return getattr(self, f"{purpose.value}_token_ttl_minutes")


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
