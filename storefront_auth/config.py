from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from storefront_auth.logging import get_logger

logger = get_logger(__name__)

DEFAULT_FS_ROOT = "/srv/storefront"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def load_or_create_secret(filename: str, fs_root: str | None = None) -> str:
    """Return a signing secret persisted under ``fs_root``, creating it once.

    Tokens must survive restarts, so a generated secret is written with
    owner-only permissions and reused on the next boot.
    """
    root = Path(fs_root or DEFAULT_FS_ROOT)
    secret_path = root / filename

    try:
        root.mkdir(parents=True, exist_ok=True)
        os.chmod(root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning(
            "secret_dir_setup_failed",
            error=str(exc),
            path=str(root),
        )

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
        fd, tmp_path = tempfile.mkstemp(
            dir=str(root), prefix=f"{filename}_", suffix=".tmp"
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
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret via environment or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the account and authentication service."""

    app_env: str = env_field(
        "production",
        "APP_ENV",
        description="'development' exposes internal error messages in 500 responses",
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/storefront", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field(DEFAULT_FS_ROOT, "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime reset, relaxed fallbacks)",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    cors_allow_origins: str = env_field(
        "http://localhost:3000,http://localhost:5173", "CORS_ALLOW_ORIGINS"
    )
    enable_hsts: bool = env_field(True, "ENABLE_HSTS")

    # Token issuance
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("storefront", "JWT_ISSUER")
    jwt_audience: str = env_field("storefront-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )
    refresh_token_rotation: bool = env_field(
        True,
        "REFRESH_TOKEN_ROTATION",
        description="Revoke a refresh token once it has been exchanged",
    )

    # Password hashing (argon2id)
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_kib: int = env_field(
        64 * 1024, "PASSWORD_HASH_MEMORY_KIB", ge=32
    )

    # Account lockout
    lockout_max_attempts: int = env_field(5, "LOCKOUT_MAX_ATTEMPTS", ge=1)
    lockout_duration_minutes: int = env_field(120, "LOCKOUT_DURATION_MINUTES", ge=1)

    # Two-factor authentication
    two_factor_issuer: str = env_field("Storefront Admin", "TWO_FACTOR_ISSUER")
    two_factor_valid_window: int = env_field(2, "TWO_FACTOR_VALID_WINDOW", ge=0)
    two_factor_max_attempts: int = env_field(5, "TWO_FACTOR_MAX_ATTEMPTS", ge=1)
    two_factor_window_seconds: int = env_field(
        15 * 60, "TWO_FACTOR_WINDOW_SECONDS", ge=1
    )
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT", ge=1)
    mfa_encryption_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting TOTP secrets at rest; derived from JWT_SECRET when unset",
    )

    # External identity
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    google_tokeninfo_url: str = env_field(
        "https://oauth2.googleapis.com/tokeninfo", "GOOGLE_TOKENINFO_URL"
    )

    # Order history collaborator
    order_table: str = env_field("customer_order", "ORDER_TABLE")

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

    @field_validator("app_env")
    @classmethod
    def _normalize_env(cls, value: str) -> str:
        return (value or "production").strip().lower()

    @field_validator("order_table")
    @classmethod
    def _validate_table_name(cls, value: str) -> str:
        if not value.replace("_", "").isalnum():
            raise ValueError("ORDER_TABLE must be a plain identifier")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        return load_or_create_secret(".jwt_secret", info.data.get("shared_fs_root"))

    @field_validator("jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_refresh_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        return load_or_create_secret(
            ".jwt_refresh_secret", info.data.get("shared_fs_root")
        )

    @model_validator(mode="after")
    def _distinct_token_secrets(self) -> "Settings":
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        return self

    @property
    def is_development(self) -> bool:
        return self.app_env in {"development", "dev", "local"}

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]


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
