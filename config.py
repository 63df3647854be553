from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, Field, field_validator


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the library service."""

    database_url: str = env_field(
        "postgresql://postgres@localhost/library", "DATABASE_URL"
    )
    db_busy_timeout_seconds: float = env_field(30.0, "DB_BUSY_TIMEOUT_SECONDS")

    # JWT Configuration
    jwt_secret: str = env_field(
        "change-me-library-signing-key-at-least-32-bytes", "JWT_SECRET"
    )
    jwt_issuer: str = env_field("library-api", "JWT_ISSUER")
    jwt_audience: str = env_field("library-clients", "JWT_AUDIENCE")
    jwt_algorithm: str = env_field("HS256", "JWT_ALGORITHM")
    access_token_ttl_minutes: int = env_field(120, "ACCESS_TOKEN_TTL_MINUTES")

    bcrypt_rounds: int = env_field(12, "BCRYPT_ROUNDS")
    borrow_max_attempts: int = env_field(
        3,
        "BORROW_MAX_ATTEMPTS",
        description="Attempts for a borrow create that hits a serialization failure",
    )

    seed_admin_username: str = env_field("admin", "SEED_ADMIN_USERNAME")
    seed_admin_email: str = env_field("admin@example.com", "SEED_ADMIN_EMAIL")
    seed_admin_password: str = env_field("123456", "SEED_ADMIN_PASSWORD")

    expose_error_details: bool = env_field(False, "EXPOSE_ERROR_DETAILS")

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

    @field_validator("access_token_ttl_minutes", "borrow_max_attempts")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("bcrypt_rounds")
    @classmethod
    def _bcrypt_rounds(cls, value: int) -> int:
        # passlib accepts 4..31 for bcrypt
        if not 4 <= value <= 31:
            raise ValueError("bcrypt_rounds must be between 4 and 31")
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
