from __future__ import annotations

import os
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from telemed_auth.logging import get_logger
from telemed_auth.service.errors import ConfigurationError

logger = get_logger(__name__)

# HMAC-SHA256 keys shorter than this are rejected at startup.
MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core."""

    # Token signing. Access and refresh tokens never share a key.
    jwt_secret: Optional[str] = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: Optional[str] = env_field(None, "JWT_REFRESH_SECRET")
    jwt_algorithm: str = env_field("HS256", "JWT_ALGORITHM")
    jwt_issuer: str = env_field("telemedicine-ai", "JWT_ISSUER")
    jwt_audience: str = env_field("telemedicine-ai-client", "JWT_AUDIENCE")
    jwt_refresh_audience: str = env_field(
        "telemedicine-ai-refresh",
        "JWT_REFRESH_AUDIENCE",
        description="Audience for refresh tokens; must differ from JWT_AUDIENCE",
    )
    access_token_ttl_minutes: int = env_field(
        24 * 60,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Access token and session lifetime in minutes",
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token lifetime in minutes",
    )
    rotate_refresh_tokens: bool = env_field(
        False,
        "ROTATE_REFRESH_TOKENS",
        description="Reject superseded refresh tokens and revoke the session on reuse",
    )

    # Account lockout
    max_failed_logins: int = env_field(5, "MAX_FAILED_LOGINS")
    lockout_minutes: int = env_field(120, "LOCKOUT_MINUTES")

    # Password reset
    reset_token_ttl_minutes: int = env_field(10, "RESET_TOKEN_TTL_MINUTES")

    # Session maintenance
    session_retention_days: int = env_field(
        7,
        "SESSION_RETENTION_DAYS",
        description="How long revoked sessions are kept before the sweep deletes them",
    )
    session_sweep_interval_seconds: int = env_field(3600, "SESSION_SWEEP_INTERVAL_SECONDS")

    # Password hashing (argon2id)
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(64 * 1024, "ARGON2_MEMORY_COST")

    # Memory store persistence; None keeps state in-process only
    state_path: Optional[str] = env_field(None, "STATE_PATH")

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
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "max_failed_logins",
        "lockout_minutes",
        "reset_token_ttl_minutes",
        "session_retention_days",
        "session_sweep_interval_seconds",
        "argon2_time_cost",
        "argon2_memory_cost",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jwt_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: str) -> str:
        if value not in {"HS256", "HS384", "HS512"}:
            raise ValueError("only HMAC algorithms (HS256/HS384/HS512) are supported")
        return value

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    def validate_secrets(self) -> None:
        """Fail fast when signing secrets are missing, weak, or shared.

        Raises:
            ConfigurationError: the service must not start with this configuration
        """
        problems: list[str] = []
        for name in ("jwt_secret", "jwt_refresh_secret"):
            value = getattr(self, name)
            if not value:
                problems.append(f"{name.upper()} is not set")
            elif len(value) < MIN_SECRET_LENGTH:
                problems.append(
                    f"{name.upper()} must be at least {MIN_SECRET_LENGTH} characters"
                )
        if (
            self.jwt_secret
            and self.jwt_refresh_secret
            and self.jwt_secret == self.jwt_refresh_secret
        ):
            problems.append("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        if self.jwt_audience == self.jwt_refresh_audience:
            problems.append("JWT_AUDIENCE and JWT_REFRESH_AUDIENCE must differ")
        if problems:
            logger.error("auth_configuration_invalid", problems=problems)
            raise ConfigurationError("; ".join(problems))
