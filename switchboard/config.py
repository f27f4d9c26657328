from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from switchboard.logging import get_logger

logger = get_logger(__name__)

DEFAULT_OAUTH_STATE_TTL_SECONDS = 600
DEFAULT_INVITE_TTL_HOURS = 24


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the membership and login engine."""

    database_url: str = env_field(
        "postgresql://localhost:5432/switchboard", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_root: str | None = env_field(
        None,
        "MEMORY_STORE_ROOT",
        description="Directory for the memory store JSON snapshot; unset keeps state in-process only",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (allows runtime resets).",
    )
    # OAuth settings
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_microsoft_client_id: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_ID")
    oauth_microsoft_client_secret: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")
    oauth_state_ttl_seconds: int = env_field(
        DEFAULT_OAUTH_STATE_TTL_SECONDS,
        "OAUTH_STATE_TTL_SECONDS",
        description="Lifetime of an unredeemed OAuth state token",
    )
    # Invitations
    invite_default_ttl_hours: int = env_field(
        DEFAULT_INVITE_TTL_HOURS,
        "INVITE_DEFAULT_TTL_HOURS",
        description="Invite lifetime used when the inviter does not pick one",
    )
    invite_max_ttl_hours: int = env_field(
        24 * 30,
        "INVITE_MAX_TTL_HOURS",
        description="Upper bound on invite lifetime",
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
        "oauth_state_ttl_seconds", "invite_default_ttl_hours", "invite_max_ttl_hours"
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("TTL settings must be positive")
        return value

    @model_validator(mode="after")
    def _check_invite_bounds(self) -> "Settings":
        if self.invite_default_ttl_hours > self.invite_max_ttl_hours:
            raise ValueError("INVITE_DEFAULT_TTL_HOURS exceeds INVITE_MAX_TTL_HOURS")
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            use_memory_store=_settings_cache.use_memory_store,
            test_mode=_settings_cache.test_mode,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
