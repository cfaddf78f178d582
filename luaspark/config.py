from __future__ import annotations

import os
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_SYSTEM_PROMPT = (
    "You are LuaSpark, an AI assistant that generates functional Roblox LuaU "
    "scripts. Always respond with code and short explanations when needed."
)

# Output contract appended to the system prompt; parsed by reply_parser.
OUTPUT_CONTRACT = (
    "Format every answer exactly as:\n"
    "CODE:\n<the complete script>\n---\nEXPLANATION:\n<a short explanation>"
)


class ModelBackendMode(str, Enum):
    """Upstream generation collaborators the orchestrator can talk to."""

    OPENAI = "openai"
    POLLING = "polling"
    STUB = "stub"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read once at startup from the environment or `.env`."""

    # Upstream generation
    openai_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    openai_base_url: str | None = env_field(None, "OPENAI_BASE_URL")
    model: str = env_field("gpt-4o-mini", "OPENAI_MODEL")
    model_backend: ModelBackendMode = env_field(ModelBackendMode.OPENAI, "MODEL_BACKEND")
    upstream_base_url: str | None = env_field(
        None,
        "UPSTREAM_BASE_URL",
        description="Base URL of the submit/poll job API used by the polling backend",
    )
    upstream_api_key: str | None = env_field(None, "UPSTREAM_API_KEY")
    temperature: float = env_field(0.3, "GENERATION_TEMPERATURE", ge=0.0, le=2.0)
    max_tokens: int = env_field(700, "GENERATION_MAX_TOKENS", gt=0)
    poll_interval_seconds: float = env_field(1.2, "UPSTREAM_POLL_INTERVAL_SECONDS", gt=0)
    upstream_timeout_seconds: float = env_field(60.0, "UPSTREAM_TIMEOUT_SECONDS", gt=0)
    system_prompt: str = env_field(DEFAULT_SYSTEM_PROMPT, "SYSTEM_PROMPT")

    # Access control
    bypass_email: str | None = env_field(
        None,
        "BYPASS_EMAIL",
        description="Identity allowed to generate without entitlement",
    )
    admin_api_key: str | None = env_field(
        None,
        "ADMIN_API_KEY",
        description="When set, /markEntitled requires a matching X-Admin-Key header",
    )
    webhook_secret: str | None = env_field(
        None,
        "WEBHOOK_SECRET",
        description="When set, /paypal-webhook requires a matching X-Webhook-Secret header",
    )
    max_sessions_per_identity: int = env_field(
        0,
        "MAX_SESSIONS_PER_IDENTITY",
        ge=0,
        description="Live tokens kept per identity; 0 keeps every token",
    )
    session_ttl_minutes: int = env_field(
        0,
        "SESSION_TTL_MINUTES",
        ge=0,
        description="Session lifetime; 0 means sessions last for the process lifetime",
    )

    # Persistence
    users_db_path: str = env_field("./users.json", "USERS_DB_PATH")
    flush_interval_seconds: float = env_field(60.0, "FLUSH_INTERVAL_SECONDS", gt=0)

    # Server
    host: str = env_field("0.0.0.0", "HOST")
    port: int = env_field(5000, "PORT")
    static_dir: str = env_field("public", "STATIC_DIR")
    cors_allow_origins: List[str] = env_field(["*"], "CORS_ALLOW_ORIGINS")

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
            elif env_name in env_file_values and env_file_values[env_name] is not None:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("model_backend", mode="before")
    @classmethod
    def _validate_backend(cls, value: Any) -> ModelBackendMode:
        if isinstance(value, str):
            value = value.strip().lower()
        return ModelBackendMode(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "openai_api_key",
        "bypass_email",
        "admin_api_key",
        "webhook_secret",
        "upstream_base_url",
        "upstream_api_key",
        mode="before",
    )
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def full_system_prompt(self) -> str:
        return f"{self.system_prompt}\n\n{OUTPUT_CONTRACT}"


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
