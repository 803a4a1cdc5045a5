from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_TOKENS_CEILING = 8000
MAX_TEMPERATURE = 2.0


class ProviderKind(str, Enum):
    """Completion providers the runtime knows how to build."""

    OPENAI = "openai"
    ECHO = "echo"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the completion service."""

    host: str = env_field("0.0.0.0", "HOST")
    port: int = env_field(8000, "PORT")
    database_url: str = env_field(
        "postgresql://localhost:5432/chatkernel", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: str | None = env_field(
        None,
        "MEMORY_STORE_PATH",
        description="Optional JSON snapshot file for the in-memory store",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviour for CI: echo provider, local rate limits.",
    )

    provider: ProviderKind = env_field(ProviderKind.OPENAI, "LLM_PROVIDER")
    openai_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    openai_org_id: str | None = env_field(None, "OPENAI_ORG_ID")
    openai_base_url: str | None = env_field(None, "OPENAI_BASE_URL")
    default_model: str = env_field("gpt-4", "OPENAI_MODEL")
    default_max_tokens: int = env_field(4096, "MAX_TOKENS")
    default_temperature: float = env_field(0.7, "TEMPERATURE")
    embedding_model: str = env_field("text-embedding-3-small", "EMBEDDING_MODEL")
    provider_timeout_seconds: float = env_field(
        120.0,
        "PROVIDER_TIMEOUT_SECONDS",
        description="Upper bound for a single complete() or stream() call",
    )

    history_limit: int = env_field(
        10, "HISTORY_LIMIT", description="Most recent messages sent as context"
    )
    chat_rate_limit_per_minute: int = env_field(20, "CHAT_RATE_LIMIT_PER_MINUTE")

    worker_enabled: bool = env_field(True, "WORKER_ENABLED")
    worker_concurrency: int = env_field(4, "WORKER_CONCURRENCY")
    worker_poll_interval: float = env_field(1.0, "WORKER_POLL_INTERVAL")
    job_max_attempts: int = env_field(3, "JOB_MAX_ATTEMPTS")
    job_backoff_base: float = env_field(1.0, "JOB_BACKOFF_BASE")
    job_backoff_multiplier: float = env_field(2.0, "JOB_BACKOFF_MULTIPLIER")
    job_backoff_max: float = env_field(300.0, "JOB_BACKOFF_MAX")
    job_lease_seconds: float = env_field(
        900.0,
        "JOB_LEASE_SECONDS",
        description="Idle time after which an active job is taken over by another worker",
    )

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("provider", mode="before")
    @classmethod
    def _validate_provider(cls, value: Any) -> ProviderKind:
        if isinstance(value, str):
            value = value.strip().lower()
        return ProviderKind(value)

    @field_validator("default_max_tokens")
    @classmethod
    def _validate_max_tokens(cls, value: int) -> int:
        if not 1 <= value <= MAX_TOKENS_CEILING:
            raise ValueError(f"MAX_TOKENS must be between 1 and {MAX_TOKENS_CEILING}")
        return value

    @field_validator("default_temperature")
    @classmethod
    def _validate_temperature(cls, value: float) -> float:
        if not 0.0 <= value <= MAX_TEMPERATURE:
            raise ValueError(f"TEMPERATURE must be between 0 and {MAX_TEMPERATURE}")
        return value

    @field_validator(
        "history_limit", "worker_concurrency", "job_max_attempts", "job_lease_seconds"
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value)


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
