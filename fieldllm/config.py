from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from fieldllm.logging import get_logger

logger = get_logger(__name__)


class ProviderFamily(str, Enum):
    """Model vendors the invocation adapter knows how to call."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"


class UseCase(str, Enum):
    """Use-cases a provider record can be tagged with."""

    DRAFT = "draft"
    SUMMARY = "summary"
    COMPLEX = "complex"
    VISION = "vision"
    GENERAL = "general"
    VOICE = "voice"
    WORKFLOW = "workflow"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the router, classifier and workflow engine."""

    database_url: str = env_field(
        "postgresql://localhost:5432/fieldllm", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )

    # Downstream targets of the workflow executor
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    tool_rpc_url: str = env_field(
        "http://localhost:54321/functions/v1/mcp-server", "TOOL_RPC_URL"
    )

    # Caller trust
    service_role_key: str | None = env_field(None, "SERVICE_ROLE_KEY")
    trusted_headers_require_service_key: bool = env_field(
        False,
        "TRUSTED_HEADERS_REQUIRE_SERVICE_KEY",
        description="Only honour x-user-id/x-account-id headers alongside the service credential",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("fieldllm", "JWT_ISSUER")
    jwt_audience: str = env_field("fieldllm-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(30, "ACCESS_TOKEN_TTL_MINUTES")
    session_ttl_minutes: int = env_field(60 * 24, "SESSION_TTL_MINUTES")

    # Provider credentials and defaults
    openai_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    anthropic_api_key: str | None = env_field(None, "ANTHROPIC_API_KEY")
    provider_key_encryption_key: str | None = env_field(
        None,
        "PROVIDER_KEY_ENCRYPTION_KEY",
        description="Fernet key used to decrypt llm_providers.api_key_encrypted",
    )
    provider_cache_ttl_seconds: int = env_field(300, "PROVIDER_CACHE_TTL_SECONDS")
    provider_request_timeout_seconds: float = env_field(
        60.0, "PROVIDER_REQUEST_TIMEOUT_SECONDS"
    )
    default_max_tokens: int = env_field(1000, "DEFAULT_MAX_TOKENS")
    default_temperature: float = env_field(0.7, "DEFAULT_TEMPERATURE")
    classifier_model: str = env_field("gpt-4o", "CLASSIFIER_MODEL")
    classifier_max_tokens: int = env_field(1000, "CLASSIFIER_MAX_TOKENS")

    # Workflow execution
    workflow_step_timeout_ms: int = env_field(30000, "WORKFLOW_STEP_TIMEOUT_MS")
    workflow_timeout_ms: int = env_field(300000, "WORKFLOW_TIMEOUT_MS")
    workflow_continue_on_error: bool = env_field(False, "WORKFLOW_CONTINUE_ON_ERROR")
    workflow_step_max_retries: int = env_field(2, "WORKFLOW_STEP_MAX_RETRIES")
    workflow_retry_backoff_ms: int = env_field(500, "WORKFLOW_RETRY_BACKOFF_MS")
    workflow_min_confidence: float = env_field(
        0.0,
        "WORKFLOW_MIN_CONFIDENCE",
        description="Plans below this confidence are returned for confirmation instead of executed",
    )

    # Resilience, rate and cost
    resilience_enabled: bool = env_field(True, "RESILIENCE_ENABLED")
    rate_limit_per_minute: int = env_field(60, "RATE_LIMIT_PER_MINUTE")
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS")
    tenant_monthly_budget_usd: float = env_field(
        0.0,
        "TENANT_MONTHLY_BUDGET_USD",
        description="Monthly spend ceiling per tenant; 0 disables the budget check",
    )
    provider_max_retries: int = env_field(2, "PROVIDER_MAX_RETRIES")
    provider_retry_backoff_ms: int = env_field(500, "PROVIDER_RETRY_BACKOFF_MS")
    circuit_failure_threshold: int = env_field(5, "CIRCUIT_FAILURE_THRESHOLD")
    circuit_recovery_seconds: float = env_field(30.0, "CIRCUIT_RECOVERY_SECONDS")

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

    @field_validator("redis_url", "service_role_key", "jwt_secret", "provider_key_encryption_key")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return list(value)

    @field_validator("workflow_min_confidence")
    @classmethod
    def _validate_confidence(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("WORKFLOW_MIN_CONFIDENCE must be between 0 and 1")
        return value

    @field_validator("workflow_step_max_retries", "provider_max_retries")
    @classmethod
    def _validate_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("retry counts cannot be negative")
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
