from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from fieldllm.config import get_settings, reset_settings_cache
from fieldllm.logging import get_logger
from fieldllm.service.auth import AuthService
from fieldllm.service.classifier import IntentClassifier
from fieldllm.service.context import ContextResolver
from fieldllm.service.dispatch import StepDispatcher
from fieldllm.service.model_backend import ModelAdapter
from fieldllm.service.providers import CachedProviderRepository
from fieldllm.service.resilience import (
    BudgetTracker,
    CircuitBreakerConfig,
    CostEstimator,
    ResilientInvoker,
    TenantRateLimiter,
)
from fieldllm.service.router import ProviderRouter
from fieldllm.service.workflow import ExecutionConfig, WorkflowEngine
from fieldllm.storage.memory import MemoryStore
from fieldllm.storage.postgres import PostgresStore
from fieldllm.storage.provider_cache import (
    InMemoryProviderCache,
    ProviderCache,
    RedisProviderCache,
)
from fieldllm.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            )
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for provider caches, rate limits and spend tracking; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
            )

        provider_cache: ProviderCache = (
            RedisProviderCache(self.cache, self.settings.provider_cache_ttl_seconds)
            if self.cache
            else InMemoryProviderCache(self.settings.provider_cache_ttl_seconds)
        )
        self.providers = CachedProviderRepository(self.store, provider_cache)
        self.auth = AuthService(self.store, self.settings)
        self.context_resolver = ContextResolver(self.auth, self.settings)
        self.models = ModelAdapter(self.settings)
        self.router = ProviderRouter(
            self.providers,
            self.models,
            self.settings,
            rate_limiter=TenantRateLimiter(
                self.cache,
                self.settings.rate_limit_per_minute,
                self.settings.rate_limit_window_seconds,
            ),
            budget=BudgetTracker(self.cache, self.settings.tenant_monthly_budget_usd),
            invoker=ResilientInvoker(
                max_retries=self.settings.provider_max_retries,
                backoff_ms=self.settings.provider_retry_backoff_ms,
                breaker_config=CircuitBreakerConfig(
                    failure_threshold=self.settings.circuit_failure_threshold,
                    recovery_timeout=self.settings.circuit_recovery_seconds,
                ),
            ),
            costs=CostEstimator(),
        )
        self.classifier = IntentClassifier(self.router, self.settings)
        self.dispatcher = StepDispatcher(self.settings)
        self.workflow = WorkflowEngine(
            self.dispatcher, ExecutionConfig.from_settings(self.settings)
        )
        logger.info(
            "runtime_init_completed",
            store_type="memory" if self.settings.use_memory_store else "postgres",
            redis=bool(self.cache),
        )

    async def close(self) -> None:
        await self.dispatcher.aclose()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
