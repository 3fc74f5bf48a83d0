from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional, Sequence, Tuple, TypeVar

from fieldllm.logging import get_logger
from fieldllm.service.errors import (
    BudgetExceededError,
    ConfigurationError,
    ProviderCallError,
    RateLimitedError,
)
from fieldllm.storage.models import ProviderRecord
from fieldllm.storage.redis_cache import RedisCache

logger = get_logger(__name__)

T = TypeVar("T")

# USD per million tokens as (input, output)
MODEL_PRICING: Dict[str, Tuple[float, float]] = {
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4o": (2.50, 10.00),
    "gpt-4-turbo": (10.00, 30.00),
    "claude-haiku-4-5": (1.00, 5.00),
    "claude-sonnet-4-5": (3.00, 15.00),
    "claude-opus-4-1": (15.00, 75.00),
}
DEFAULT_PRICING: Tuple[float, float] = (3.00, 15.00)
CHARS_PER_TOKEN = 4
SPEND_TTL_SECONDS = 35 * 24 * 3600


class TenantRateLimiter:
    """Token bucket per tenant, in Redis when available."""

    def __init__(
        self,
        cache: Optional[RedisCache],
        limit: int,
        window_seconds: int,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cache = cache
        self.limit = limit
        if window_seconds <= 0:
            logger.warning("rate_limit_invalid_window", window_seconds=window_seconds)
            window_seconds = 60
        self.window_seconds = window_seconds
        self._clock = clock
        self._local: Dict[str, Tuple[float, float]] = {}
        self._lock = asyncio.Lock()

    async def check(self, account_id: str, *, cost: int = 1) -> int:
        """Consume ``cost`` tokens for ``account_id`` and return what remains."""
        if self.limit <= 0:
            return self.limit
        key = f"llm:{account_id}"
        if self.cache:
            allowed, remaining, reset_seconds = await self.cache.check_rate_limit(
                key, self.limit, self.window_seconds, return_remaining=True, cost=cost
            )
        else:
            allowed, remaining, reset_seconds = await self._check_local(key, cost)
        if not allowed:
            logger.warning(
                "rate_limit_exceeded", account_id=account_id, retry_after=reset_seconds
            )
            raise RateLimitedError(
                "Rate limit exceeded", detail={"retry_after": max(1, reset_seconds)}
            )
        return remaining

    async def _check_local(self, key: str, cost: int) -> Tuple[bool, int, int]:
        now = self._clock()
        refill_rate = float(self.limit) / float(self.window_seconds)
        async with self._lock:
            tokens, last_ts = self._local.get(key, (float(self.limit), now))
            elapsed = max(0.0, now - last_ts)
            tokens = min(float(self.limit), tokens + elapsed * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._local[key] = (tokens, now)
            reset_seconds = 0 if allowed else math.ceil((cost - tokens) / refill_rate)
            return allowed, int(tokens), reset_seconds


class CostEstimator:
    """Rough USD cost of a model call from character or token counts."""

    def __init__(self, pricing: Optional[Dict[str, Tuple[float, float]]] = None) -> None:
        self.pricing = pricing or MODEL_PRICING

    def price_for(self, model: str) -> Tuple[float, float]:
        if model in self.pricing:
            return self.pricing[model]
        # Longest prefix wins so dated ids map onto their family
        matches = [name for name in self.pricing if model.startswith(name)]
        if matches:
            return self.pricing[max(matches, key=len)]
        return DEFAULT_PRICING

    def estimate(self, model: str, prompt: str, max_tokens: int) -> float:
        input_tokens = math.ceil(len(prompt or "") / CHARS_PER_TOKEN)
        return self._cost(model, input_tokens, max_tokens)

    def actual(self, model: str, usage: Dict[str, int]) -> float:
        return self._cost(
            model,
            int(usage.get("prompt_tokens", 0) or 0),
            int(usage.get("completion_tokens", 0) or 0),
        )

    def _cost(self, model: str, input_tokens: int, output_tokens: int) -> float:
        input_price, output_price = self.price_for(model)
        return (input_tokens * input_price + output_tokens * output_price) / 1_000_000


class BudgetTracker:
    """Monthly spend per tenant, reserved before each call.

    ``check`` atomically adds the estimate to the month's total when it
    fits under the limit and returns the reserved amount; ``record``
    later swaps that reservation for the actual cost and ``release``
    gives it back when the call fails.
    """

    def __init__(
        self,
        cache: Optional[RedisCache],
        monthly_limit_usd: float,
        *,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.cache = cache
        self.monthly_limit_usd = monthly_limit_usd
        self._clock = clock
        self._local: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    def _key(self, account_id: str) -> str:
        return f"{account_id}:{self._clock():%Y-%m}"

    async def spent(self, account_id: str) -> float:
        key = self._key(account_id)
        if self.cache:
            return await self.cache.get_spend(key)
        async with self._lock:
            return self._local.get(key, 0.0)

    async def check(self, account_id: str, estimate: float) -> float:
        """Reserve ``estimate`` against the limit; returns the amount reserved."""
        if self.monthly_limit_usd <= 0:
            return 0.0
        estimate = max(0.0, estimate)
        key = self._key(account_id)
        if self.cache:
            reserved, spent = await self.cache.reserve_spend(
                key, estimate, self.monthly_limit_usd, SPEND_TTL_SECONDS
            )
        else:
            async with self._lock:
                spent = self._local.get(key, 0.0)
                reserved = spent + estimate <= self.monthly_limit_usd
                if reserved:
                    self._local[key] = spent + estimate
        if not reserved:
            logger.warning(
                "budget_exceeded",
                account_id=account_id,
                spent_usd=round(spent, 6),
                estimate_usd=round(estimate, 6),
            )
            raise BudgetExceededError(
                "Monthly AI budget exceeded",
                detail={
                    "limit_usd": self.monthly_limit_usd,
                    "spent_usd": round(spent, 6),
                },
            )
        return estimate

    async def record(
        self, account_id: str, cost: float, *, reserved: float = 0.0
    ) -> float:
        """Settle a call: replace its reservation with the actual ``cost``."""
        delta = max(0.0, cost) - reserved
        if delta == 0:
            return await self.spent(account_id)
        return await self._add(account_id, delta)

    async def release(self, account_id: str, reserved: float) -> float:
        if reserved <= 0:
            return await self.spent(account_id)
        return await self._add(account_id, -reserved)

    async def _add(self, account_id: str, delta: float) -> float:
        key = self._key(account_id)
        if self.cache:
            return await self.cache.add_spend(key, delta, SPEND_TTL_SECONDS)
        async with self._lock:
            total = max(0.0, self._local.get(key, 0.0) + delta)
            self._local[key] = total
            return total


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    half_open_successes: int = 1


class CircuitBreaker:
    def __init__(
        self,
        config: CircuitBreakerConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._clock = clock
        self._state = "closed"
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = 0.0
        self._half_open_in_flight = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> str:
        return self._state

    async def allow(self) -> bool:
        async with self._lock:
            if self._state == "open":
                if self._clock() - self._opened_at >= self.config.recovery_timeout:
                    self._state = "half_open"
                    self._half_open_in_flight = False
                    self._failure_count = 0
                    self._success_count = 0
                else:
                    return False

            if self._state == "half_open":
                if self._half_open_in_flight:
                    return False
                self._half_open_in_flight = True
                return True

            return True

    async def release(self) -> None:
        """Give back a half-open probe slot without recording an outcome."""
        async with self._lock:
            self._half_open_in_flight = False

    async def on_success(self) -> None:
        async with self._lock:
            if self._state == "half_open":
                self._success_count += 1
                self._half_open_in_flight = False
                if self._success_count >= self.config.half_open_successes:
                    self._state = "closed"
                    self._failure_count = 0
                    self._success_count = 0
                return

            self._failure_count = 0

    async def on_failure(self) -> None:
        async with self._lock:
            if self._state == "half_open":
                self._state = "open"
                self._opened_at = self._clock()
                self._half_open_in_flight = False
                self._failure_count = 0
                self._success_count = 0
                return

            self._failure_count += 1
            if self._failure_count >= self.config.failure_threshold:
                self._state = "open"
                self._opened_at = self._clock()
                self._success_count = 0


class ResilientInvoker:
    """Retry-then-fail-over wrapper around provider calls.

    Transient ``ProviderCallError``s are retried on the same provider with
    quadrupling backoff, then the next candidate is tried. Missing
    credentials skip straight to the next candidate. Anything else
    (including rate and budget rejections) propagates unchanged.
    """

    def __init__(
        self,
        *,
        max_retries: int = 2,
        backoff_ms: int = 500,
        breaker_config: Optional[CircuitBreakerConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.max_retries = max_retries
        self.backoff_ms = backoff_ms
        self.breaker_config = breaker_config or CircuitBreakerConfig()
        self._sleep = sleep
        self._breakers: Dict[str, CircuitBreaker] = {}

    def breaker(self, provider_id: str) -> CircuitBreaker:
        if provider_id not in self._breakers:
            self._breakers[provider_id] = CircuitBreaker(self.breaker_config)
        return self._breakers[provider_id]

    async def call(
        self,
        candidates: Sequence[ProviderRecord],
        fn: Callable[[ProviderRecord], Awaitable[T]],
    ) -> T:
        if not candidates:
            raise ConfigurationError("No provider candidates available")
        last_error: Optional[Exception] = None
        for index, provider in enumerate(candidates):
            breaker = self.breaker(provider.id)
            if not await breaker.allow():
                logger.warning("provider_circuit_open", provider_id=provider.id)
                last_error = ProviderCallError(
                    f"Circuit open for provider {provider.name}",
                    transient=True,
                    provider_id=provider.id,
                )
                continue
            if index:
                logger.info("provider_failover", provider_id=provider.id, position=index)
            for attempt in range(self.max_retries + 1):
                try:
                    result = await fn(provider)
                except ConfigurationError as exc:
                    await breaker.release()
                    logger.warning(
                        "provider_skipped", provider_id=provider.id, error=exc.message
                    )
                    last_error = exc
                    break
                except ProviderCallError as exc:
                    if not exc.transient:
                        await breaker.release()
                        raise
                    await breaker.on_failure()
                    last_error = exc
                    logger.warning(
                        "provider_call_failed",
                        provider_id=provider.id,
                        attempt=attempt + 1,
                        upstream_status=exc.upstream_status,
                        error=exc.message,
                    )
                    if attempt >= self.max_retries or breaker.state == "open":
                        break
                    await self._sleep(self.backoff_ms * (4 ** attempt) / 1000.0)
                except Exception:
                    await breaker.release()
                    raise
                else:
                    await breaker.on_success()
                    return result
        logger.error("provider_candidates_exhausted", count=len(candidates))
        assert last_error is not None
        raise last_error
