import asyncio
from datetime import datetime

import pytest

from fieldllm.service.errors import (
    BudgetExceededError,
    ConfigurationError,
    ProviderCallError,
    RateLimitedError,
)
from fieldllm.service.resilience import (
    DEFAULT_PRICING,
    BudgetTracker,
    CircuitBreaker,
    CircuitBreakerConfig,
    CostEstimator,
    ResilientInvoker,
    TenantRateLimiter,
)
from fieldllm.storage.models import ProviderRecord


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _provider(pid: str) -> ProviderRecord:
    return ProviderRecord(id=pid, name=pid, provider="openai", model="gpt-4o-mini")


async def test_rate_limiter_blocks_after_limit_and_refills():
    clock = FakeClock()
    limiter = TenantRateLimiter(None, limit=2, window_seconds=60, clock=clock)
    await limiter.check("acme")
    await limiter.check("acme")

    with pytest.raises(RateLimitedError) as excinfo:
        await limiter.check("acme")
    assert excinfo.value.status_code == 429
    assert excinfo.value.detail["retry_after"] >= 1

    # Other tenants have their own bucket
    await limiter.check("globex")

    clock.now += 31
    await limiter.check("acme")


async def test_rate_limiter_disabled_with_zero_limit():
    limiter = TenantRateLimiter(None, limit=0, window_seconds=60)
    for _ in range(100):
        await limiter.check("acme")


def test_cost_estimator_prefix_matching():
    costs = CostEstimator()
    assert costs.price_for("gpt-4o-mini") == (0.15, 0.60)
    assert costs.price_for("gpt-4o-2024-08-06") == (2.50, 10.00)
    assert costs.price_for("gpt-4o-mini-2024-07-18") == (0.15, 0.60)
    assert costs.price_for("llama-3") == DEFAULT_PRICING


def test_cost_estimator_estimate_and_actual():
    costs = CostEstimator()
    # 400 chars -> 100 input tokens
    estimate = costs.estimate("gpt-4o", "x" * 400, 1000)
    assert estimate == pytest.approx((100 * 2.50 + 1000 * 10.00) / 1_000_000)
    actual = costs.actual("gpt-4o", {"prompt_tokens": 10, "completion_tokens": 20})
    assert actual == pytest.approx((10 * 2.50 + 20 * 10.00) / 1_000_000)


async def test_budget_tracker_blocks_over_limit():
    tracker = BudgetTracker(None, 1.0, clock=lambda: datetime(2026, 3, 15))
    await tracker.record("acme", 0.75)
    await tracker.check("acme", 0.2)

    with pytest.raises(BudgetExceededError) as excinfo:
        await tracker.check("acme", 0.3)
    assert excinfo.value.status_code == 402
    assert excinfo.value.message == "Monthly AI budget exceeded"


async def test_budget_resets_each_month():
    now = {"value": datetime(2026, 3, 31)}
    tracker = BudgetTracker(None, 1.0, clock=lambda: now["value"])
    await tracker.record("acme", 0.99)
    assert await tracker.spent("acme") == pytest.approx(0.99)

    now["value"] = datetime(2026, 4, 1)
    assert await tracker.spent("acme") == 0.0
    await tracker.check("acme", 0.5)


async def test_budget_disabled_with_zero_limit():
    tracker = BudgetTracker(None, 0)
    await tracker.record("acme", 1000.0)
    assert await tracker.check("acme", 1000.0) == 0.0


async def test_concurrent_budget_checks_cannot_overshoot():
    tracker = BudgetTracker(None, 1.0, clock=lambda: datetime(2026, 3, 15))
    outcomes = await asyncio.gather(
        *[tracker.check("acme", 0.3) for _ in range(5)], return_exceptions=True
    )

    admitted = [o for o in outcomes if not isinstance(o, Exception)]
    rejected = [o for o in outcomes if isinstance(o, BudgetExceededError)]
    assert len(admitted) == 3
    assert len(rejected) == 2
    assert await tracker.spent("acme") == pytest.approx(0.9)


async def test_budget_record_settles_reservation():
    tracker = BudgetTracker(None, 1.0, clock=lambda: datetime(2026, 3, 15))
    reserved = await tracker.check("acme", 0.3)
    assert reserved == pytest.approx(0.3)
    assert await tracker.spent("acme") == pytest.approx(0.3)

    await tracker.record("acme", 0.1, reserved=reserved)
    assert await tracker.spent("acme") == pytest.approx(0.1)


async def test_budget_release_returns_reservation():
    tracker = BudgetTracker(None, 1.0, clock=lambda: datetime(2026, 3, 15))
    reserved = await tracker.check("acme", 0.8)
    with pytest.raises(BudgetExceededError):
        await tracker.check("acme", 0.3)

    await tracker.release("acme", reserved)
    await tracker.check("acme", 0.3)
    assert await tracker.spent("acme") == pytest.approx(0.3)


async def test_circuit_breaker_opens_and_recovers():
    clock = FakeClock()
    breaker = CircuitBreaker(
        CircuitBreakerConfig(failure_threshold=2, recovery_timeout=10), clock=clock
    )
    await breaker.on_failure()
    assert breaker.state == "closed"
    await breaker.on_failure()
    assert breaker.state == "open"
    assert not await breaker.allow()

    clock.now += 10
    assert await breaker.allow()
    assert breaker.state == "half_open"
    # Only one probe at a time
    assert not await breaker.allow()

    await breaker.on_success()
    assert breaker.state == "closed"


async def test_circuit_breaker_half_open_failure_reopens():
    clock = FakeClock()
    breaker = CircuitBreaker(
        CircuitBreakerConfig(failure_threshold=1, recovery_timeout=5), clock=clock
    )
    await breaker.on_failure()
    clock.now += 5
    assert await breaker.allow()
    await breaker.on_failure()
    assert breaker.state == "open"


async def test_invoker_retries_transient_with_quadrupling_backoff():
    sleep = RecordingSleep()
    invoker = ResilientInvoker(max_retries=2, backoff_ms=500, sleep=sleep)
    attempts = []

    async def flaky(provider):
        attempts.append(provider.id)
        if len(attempts) < 3:
            raise ProviderCallError("overloaded", transient=True, upstream_status=529)
        return "ok"

    result = await invoker.call([_provider("primary")], flaky)

    assert result == "ok"
    assert attempts == ["primary", "primary", "primary"]
    assert sleep.calls == [0.5, 2.0]


async def test_invoker_fails_over_after_retries_exhausted():
    sleep = RecordingSleep()
    invoker = ResilientInvoker(max_retries=1, backoff_ms=100, sleep=sleep)
    attempts = []

    async def primary_down(provider):
        attempts.append(provider.id)
        if provider.id == "primary":
            raise ProviderCallError("503", transient=True, upstream_status=503)
        return provider.id

    result = await invoker.call([_provider("primary"), _provider("backup")], primary_down)

    assert result == "backup"
    assert attempts == ["primary", "primary", "backup"]


async def test_invoker_does_not_retry_permanent_errors():
    invoker = ResilientInvoker(sleep=RecordingSleep())
    attempts = []

    async def bad_request(provider):
        attempts.append(provider.id)
        raise ProviderCallError("bad request", transient=False, upstream_status=400)

    with pytest.raises(ProviderCallError):
        await invoker.call([_provider("primary"), _provider("backup")], bad_request)
    assert attempts == ["primary"]


async def test_invoker_skips_candidates_missing_credentials():
    invoker = ResilientInvoker(sleep=RecordingSleep())

    async def needs_key(provider):
        if provider.id == "unkeyed":
            raise ConfigurationError("Missing API Key for unkeyed")
        return provider.id

    assert await invoker.call([_provider("unkeyed"), _provider("keyed")], needs_key) == "keyed"


async def test_invoker_propagates_rate_limits_untouched():
    invoker = ResilientInvoker(sleep=RecordingSleep())

    async def limited(provider):
        raise RateLimitedError("Rate limit exceeded")

    with pytest.raises(RateLimitedError):
        await invoker.call([_provider("primary"), _provider("backup")], limited)


async def test_invoker_skips_open_circuit():
    invoker = ResilientInvoker(
        max_retries=0,
        breaker_config=CircuitBreakerConfig(failure_threshold=1, recovery_timeout=60),
        sleep=RecordingSleep(),
    )
    attempts = []

    async def primary_down(provider):
        attempts.append(provider.id)
        if provider.id == "primary":
            raise ProviderCallError("down", transient=True)
        return provider.id

    candidates = [_provider("primary"), _provider("backup")]
    assert await invoker.call(candidates, primary_down) == "backup"
    assert invoker.breaker("primary").state == "open"

    attempts.clear()
    assert await invoker.call(candidates, primary_down) == "backup"
    assert attempts == ["backup"]


async def test_invoker_raises_last_error_when_exhausted():
    invoker = ResilientInvoker(max_retries=0, sleep=RecordingSleep())

    async def down(provider):
        raise ProviderCallError(f"{provider.id} down", transient=True)

    with pytest.raises(ProviderCallError) as excinfo:
        await invoker.call([_provider("a"), _provider("b")], down)
    assert excinfo.value.message == "b down"

    with pytest.raises(ConfigurationError):
        await invoker.call([], down)
