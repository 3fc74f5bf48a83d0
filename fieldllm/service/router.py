from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Tuple

from fieldllm.config import Settings
from fieldllm.logging import get_logger
from fieldllm.service.context import ExecutionContext
from fieldllm.service.model_backend import (
    ChatModel,
    GenerationRequest,
    GenerationResult,
    ModelAdapter,
)
from fieldllm.service.providers import CachedProviderRepository
from fieldllm.service.resilience import (
    BudgetTracker,
    CostEstimator,
    ResilientInvoker,
    TenantRateLimiter,
)
from fieldllm.storage.models import DEFAULT_PROVIDER, ProviderRecord

logger = get_logger(__name__)


@dataclass
class RoutedResult:
    provider: ProviderRecord
    model: str
    result: GenerationResult
    cost_usd: float = 0.0


@dataclass
class RoutedStream:
    provider: ProviderRecord
    model: str
    chunks: AsyncIterator[str]


class ProviderRouter:
    """Selects a tenant provider and invokes it under rate, budget and retry rules."""

    def __init__(
        self,
        providers: CachedProviderRepository,
        adapter: ModelAdapter,
        settings: Settings,
        *,
        rate_limiter: TenantRateLimiter,
        budget: BudgetTracker,
        invoker: ResilientInvoker,
        costs: Optional[CostEstimator] = None,
    ) -> None:
        self.providers = providers
        self.adapter = adapter
        self.settings = settings
        self.rate_limiter = rate_limiter
        self.budget = budget
        self.invoker = invoker
        self.costs = costs or CostEstimator()

    async def select_provider(
        self,
        account_id: str,
        use_case: str,
        *,
        model_override: Optional[str] = None,
        fallback: Optional[ProviderRecord] = None,
        skip_default: bool = False,
    ) -> ProviderRecord:
        fallback = fallback or DEFAULT_PROVIDER
        if model_override:
            match = await self.providers.find_by_model(model_override, account_id)
            if match is None:
                logger.warning(
                    "model_override_unmatched",
                    account_id=account_id,
                    model=model_override,
                )
                return fallback
            return match
        by_use_case = await self.providers.get_providers_by_use_case(use_case, account_id)
        if by_use_case:
            return by_use_case[0]
        if skip_default:
            return fallback
        default = await self.providers.get_default_provider(account_id)
        return default or fallback

    async def _candidates(
        self,
        primary: ProviderRecord,
        account_id: str,
        use_case: str,
        pinned: bool,
    ) -> List[ProviderRecord]:
        if pinned or not self.settings.resilience_enabled:
            return [primary]
        candidates = [primary]
        alternates = await self.providers.get_providers_by_use_case(use_case, account_id)
        default = await self.providers.get_default_provider(account_id)
        for provider in [*alternates, default]:
            if provider and provider.id not in {c.id for c in candidates}:
                candidates.append(provider)
        return candidates

    def _open_model(self, provider: ProviderRecord) -> ChatModel:
        api_key = self.adapter.resolve_api_key(
            provider, self.providers.get_credential(provider)
        )
        return self.adapter.build(provider, api_key)

    async def _admit(
        self, ctx: ExecutionContext, provider: ProviderRecord, request: GenerationRequest
    ) -> Tuple[GenerationRequest, float]:
        """Apply defaults, then run the rate gate and reserve budget for one call."""
        await self.rate_limiter.check(ctx.account_id)
        prepared = self.adapter.apply_defaults(request, provider)
        estimate = self.costs.estimate(
            provider.model,
            (prepared.system_prompt or "") + prepared.prompt,
            prepared.max_tokens or self.settings.default_max_tokens,
        )
        reserved = await self.budget.check(ctx.account_id, estimate)
        return prepared, reserved

    async def generate(
        self,
        ctx: ExecutionContext,
        request: GenerationRequest,
        *,
        use_case: str = "general",
        model_override: Optional[str] = None,
        fallback: Optional[ProviderRecord] = None,
        skip_default: bool = False,
    ) -> RoutedResult:
        primary = await self.select_provider(
            ctx.account_id,
            use_case,
            model_override=model_override,
            fallback=fallback,
            skip_default=skip_default,
        )
        _, reserved = await self._admit(ctx, primary, request)
        logger.info(
            "provider_selected",
            account_id=ctx.account_id,
            provider_id=primary.id,
            model=primary.model,
            use_case=use_case,
        )

        async def _invoke(provider: ProviderRecord) -> RoutedResult:
            model = self._open_model(provider)
            prepared = self.adapter.apply_defaults(request, provider)
            result = await model.generate(prepared)
            return RoutedResult(provider=provider, model=model.model, result=result)

        try:
            if self.settings.resilience_enabled:
                candidates = await self._candidates(
                    primary, ctx.account_id, use_case, pinned=bool(model_override)
                )
                routed = await self.invoker.call(candidates, _invoke)
            else:
                routed = await _invoke(primary)
        except BaseException:
            await self.budget.release(ctx.account_id, reserved)
            raise

        routed.cost_usd = self.costs.actual(routed.model, routed.result.usage)
        await self.budget.record(ctx.account_id, routed.cost_usd, reserved=reserved)
        logger.info(
            "provider_call_completed",
            account_id=ctx.account_id,
            provider_id=routed.provider.id,
            model=routed.model,
            total_tokens=routed.result.usage.get("total_tokens", 0),
            cost_usd=round(routed.cost_usd, 6),
        )
        return routed

    async def stream(
        self,
        ctx: ExecutionContext,
        request: GenerationRequest,
        *,
        use_case: str = "general",
        model_override: Optional[str] = None,
    ) -> RoutedStream:
        """Open a streaming call against the selected provider (no fail-over).

        The first chunk is pulled before returning so connection and auth
        failures raise here instead of inside an already-started response.
        The reserved estimate stays booked as the stream's spend.
        """
        provider = await self.select_provider(
            ctx.account_id, use_case, model_override=model_override
        )
        prepared, reserved = await self._admit(ctx, provider, request)
        try:
            model = self._open_model(provider)
            chunks = model.stream(prepared)
            try:
                first: Optional[str] = await chunks.__anext__()
            except StopAsyncIteration:
                first = None
        except BaseException:
            await self.budget.release(ctx.account_id, reserved)
            raise
        logger.info(
            "provider_stream_started",
            account_id=ctx.account_id,
            provider_id=provider.id,
            model=model.model,
        )
        return RoutedStream(
            provider=provider, model=model.model, chunks=_resume(first, chunks)
        )


async def _resume(first: Optional[str], rest: AsyncIterator[str]) -> AsyncIterator[str]:
    if first is not None:
        yield first
    async for chunk in rest:
        yield chunk
