from __future__ import annotations

from typing import List, Optional, Protocol

from fieldllm.logging import get_logger
from fieldllm.storage.models import DEFAULT_PROVIDER, ProviderRecord
from fieldllm.storage.provider_cache import ProviderCache

logger = get_logger(__name__)


class ProviderStore(Protocol):
    def list_providers(self, account_id: Optional[str]) -> List[ProviderRecord]: ...

    def get_provider_api_key(self, provider_id: str) -> Optional[str]: ...


def _ordering_key(provider: ProviderRecord, account_id: Optional[str]) -> tuple:
    owned = provider.account_id is not None and provider.account_id == account_id
    return (0 if owned else 1, 0 if provider.is_default else 1)


class CachedProviderRepository:
    """Tenant provider lookups fronted by an injected cache.

    Stale reads are acceptable for metadata, so list lookups go through the
    cache. Credentials bypass it and are read from the store on every call.
    """

    def __init__(self, store: ProviderStore, cache: ProviderCache) -> None:
        self.store = store
        self.cache = cache
        self.logger = logger

    async def get_providers(self, account_id: Optional[str]) -> List[ProviderRecord]:
        cached = await self.cache.get(account_id)
        if cached is not None:
            return cached
        providers = [
            p for p in self.store.list_providers(account_id) if p.is_active
        ]
        providers.sort(key=lambda p: _ordering_key(p, account_id))
        await self.cache.set(account_id, providers)
        self.logger.debug(
            "provider_cache_populated", account_id=account_id, count=len(providers)
        )
        return [p.without_secret() for p in providers]

    async def get_providers_by_use_case(
        self, use_case: str, account_id: Optional[str]
    ) -> List[ProviderRecord]:
        providers = await self.get_providers(account_id)
        return [p for p in providers if p.supports(use_case)]

    async def get_default_provider(self, account_id: Optional[str]) -> Optional[ProviderRecord]:
        providers = await self.get_providers(account_id)
        return next((p for p in providers if p.is_default), None)

    async def find_by_model(
        self, model: str, account_id: Optional[str]
    ) -> Optional[ProviderRecord]:
        providers = await self.get_providers(account_id)
        return next((p for p in providers if p.model == model), None)

    def get_credential(self, provider: ProviderRecord) -> Optional[str]:
        """Encrypted key for ``provider``, read fresh from the store."""
        if provider.id == DEFAULT_PROVIDER.id:
            return None
        return self.store.get_provider_api_key(provider.id)

    async def invalidate(self, account_id: Optional[str] = None) -> None:
        await self.cache.invalidate(account_id)
        self.logger.info("provider_cache_invalidated", account_id=account_id)
