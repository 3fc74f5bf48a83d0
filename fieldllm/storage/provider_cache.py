from __future__ import annotations

import time
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from fieldllm.logging import get_logger
from fieldllm.storage.models import ProviderRecord
from fieldllm.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class ProviderCache(Protocol):
    """Per-tenant cache of provider metadata (never credentials)."""

    async def get(self, account_id: Optional[str]) -> Optional[List[ProviderRecord]]: ...

    async def set(self, account_id: Optional[str], providers: List[ProviderRecord]) -> None: ...

    async def invalidate(self, account_id: Optional[str] = None) -> None: ...


class InMemoryProviderCache:
    """Process-local TTL cache.

    Reads take no lock and may serve an entry that another request is
    about to replace; writes replace the whole list (last writer wins).
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Optional[str], Tuple[float, List[ProviderRecord]]] = {}

    async def get(self, account_id: Optional[str]) -> Optional[List[ProviderRecord]]:
        entry = self._entries.get(account_id)
        if entry is None:
            return None
        expires_at, providers = entry
        if self._clock() >= expires_at:
            self._entries.pop(account_id, None)
            return None
        return list(providers)

    async def set(self, account_id: Optional[str], providers: List[ProviderRecord]) -> None:
        self._entries[account_id] = (
            self._clock() + self.ttl_seconds,
            [p.without_secret() for p in providers],
        )

    async def invalidate(self, account_id: Optional[str] = None) -> None:
        if account_id is None:
            self._entries.clear()
        else:
            self._entries.pop(account_id, None)


class RedisProviderCache:
    """Provider cache shared by all workers through Redis."""

    def __init__(self, cache: RedisCache, ttl_seconds: int = 300) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def get(self, account_id: Optional[str]) -> Optional[List[ProviderRecord]]:
        payload = await self.cache.get_provider_list(account_id)
        if payload is None:
            return None
        try:
            return [ProviderRecord.from_dict(item) for item in payload]
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning(
                "provider_cache_entry_invalid", account_id=account_id, error=str(exc)
            )
            return None

    async def set(self, account_id: Optional[str], providers: List[ProviderRecord]) -> None:
        await self.cache.set_provider_list(
            account_id, [p.to_dict() for p in providers], self.ttl_seconds
        )

    async def invalidate(self, account_id: Optional[str] = None) -> None:
        await self.cache.invalidate_provider_lists(account_id)
