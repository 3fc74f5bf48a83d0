from __future__ import annotations

import threading
import uuid
from typing import Dict, List, Optional

from fieldllm.logging import get_logger
from fieldllm.storage.models import ProviderRecord, Session, User


class MemoryStore:
    """In-memory store for users, sessions and provider configuration."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.providers: Dict[str, ProviderRecord] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()

    # Users and sessions -------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        role: str = "user",
        account_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            user = User(
                id=user_id or str(uuid.uuid4()),
                email=email,
                role=role,
                account_id=account_id,
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise KeyError(f"unknown user {user_id}")
            session = Session.new(user_id, ttl_minutes, user_agent)
            self.sessions[session.id] = session
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    # Providers ----------------------------------------------------------

    def upsert_provider(self, provider: ProviderRecord) -> ProviderRecord:
        with self._data_lock:
            self.providers[provider.id] = provider
            self.logger.info(
                "provider_upserted",
                provider_id=provider.id,
                account_id=provider.account_id,
                family=provider.provider,
            )
            return provider

    def list_providers(self, account_id: Optional[str]) -> List[ProviderRecord]:
        """Active providers owned by ``account_id`` plus global ones."""
        with self._data_lock:
            return [
                p
                for p in self.providers.values()
                if p.is_active and (p.account_id is None or p.account_id == account_id)
            ]

    def get_provider_api_key(self, provider_id: str) -> Optional[str]:
        with self._data_lock:
            provider = self.providers.get(provider_id)
            return provider.api_key_encrypted if provider else None
