from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple


@dataclass
class User:
    id: str
    email: str
    role: str = "user"
    account_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    is_active: bool = True
    meta: Dict | None = None


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        *,
        meta: Dict | None = None,
    ) -> "Session":
        now = datetime.utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            meta=meta,
        )


@dataclass(frozen=True)
class ProviderRecord:
    """An AI provider configured globally or for one tenant."""

    id: str
    name: str
    provider: str
    model: str
    api_key_encrypted: Optional[str] = None
    is_default: bool = False
    use_cases: Tuple[str, ...] = ()
    max_tokens: Optional[int] = None
    is_active: bool = True
    account_id: Optional[str] = None

    def supports(self, use_case: str) -> bool:
        return use_case in self.use_cases

    def without_secret(self) -> "ProviderRecord":
        """Copy safe to cache: credentials are always read fresh."""
        if self.api_key_encrypted is None:
            return self
        return replace(self, api_key_encrypted=None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "provider": self.provider,
            "model": self.model,
            "is_default": self.is_default,
            "use_cases": list(self.use_cases),
            "max_tokens": self.max_tokens,
            "is_active": self.is_active,
            "account_id": self.account_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderRecord":
        use_cases = data.get("use_cases") or ()
        if isinstance(use_cases, str):
            use_cases = tuple(u.strip() for u in use_cases.split(",") if u.strip())
        max_tokens = data.get("max_tokens")
        account_id = data.get("account_id")
        return cls(
            id=str(data["id"]),
            name=data.get("name") or str(data["id"]),
            provider=str(data.get("provider", "")).lower(),
            model=data["model"],
            api_key_encrypted=data.get("api_key_encrypted"),
            is_default=bool(data.get("is_default", False)),
            use_cases=tuple(use_cases),
            max_tokens=int(max_tokens) if max_tokens is not None else None,
            is_active=bool(data.get("is_active", True)),
            account_id=str(account_id) if account_id is not None else None,
        )


# Selection fallback used when a tenant has nothing configured.
DEFAULT_PROVIDER = ProviderRecord(
    id="default",
    name="openai-gpt4o-mini",
    provider="openai",
    model="gpt-4o-mini",
    is_default=True,
    use_cases=("general",),
    max_tokens=1000,
)
