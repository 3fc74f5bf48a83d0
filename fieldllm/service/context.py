from __future__ import annotations

import hmac
from dataclasses import dataclass, replace
from typing import Any, Dict, Mapping, Optional, Tuple

from fieldllm.config import Settings
from fieldllm.logging import get_logger
from fieldllm.service.auth import AuthService
from fieldllm.service.errors import AuthenticationError, BadRequestError

logger = get_logger(__name__)

SERVICE_ROLE = "service_role"
ALL_PERMISSIONS: Tuple[str, ...] = ("all",)

# Keys a session caller may never change through workflow.context
_IDENTITY_KEYS = ("user_id", "account_id", "role", "permissions")
_OVERRIDE_ALIASES = {
    "userId": "user_id",
    "user_id": "user_id",
    "accountId": "account_id",
    "account_id": "account_id",
    "role": "role",
    "userRole": "role",
    "permissions": "permissions",
}


@dataclass(frozen=True)
class ExecutionContext:
    """Caller identity resolved once per request."""

    user_id: str
    account_id: str
    role: str
    permissions: Tuple[str, ...] = ()
    auth_header: Optional[str] = None
    auth_token: Optional[str] = None
    source: str = "session"

    @property
    def trusted(self) -> bool:
        return self.source in {"headers", "service"}

    @property
    def forwarded_authorization(self) -> Optional[str]:
        if self.auth_header:
            return self.auth_header
        if self.auth_token:
            return f"Bearer {self.auth_token}"
        return None

    def public_view(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "accountId": self.account_id,
            "role": self.role,
            "permissions": list(self.permissions),
        }

    def with_overrides(self, overrides: Optional[Mapping[str, Any]]) -> "ExecutionContext":
        if not overrides:
            return self
        changes: Dict[str, Any] = {}
        ignored = []
        for key, value in overrides.items():
            field = _OVERRIDE_ALIASES.get(key)
            if field is None or value is None:
                ignored.append(key)
                continue
            if field in _IDENTITY_KEYS and not self.trusted:
                ignored.append(key)
                continue
            if field == "permissions":
                if isinstance(value, str):
                    value = (value,)
                changes[field] = tuple(str(v) for v in value)
            else:
                changes[field] = str(value)
        if ignored:
            logger.info(
                "workflow_context_keys_ignored",
                keys=sorted(ignored),
                source=self.source,
            )
        return replace(self, **changes) if changes else self


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.title())
    if value is None:
        return None
    value = value.strip()
    return value or None


class ContextResolver:
    """Resolves the ExecutionContext for an inbound request.

    Paths are tried in order: explicit service headers, the service
    credential plus a body tenant, then an interactive session.
    """

    def __init__(self, auth: AuthService, settings: Settings) -> None:
        self.auth = auth
        self.settings = settings

    def is_service_credential(self, authorization: Optional[str]) -> bool:
        key = self.settings.service_role_key
        token = AuthService._extract_bearer(authorization)
        if not key or not token:
            return False
        return hmac.compare_digest(token.encode(), key.encode())

    async def resolve(
        self,
        headers: Mapping[str, str],
        *,
        session_id: Optional[str] = None,
        body_account_id: Optional[str] = None,
    ) -> ExecutionContext:
        authorization = _header(headers, "authorization")
        header_user = _header(headers, "x-user-id")
        header_account = _header(headers, "x-account-id")
        is_service = self.is_service_credential(authorization)

        if header_user and header_account:
            if self.settings.trusted_headers_require_service_key and not is_service:
                logger.warning("trusted_headers_rejected", reason="missing_service_key")
            else:
                return ExecutionContext(
                    user_id=header_user,
                    account_id=header_account,
                    role=_header(headers, "x-user-role") or SERVICE_ROLE,
                    permissions=ALL_PERMISSIONS,
                    auth_header=authorization,
                    source="headers",
                )

        if is_service:
            if not body_account_id:
                raise BadRequestError("Account ID could not be resolved")
            return ExecutionContext(
                user_id=SERVICE_ROLE,
                account_id=body_account_id,
                role=SERVICE_ROLE,
                permissions=ALL_PERMISSIONS,
                auth_header=authorization,
                source="service",
            )

        auth_ctx = await self.auth.authenticate(authorization, session_id)
        if auth_ctx is None:
            raise AuthenticationError("Unauthorized")
        if not auth_ctx.account_id:
            raise BadRequestError("Account ID could not be resolved")
        token = AuthService._extract_bearer(authorization)
        return ExecutionContext(
            user_id=auth_ctx.user_id,
            account_id=auth_ctx.account_id,
            role=auth_ctx.role or "user",
            permissions=(),
            auth_header=authorization,
            auth_token=token,
            source="session",
        )
