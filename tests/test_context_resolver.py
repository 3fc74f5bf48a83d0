from datetime import datetime, timedelta

import pytest

from fieldllm.config import Settings
from fieldllm.service.auth import AuthService
from fieldllm.service.context import (
    ALL_PERMISSIONS,
    SERVICE_ROLE,
    ContextResolver,
    ExecutionContext,
)
from fieldllm.service.errors import AuthenticationError, BadRequestError
from fieldllm.storage.memory import MemoryStore

SERVICE_KEY = "svc-key-123"


def _resolver(**overrides):
    settings = Settings(
        service_role_key=SERVICE_KEY,
        jwt_secret="unit-test-jwt-secret",
        **overrides,
    )
    store = MemoryStore()
    auth = AuthService(store, settings)
    return ContextResolver(auth, settings), store, auth


async def test_trusted_headers_take_precedence():
    resolver, _, _ = _resolver()
    ctx = await resolver.resolve(
        {"x-user-id": "u-1", "x-account-id": "acct-1", "x-user-role": "dispatcher"},
        body_account_id="other",
    )
    assert ctx.user_id == "u-1"
    assert ctx.account_id == "acct-1"
    assert ctx.role == "dispatcher"
    assert ctx.permissions == ALL_PERMISSIONS
    assert ctx.source == "headers"
    assert ctx.trusted


async def test_trusted_headers_default_role_is_service():
    resolver, _, _ = _resolver()
    ctx = await resolver.resolve({"x-user-id": "u-1", "x-account-id": "acct-1"})
    assert ctx.role == SERVICE_ROLE


async def test_headers_require_service_key_when_configured():
    resolver, _, _ = _resolver(trusted_headers_require_service_key=True)
    with pytest.raises(AuthenticationError):
        await resolver.resolve({"x-user-id": "u-1", "x-account-id": "acct-1"})

    ctx = await resolver.resolve(
        {
            "x-user-id": "u-1",
            "x-account-id": "acct-1",
            "authorization": f"Bearer {SERVICE_KEY}",
        }
    )
    assert ctx.source == "headers"


async def test_service_credential_uses_body_account():
    resolver, _, _ = _resolver()
    ctx = await resolver.resolve(
        {"authorization": f"Bearer {SERVICE_KEY}"}, body_account_id="acct-9"
    )
    assert ctx.account_id == "acct-9"
    assert ctx.user_id == SERVICE_ROLE
    assert ctx.role == SERVICE_ROLE
    assert ctx.permissions == ("all",)
    assert ctx.forwarded_authorization == f"Bearer {SERVICE_KEY}"


async def test_service_credential_without_account_is_bad_request():
    resolver, _, _ = _resolver()
    with pytest.raises(BadRequestError) as excinfo:
        await resolver.resolve({"authorization": f"Bearer {SERVICE_KEY}"})
    assert excinfo.value.message == "Account ID could not be resolved"


async def test_wrong_service_key_falls_through_to_session_auth():
    resolver, _, _ = _resolver()
    with pytest.raises(AuthenticationError) as excinfo:
        await resolver.resolve({"authorization": "Bearer not-the-key"}, body_account_id="a")
    assert excinfo.value.status_code == 401


async def test_session_cookie_resolves_user_account():
    resolver, store, _ = _resolver()
    user = store.create_user("tech@example.com", role="technician", account_id="acct-2")
    session = store.create_session(user.id)

    ctx = await resolver.resolve({}, session_id=session.id, body_account_id="spoofed")

    assert ctx.user_id == user.id
    assert ctx.account_id == "acct-2"
    assert ctx.role == "technician"
    assert ctx.permissions == ()
    assert ctx.source == "session"
    assert not ctx.trusted


async def test_expired_session_is_unauthorized():
    resolver, store, _ = _resolver()
    user = store.create_user("old@example.com", account_id="acct-2")
    session = store.create_session(user.id)
    session.expires_at = datetime.utcnow() - timedelta(hours=1)

    with pytest.raises(AuthenticationError):
        await resolver.resolve({}, session_id=session.id)


async def test_session_user_without_account_is_bad_request():
    resolver, store, _ = _resolver()
    user = store.create_user("floating@example.com")
    session = store.create_session(user.id)
    with pytest.raises(BadRequestError):
        await resolver.resolve({}, session_id=session.id)


async def test_access_token_resolves_and_is_forwarded():
    resolver, store, auth = _resolver()
    user = store.create_user("owner@example.com", role="owner", account_id="acct-3")
    token = auth.issue_access_token(user)

    ctx = await resolver.resolve({"authorization": f"Bearer {token}"})

    assert ctx.user_id == user.id
    assert ctx.account_id == "acct-3"
    assert ctx.auth_token == token
    assert ctx.forwarded_authorization == f"Bearer {token}"


async def test_tampered_access_token_is_rejected():
    resolver, store, auth = _resolver()
    user = store.create_user("owner@example.com", account_id="acct-3")
    token = auth.issue_access_token(user)
    header, payload, signature = token.split(".")
    tampered = f"{header}.{payload}.{signature[:-2]}xx"

    with pytest.raises(AuthenticationError):
        await resolver.resolve({"authorization": f"Bearer {tampered}"})


async def test_no_credentials_is_unauthorized():
    resolver, _, _ = _resolver()
    with pytest.raises(AuthenticationError) as excinfo:
        await resolver.resolve({})
    assert excinfo.value.message == "Unauthorized"


def test_session_context_ignores_identity_overrides():
    ctx = ExecutionContext(user_id="u", account_id="a", role="technician")
    merged = ctx.with_overrides({"accountId": "evil", "role": "owner", "userId": "x"})
    assert merged == ctx


def test_trusted_context_accepts_identity_overrides():
    ctx = ExecutionContext(
        user_id=SERVICE_ROLE,
        account_id="a",
        role=SERVICE_ROLE,
        permissions=ALL_PERMISSIONS,
        source="service",
    )
    merged = ctx.with_overrides(
        {"userId": "tech-7", "userRole": "technician", "permissions": "jobs:read", "junk": 1}
    )
    assert merged.user_id == "tech-7"
    assert merged.role == "technician"
    assert merged.permissions == ("jobs:read",)
    assert merged.account_id == "a"
    assert merged.source == "service"


def test_public_view_hides_credentials():
    ctx = ExecutionContext(
        user_id="u", account_id="a", role="owner", auth_header="Bearer secret-token"
    )
    view = ctx.public_view()
    assert view == {"userId": "u", "accountId": "a", "role": "owner", "permissions": []}
