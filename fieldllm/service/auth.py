from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol

from fieldllm.config import Settings
from fieldllm.logging import get_logger
from fieldllm.storage.models import Session, User

logger = get_logger(__name__)


class AuthStore(Protocol):
    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    account_id: Optional[str]
    session_id: Optional[str] = None


class AuthService:
    """Validates interactive callers by access token or session cookie."""

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger
        self._clock_skew_leeway = timedelta(seconds=30)

    def _now(self) -> datetime:
        return datetime.utcnow()

    @staticmethod
    def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
        if not authorization:
            return None
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    async def authenticate(
        self, authorization: Optional[str], session_id: Optional[str]
    ) -> Optional[AuthContext]:
        token = self._extract_bearer(authorization)
        if token and self.settings.jwt_secret:
            token_ctx = self._authenticate_access_token(token)
            if token_ctx:
                return token_ctx
        return self.resolve_session(session_id)

    def resolve_session(self, session_id: Optional[str]) -> Optional[AuthContext]:
        if not session_id:
            return None
        sess = self.store.get_session(session_id)
        if not sess:
            return None
        if sess.expires_at <= self._now() - self._clock_skew_leeway:
            self.logger.info("session_expired", session_id=session_id)
            return None
        user = self.store.get_user(sess.user_id)
        if not user or not user.is_active:
            return None
        return AuthContext(
            user_id=user.id,
            role=user.role or "user",
            account_id=user.account_id,
            session_id=sess.id,
        )

    def _authenticate_access_token(self, token: str) -> Optional[AuthContext]:
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            return None
        user_id = payload.get("sub")
        if not user_id:
            return None
        user = self.store.get_user(str(user_id))
        if not user or not user.is_active:
            return None
        return AuthContext(
            user_id=user.id,
            role=user.role or "user",
            account_id=user.account_id,
            session_id=payload.get("sid"),
        )

    def issue_access_token(self, user: User, session_id: Optional[str] = None) -> str:
        if not self.settings.jwt_secret:
            raise RuntimeError("JWT_SECRET is required to issue access tokens")
        exp = int(time.time()) + self.settings.access_token_ttl_minutes * 60
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "sid": session_id,
            "account_id": user.account_id,
            "role": user.role,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "exp": exp,
        }
        return self._encode_jwt(payload)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to avoid algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload
