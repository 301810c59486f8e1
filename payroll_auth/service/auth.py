from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from payroll_auth.config import Settings
from payroll_auth.jwt_codec import (
    ExpiredTokenError,
    InvalidTokenError,
    decode_jwt,
    encode_jwt,
)
from payroll_auth.logging import get_logger, token_fingerprint
from payroll_auth.service.errors import AuthenticationError, ValidationError
from payroll_auth.storage.token_store import (
    RevocationResult,
    TokenStore,
    refresh_key,
    user_tokens_key,
)

logger = get_logger(__name__)

# Claims copied from a refresh token into the access token it mints
_IDENTITY_CLAIMS = (
    "user_id",
    "full_name",
    "role",
    "primary_class",
    "current_class",
    "created_in",
)
_RESERVED_CLAIMS = {"exp", "iat", "jti", "token_type"}


@dataclass
class AuthContext:
    user_id: str
    role: Optional[str] = None
    full_name: Optional[str] = None
    primary_class: Optional[str] = None
    current_class: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class AuthService:
    """Issues, checks and revokes access/refresh token pairs."""

    def __init__(
        self,
        settings: Settings,
        tokens: TokenStore,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.tokens = tokens
        self._clock = clock
        self.logger = logger

    @property
    def access_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    @property
    def refresh_ttl_seconds(self) -> int:
        return self.settings.refresh_token_ttl_minutes * 60

    def _mint(self, claims: Dict[str, Any], token_type: str, ttl: int, secret: str) -> str:
        now = int(self._clock())
        payload = {k: v for k, v in claims.items() if k not in _RESERVED_CLAIMS}
        payload.update(
            {
                "token_type": token_type,
                "jti": str(uuid.uuid4()),
                "iat": now,
                "exp": now + ttl,
            }
        )
        return encode_jwt(payload, secret)

    async def issue_tokens(self, claims: Dict[str, Any]) -> Dict[str, Any]:
        """Mint an access/refresh pair for an authenticated user.

        ``claims`` must carry ``user_id``; the remaining identity claims
        (role, payroll class, ...) are embedded as given. The refresh token is
        registered in Redis so ``logout_all`` can revoke it later.
        """
        user_id = claims.get("user_id")
        if user_id in (None, ""):
            raise ValidationError("user_id claim is required")

        access_token = self._mint(
            claims, "access", self.access_ttl_seconds, self.settings.jwt_secret
        )
        refresh_token = self._mint(
            claims, "refresh", self.refresh_ttl_seconds, self.settings.refresh_secret
        )
        await self._register_refresh_token(user_id, refresh_token)
        return {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "token_type": "bearer",
            "expires_in": self.access_ttl_seconds,
        }

    async def _register_refresh_token(self, user_id: Any, refresh_token: str) -> bool:
        if not self.tokens.is_connected:
            self.logger.warning("refresh_token_not_tracked", user_id=user_id)
            return False
        ttl = self.refresh_ttl_seconds
        record = json.dumps(
            {
                "user_id": user_id,
                "issued_at": datetime.fromtimestamp(
                    self._clock(), timezone.utc
                ).isoformat(),
            }
        )
        try:
            pipe = self.tokens.client.pipeline()
            pipe.set(refresh_key(refresh_token), record, ex=ttl)
            # Track token in the user's set for logout-all
            pipe.sadd(user_tokens_key(user_id), refresh_token)
            pipe.expire(user_tokens_key(user_id), ttl)
            await pipe.execute()
        except Exception as exc:
            self.logger.warning(
                "refresh_token_register_failed", user_id=user_id, error=str(exc)
            )
            return False
        return True

    def _decode(self, token: str, secret: str, token_type: str) -> Dict[str, Any]:
        payload = decode_jwt(token, secret, now=self._clock())
        if payload.get("token_type") != token_type or payload.get("user_id") is None:
            raise InvalidTokenError("unexpected token type")
        return payload

    def _verify(self, token: str, secret: str, token_type: str) -> Dict[str, Any]:
        try:
            return self._decode(token, secret, token_type)
        except ExpiredTokenError:
            raise AuthenticationError("Token has expired")
        except InvalidTokenError:
            raise AuthenticationError("Invalid token")

    async def authenticate(self, token: Optional[str]) -> AuthContext:
        if not token:
            raise AuthenticationError("No token provided")
        payload = self._verify(token, self.settings.jwt_secret, "access")
        if await self.tokens.is_blacklisted(token):
            self.logger.info("access_token_blacklisted", user_id=payload.get("user_id"))
            raise AuthenticationError("Token has been revoked")
        return AuthContext(
            user_id=str(payload["user_id"]),
            role=payload.get("role"),
            full_name=payload.get("full_name"),
            primary_class=payload.get("primary_class"),
            current_class=payload.get("current_class"),
            claims=payload,
        )

    async def logout(
        self, access_token: str, refresh_token: Optional[str] = None
    ) -> Dict[str, bool]:
        """Blacklist the presented tokens until they expire.

        Only tokens signed with our secrets are written. An expired access
        token needs no entry and is accepted as already logged out. A refresh
        token that fails verification is skipped.

        Raises:
            AuthenticationError: the access token is forged or malformed.
        """
        access_revoked = False
        try:
            self._decode(access_token, self.settings.jwt_secret, "access")
        except ExpiredTokenError:
            self.logger.info("logout_access_token_expired", fp=token_fingerprint(access_token))
        except InvalidTokenError as exc:
            self.logger.warning(
                "logout_rejected", reason=str(exc), fp=token_fingerprint(access_token)
            )
            raise AuthenticationError("Invalid token")
        else:
            access_revoked = await self.tokens.blacklist(access_token)

        refresh_revoked = False
        if refresh_token:
            try:
                self._decode(refresh_token, self.settings.refresh_secret, "refresh")
            except InvalidTokenError as exc:
                self.logger.info(
                    "logout_refresh_token_skipped",
                    reason=str(exc),
                    fp=token_fingerprint(refresh_token),
                )
            else:
                refresh_revoked = await self.tokens.blacklist(refresh_token)
        return {"access_revoked": access_revoked, "refresh_revoked": refresh_revoked}

    async def logout_all(self, user_id: Any) -> RevocationResult:
        """Revoke every refresh token of ``user_id``.

        Raises:
            StoreUnavailable: Redis is down; nothing was revoked.
        """
        return await self.tokens.revoke_all_for_user(user_id)

    async def refresh(self, refresh_token: Optional[str]) -> Dict[str, Any]:
        if not refresh_token:
            raise ValidationError("Please log in")
        if await self.tokens.is_blacklisted(refresh_token):
            raise AuthenticationError("Please log in")
        try:
            payload = self._verify(refresh_token, self.settings.refresh_secret, "refresh")
        except AuthenticationError as exc:
            raise AuthenticationError("Please log in", detail={"reason": exc.message})
        if not await self.tokens.refresh_token_active(refresh_token):
            self.logger.info("refresh_token_untracked", user_id=payload.get("user_id"))
            raise AuthenticationError("Please log in")

        identity = {k: payload[k] for k in _IDENTITY_CLAIMS if k in payload}
        access_token = self._mint(
            identity, "access", self.access_ttl_seconds, self.settings.jwt_secret
        )
        self.logger.info("access_token_refreshed", user_id=payload.get("user_id"))
        return {
            "access_token": access_token,
            "token_type": "bearer",
            "expires_in": self.access_ttl_seconds,
        }


__all__ = ["AuthContext", "AuthService", "extract_bearer"]
