"""Redis-backed access token blacklist and refresh token revocation.

Key layout:

- ``blacklist:<access token>``: JSON ``{"user_id", "blacklisted_at"}``, expires
  together with the token's own ``exp`` claim.
- ``user:<user_id>:tokens``: set of the user's live refresh tokens.
- ``refresh:<refresh token>``: refresh token record.

The refresh keys are written by the token issuer; this module only reads and
deletes them.
"""

from __future__ import annotations

import asyncio
import json
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from payroll_auth.jwt_codec import decode_unverified
from payroll_auth.logging import get_logger, token_fingerprint
from payroll_auth.storage.errors import StoreUnavailable

logger = get_logger(__name__)

_TRANSPORT_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)


def blacklist_key(token: str) -> str:
    return f"blacklist:{token}"


def user_tokens_key(user_id: Any) -> str:
    return f"user:{user_id}:tokens"


def refresh_key(token: str) -> str:
    return f"refresh:{token}"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    CLOSED = "closed"


@dataclass
class HealthStatus:
    status: str
    message: str

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"

    def to_dict(self) -> Dict[str, str]:
        return {"status": self.status, "message": self.message}


@dataclass
class RevocationResult:
    """Outcome of revoking every refresh token of a user.

    ``requested`` is the set size before the operation, ``revoked`` the number
    of deletes that succeeded. Keys whose delete failed are listed in
    ``failed_keys`` and stay tracked in the user's set.
    """

    user_id: str
    requested: int = 0
    revoked: int = 0
    failed_keys: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed_keys

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "requested": self.requested,
            "revoked": self.revoked,
            "failed_keys": list(self.failed_keys),
        }


class TokenStore:
    """Token blacklist and per-user refresh token revocation on Redis.

    The connection moves through ``ConnectionState``: DISCONNECTED until the
    first PING succeeds, READY afterwards, back to DISCONNECTED on a transport
    error (a background task then retries with linear backoff), and CLOSED
    after ``shutdown()``. Once ``MAX_RECONNECT_ATTEMPTS`` retries fail the
    store gives up and stays DISCONNECTED.

    Read checks fail open by default; pass ``fail_closed=True`` to report
    tokens as revoked while Redis is unavailable. ``revoke_all_for_user``
    always raises ``StoreUnavailable`` instead of silently doing nothing.
    """

    MAX_RECONNECT_ATTEMPTS = 10
    RECONNECT_BACKOFF_SECONDS = 0.1

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        password: Optional[str] = None,
        *,
        db: int = 0,
        socket_timeout: float = 5.0,
        fail_closed: bool = False,
        client: Any = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.host = host
        self.port = port
        self.db = db
        self.fail_closed = fail_closed
        self._password = password
        self._socket_timeout = socket_timeout
        self._client = client
        self._clock = clock
        self._sleep = sleep
        self._state = ConnectionState.DISCONNECTED
        self._reconnect_task: Optional[asyncio.Task] = None
        self._abandoned = False

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "TokenStore":
        return cls(
            settings.redis_host,
            settings.redis_port,
            settings.redis_password,
            db=settings.redis_db,
            socket_timeout=settings.redis_socket_timeout,
            fail_closed=settings.blacklist_fail_closed,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.READY

    @property
    def client(self) -> Any:
        return self._client

    @property
    def reconnect_abandoned(self) -> bool:
        return self._abandoned

    def _create_client(self):
        return aioredis.Redis(
            host=self.host,
            port=self.port,
            password=self._password,
            db=self.db,
            decode_responses=True,
            socket_timeout=self._socket_timeout,
            socket_connect_timeout=self._socket_timeout,
        )

    async def _handshake(self) -> None:
        self._state = ConnectionState.CONNECTING
        logger.info("redis_connecting", host=self.host, port=self.port)
        await self._client.ping()
        if self._state is ConnectionState.CLOSED:
            return
        self._state = ConnectionState.READY
        logger.info("redis_ready", host=self.host, port=self.port)

    async def connect(self) -> bool:
        """Open the connection, retrying with the reconnect policy.

        Returns True once READY, False when the store is closed or every
        attempt failed.
        """
        if self._state is ConnectionState.CLOSED or self._abandoned:
            return False
        if self._state is ConnectionState.READY:
            return True
        if self._client is None:
            self._client = self._create_client()
        try:
            await self._handshake()
            return self.is_connected
        except (RedisError, OSError) as exc:
            self._state = ConnectionState.DISCONNECTED
            logger.warning("redis_connect_failed", host=self.host, error=str(exc))
        return await self._reconnect_loop()

    async def _reconnect_loop(self) -> bool:
        for attempt in range(1, self.MAX_RECONNECT_ATTEMPTS + 1):
            await self._sleep(attempt * self.RECONNECT_BACKOFF_SECONDS)
            if self._state is ConnectionState.CLOSED or self._client is None:
                return False
            try:
                await self._handshake()
                return self.is_connected
            except (RedisError, OSError) as exc:
                if self._state is not ConnectionState.CLOSED:
                    self._state = ConnectionState.DISCONNECTED
                logger.warning(
                    "redis_reconnect_failed", attempt=attempt, error=str(exc)
                )
        self._abandoned = True
        logger.error(
            "redis_reconnect_abandoned", attempts=self.MAX_RECONNECT_ATTEMPTS
        )
        return False

    def _mark_disconnected(self, exc: BaseException) -> None:
        if self._state is ConnectionState.CLOSED:
            return
        was_ready = self._state is ConnectionState.READY
        self._state = ConnectionState.DISCONNECTED
        if was_ready:
            logger.error("redis_connection_lost", error=str(exc))
        if self._abandoned:
            return
        if self._reconnect_task is None or self._reconnect_task.done():
            try:
                self._reconnect_task = asyncio.get_running_loop().create_task(
                    self._reconnect_loop()
                )
            except RuntimeError:
                # No running loop; the next connect() call retries
                self._reconnect_task = None

    def _handle_store_error(self, event: str, exc: BaseException, **context) -> None:
        if isinstance(exc, _TRANSPORT_ERRORS):
            self._mark_disconnected(exc)
        logger.error(event, error=str(exc), error_type=type(exc).__name__, **context)

    # ------------------------------------------------------------------
    # Token operations
    # ------------------------------------------------------------------

    async def blacklist(self, token: str) -> bool:
        """Blacklist an access token until its own expiry.

        The claims are read without checking the signature: only call this
        with tokens already verified by the caller. Returns False when the
        token has no ``exp`` claim, is already expired, or Redis is down.
        """
        claims = decode_unverified(token)
        if not claims or claims.get("exp") is None:
            logger.info("blacklist_skipped_no_expiry", fp=token_fingerprint(token))
            return False
        exp = claims["exp"]
        if (
            isinstance(exp, bool)
            or not isinstance(exp, (int, float))
            or not math.isfinite(exp)
        ):
            logger.info("blacklist_skipped_bad_expiry", fp=token_fingerprint(token))
            return False
        ttl = int(exp) - int(self._clock())
        if ttl <= 0:
            return False
        if not self.is_connected:
            logger.warning(
                "blacklist_store_unavailable",
                user_id=claims.get("user_id"),
                state=self._state.value,
            )
            return False

        entry = json.dumps(
            {
                "user_id": claims.get("user_id"),
                "blacklisted_at": datetime.fromtimestamp(
                    self._clock(), timezone.utc
                ).isoformat(),
            }
        )
        try:
            await self._client.setex(blacklist_key(token), ttl, entry)
        except Exception as exc:
            self._handle_store_error(
                "blacklist_write_failed", exc, user_id=claims.get("user_id")
            )
            return False
        logger.info("token_blacklisted", user_id=claims.get("user_id"), ttl=ttl)
        return True

    async def is_blacklisted(self, token: str) -> bool:
        if not self.is_connected:
            return self.fail_closed
        try:
            return bool(await self._client.exists(blacklist_key(token)))
        except Exception as exc:
            self._handle_store_error("blacklist_check_failed", exc)
            return self.fail_closed

    async def refresh_token_active(self, token: str) -> bool:
        """Whether the issuer's refresh record still exists."""
        if not self.is_connected:
            return not self.fail_closed
        try:
            return bool(await self._client.exists(refresh_key(token)))
        except Exception as exc:
            self._handle_store_error("refresh_check_failed", exc)
            return not self.fail_closed

    async def revoke_all_for_user(self, user_id: Any) -> RevocationResult:
        """Delete every refresh token tracked for ``user_id`` (logout all devices).

        Raises:
            StoreUnavailable: Redis is not ready or the token set cannot be read.
        """
        if not self.is_connected:
            raise StoreUnavailable(
                "token store not connected", detail={"state": self._state.value}
            )

        set_key = user_tokens_key(user_id)
        result = RevocationResult(user_id=str(user_id))
        try:
            members = await self._client.smembers(set_key)
        except Exception as exc:
            self._handle_store_error("user_tokens_read_failed", exc, user_id=user_id)
            raise StoreUnavailable("could not read user token set") from exc

        tokens = sorted(members or ())
        result.requested = len(tokens)
        if not tokens:
            logger.info("user_tokens_none", user_id=user_id)
            return result

        outcomes = await asyncio.gather(
            *(self._client.delete(refresh_key(token)) for token in tokens),
            return_exceptions=True,
        )
        revoked: List[str] = []
        for token, outcome in zip(tokens, outcomes):
            if isinstance(outcome, BaseException):
                result.failed_keys.append(refresh_key(token))
                self._handle_store_error(
                    "refresh_token_delete_failed", outcome, user_id=user_id
                )
            else:
                revoked.append(token)
        result.revoked = len(revoked)

        try:
            if result.complete:
                await self._client.delete(set_key)
            elif revoked:
                # Failed members stay in the set so a retry can finish them
                await self._client.srem(set_key, *revoked)
        except Exception as exc:
            self._handle_store_error("user_tokens_cleanup_failed", exc, user_id=user_id)
            result.failed_keys.append(set_key)

        log = logger.info if result.complete else logger.warning
        log(
            "user_tokens_revoked",
            user_id=user_id,
            requested=result.requested,
            revoked=result.revoked,
            failed=len(result.failed_keys),
        )
        return result

    # ------------------------------------------------------------------
    # Monitoring and teardown
    # ------------------------------------------------------------------

    async def health_check(self) -> HealthStatus:
        if self._client is None or not self.is_connected:
            return HealthStatus("disconnected", "Redis client not connected")
        try:
            await self._client.ping()
        except Exception as exc:
            if isinstance(exc, _TRANSPORT_ERRORS):
                self._mark_disconnected(exc)
            return HealthStatus("unhealthy", str(exc))
        return HealthStatus("healthy", "Redis connection active")

    async def shutdown(self) -> None:
        """Close the connection for good. Errors are logged, never raised."""
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.warning("redis_reconnect_task_error", error=str(exc))
        client, self._client = self._client, None
        self._state = ConnectionState.CLOSED
        if client is None:
            return
        try:
            await client.aclose()
            logger.info("redis_closed")
        except Exception as exc:
            logger.error("redis_close_failed", error=str(exc))


__all__ = [
    "ConnectionState",
    "HealthStatus",
    "RevocationResult",
    "TokenStore",
    "blacklist_key",
    "refresh_key",
    "user_tokens_key",
]
