from __future__ import annotations

import threading
from typing import Any, Optional

from payroll_auth.config import Settings, get_settings, reset_settings_cache
from payroll_auth.logging import get_logger
from payroll_auth.service.auth import AuthService
from payroll_auth.storage.token_store import TokenStore

logger = get_logger(__name__)


class Runtime:
    """Process-wide service context handed to request handlers.

    Owns the token store connection and the auth service built on it.
    ``start()`` opens the Redis connection, ``close()`` shuts it down.
    """

    def __init__(self, settings: Optional[Settings] = None, *, redis_client: Any = None):
        self.settings = settings or get_settings()
        self.tokens = TokenStore.from_settings(self.settings, client=redis_client)
        self.auth = AuthService(self.settings, self.tokens)
        logger.info(
            "runtime_init",
            redis_host=self.settings.redis_host,
            redis_port=self.settings.redis_port,
            fail_closed=self.settings.blacklist_fail_closed,
            test_mode=self.settings.test_mode,
        )

    async def start(self) -> bool:
        connected = await self.tokens.connect()
        if not connected:
            logger.warning(
                "runtime_started_without_redis",
                message=(
                    "Token store unavailable; blacklist checks fall back to "
                    + ("deny" if self.settings.blacklist_fail_closed else "allow")
                    + " and logout-all requests will fail."
                ),
            )
        return connected

    async def close(self) -> None:
        await self.tokens.shutdown()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(redis_client: Any = None) -> Runtime:
    """Rebuild the runtime singleton, optionally around an injected Redis client."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, redis_client=redis_client)
        return runtime
