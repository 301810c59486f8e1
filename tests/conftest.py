import asyncio
import inspect
import os
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("REFRESH_SECRET", "test-refresh-secret-for-testing-only")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from payroll_auth.config import Settings  # noqa: E402
from payroll_auth.storage.token_store import TokenStore  # noqa: E402


class FakeClock:
    """Manually advanced epoch clock shared by the store and the fake Redis."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePipeline:
    def __init__(self, client: "FakeRedis"):
        self._client = client
        self._ops = []

    def set(self, key, value, ex=None):
        self._ops.append(("set", (key, value), {"ex": ex}))
        return self

    def sadd(self, key, *members):
        self._ops.append(("sadd", (key, *members), {}))
        return self

    def expire(self, key, ttl):
        self._ops.append(("expire", (key, ttl), {}))
        return self

    async def execute(self):
        self._client._maybe_fail("pipeline")
        results = []
        for name, args, kwargs in self._ops:
            results.append(await getattr(self._client, name)(*args, **kwargs))
        self._ops = []
        return results


class FakeRedis:
    """In-memory stand-in for ``redis.asyncio.Redis`` with decode_responses=True.

    Supports key expiry against an injectable clock and failure injection:
    ``fail[method]`` raises on every call of that method, ``fail_keys[key]``
    raises when that key is deleted.
    """

    def __init__(self, clock=None):
        self.clock = clock or time.time
        self._data: Dict[str, Any] = {}
        self._expiry: Dict[str, float] = {}
        self.fail: Dict[str, Exception] = {}
        self.fail_keys: Dict[str, Exception] = {}
        self.deleted: list = []
        self.closed = False

    def _maybe_fail(self, method: str) -> None:
        exc = self.fail.get(method)
        if exc is not None:
            raise exc

    def _purge(self, key: str) -> None:
        expires_at = self._expiry.get(key)
        if expires_at is not None and expires_at <= self.clock():
            self._data.pop(key, None)
            self._expiry.pop(key, None)

    def _live(self, key: str) -> bool:
        self._purge(key)
        return key in self._data

    # -- helpers for assertions -------------------------------------------

    def has(self, key: str) -> bool:
        return self._live(key)

    def raw(self, key: str) -> Optional[Any]:
        return self._data.get(key) if self._live(key) else None

    def ttl(self, key: str) -> Optional[float]:
        if not self._live(key) or key not in self._expiry:
            return None
        return self._expiry[key] - self.clock()

    # -- redis API ----------------------------------------------------------

    async def ping(self):
        self._maybe_fail("ping")
        return True

    async def setex(self, key, ttl, value):
        self._maybe_fail("setex")
        if int(ttl) <= 0:
            raise ValueError("invalid expire time in 'setex' command")
        self._data[key] = value
        self._expiry[key] = self.clock() + int(ttl)
        return True

    async def set(self, key, value, ex=None):
        self._maybe_fail("set")
        self._data[key] = value
        if ex is not None:
            self._expiry[key] = self.clock() + int(ex)
        else:
            self._expiry.pop(key, None)
        return True

    async def get(self, key):
        self._maybe_fail("get")
        return self.raw(key)

    async def exists(self, *keys):
        self._maybe_fail("exists")
        return sum(1 for key in keys if self._live(key))

    async def delete(self, *keys):
        self._maybe_fail("delete")
        removed = 0
        for key in keys:
            exc = self.fail_keys.get(key)
            if exc is not None:
                raise exc
            self.deleted.append(key)
            if self._live(key):
                self._data.pop(key, None)
                self._expiry.pop(key, None)
                removed += 1
        return removed

    async def smembers(self, key):
        self._maybe_fail("smembers")
        return set(self._data.get(key, set())) if self._live(key) else set()

    async def sadd(self, key, *members):
        self._maybe_fail("sadd")
        if not self._live(key):
            self._data[key] = set()
        current = self._data[key]
        before = len(current)
        current.update(members)
        return len(current) - before

    async def srem(self, key, *members):
        self._maybe_fail("srem")
        if not self._live(key):
            return 0
        current = self._data[key]
        removed = len(current & set(members))
        current.difference_update(members)
        if not current:
            self._data.pop(key, None)
            self._expiry.pop(key, None)
        return removed

    async def expire(self, key, ttl):
        self._maybe_fail("expire")
        if not self._live(key):
            return False
        self._expiry[key] = self.clock() + int(ttl)
        return True

    def pipeline(self):
        return FakePipeline(self)

    async def aclose(self):
        self._maybe_fail("aclose")
        self.closed = True


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock=clock)


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        refresh_secret="Refresh-Secret-Key_for-Automation-Only-123456789!",
        test_mode=True,
    )


@pytest.fixture
def store(fake_redis, clock):
    """Token store wired to the fake client, already READY."""
    token_store = TokenStore(client=fake_redis, clock=clock, sleep=no_sleep)
    asyncio.run(token_store.connect())
    return token_store


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
