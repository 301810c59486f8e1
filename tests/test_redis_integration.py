"""Token store tests against a real Redis server.

Skipped when no server answers on REDIS_HOST:REDIS_PORT (db 15 is used and
flushed of test keys only).
"""

import asyncio
import os
import time
import uuid

import pytest

from payroll_auth.jwt_codec import encode_jwt
from payroll_auth.storage.token_store import (
    TokenStore,
    blacklist_key,
    refresh_key,
    user_tokens_key,
)

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
TEST_DB = 15


def _redis_server_available() -> bool:
    try:
        import redis

        client = redis.Redis(
            host=REDIS_HOST, port=REDIS_PORT, db=TEST_DB, socket_connect_timeout=0.5
        )
        try:
            return bool(client.ping())
        finally:
            client.close()
    except Exception:
        return False


pytestmark = pytest.mark.skipif(
    not _redis_server_available(), reason="Redis server not running"
)


def _store() -> TokenStore:
    return TokenStore(REDIS_HOST, REDIS_PORT, db=TEST_DB, socket_timeout=2.0)


def _token(lifetime: int) -> str:
    return encode_jwt(
        {"user_id": f"it-{uuid.uuid4().hex[:8]}", "exp": int(time.time()) + lifetime},
        "integration-secret",
    )


async def test_blacklist_entry_expires_with_token():
    store = _store()
    try:
        assert await store.connect() is True
        token = _token(2)

        assert await store.blacklist(token) is True
        assert await store.is_blacklisted(token) is True

        await asyncio.sleep(3)
        assert await store.is_blacklisted(token) is False
    finally:
        await store.shutdown()


async def test_revoke_all_removes_refresh_records():
    store = _store()
    user_id = f"it-{uuid.uuid4().hex}"
    tokens = [f"rt-{uuid.uuid4().hex}" for _ in range(3)]
    try:
        assert await store.connect() is True
        client = store.client
        for token in tokens:
            await client.set(refresh_key(token), "{}", ex=60)
        await client.sadd(user_tokens_key(user_id), *tokens)

        result = await store.revoke_all_for_user(user_id)

        assert result.revoked == 3
        assert await client.exists(user_tokens_key(user_id)) == 0
        assert await client.exists(*(refresh_key(t) for t in tokens)) == 0
    finally:
        await store.shutdown()


async def test_health_and_shutdown():
    store = _store()
    assert (await store.health_check()).status == "disconnected"
    await store.connect()
    assert (await store.health_check()).status == "healthy"

    await store.shutdown()
    assert (await store.health_check()).status == "disconnected"


async def test_blacklist_key_layout():
    store = _store()
    token = _token(30)
    try:
        await store.connect()
        await store.blacklist(token)
        ttl = await store.client.ttl(blacklist_key(token))
        assert 0 < ttl <= 30
        await store.client.delete(blacklist_key(token))
    finally:
        await store.shutdown()
