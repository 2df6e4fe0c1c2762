"""Tests for token synchronization with the remote session."""

import json

from crm_sync.errors import AuthError
from crm_sync.tokens import REFRESH_TOKEN_KEY, TOKEN_KEY, USER_KEY


async def test_sync_with_session_caches_token(tokens, transport, cache, session):
    transport.session = session

    assert await tokens.sync_token() is True

    assert await cache.get(TOKEN_KEY) == "access-1"
    assert await cache.get(REFRESH_TOKEN_KEY) == "refresh-1"
    user = json.loads(await cache.get(USER_KEY))
    assert user == {"id": "u-1", "email": "ana@example.com", "name": "Ana", "role": "admin"}


async def test_sync_replaces_stale_token(tokens, transport, cache, session):
    await cache.set(TOKEN_KEY, "stale")
    transport.session = session

    assert await tokens.sync_token() is True
    assert await tokens.get_token() == "access-1"


async def test_sync_without_session_clears_cache(tokens, cache):
    await cache.set(TOKEN_KEY, "old-token")
    await cache.set(USER_KEY, "{}")

    assert await tokens.sync_token() is False

    assert await cache.get(TOKEN_KEY) is None
    assert await cache.get(USER_KEY) is None


async def test_sync_restores_session_from_cached_token(tokens, transport, cache, session):
    transport.restorable["access-1"] = session
    await cache.set(TOKEN_KEY, "access-1")

    assert await tokens.sync_token() is True
    assert transport.session is session


async def test_sync_tolerates_session_failure(tokens, transport, cache):
    transport.session_error = AuthError("backend down")
    await cache.set(TOKEN_KEY, "kept")

    assert await tokens.sync_token() is False
    assert await cache.get(TOKEN_KEY) == "kept"


async def test_get_token_reads_cache(tokens, cache):
    assert await tokens.get_token() is None
    await tokens.store_token("abc")
    assert await tokens.get_token() == "abc"
    assert await tokens.is_authenticated() is True


async def test_validate_token_matches_session(tokens, transport, session):
    transport.session = session
    await tokens.store_token("access-1")

    assert await tokens.validate_token() is True


async def test_validate_token_mismatch_clears_cache(tokens, transport, session):
    transport.session = session
    await tokens.store_token("someone-else")

    assert await tokens.validate_token() is False
    assert await tokens.get_token() is None


async def test_validate_without_cached_token(tokens, transport, session):
    transport.session = session
    assert await tokens.validate_token() is False


async def test_validate_token_lookup_failure_keeps_cache(tokens, transport, cache):
    await tokens.store_token("access-1")
    await cache.set(REFRESH_TOKEN_KEY, "refresh-1")
    transport.session_error = AuthError("network blip")

    assert await tokens.validate_token() is False
    assert await cache.get(TOKEN_KEY) == "access-1"
    assert await cache.get(REFRESH_TOKEN_KEY) == "refresh-1"


async def test_get_user(tokens, transport, session):
    assert await tokens.get_user() is None
    transport.session = session
    await tokens.sync_token()
    assert (await tokens.get_user())["role"] == "admin"
