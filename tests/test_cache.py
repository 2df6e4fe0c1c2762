"""Tests for the persistent key-value cache."""

import pytest

from crm_sync.cache import MemoryCache, SQLiteCache


@pytest.fixture
async def sqlite_cache(tmp_path):
    c = SQLiteCache(str(tmp_path / "cache.db"))
    await c.open()
    yield c
    await c.close()


async def test_sqlite_cache_crud(sqlite_cache: SQLiteCache):
    assert await sqlite_cache.get("token") is None

    await sqlite_cache.set("token", "abc")
    assert await sqlite_cache.get("token") == "abc"

    await sqlite_cache.set("token", "def")
    assert await sqlite_cache.get("token") == "def"

    await sqlite_cache.remove("token")
    assert await sqlite_cache.get("token") is None


async def test_sqlite_cache_persists(tmp_path):
    path = str(tmp_path / "nested" / "cache.db")
    first = SQLiteCache(path)
    await first.open()
    await first.set("user", '{"id": "u-1"}')
    await first.close()

    second = SQLiteCache(path)
    await second.open()
    try:
        assert await second.get("user") == '{"id": "u-1"}'
    finally:
        await second.close()


async def test_memory_cache_remove_missing_key():
    cache = MemoryCache()
    await cache.remove("nothing")
    assert await cache.get("nothing") is None
