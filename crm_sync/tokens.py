"""
Token synchronization between the local cache and the remote session.

The realtime transport and the REST storage layer authenticate independently:
the transport holds the session, the REST layer reads the cached token. Every
cache write goes through TokenSync so the two stay aligned, with the remote
session as the source of truth.
"""

from __future__ import annotations

import json
from typing import Any

import structlog

from .cache import KeyValueCache
from .transport import RealtimeTransport

log = structlog.get_logger()

TOKEN_KEY = "token"
REFRESH_TOKEN_KEY = "refresh_token"
USER_KEY = "user"


class TokenSync:
    """Keeps the cached access token equal to the remote session token."""

    def __init__(self, transport: RealtimeTransport, cache: KeyValueCache):
        self._transport = transport
        self._cache = cache

    async def sync_token(self) -> bool:
        """
        Align the cache with the remote session. Never raises.

        Returns True when a session exists after syncing. With no remote
        session, a cached token is used to restore one; if that fails the
        cache is cleared.
        """
        try:
            session = await self._transport.get_session()
            if session is None:
                cached = await self._cache.get(TOKEN_KEY)
                if cached:
                    refresh = await self._cache.get(REFRESH_TOKEN_KEY) or ""
                    try:
                        session = await self._transport.set_session(cached, refresh)
                        log.info("tokens.session_restored")
                    except Exception as exc:
                        log.warning("tokens.restore_failed", error=str(exc))
            if session is None:
                await self.clear()
                return False

            if await self._cache.get(TOKEN_KEY) != session.access_token:
                log.info("tokens.synced")
            await self._cache.set(TOKEN_KEY, session.access_token)
            if session.refresh_token:
                await self._cache.set(REFRESH_TOKEN_KEY, session.refresh_token)
            await self._cache.set(USER_KEY, json.dumps(session.user_info()))
            return True
        except Exception:
            log.exception("tokens.sync_failed")
            return False

    async def get_token(self) -> str | None:
        return await self._cache.get(TOKEN_KEY)

    async def get_user(self) -> dict[str, Any] | None:
        raw = await self._cache.get(USER_KEY)
        return json.loads(raw) if raw else None

    async def validate_token(self) -> bool:
        """Check that the cached token is still the remote session's token."""
        token = await self._cache.get(TOKEN_KEY)
        if not token:
            return False
        try:
            session = await self._transport.get_session()
        except Exception as exc:
            # Unknown session state: report invalid but keep the cache
            log.warning("tokens.validate_failed", error=str(exc))
            return False
        if session is None or session.access_token != token:
            log.info("tokens.invalidated")
            await self.clear()
            return False
        return True

    async def is_authenticated(self) -> bool:
        return bool(await self.get_token())

    async def store_token(self, token: str) -> None:
        await self._cache.set(TOKEN_KEY, token)

    async def clear(self) -> None:
        for key in (TOKEN_KEY, REFRESH_TOKEN_KEY, USER_KEY):
            await self._cache.remove(key)
