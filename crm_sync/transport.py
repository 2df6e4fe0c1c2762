"""
Realtime change-feed transport.

Defines the channel contract the subscription registry consumes and an
httpx implementation that streams table changes from the backend as
server-sent events, one stream per watched entity, with:
- Subscribe handshake on the first HTTP response
- Automatic reconnection with exponential backoff after a successful join
- Read timeout as heartbeat detection
- Password sign-in, session refresh and session restore
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

import httpx
import structlog

from .config import BackendConfig
from .errors import AuthError, SubscriptionError, TransportUnavailableError
from .models import ChangeEvent, Entity, Session

log = structlog.get_logger()

# Reconnection parameters
RECONNECT_BASE_SECONDS = 1.0
RECONNECT_MAX_SECONDS = 60.0
RECONNECT_MULTIPLIER = 2.0

# Refresh sessions this many seconds before they expire
SESSION_EXPIRY_MARGIN_SECONDS = 10.0

EventHandler = Callable[[ChangeEvent], None]
ErrorHandler = Callable[[Exception], None]


@dataclass(eq=False)
class Channel:
    """A live feed of change events for one entity."""

    entity: Entity
    event_handlers: list[EventHandler] = field(default_factory=list)
    error_handlers: list[ErrorHandler] = field(default_factory=list)
    joined: bool = False
    closed: bool = False
    last_event_at: float | None = None
    reconnect_count: int = 0
    _task: asyncio.Task | None = field(default=None, repr=False)

    def dispatch(self, event: ChangeEvent) -> None:
        self.last_event_at = time.time()
        for handler in list(self.event_handlers):
            try:
                handler(event)
            except Exception:
                log.exception(
                    "transport.handler_error",
                    entity=self.entity.value,
                    kind=event.kind.value,
                )

    def fail(self, exc: Exception) -> None:
        for handler in list(self.error_handlers):
            try:
                handler(exc)
            except Exception:
                log.exception("transport.error_handler_error", entity=self.entity.value)


class RealtimeTransport(Protocol):
    """Contract for a remote change-feed transport."""

    async def open_channel(self, entity: Entity) -> Channel: ...

    def on_event(self, channel: Channel, handler: EventHandler) -> None: ...

    def on_error(self, channel: Channel, handler: ErrorHandler) -> None: ...

    async def join(self, channel: Channel) -> None: ...

    async def close_channel(self, channel: Channel) -> None: ...

    async def get_session(self) -> Session | None: ...

    async def set_session(self, access_token: str, refresh_token: str = "") -> Session: ...


class HTTPRealtimeTransport:
    """
    Change-feed transport over HTTP server-sent events.

    Also owns the authenticated session: channels and auth calls share the
    same access token.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        verify_tls: bool = True,
        request_timeout: int = 30,
        heartbeat_timeout: float = 90.0,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = url.rstrip("/")
        self._api_key = api_key
        self._verify_tls = verify_tls
        self._request_timeout = request_timeout
        self._heartbeat_timeout = heartbeat_timeout
        self._http_transport = http_transport
        self._client: httpx.AsyncClient | None = None
        self._session: Session | None = None
        self._channels: set[Channel] = set()

    @property
    def channels(self) -> set[Channel]:
        return set(self._channels)

    async def open(self) -> None:
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self._request_timeout),
            verify=self._verify_tls,
            transport=self._http_transport,
        )

    async def close(self) -> None:
        for channel in list(self._channels):
            await self.close_channel(channel)
        if self._client:
            await self._client.aclose()
            self._client = None

    # --- Channels ---

    async def open_channel(self, entity: Entity) -> Channel:
        if self._client is None:
            raise TransportUnavailableError("Realtime client is not open")
        channel = Channel(entity=entity)
        self._channels.add(channel)
        return channel

    def on_event(self, channel: Channel, handler: EventHandler) -> None:
        channel.event_handlers.append(handler)

    def on_error(self, channel: Channel, handler: ErrorHandler) -> None:
        channel.error_handlers.append(handler)

    async def join(self, channel: Channel) -> None:
        """Start streaming and wait for the subscribe handshake."""
        joined: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        channel._task = asyncio.create_task(self._listen_loop(channel, joined))
        try:
            await joined
        except Exception:
            await self.close_channel(channel)
            raise
        channel.joined = True
        log.info("transport.channel_joined", entity=channel.entity.value)

    async def close_channel(self, channel: Channel) -> None:
        channel.closed = True
        self._channels.discard(channel)
        task = channel._task
        channel._task = None
        if task and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        log.info("transport.channel_closed", entity=channel.entity.value)

    async def _listen_loop(self, channel: Channel, joined: asyncio.Future[None]) -> None:
        backoff = RECONNECT_BASE_SECONDS

        while not channel.closed:
            try:
                await self._connect_and_stream(channel, joined)
                backoff = RECONNECT_BASE_SECONDS  # Reset on clean disconnect
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if not joined.done():
                    if not isinstance(exc, SubscriptionError):
                        exc = SubscriptionError(
                            f"Subscribe to {channel.entity.value} failed: {exc}"
                        )
                    joined.set_exception(exc)
                    return
                log.warning(
                    "transport.connection_lost",
                    entity=channel.entity.value,
                    error=str(exc),
                    backoff=backoff,
                )
                channel.fail(exc)

            if channel.closed:
                break

            channel.reconnect_count += 1
            log.info(
                "transport.reconnecting",
                entity=channel.entity.value,
                backoff=backoff,
                attempt=channel.reconnect_count,
            )
            await asyncio.sleep(backoff)
            backoff = min(backoff * RECONNECT_MULTIPLIER, RECONNECT_MAX_SECONDS)

    async def _connect_and_stream(
        self, channel: Channel, joined: asyncio.Future[None]
    ) -> None:
        session = await self.get_session()
        headers = {
            "apikey": self._api_key,
            "Authorization": f"Bearer {session.access_token if session else self._api_key}",
            "Accept": "text/event-stream",
        }
        url = f"{self._url}/realtime/v1/{channel.entity.value}/stream"

        async with httpx.AsyncClient(
            timeout=httpx.Timeout(None, read=self._heartbeat_timeout),
            verify=self._verify_tls,
            transport=self._http_transport,
        ) as client:
            async with client.stream("GET", url, headers=headers) as response:
                if response.status_code >= 400:
                    raise SubscriptionError(
                        f"Subscribe to {channel.entity.value} rejected: HTTP {response.status_code}"
                    )
                if not joined.done():
                    joined.set_result(None)
                channel.last_event_at = time.time()
                log.info("transport.connected", entity=channel.entity.value, url=url)

                data_lines: list[str] = []
                async for line in response.aiter_lines():
                    if channel.closed:
                        break

                    line = line.rstrip("\n")
                    if line.startswith("data:"):
                        data_lines.append(line[5:].strip())
                    elif line == "":
                        # End of event
                        if data_lines:
                            self._dispatch(channel, "\n".join(data_lines))
                        data_lines = []
                    # event:, id: and ":" keepalive lines carry nothing we use

    def _dispatch(self, channel: Channel, data: str) -> None:
        try:
            event = ChangeEvent.from_payload(json.loads(data))
        except (json.JSONDecodeError, ValueError, AttributeError):
            log.warning("transport.parse_error", entity=channel.entity.value, data=data[:200])
            return
        channel.dispatch(event)

    # --- Auth ---

    async def sign_in(self, email: str, password: str) -> Session:
        data = await self._auth_request(
            "token?grant_type=password", {"email": email, "password": password}
        )
        self._session = _session_from_response(data)
        log.info("transport.signed_in", email=email)
        return self._session

    async def sign_out(self) -> None:
        session, self._session = self._session, None
        if session and self._client:
            try:
                await self._client.post(
                    f"{self._url}/auth/v1/logout",
                    headers=self._auth_headers(session.access_token),
                )
            except httpx.HTTPError as exc:
                log.warning("transport.sign_out_failed", error=str(exc))
        log.info("transport.signed_out")

    async def get_session(self) -> Session | None:
        """Return the current session, refreshing it when it has expired."""
        session = self._session
        if session is None:
            return None
        if session.expires_at is not None and time.time() >= (
            session.expires_at - SESSION_EXPIRY_MARGIN_SECONDS
        ):
            if not session.refresh_token:
                self._session = None
                return None
            try:
                await self._refresh(session.refresh_token)
            except AuthError:
                self._session = None
                raise
        return self._session

    async def set_session(self, access_token: str, refresh_token: str = "") -> Session:
        """Restore a session from previously cached tokens."""
        if self._client is None:
            raise TransportUnavailableError("Realtime client is not open")
        resp = await self._client.get(
            f"{self._url}/auth/v1/user", headers=self._auth_headers(access_token)
        )
        if resp.status_code == 200:
            self._session = Session(
                access_token=access_token,
                refresh_token=refresh_token,
                user=resp.json(),
            )
            return self._session
        if refresh_token:
            return await self._refresh(refresh_token)
        raise AuthError(f"Session restore rejected: HTTP {resp.status_code}")

    async def _refresh(self, refresh_token: str) -> Session:
        data = await self._auth_request(
            "token?grant_type=refresh_token", {"refresh_token": refresh_token}
        )
        self._session = _session_from_response(data)
        log.info("transport.session_refreshed")
        return self._session

    async def _auth_request(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        if self._client is None:
            raise TransportUnavailableError("Realtime client is not open")
        resp = await self._client.post(
            f"{self._url}/auth/v1/{path}",
            json=body,
            headers={"apikey": self._api_key},
        )
        if resp.status_code >= 400:
            raise AuthError(f"Auth request rejected: HTTP {resp.status_code}")
        return resp.json()

    def _auth_headers(self, access_token: str) -> dict[str, str]:
        return {"apikey": self._api_key, "Authorization": f"Bearer {access_token}"}


def _session_from_response(data: dict[str, Any]) -> Session:
    expires_at = data.get("expires_at")
    if expires_at is None and data.get("expires_in") is not None:
        expires_at = time.time() + float(data["expires_in"])
    return Session(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token", ""),
        expires_at=expires_at,
        user=data.get("user"),
    )


def create_transport(
    config: BackendConfig,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> HTTPRealtimeTransport:
    """Build the realtime client, failing when required settings are missing."""
    if not config.url:
        raise TransportUnavailableError("Backend URL is not configured")
    api_key = config.api_key
    if not api_key:
        raise TransportUnavailableError(
            f"Backend API key is not set (env {config.api_key_env})"
        )
    return HTTPRealtimeTransport(
        url=config.url,
        api_key=api_key,
        verify_tls=config.verify_tls,
        request_timeout=config.request_timeout_seconds,
        heartbeat_timeout=config.stream_heartbeat_timeout_seconds,
        http_transport=http_transport,
    )
