"""
Shared fixtures: an in-process change-feed transport, caches and storage.
"""

import asyncio
import socket

import pytest
import uvicorn

from crm_sync.bridge import RealtimeBridge
from crm_sync.cache import MemoryCache
from crm_sync.errors import AuthError, SubscriptionError, TransportUnavailableError
from crm_sync.models import ChangeEvent, ChangeKind, Entity, Session
from crm_sync.notify import RecordingNotifier
from crm_sync.registry import SubscriptionRegistry
from crm_sync.storage import MemoryStorage
from crm_sync.tokens import TokenSync
from crm_sync.transport import Channel

from mock_backend import create_backend_app


class FakeTransport:
    """Change-feed transport that delivers events emitted by the test."""

    def __init__(self) -> None:
        self.session: Session | None = None
        self.session_error: Exception | None = None
        self.restorable: dict[str, Session] = {}
        self.fail_open: set[Entity] = set()
        self.fail_join: set[Entity] = set()
        self.opened: list[Channel] = []
        self.closed: list[Channel] = []
        self.join_gate: asyncio.Event | None = None

    @property
    def live_channels(self) -> list[Channel]:
        return [c for c in self.opened if not c.closed]

    def live_for(self, entity: Entity) -> list[Channel]:
        return [c for c in self.live_channels if c.entity == entity]

    async def open_channel(self, entity: Entity) -> Channel:
        if entity in self.fail_open:
            raise TransportUnavailableError("realtime client missing")
        channel = Channel(entity=entity)
        self.opened.append(channel)
        return channel

    def on_event(self, channel, handler) -> None:
        channel.event_handlers.append(handler)

    def on_error(self, channel, handler) -> None:
        channel.error_handlers.append(handler)

    async def join(self, channel: Channel) -> None:
        if self.join_gate is not None:
            await self.join_gate.wait()
        if channel.entity in self.fail_join:
            raise SubscriptionError("handshake rejected")
        channel.joined = True

    async def close_channel(self, channel: Channel) -> None:
        channel.closed = True
        self.closed.append(channel)

    async def get_session(self) -> Session | None:
        if self.session_error:
            raise self.session_error
        return self.session

    async def set_session(self, access_token: str, refresh_token: str = "") -> Session:
        if access_token not in self.restorable:
            raise AuthError("invalid token")
        self.session = self.restorable[access_token]
        return self.session

    def emit(self, entity: Entity, kind: ChangeKind = ChangeKind.INSERT, new=None, old=None) -> None:
        event = ChangeEvent(entity=entity, kind=kind, new=new, old=old)
        for channel in self.live_for(entity):
            channel.dispatch(event)

    def fail_stream(self, entity: Entity, exc: Exception) -> None:
        for channel in self.live_for(entity):
            channel.fail(exc)


SESSION = Session(
    access_token="access-1",
    refresh_token="refresh-1",
    user={
        "id": "u-1",
        "email": "ana@example.com",
        "user_metadata": {"name": "Ana", "role": "admin"},
    },
)


@pytest.fixture
def session() -> Session:
    return SESSION


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def cache() -> MemoryCache:
    return MemoryCache()


@pytest.fixture
def tokens(transport, cache) -> TokenSync:
    return TokenSync(transport, cache)


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage({
        "clients": [{"name": "Acme"}],
        "proposals": [{"id": 1, "title": "Loan A"}, {"id": 2, "title": "Loan B"}],
        "organizations": [{"name": "HQ"}],
    })


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def registry(transport) -> SubscriptionRegistry:
    return SubscriptionRegistry(transport)


@pytest.fixture
def bridge(registry, tokens, storage, notifier) -> RealtimeBridge:
    return RealtimeBridge(registry, tokens, storage, notifier=notifier)


# --- Mock backend server for integration tests ---


class _UvicornServer:
    def __init__(self, app, sock: socket.socket):
        self.config = uvicorn.Config(app, log_level="error")
        self.server = uvicorn.Server(self.config)
        self._sock = sock
        self._task: asyncio.Task | None = None

    async def start(self):
        self._task = asyncio.create_task(self.server.serve(sockets=[self._sock]))
        for _ in range(100):
            if self.server.started:
                return
            await asyncio.sleep(0.05)
        raise RuntimeError("Server did not start")

    async def stop(self):
        self.server.should_exit = True
        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=5)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                self._task.cancel()
        self._sock.close()


def _bind_socket() -> socket.socket:
    # Port 0: the OS assigns a free port
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.bind(("127.0.0.1", 0))
    return sock


@pytest.fixture
async def backend_url():
    sock = _bind_socket()
    port = sock.getsockname()[1]
    srv = _UvicornServer(create_backend_app(), sock)
    await srv.start()
    yield f"http://127.0.0.1:{port}"
    await srv.stop()
