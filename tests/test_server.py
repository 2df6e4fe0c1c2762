"""Tests for the status HTTP server."""

from unittest.mock import AsyncMock

import pytest
from aiohttp.test_utils import TestClient, TestServer

from crm_sync.models import Entity, SyncStatus
from crm_sync.server import StatusServer


@pytest.fixture
async def client(bridge, notifier, transport, session):
    transport.session = session
    await bridge.start()
    server = StatusServer(bridge, notifier=notifier)
    async with TestClient(TestServer(server.build_app())) as c:
        yield c
    await bridge.stop()


async def test_status_endpoint(client):
    resp = await client.get("/status")
    assert resp.status == 200
    body = await resp.json()
    assert set(body) == {"clients", "proposals", "organizations"}
    assert body["clients"]["status"] == "synced"
    assert body["clients"]["since_update"] == "just now"


async def test_health_endpoint(client):
    resp = await client.get("/health")
    body = await resp.json()
    assert body["status"] == "healthy"
    assert body["session_active"] is True
    assert body["errored_entities"] == []


async def test_metrics_endpoint(client):
    resp = await client.get("/metrics")
    text = await resp.text()
    assert "sync_subscriptions_active 3" in text


async def test_refresh_entity(client, bridge):
    resp = await client.post("/refresh/proposals")
    assert resp.status == 200
    assert await resp.json() == {"entity": "proposals", "status": "synced", "count": 2}


async def test_refresh_unknown_entity(client):
    resp = await client.post("/refresh/invoices")
    assert resp.status == 404


async def test_refresh_failure_is_reported(client, bridge, storage):
    storage.list = AsyncMock(side_effect=RuntimeError("backend down"))

    resp = await client.post("/refresh/clients")

    assert resp.status == 502
    assert (await resp.json())["error"] == "backend down"
    assert bridge.status.status(Entity.CLIENTS) is SyncStatus.ERROR

    health = await (await client.get("/health")).json()
    assert health["status"] == "degraded"
    assert health["errored_entities"] == ["clients"]


async def test_refresh_all_and_notifications(client):
    resp = await client.post("/refresh")
    assert resp.status == 200
    assert (await resp.json())["counts"] == {"clients": 1, "proposals": 2, "organizations": 1}

    notes = await (await client.get("/notifications")).json()
    assert notes[-1]["title"] == "Sync complete"
