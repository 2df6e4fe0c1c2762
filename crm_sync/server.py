"""
Status HTTP server.

Exposes:
- GET /health: service health and metrics summary
- GET /metrics: Prometheus-compatible metrics
- GET /status: per-entity sync status and last update
- GET /notifications: recent user-visible notifications
- POST /refresh: refresh every watched entity
- POST /refresh/{entity}: refresh one entity
"""

from __future__ import annotations

from dataclasses import asdict

from aiohttp import web

from .bridge import RealtimeBridge
from .models import Entity
from .notify import RecordingNotifier


class StatusServer:
    """Read and refresh surface over the bridge's sync status."""

    def __init__(
        self,
        bridge: RealtimeBridge,
        host: str = "127.0.0.1",
        port: int = 9090,
        notifier: RecordingNotifier | None = None,
    ):
        self._bridge = bridge
        self._host = host
        self._port = port
        self._notifier = notifier
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/metrics", self._metrics_handler)
        app.router.add_get("/status", self._status_handler)
        app.router.add_get("/notifications", self._notifications_handler)
        app.router.add_post("/refresh", self._refresh_all_handler)
        app.router.add_post("/refresh/{entity}", self._refresh_handler)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        statuses = self._bridge.status.snapshot()
        errored = [name for name, entry in statuses.items() if entry["status"] == "error"]
        body = {
            "status": "healthy" if self._bridge.active and not errored else "degraded",
            "session_active": self._bridge.active,
            "errored_entities": errored,
            "metrics": self._bridge.metrics.to_dict(),
        }
        return web.json_response(body)

    async def _metrics_handler(self, request: web.Request) -> web.Response:
        return web.Response(
            text=self._bridge.metrics.to_prometheus(),
            content_type="text/plain",
        )

    async def _status_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self._bridge.status.snapshot())

    async def _notifications_handler(self, request: web.Request) -> web.Response:
        items = self._notifier.notifications if self._notifier else []
        return web.json_response([asdict(n) for n in items])

    async def _refresh_handler(self, request: web.Request) -> web.Response:
        try:
            entity = Entity(request.match_info["entity"])
        except ValueError:
            raise web.HTTPNotFound(reason="Unknown entity")
        if entity not in self._bridge.entities:
            raise web.HTTPNotFound(reason="Entity not watched")

        try:
            records = await self._bridge.refresh_data(entity)
        except Exception as exc:
            return web.json_response(
                {"entity": entity.value, "status": "error", "error": str(exc)},
                status=502,
            )
        return web.json_response({
            "entity": entity.value,
            "status": self._bridge.status.status(entity).value,
            "count": len(records) if records is not None else None,
        })

    async def _refresh_all_handler(self, request: web.Request) -> web.Response:
        try:
            results = await self._bridge.refresh_all()
        except Exception as exc:
            return web.json_response(
                {"status": "error", "error": str(exc), "entities": self._bridge.status.snapshot()},
                status=502,
            )
        return web.json_response({
            "status": "ok",
            "counts": {
                entity.value: len(records) if records is not None else None
                for entity, records in results.items()
            },
        })
