"""
Sync service entry point.

Loads configuration, configures logging, signs in and runs the realtime
bridge until interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Awaitable, Callable

import structlog

from .bridge import RealtimeBridge
from .cache import SQLiteCache
from .config import SyncConfig, load_config
from .errors import AuthError, TransportUnavailableError
from .metrics import MetricsCollector
from .notify import RecordingNotifier
from .registry import SubscriptionRegistry
from .server import StatusServer
from .status import SyncStatusStore
from .storage import RestStorage
from .tokens import TokenSync
from .transport import create_transport

SHUTDOWN_TIMEOUT = 15.0


def configure_logging(level: str = "info", fmt: str = "json") -> None:
    """Configure structlog with the specified level and format."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
    )


async def serve(config: SyncConfig) -> None:
    """Wire the components, run until SIGINT/SIGTERM, then shut down."""
    log = structlog.get_logger()
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown.set)

    transport = create_transport(config.backend)
    cache = SQLiteCache(config.cache.db_path)
    await transport.open()
    await cache.open()

    tokens = TokenSync(transport, cache)
    storage = RestStorage(
        url=config.backend.url,
        api_key=config.backend.api_key or "",
        token_provider=tokens.get_token,
        verify_tls=config.backend.verify_tls,
        request_timeout=config.backend.request_timeout_seconds,
    )
    await storage.open()

    notifier = RecordingNotifier()
    status = SyncStatusStore()
    bridge = RealtimeBridge(
        registry=SubscriptionRegistry(transport),
        tokens=tokens,
        storage=storage,
        status=status,
        notifier=notifier,
        metrics=MetricsCollector(),
    )
    server = StatusServer(
        bridge,
        host=config.metrics.host,
        port=config.metrics.port,
        notifier=notifier,
    )

    try:
        if config.metrics.enabled:
            try:
                await server.start()
                log.info("sync.server_started", host=config.metrics.host, port=config.metrics.port)
            except OSError as exc:
                log.warning("sync.server_start_failed", error=str(exc))

        if config.auth.email and config.auth.password:
            await transport.sign_in(config.auth.email, config.auth.password)

        await bridge.on_session_change(await tokens.sync_token())
        await shutdown.wait()
    finally:
        await shutdown_all(
            lambda: asyncio.wait_for(bridge.stop(), timeout=SHUTDOWN_TIMEOUT),
            server.stop,
            storage.close,
            transport.close,
            cache.close,
        )


async def shutdown_all(*steps: Callable[[], Awaitable[None]]) -> None:
    """Run every shutdown step; a failing step does not skip the rest."""
    log = structlog.get_logger()
    for step in steps:
        try:
            await step()
        except Exception as exc:
            name = getattr(step, "__qualname__", repr(step))
            log.warning("sync.shutdown_step_failed", step=name, error=repr(exc))


def run() -> None:
    """CLI entry point for the sync service."""
    parser = argparse.ArgumentParser(description="CRM realtime data sync")
    parser.add_argument(
        "-c", "--config",
        default="crm-sync.yaml",
        help="Path to configuration file (default: crm-sync.yaml)",
    )
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except Exception as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)

    configure_logging(config.logging.level, config.logging.format)
    log = structlog.get_logger()
    log.info("sync.config_loaded", config_path=args.config, backend=config.backend.url)

    try:
        asyncio.run(serve(config))
    except TransportUnavailableError as exc:
        print(f"Transport error: {exc}", file=sys.stderr)
        sys.exit(1)
    except AuthError as exc:
        print(f"Sign-in failed: {exc}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
