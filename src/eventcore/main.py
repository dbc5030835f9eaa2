"""Application bootstrap.

Loads settings, configures logging, builds the engine and keeps it
running until SIGINT/SIGTERM.  Also hosts the demo scenarios used by
``eventcore demo``.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any

from .core.config import Settings, load_settings
from .domain.messages import Command, Query
from .engine import EventEngine, EventStatistics
from .handlers.orders import FULFILLMENT_SAGA, fulfillment_commands, order_total
from .observability.logger import setup_logging

logger = logging.getLogger(__name__)


async def run(
    config_path: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> None:
    """Main entry point. Load config, wire the engine, serve until stopped."""

    # 1. Load settings
    settings = load_settings(config_path=config_path, overrides=overrides)

    # 2. Set up logging
    _setup_logging(settings)

    # 3. Build the engine
    engine = EventEngine.from_settings(settings)

    # 4. Set up graceful shutdown
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("Received shutdown signal")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    # 5. Run until told to stop
    await engine.start()
    try:
        await stop_event.wait()
    finally:
        await engine.stop()
        logger.info("Shutdown complete")


async def run_demo(
    config_path: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> EventStatistics:
    """Run the user and order-fulfillment scenarios against a fresh engine."""
    settings = load_settings(config_path=config_path, overrides=overrides)
    _setup_logging(settings)
    settings.engine.register_defaults = True

    async with EventEngine.from_settings(settings) as engine:
        created = await engine.execute_command(
            Command("CreateUser", "user-1", "User", {"email": "a@b.com", "name": "A"})
        )
        logger.info("CreateUser -> success=%s version=%d", created.success, created.version)
        await engine.drain()

        found = await engine.execute_query(Query("GetUser", {"user_id": "user-1"}))
        logger.info("GetUser -> success=%s data=%s", found.success, found.data)

        # Small order: fulfillment runs all three steps.
        items = [{"sku": "book", "quantity": 2, "price": 12.5}]
        await engine.execute_command(
            Command("CreateOrder", "order-1", "Order",
                    {"user_id": "user-1", "items": items})
        )
        await engine.drain()

        # Order over the payment limit: charge fails, reservation is released.
        big = [{"sku": "server", "quantity": 3, "price": 5000.0}]
        steps, compensations = fulfillment_commands("order-2", big, order_total(big))
        saga = await engine.create_saga(
            "demo-declined", FULFILLMENT_SAGA, steps, compensations,
        )
        logger.info(
            "Saga %s -> status=%s error=%s compensations=%d",
            saga.id, saga.status.value, saga.error, len(saga.compensations),
        )
        await engine.drain()
        return await engine.get_event_statistics()


def _setup_logging(settings: Settings) -> None:
    """Configure structured logging."""
    setup_logging(
        level=settings.observability.log_level,
        format=settings.observability.log_format,
    )
