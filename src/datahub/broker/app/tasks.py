import asyncio
import logging
from typing import NoReturn

from aiohttp import web

from datahub.broker.app.config import (
    HealthGaugeAppKey,
    MetricsClientAppKey,
    SettingsAppKey,
    StateRegistryAppKey,
)
from datahub.broker.auth.state import MemoryStateBackend

logger = logging.getLogger(__name__)


async def tick_health_task(app: web.Application) -> NoReturn:
    """
    Tick the health gauge every 30 seconds, reducing the error count by 1 each time.
    """

    logger.info("Starting health gauge task")

    health_gauge = app[HealthGaugeAppKey]
    metrics_client = app[MetricsClientAppKey]
    while True:
        await health_gauge.tick()
        metrics_client.gauge("server.health", health_gauge.value)
        await asyncio.sleep(30)


async def state_sweep_task(app: web.Application) -> NoReturn:
    """
    Drop expired state tokens that were issued but never used.

    Redis expires its keys by itself, so the sweep only has work to do for the
    in-memory backend.
    """

    settings = app[SettingsAppKey]
    state_registry = app[StateRegistryAppKey]
    metrics_client = app[MetricsClientAppKey]

    logger.info(
        "Starting state sweep task (interval %ss)", settings.state_sweep_interval
    )

    while True:
        await asyncio.sleep(settings.state_sweep_interval)
        removed = await state_registry.sweep()
        if removed:
            logger.debug("Swept %d expired state tokens", removed)
            metrics_client.increment("auth.state.expired", removed)
        backend = state_registry.backend
        if isinstance(backend, MemoryStateBackend):
            metrics_client.gauge("auth.state.pending", len(backend))
