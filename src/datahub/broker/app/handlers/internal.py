import logging

from aiohttp import web

from datahub.broker.app.config import HealthGaugeAppKey

logger = logging.getLogger(__name__)


async def handle_health(request: web.Request):
    return web.json_response(
        {"status": "ok", "message": "DataHub backend is running"}
    )


async def handle_internal_ready(request: web.Request):
    health_gauge = request.app[HealthGaugeAppKey]
    if await health_gauge.is_healthy():
        return web.Response(status=200)
    return web.Response(status=503)


async def handle_internal_alive(request: web.Request):
    return web.Response(status=200)
