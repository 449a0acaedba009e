import asyncio
import contextlib
import logging
from time import time
from typing import Optional

import aiohttp
import redis.asyncio as redis
import sentry_sdk
from aiohttp import web
from sentry_sdk.integrations.aiohttp import AioHttpIntegration
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from datahub.broker.app.config import (
    AuthOrchestratorAppKey,
    DatabaseAppKey,
    DatabaseSessionMakerAppKey,
    HealthGaugeAppKey,
    MetricsClientAppKey,
    RedisClientAppKey,
    SessionAppKey,
    SessionIssuerAppKey,
    Settings,
    SettingsAppKey,
    StateRegistryAppKey,
    StateSweepTaskAppKey,
    TickHealthTaskAppKey,
)
from datahub.broker.app.handlers.auth import (
    handle_link_account,
    handle_list_accounts,
    handle_oauth_url,
    handle_sign_in,
)
from datahub.broker.app.handlers.helpers import error_response
from datahub.broker.app.handlers.internal import (
    handle_health,
    handle_internal_alive,
    handle_internal_ready,
)
from datahub.broker.app.metrics import create_metrics_client
from datahub.broker.app.tasks import state_sweep_task, tick_health_task
from datahub.broker.auth.errors import AuthError
from datahub.broker.auth.flows import AuthOrchestrator
from datahub.broker.auth.providers import build_adapters
from datahub.broker.auth.session import SessionIssuer
from datahub.broker.auth.state import (
    MemoryStateBackend,
    RedisStateBackend,
    StateBackend,
    StateRegistry,
)
from datahub.broker.model.health import HealthGauge

logger = logging.getLogger(__name__)


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    engine = create_async_engine(settings.database_url)
    app[DatabaseAppKey] = engine
    database_session = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
    app[DatabaseSessionMakerAppKey] = database_session

    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logger.debug("Starting request: %s %s", params.method, params.url)

        async def on_request_end(
            session, trace_config_ctx, params: aiohttp.TraceRequestEndParams
        ):
            logger.debug(
                "Ending request: %s %s %s",
                params.method,
                params.url,
                params.response.status,
            )

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    app[SessionAppKey] = aiohttp.ClientSession(trace_configs=[trace_config])

    state_backend: StateBackend
    if settings.state_backend == "redis":
        app[RedisClientAppKey] = redis.Redis(
            connection_pool=redis.ConnectionPool.from_url(str(settings.redis_dsn))
        )
        state_backend = RedisStateBackend(app[RedisClientAppKey])
    else:
        state_backend = MemoryStateBackend()

    metrics_client = create_metrics_client(
        settings.metrics_backend,
        host=settings.statsd_host,
        port=settings.statsd_port,
        prefix=settings.statsd_prefix,
        debug=settings.debug,
    )
    await metrics_client.connect()
    app[MetricsClientAppKey] = metrics_client

    app[StateRegistryAppKey] = StateRegistry(state_backend, ttl=settings.state_ttl)
    app[SessionIssuerAppKey] = SessionIssuer(
        settings.session_secret, lifetime=settings.session_lifetime
    )
    app[AuthOrchestratorAppKey] = AuthOrchestrator(
        app[StateRegistryAppKey],
        build_adapters(settings, app[SessionAppKey]),
        app[SessionIssuerAppKey],
        database_session,
        metrics_client,
    )

    logger.info("Startup complete")

    app[TickHealthTaskAppKey] = asyncio.create_task(tick_health_task(app))
    app[StateSweepTaskAppKey] = asyncio.create_task(state_sweep_task(app))

    yield

    logger.info("Shutting down background tasks")

    app[TickHealthTaskAppKey].cancel()
    app[StateSweepTaskAppKey].cancel()

    with contextlib.suppress(asyncio.exceptions.CancelledError):
        await app[TickHealthTaskAppKey]

    with contextlib.suppress(asyncio.exceptions.CancelledError):
        await app[StateSweepTaskAppKey]

    await app[DatabaseAppKey].dispose()
    await app[SessionAppKey].close()
    if RedisClientAppKey in app:
        await app[RedisClientAppKey].aclose()
    await app[MetricsClientAppKey].close()


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except (AuthError, web.HTTPException):
        raise
    except Exception as e:
        sentry_sdk.capture_exception(e)
        raise e


@web.middleware
async def error_middleware(request: web.Request, handler):
    """
    Render failures with the uniform JSON error envelope.

    Authentication failures use their own status and code. Anything unexpected
    bumps the health gauge and becomes a 500.
    """
    try:
        return await handler(request)
    except AuthError as e:
        return web.json_response(e.to_dict(), status=e.status)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.exception(
            "Unhandled error in %s %s: %s", request.method, request.path, e
        )
        await request.app[HealthGaugeAppKey].bump()
        settings = request.app[SettingsAppKey]
        details = f"{type(e).__name__}: {e}" if settings.debug else None
        return error_response(500, details=details)


@web.middleware
async def statsd_middleware(request: web.Request, handler):
    metrics_client = request.app[MetricsClientAppKey]
    request_method: str = request.method
    request_path = request.path

    start_time: float = time()
    response_status_code = 0

    try:
        response = await handler(request)
        response_status_code = response.status
        return response
    except web.HTTPException as e:
        response_status_code = e.status
        raise e
    except Exception as e:
        metrics_client.increment(
            "server.request.exception",
            1,
            tag_dict={
                "exception": type(e).__name__,
                "path": request_path,
                "method": request_method,
            },
        )
        raise e
    finally:
        metrics_client.timer(
            "server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        metrics_client.increment(
            "server.request.count",
            1,
            tag_dict={
                "path": request_path,
                "method": request_method,
                "status": response_status_code,
            },
        )


async def start_web_server(settings: Optional[Settings] = None):

    if settings is None:
        settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=False,
            integrations=[AioHttpIntegration()],
        )
    app = web.Application(
        middlewares=[statsd_middleware, error_middleware, sentry_middleware]
    )

    app[SettingsAppKey] = settings
    app[HealthGaugeAppKey] = HealthGauge()

    app.add_routes([web.get("/health", handle_health)])

    app.add_routes(
        [
            web.post("/auth/primary", handle_sign_in),
            web.get("/auth/{provider}/oauth-url", handle_oauth_url),
            web.post("/auth/{provider}/accounts", handle_link_account),
            web.get("/auth/{provider}/accounts", handle_list_accounts),
            web.post("/auth/{provider}", handle_sign_in),
        ]
    )

    app.add_routes(
        [
            web.get("/internal/alive", handle_internal_alive),
            web.get("/internal/ready", handle_internal_ready),
        ]
    )

    app.cleanup_ctx.append(background_tasks)

    return app
