"""
Configuration Module for the DataHub Broker

Settings are loaded once from environment variables at startup through Pydantic
and handed to components through typed aiohttp AppKeys. Nothing reads the
environment after startup.

Key configuration areas:
- Service networking
- Database and Redis connections
- State token lifetime and backend
- Session credential signing
- Google (primary identity) and GitHub (storage) OAuth clients
- Monitoring (Sentry, StatsD)
"""

import asyncio
import logging
from typing import Final, Optional

from aiohttp import ClientSession, web
from pydantic import AliasChoices, Field, RedisDsn, field_validator
from pydantic_settings import BaseSettings
from redis import asyncio as redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from datahub.broker.app.metrics import MetricsClient
from datahub.broker.auth.flows import AuthOrchestrator
from datahub.broker.auth.providers import (
    DEFAULT_PROVIDER_TIMEOUT,
    GITHUB_AUTHORIZATION_URL,
    GITHUB_PROFILE_URL,
    GITHUB_TOKEN_URL,
    GOOGLE_AUTHORIZATION_URL,
    GOOGLE_PROFILE_URL,
    GOOGLE_TOKEN_URL,
)
from datahub.broker.auth.session import (
    DEFAULT_SESSION_LIFETIME,
    MIN_SECRET_BYTES,
    SessionIssuer,
)
from datahub.broker.auth.state import DEFAULT_STATE_TTL, StateRegistry
from datahub.broker.model.health import HealthGauge

logger = logging.getLogger(__name__)

STATE_BACKENDS = ("memory", "redis")
METRICS_BACKENDS = ("telegraf", "none")


class Settings(BaseSettings):
    """
    Application settings for the DataHub broker.

    Environment variables map to fields by name, with aliases for the names used by
    earlier deployments. For example, the database connection string can be set
    with either DATABASE_URL or PG_DSN, and the session secret with either
    SESSION_SECRET or JWT_SECRET.
    """

    debug: bool = False
    """
    Enable debug mode for verbose logging and outbound request tracing.
    Set with DEBUG=true environment variable.
    """

    http_port: int = Field(alias="port", default=8080)
    """
    HTTP port for the service to listen on.
    Set with PORT environment variable.
    """

    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    database_url: str = Field(
        "postgresql+asyncpg://postgres:password@db/datahub",
        validation_alias=AliasChoices("database_url", "pg_dsn"),
    )
    """
    SQLAlchemy async connection string.
    Set with DATABASE_URL or PG_DSN environment variables.
    """

    redis_dsn: RedisDsn = Field(
        "redis://valkey:6379/1?decode_responses=True",
        validation_alias=AliasChoices("redis_dsn", "redis_url"),
    )  # type: ignore
    """
    Redis connection string, only used when the state backend is redis.
    Set with REDIS_DSN or REDIS_URL environment variables.
    """

    state_backend: str = "memory"
    """
    Where pending OAuth state tokens live: "memory" for a single instance,
    "redis" when several instances serve the same clients.
    Set with STATE_BACKEND environment variable.
    """

    state_ttl: int = DEFAULT_STATE_TTL
    """
    Seconds an unused state token remains valid.
    Set with STATE_TTL environment variable.
    """

    state_sweep_interval: int = 60
    """
    Seconds between sweeps of expired in-memory state tokens.
    Set with STATE_SWEEP_INTERVAL environment variable.
    """

    session_secret: str = Field(
        validation_alias=AliasChoices("session_secret", "jwt_secret"),
    )
    """
    Symmetric secret used to sign session credentials (required, no default,
    at least 32 bytes).
    Set with SESSION_SECRET or JWT_SECRET environment variables.
    """

    session_lifetime: int = DEFAULT_SESSION_LIFETIME
    """
    Session credential lifetime in seconds.
    Set with SESSION_LIFETIME environment variable.
    Default: 604800 (7 days)
    """

    provider_timeout: float = DEFAULT_PROVIDER_TIMEOUT
    """
    Total timeout in seconds for each call to a provider endpoint.
    Set with PROVIDER_TIMEOUT environment variable.
    """

    google_client_id: str = ""
    google_client_secret: str = ""
    google_callback_url: str = "http://localhost:9753/auth/google/callback"
    google_authorization_url: str = GOOGLE_AUTHORIZATION_URL
    google_token_url: str = GOOGLE_TOKEN_URL
    google_profile_url: str = GOOGLE_PROFILE_URL

    github_client_id: str = ""
    github_client_secret: str = ""
    github_callback_url: str = "http://localhost:9753/auth/github/callback"
    github_authorization_url: str = GITHUB_AUTHORIZATION_URL
    github_token_url: str = GITHUB_TOKEN_URL
    github_profile_url: str = GITHUB_PROFILE_URL

    metrics_backend: str = "telegraf"
    """
    Metrics backend: "telegraf" or "none".
    Set with METRICS_BACKEND environment variable.
    """

    statsd_host: str = Field(
        "telegraf", validation_alias=AliasChoices("statsd_host", "telegraf_host")
    )
    """
    StatsD/Telegraf host for metrics collection.
    Set with STATSD_HOST or TELEGRAF_HOST environment variables.
    """

    statsd_port: int = Field(
        8125, validation_alias=AliasChoices("statsd_port", "telegraf_port")
    )
    """
    StatsD/Telegraf port for metrics collection.
    Set with STATSD_PORT or TELEGRAF_PORT environment variables.
    """

    statsd_prefix: str = "broker"
    """
    Prefix for all StatsD metrics from this service.
    Set with STATSD_PREFIX environment variable.
    """

    @field_validator("session_secret")
    @classmethod
    def validate_session_secret(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("session_secret must not be empty")
        if len(v.encode("utf-8")) < MIN_SECRET_BYTES:
            raise ValueError(
                f"session_secret must be at least {MIN_SECRET_BYTES} bytes long"
            )
        return v

    @field_validator("state_backend", "metrics_backend")
    @classmethod
    def validate_backend(cls, v: str, info) -> str:
        v = v.strip().lower()
        allowed = STATE_BACKENDS if info.field_name == "state_backend" else METRICS_BACKENDS
        if v not in allowed:
            raise ValueError(f"{info.field_name} must be one of {', '.join(allowed)}")
        return v


# Application context keys for dependency injection
SettingsAppKey: Final = web.AppKey("settings", Settings)
"""AppKey for accessing the application settings"""

DatabaseAppKey: Final = web.AppKey("database", AsyncEngine)
"""AppKey for accessing the SQLAlchemy async database engine"""

DatabaseSessionMakerAppKey: Final = web.AppKey(
    "database_session_maker", async_sessionmaker[AsyncSession]
)
"""AppKey for accessing the SQLAlchemy async session factory"""

SessionAppKey: Final = web.AppKey("http_session", ClientSession)
"""AppKey for accessing the shared aiohttp client session"""

RedisClientAppKey: Final = web.AppKey("redis_client", redis.Redis)
"""AppKey for accessing the Redis client (redis state backend only)"""

HealthGaugeAppKey: Final = web.AppKey("health_gauge", HealthGauge)
"""AppKey for accessing the health monitoring gauge"""

MetricsClientAppKey: Final = web.AppKey("metrics_client", MetricsClient)
"""AppKey for the metrics client"""

StateRegistryAppKey: Final = web.AppKey("state_registry", StateRegistry)
"""AppKey for the OAuth state registry"""

SessionIssuerAppKey: Final = web.AppKey("session_issuer", SessionIssuer)
"""AppKey for the session credential issuer"""

AuthOrchestratorAppKey: Final = web.AppKey("auth_orchestrator", AuthOrchestrator)
"""AppKey for the orchestrator running sign-in and linking flows"""

TickHealthTaskAppKey: Final = web.AppKey("tick_health_task", asyncio.Task[None])
"""AppKey for the background task that drains the health gauge"""

StateSweepTaskAppKey: Final = web.AppKey("state_sweep_task", asyncio.Task[None])
"""AppKey for the background task that drops expired state tokens"""
