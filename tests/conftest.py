"""
Shared test configuration and fixtures for broker tests.

Provides a file-backed SQLite database per test, a fake Redis client, a recording
metrics client, an in-process fake OAuth provider served over real HTTP, and a
fully wired broker test client.
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple, Union

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from datahub.broker.app.config import Settings
from datahub.broker.app.metrics import MetricsClient
from datahub.broker.app.server import start_web_server
from datahub.broker.auth.flows import AuthOrchestrator
from datahub.broker.auth.providers import (
    GITHUB_SCOPES,
    GOOGLE_SCOPES,
    GitHubAdapter,
    GoogleAdapter,
    ProviderConfig,
)
from datahub.broker.auth.session import SessionIssuer
from datahub.broker.auth.state import MemoryStateBackend, StateRegistry
from datahub.broker.model.base import Base

# Import the models so their tables are registered on Base.metadata.
from datahub.broker.model import users  # noqa: F401
from datahub.broker.model.credentials import Provider

# Try to import Redis testing dependencies
try:
    import fakeredis.aioredis

    REDIS_AVAILABLE = True
except ImportError:
    fakeredis = None
    REDIS_AVAILABLE = False


TEST_SESSION_SECRET = "test-session-secret-0123456789abcdef"


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'broker.db'}"


@pytest_asyncio.fixture(scope="function")
async def engine(database_url):
    """Create async SQLAlchemy engine with all tables created."""
    engine = create_async_engine(database_url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def session(session_maker):
    """Create async database session for testing."""
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def fake_redis_client():
    """Provide fake Redis client for unit tests."""
    if not REDIS_AVAILABLE or fakeredis is None:
        pytest.skip("fakeredis not available")

    client = fakeredis.aioredis.FakeRedis(decode_responses=False)
    yield client
    await client.flushall()
    await client.aclose()


class RecordingMetricsClient(MetricsClient):
    """Metrics client that keeps every call for assertions."""

    def __init__(self):
        self.increments: List[Tuple[str, Union[int, float], Dict[str, Any]]] = []
        self.gauges: List[Tuple[str, Union[int, float], Dict[str, Any]]] = []
        self.timers: List[Tuple[str, Union[int, float], Dict[str, Any]]] = []
        self.closed = False

    def increment(self, name, value=1, tag_dict=None):
        self.increments.append((name, value, tag_dict or {}))

    def gauge(self, name, value, tag_dict=None):
        self.gauges.append((name, value, tag_dict or {}))

    def timer(self, name, value, tag_dict=None):
        self.timers.append((name, value, tag_dict or {}))

    async def close(self):
        self.closed = True

    def tags_for(self, name: str) -> List[Dict[str, Any]]:
        return [tags for metric, _, tags in self.increments if metric == name]


@pytest.fixture
def metrics_client():
    return RecordingMetricsClient()


class FakeProvider:
    """
    In-process stand-in for the Google and GitHub token and profile endpoints.

    Token responses are keyed by authorization code (or by refresh token for a
    refresh grant) and profile responses by access token. Unknown codes get a 400
    `invalid_grant` and unknown tokens a 401.
    """

    def __init__(self):
        self.token_responses: Dict[str, Tuple[int, Any]] = {}
        self.profile_responses: Dict[str, Tuple[int, Any]] = {}
        self.token_requests: List[Dict[str, str]] = []
        self.profile_requests: List[Dict[str, str]] = []
        self.delay: float = 0
        self.base_url = ""

    def add_grant(
        self,
        code: str,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_in: Optional[int] = 3600,
        token_type: Optional[str] = "Bearer",
        **extra: Any,
    ) -> None:
        payload: Dict[str, Any] = {"access_token": access_token}
        if token_type is not None:
            payload["token_type"] = token_type
        if refresh_token is not None:
            payload["refresh_token"] = refresh_token
        if expires_in is not None:
            payload["expires_in"] = expires_in
        payload.update(extra)
        self.token_responses[code] = (200, payload)

    def add_refresh(
        self,
        refresh_token: str,
        access_token: str,
        rotated_refresh_token: Optional[str] = None,
        expires_in: Optional[int] = 3600,
        **extra: Any,
    ) -> None:
        self.add_grant(
            refresh_token,
            access_token,
            refresh_token=rotated_refresh_token,
            expires_in=expires_in,
            **extra,
        )

    def add_profile(self, access_token: str, payload: Any, status: int = 200) -> None:
        self.profile_responses[access_token] = (status, payload)

    def add_google_user(self, code: str, email: str, name: str = "Test User") -> str:
        access_token = f"google-access-{code}"
        self.add_grant(code, access_token, refresh_token=f"google-refresh-{code}")
        self.add_profile(access_token, {"email": email, "name": name})
        return access_token

    def add_github_user(self, code: str, login: str, github_id: int = 1001) -> str:
        access_token = f"github-access-{code}"
        self.add_grant(code, access_token, token_type=None, expires_in=None, scope="repo")
        self.add_profile(access_token, {"login": login, "id": github_id, "name": None})
        return access_token

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def handle_token(self, request: web.Request) -> web.Response:
        if self.delay:
            await asyncio.sleep(self.delay)
        form = await request.post()
        self.token_requests.append({key: str(value) for key, value in form.items()})
        status, payload = self.token_responses.get(
            form.get("code") or form.get("refresh_token") or "",
            (400, {"error": "invalid_grant"}),
        )
        if isinstance(payload, str):
            return web.Response(status=status, text=payload)
        return web.json_response(payload, status=status)

    async def handle_profile(self, request: web.Request) -> web.Response:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.profile_requests.append(dict(request.headers))
        authorization = request.headers.get("Authorization", "")
        access_token = authorization.removeprefix("Bearer ")
        status, payload = self.profile_responses.get(
            access_token, (401, {"message": "Bad credentials"})
        )
        if isinstance(payload, str):
            return web.Response(status=status, text=payload)
        return web.json_response(payload, status=status)

    def make_app(self) -> web.Application:
        app = web.Application()
        app.add_routes(
            [
                web.post("/{provider}/token", self.handle_token),
                web.get("/{provider}/profile", self.handle_profile),
            ]
        )
        return app


@pytest_asyncio.fixture
async def fake_provider():
    provider = FakeProvider()
    server = TestServer(provider.make_app())
    await server.start_server()
    provider.base_url = str(server.make_url("")).rstrip("/")
    yield provider
    await server.close()


@pytest_asyncio.fixture
async def http_session():
    async with aiohttp.ClientSession() as session:
        yield session


@pytest.fixture
def google_config(fake_provider) -> ProviderConfig:
    return ProviderConfig(
        client_id="google-client-id",
        client_secret="google-client-secret",
        callback_url="http://localhost:9753/auth/google/callback",
        authorization_url="https://accounts.example.test/o/oauth2/auth",
        token_url=fake_provider.url("/google/token"),
        profile_url=fake_provider.url("/google/profile"),
        scopes=list(GOOGLE_SCOPES),
    )


@pytest.fixture
def github_config(fake_provider) -> ProviderConfig:
    return ProviderConfig(
        client_id="github-client-id",
        client_secret="github-client-secret",
        callback_url="http://localhost:9753/auth/github/callback",
        authorization_url="https://github.example.test/login/oauth/authorize",
        token_url=fake_provider.url("/github/token"),
        profile_url=fake_provider.url("/github/profile"),
        scopes=list(GITHUB_SCOPES),
    )


@pytest.fixture
def settings(database_url, fake_provider) -> Settings:
    return Settings(
        session_secret=TEST_SESSION_SECRET,
        database_url=database_url,
        metrics_backend="none",
        state_backend="memory",
        google_client_id="google-client-id",
        google_client_secret="google-client-secret",
        google_authorization_url="https://accounts.example.test/o/oauth2/auth",
        google_token_url=fake_provider.url("/google/token"),
        google_profile_url=fake_provider.url("/google/profile"),
        github_client_id="github-client-id",
        github_client_secret="github-client-secret",
        github_authorization_url="https://github.example.test/login/oauth/authorize",
        github_token_url=fake_provider.url("/github/token"),
        github_profile_url=fake_provider.url("/github/profile"),
    )


@pytest_asyncio.fixture
async def broker_client(settings, engine):
    """Broker application served over HTTP, backed by the test database."""
    app = await start_web_server(settings)
    client = TestClient(TestServer(app))
    await client.start_server()
    yield client
    await client.close()


@pytest.fixture
def state_registry():
    return StateRegistry(MemoryStateBackend())


@pytest.fixture
def session_issuer():
    return SessionIssuer(TEST_SESSION_SECRET)


@pytest.fixture
def adapters(google_config, github_config, http_session):
    return {
        Provider.GOOGLE: GoogleAdapter(google_config, http_session),
        Provider.GITHUB: GitHubAdapter(github_config, http_session),
    }


@pytest.fixture
def orchestrator(state_registry, adapters, session_issuer, session_maker, metrics_client):
    return AuthOrchestrator(
        state_registry, adapters, session_issuer, session_maker, metrics_client
    )
