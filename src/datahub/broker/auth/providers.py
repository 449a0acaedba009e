"""
OAuth 2.0 Provider Adapters

One adapter per provider performs the three-legged authorization code flow:
1. Build the authorization URL embedding the broker-issued state
2. Exchange the returned code for a grant at the token endpoint
3. Fetch and validate the provider profile with the granted access token

A stored refresh token is redeemed through the same token endpoint
(`refresh_grant`), and token validity is checked by calling the provider.

Exchange and profile retrieval are separate calls so that the orchestrator can
attribute a failure precisely (ExchangeFailed vs ProfileFailed).

The redirect URL and scopes come from configuration and are never caller supplied.
Every outbound call runs under a bounded timeout (10 seconds by default); exceeding
it cancels the call and surfaces as the step's failure. No call is retried.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import aiohttp
from aiohttp import ClientSession
from pydantic import BaseModel, Field, ValidationError, field_validator

from datahub.broker.auth.errors import AuthError, ExchangeFailed, ProfileFailed
from datahub.broker.model.credentials import Provider

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_TIMEOUT = 10
DEFAULT_TOKEN_TYPE = "Bearer"

GOOGLE_AUTHORIZATION_URL = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_PROFILE_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
]

GITHUB_AUTHORIZATION_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_PROFILE_URL = "https://api.github.com/user"
GITHUB_SCOPES = ["repo", "delete_repo"]


@dataclass(frozen=True)
class ProviderConfig:
    """Static configuration for one provider, loaded once at startup."""

    client_id: str
    client_secret: str
    callback_url: str
    authorization_url: str
    token_url: str
    profile_url: str
    timeout: float = DEFAULT_PROVIDER_TIMEOUT
    scopes: List[str] = field(default_factory=list)


class Grant(BaseModel):
    """Tokens returned by a successful code exchange."""

    access_token: str
    token_type: str = DEFAULT_TOKEN_TYPE
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    refresh_token_expires_at: Optional[datetime] = None

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        if not self.access_token:
            return False
        if self.expires_at is None:
            return True
        if now is None:
            now = datetime.now(timezone.utc)
        return self.expires_at > now


class ProviderProfile(BaseModel):
    """Provider-neutral view of a fetched profile.

    `identifier` is the provider's primary identifier: the email for an identity
    provider, the username for a storage provider.
    """

    identifier: str
    email: Optional[str] = None
    name: Optional[str] = None


class GoogleUserInfo(BaseModel):
    email: str = Field(min_length=1)
    name: str = Field(min_length=1)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        local, _, domain = v.partition("@")
        if not local or not domain:
            raise ValueError("email is not a valid address")
        return v

    def to_profile(self) -> ProviderProfile:
        return ProviderProfile(identifier=self.email, email=self.email, name=self.name)


class GitHubUserInfo(BaseModel):
    login: str = Field(min_length=1)
    id: int = Field(gt=0)
    name: Optional[str] = None
    email: Optional[str] = None

    def to_profile(self) -> ProviderProfile:
        return ProviderProfile(identifier=self.login, email=self.email, name=self.name)


def _expiry_from(
    payload: Mapping[str, Any], key: str, now: datetime
) -> Optional[datetime]:
    value = payload.get(key)
    if value in (None, ""):
        return None
    seconds = int(value)
    if seconds <= 0:
        return None
    return now + timedelta(seconds=seconds)


class ProviderAdapter:
    """
    Authorization code flow against a single OAuth 2.0 provider.

    Subclasses set the provider tag, the profile model used to validate the
    profile response, and any provider specific request headers.
    """

    provider: Provider
    profile_model: Type[BaseModel]
    profile_headers: Mapping[str, str] = MappingProxyType({})

    def __init__(self, config: ProviderConfig, http_session: ClientSession) -> None:
        self.config = config
        self._http_session = http_session
        self._timeout = aiohttp.ClientTimeout(total=config.timeout)

    def build_authorization_url(self, state: str) -> str:
        """
        Construct the provider authorization URL for the given state.

        Offline access and forced re-consent are always requested so the provider
        issues a refresh token even on repeat authorizations.
        """
        parsed = urlparse(self.config.authorization_url)
        query = dict(parse_qsl(parsed.query))
        query.update(
            {
                "access_type": "offline",
                "client_id": self.config.client_id,
                "prompt": "consent",
                "redirect_uri": self.config.callback_url,
                "response_type": "code",
                "scope": " ".join(self.config.scopes),
                "state": state,
            }
        )
        return urlunparse(parsed._replace(query=urlencode(query)))

    async def exchange_code(self, code: str, now: Optional[datetime] = None) -> Grant:
        """
        Exchange an authorization code for a grant.

        Raises:
            ExchangeFailed: On transport error or timeout, a non-success status, an
                error payload, or a grant without a usable access token.
        """
        if not code:
            raise ExchangeFailed(details="authorization code is empty")

        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.config.callback_url,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }
        return await self._request_grant(data, now)

    async def refresh_grant(
        self, refresh_token: str, now: Optional[datetime] = None
    ) -> Grant:
        """
        Obtain a fresh access token with a stored refresh token.

        Providers that do not rotate refresh tokens omit one from the response; the
        returned grant then carries the refresh token that was sent.

        Raises:
            ExchangeFailed: On the same conditions as `exchange_code`, or when no
                refresh token is given.
        """
        if not refresh_token:
            raise ExchangeFailed(details="no refresh token available")

        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }
        grant = await self._request_grant(data, now)
        if grant.refresh_token is None:
            grant = grant.model_copy(update={"refresh_token": refresh_token})
        return grant

    async def is_access_token_valid(self, access_token: str) -> bool:
        """Check an access token by fetching the profile it grants access to."""
        try:
            await self.fetch_profile(access_token)
        except ProfileFailed as e:
            logger.debug("%s access token rejected: %s", self.provider.value, e)
            return False
        return True

    async def is_refresh_token_valid(self, refresh_token: Optional[str]) -> bool:
        """Check a refresh token by redeeming it at the token endpoint."""
        if not refresh_token:
            return False
        try:
            await self.refresh_grant(refresh_token)
        except ExchangeFailed as e:
            logger.debug("%s refresh token rejected: %s", self.provider.value, e)
            return False
        return True

    async def _request_grant(
        self, data: Dict[str, str], now: Optional[datetime]
    ) -> Grant:
        status, payload = await self._request_json(
            "POST",
            self.config.token_url,
            ExchangeFailed,
            data=data,
            headers={"Accept": "application/json"},
        )
        if status < 200 or status >= 300:
            raise ExchangeFailed(
                details=f"{self.provider.value} token endpoint returned status {status}"
            )
        if not isinstance(payload, dict):
            raise ExchangeFailed(details="token response is not a JSON object")

        error = payload.get("error")
        if error:
            description = payload.get("error_description")
            raise ExchangeFailed(
                details=f"{error}: {description}" if description else str(error)
            )

        if now is None:
            now = datetime.now(timezone.utc)
        try:
            grant = Grant(
                access_token=payload.get("access_token") or "",
                # Some providers omit the token type; treat that as bearer.
                token_type=payload.get("token_type") or DEFAULT_TOKEN_TYPE,
                refresh_token=payload.get("refresh_token") or None,
                expires_at=_expiry_from(payload, "expires_in", now),
                refresh_token_expires_at=_expiry_from(
                    payload, "refresh_token_expires_in", now
                ),
            )
        except (TypeError, ValueError) as e:
            raise ExchangeFailed(details=f"malformed token response: {e}") from e

        if not grant.is_valid(now):
            raise ExchangeFailed(
                details=f"received invalid token from {self.provider.value}"
            )
        return grant

    async def fetch_profile(self, access_token: str) -> ProviderProfile:
        """
        Fetch and validate the profile of the account that granted access.

        Raises:
            ProfileFailed: On transport error or timeout, a non-success status, an
                undecodable body, or missing required fields.
        """
        headers = {"Authorization": f"Bearer {access_token}"}
        headers.update(self.profile_headers)
        status, payload = await self._request_json(
            "GET", self.config.profile_url, ProfileFailed, headers=headers
        )
        if status < 200 or status >= 300:
            raise ProfileFailed(
                details=f"{self.provider.value} profile request failed with status {status}"
            )

        try:
            user_info = self.profile_model.model_validate(payload)
        except ValidationError as e:
            raise ProfileFailed(details=f"invalid user info: {e}") from e
        return user_info.to_profile()  # type: ignore[attr-defined]

    async def _request_json(
        self,
        method: str,
        url: str,
        error_class: Type[AuthError],
        **kwargs: Any,
    ) -> Tuple[int, Any]:
        try:
            async with self._http_session.request(
                method, url, timeout=self._timeout, **kwargs
            ) as resp:
                if resp.status < 200 or resp.status >= 300:
                    body = await resp.text()
                    logger.warning(
                        "%s %s returned %s: %s", method, url, resp.status, body[:512]
                    )
                    return resp.status, None
                return resp.status, await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise error_class(
                details=f"request to {self.provider.value} timed out"
            ) from e
        except aiohttp.ClientError as e:
            raise error_class(details=f"request failed: {e}") from e
        except ValueError as e:
            raise error_class(details=f"failed to decode response: {e}") from e


class GoogleAdapter(ProviderAdapter):
    provider = Provider.GOOGLE
    profile_model = GoogleUserInfo


class GitHubAdapter(ProviderAdapter):
    provider = Provider.GITHUB
    profile_model = GitHubUserInfo
    profile_headers = MappingProxyType({"Accept": "application/vnd.github.v3+json"})


ADAPTER_CLASSES: Dict[Provider, Type[ProviderAdapter]] = {
    Provider.GOOGLE: GoogleAdapter,
    Provider.GITHUB: GitHubAdapter,
}


def build_provider_configs(settings) -> Dict[Provider, ProviderConfig]:
    """Build per-provider configuration from application settings."""
    return {
        Provider.GOOGLE: ProviderConfig(
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            callback_url=settings.google_callback_url,
            authorization_url=settings.google_authorization_url,
            token_url=settings.google_token_url,
            profile_url=settings.google_profile_url,
            timeout=settings.provider_timeout,
            scopes=list(GOOGLE_SCOPES),
        ),
        Provider.GITHUB: ProviderConfig(
            client_id=settings.github_client_id,
            client_secret=settings.github_client_secret,
            callback_url=settings.github_callback_url,
            authorization_url=settings.github_authorization_url,
            token_url=settings.github_token_url,
            profile_url=settings.github_profile_url,
            timeout=settings.provider_timeout,
            scopes=list(GITHUB_SCOPES),
        ),
    }


def build_adapters(
    settings, http_session: ClientSession
) -> Dict[Provider, ProviderAdapter]:
    configs = build_provider_configs(settings)
    return {
        provider: ADAPTER_CLASSES[provider](config, http_session)
        for provider, config in configs.items()
    }
