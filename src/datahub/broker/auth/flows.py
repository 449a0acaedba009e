"""
Auth Orchestrator

Composes the state registry, provider adapters, linking policy and session issuer
into the two user-facing flows:

1. Primary sign-in (`sign_in`): verify state, exchange the code, fetch the profile,
   resolve or create the user by email, upsert the primary credential, then issue a
   session credential.
2. Account linking (`link_account`): for a user already identified by a verified
   session credential, verify state, exchange the code, fetch the profile and upsert
   the storage credential keyed by the external username.

Stored credentials are maintained with `refresh` (redeem the refresh token and keep
the new access token) and inspected with `credential_status`.

Each flow walks the FlowState machine. Failures are terminal: nothing is retried
and partial progress is kept (a stored credential survives a later session signing
failure, and re-running sign-in upserts the same row).
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy.exc import NoResultFound, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from ulid import ULID

from datahub.broker.app.metrics import MetricsClient, NoOpMetricsClient
from datahub.broker.auth.errors import (
    AuthError,
    InvalidState,
    PersistFailed,
    Unauthenticated,
)
from datahub.broker.auth.flow_state import FlowState
from datahub.broker.auth.linking import (
    access_token_validity_left,
    find_credential_by_guid,
    list_account_identifiers,
    refresh_credential,
    upsert_credential,
)
from datahub.broker.auth.providers import Grant, ProviderAdapter, ProviderProfile
from datahub.broker.auth.session import SessionIssuer
from datahub.broker.auth.state import StateRegistry
from datahub.broker.model.credentials import Provider, ProviderCredential
from datahub.broker.model.users import User, find_user_by_guid, get_or_create_user

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignInResult:
    token: str
    user: User


@dataclass(frozen=True)
class CredentialStatus:
    access_token_valid: bool
    refresh_token_valid: bool
    validity_left: timedelta


class FlowTracker:
    """Records the progress of one flow instance and reports each transition."""

    def __init__(self, kind: str, provider: Provider, metrics_client: MetricsClient) -> None:
        self.flow_id = str(ULID())
        self.kind = kind
        self.provider = provider
        self.state: Optional[FlowState] = None
        self.history: List[FlowState] = []
        self._metrics_client = metrics_client

    def advance(self, state: FlowState) -> None:
        if self.state is not None and self.state.is_terminal:
            raise RuntimeError(f"flow {self.flow_id} already ended in {self.state.value}")
        self.state = state
        self.history.append(state)
        logger.debug(
            "%s flow %s (%s): %s", self.kind, self.flow_id, self.provider.value, state.value
        )
        self._metrics_client.increment(
            "auth.flow.transition",
            1,
            tag_dict={"flow": self.kind, "provider": self.provider.slug, "state": state.value},
        )

    def fail(self, error: AuthError) -> None:
        if error.flow_state is not None:
            self.advance(error.flow_state)
        logger.warning(
            "%s flow %s (%s) failed with %s: %s",
            self.kind,
            self.flow_id,
            self.provider.value,
            error.code,
            error,
        )
        self._metrics_client.increment(
            "auth.flow.failure",
            1,
            tag_dict={"flow": self.kind, "provider": self.provider.slug, "code": error.code},
        )


class AuthOrchestrator:
    def __init__(
        self,
        state_registry: StateRegistry,
        adapters: Dict[Provider, ProviderAdapter],
        session_issuer: SessionIssuer,
        database_session_maker: async_sessionmaker[AsyncSession],
        metrics_client: Optional[MetricsClient] = None,
        primary_provider: Provider = Provider.GOOGLE,
    ) -> None:
        if primary_provider.requires_account_identifier:
            raise ValueError("primary provider must not require an account identifier")
        self.state_registry = state_registry
        self.adapters = adapters
        self.session_issuer = session_issuer
        self.database_session_maker = database_session_maker
        self.metrics_client = metrics_client or NoOpMetricsClient()
        self.primary_provider = primary_provider

    @property
    def storage_providers(self) -> List[Provider]:
        return [p for p in self.adapters if p.requires_account_identifier]

    def adapter_for(self, provider: Provider) -> ProviderAdapter:
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise KeyError(f"no adapter configured for {provider.value}")
        return adapter

    async def authorization_url(self, provider: Provider) -> str:
        """
        Issue a state token and build the provider authorization URL around it.

        If building the URL fails, the freshly issued state is discarded.
        """
        adapter = self.adapter_for(provider)
        flow = FlowTracker("authorize", provider, self.metrics_client)
        flow.advance(FlowState.URL_REQUESTED)

        state = await self.state_registry.issue()
        try:
            auth_url = adapter.build_authorization_url(state)
        except Exception:
            await self.state_registry.discard(state)
            raise
        flow.advance(FlowState.STATE_ISSUED)
        return auth_url

    async def sign_in(self, code: str, state: str) -> SignInResult:
        """Complete the primary sign-in flow and return a fresh session credential."""
        provider = self.primary_provider
        flow = FlowTracker("sign_in", provider, self.metrics_client)
        try:
            grant, profile = await self._exchange(flow, provider, code, state)

            async with self.database_session_maker() as database_session:
                try:
                    user = await get_or_create_user(
                        database_session, profile.identifier, profile.name or ""
                    )
                except SQLAlchemyError as e:
                    logger.exception("Unable to resolve user for sign-in")
                    raise PersistFailed(
                        "Failed to create or retrieve user account", details=str(e)
                    ) from e

                await self._persist(database_session, user.guid, provider, grant, None)
            flow.advance(FlowState.PERSISTED)

            token = self.session_issuer.issue(user)
            flow.advance(FlowState.SESSION_ISSUED)
        except AuthError as e:
            flow.fail(e)
            raise

        logger.info("User %s signed in through %s", user.guid, provider.value)
        return SignInResult(token=token, user=user)

    async def link_account(
        self, user_guid: str, provider: Provider, code: str, state: str
    ) -> str:
        """
        Link a storage-provider account to an authenticated user.

        Returns:
            str: The linked external account identifier (e.g. the GitHub login)
        """
        if not user_guid:
            raise Unauthenticated("User ID not found in token")
        if not provider.requires_account_identifier:
            raise ValueError(f"{provider.value} is not a storage provider")

        async with self.database_session_maker() as database_session:
            try:
                async with database_session.begin():
                    user = await find_user_by_guid(database_session, user_guid)
            except SQLAlchemyError as e:
                raise PersistFailed(
                    "Failed to retrieve user account", details=str(e)
                ) from e
            if user is None:
                raise Unauthenticated("User not found")

            flow = FlowTracker("link", provider, self.metrics_client)
            try:
                grant, profile = await self._exchange(flow, provider, code, state)
                await self._persist(
                    database_session, user.guid, provider, grant, profile.identifier
                )
                flow.advance(FlowState.PERSISTED)
                flow.advance(FlowState.LINK_CONFIRMED)
            except AuthError as e:
                flow.fail(e)
                raise

        logger.info(
            "User %s linked %s account %s", user_guid, provider.value, profile.identifier
        )
        return profile.identifier

    async def list_accounts(self, user_guid: str, provider: Provider) -> List[str]:
        """List linked account identifiers for one storage provider."""
        try:
            async with self.database_session_maker() as database_session:
                return await list_account_identifiers(database_session, user_guid, provider)
        except SQLAlchemyError as e:
            logger.exception("Unable to list %s accounts", provider.value)
            raise PersistFailed(
                f"Failed to retrieve {provider.slug} accounts", details=str(e)
            ) from e

    async def refresh(self, credential_guid: str) -> ProviderCredential:
        """
        Redeem the stored refresh token of a credential and keep the new access token.

        Raises:
            ExchangeFailed: If the credential has no refresh token or the provider
                rejects it
            PersistFailed: If the credential cannot be read or written
        """
        try:
            async with self.database_session_maker() as database_session:
                async with database_session.begin():
                    credential = await find_credential_by_guid(
                        database_session, credential_guid
                    )
                if credential is None:
                    raise PersistFailed("Credential not found")
                adapter = self.adapter_for(Provider(credential.provider))
                return await refresh_credential(
                    database_session, adapter, credential_guid
                )
        except NoResultFound as e:
            raise PersistFailed("Credential not found", details=str(e)) from e
        except SQLAlchemyError as e:
            logger.exception("Unable to refresh credential %s", credential_guid)
            raise PersistFailed("Failed to retrieve token", details=str(e)) from e

    async def credential_status(self, credential_guid: str) -> CredentialStatus:
        """
        Report whether a stored credential still works at its provider.

        The access token is checked against the profile endpoint. The refresh token
        is checked by redeeming it, and the access token obtained that way is
        discarded, so the stored credential is left unchanged.
        """
        try:
            async with self.database_session_maker() as database_session:
                async with database_session.begin():
                    credential = await find_credential_by_guid(
                        database_session, credential_guid
                    )
        except SQLAlchemyError as e:
            raise PersistFailed("Failed to retrieve token", details=str(e)) from e
        if credential is None:
            raise PersistFailed("Credential not found")

        adapter = self.adapter_for(Provider(credential.provider))
        return CredentialStatus(
            access_token_valid=await adapter.is_access_token_valid(
                credential.access_token
            ),
            refresh_token_valid=await adapter.is_refresh_token_valid(
                credential.refresh_token
            ),
            validity_left=access_token_validity_left(credential),
        )

    async def _exchange(
        self, flow: FlowTracker, provider: Provider, code: str, state: str
    ) -> tuple[Grant, ProviderProfile]:
        adapter = self.adapter_for(provider)
        flow.advance(FlowState.CALLBACK_RECEIVED)

        if not await self.state_registry.verify_and_consume(state):
            raise InvalidState()
        flow.advance(FlowState.STATE_VERIFIED)

        grant = await adapter.exchange_code(code)
        flow.advance(FlowState.CODE_EXCHANGED)

        profile = await adapter.fetch_profile(grant.access_token)
        flow.advance(FlowState.PROFILE_FETCHED)
        return grant, profile

    async def _persist(
        self,
        database_session: AsyncSession,
        user_guid: str,
        provider: Provider,
        grant: Grant,
        account_identifier: Optional[str],
    ) -> None:
        try:
            await upsert_credential(
                database_session,
                user_guid,
                provider,
                grant,
                account_identifier=account_identifier,
            )
        except SQLAlchemyError as e:
            logger.exception("Unable to store %s credential", provider.value)
            raise PersistFailed(details=str(e)) from e
