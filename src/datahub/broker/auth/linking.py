"""
Account Linking Policy

Decides create-vs-update semantics when persisting a provider grant:

- Primary provider (no account identifier): at most one credential per
  (user, provider). A repeat sign-in overwrites the stored material.
- Storage provider (account identifier required): at most one credential per
  (user, provider, account). A user may hold independent credentials for several
  accounts of the same provider at once.

The lookup and insert run without a surrounding lock. The schema's unique indexes
are the authority: when two requests race to insert the same new account, the loser
gets an IntegrityError and its grant is applied to the winner's row as an update.
Only a definitive "no matching row" takes the create branch; any other database
error propagates unchanged to the caller.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, NoResultFound
from sqlalchemy.ext.asyncio import AsyncSession
from ulid import ULID

from datahub.broker.auth.providers import Grant, ProviderAdapter
from datahub.broker.model.credentials import Provider, ProviderCredential

logger = logging.getLogger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to timestamps read back from stores that drop the offset."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _normalize_account_identifier(
    provider: Provider, account_identifier: Optional[str]
) -> Optional[str]:
    if not provider.requires_account_identifier:
        return None
    if not account_identifier:
        raise ValueError(f"{provider.value} credentials require an account identifier")
    return account_identifier


async def find_credential(
    database_session: AsyncSession,
    user_guid: str,
    provider: Provider,
    account_identifier: Optional[str] = None,
) -> Optional[ProviderCredential]:
    stmt = select(ProviderCredential).where(
        ProviderCredential.user_guid == user_guid,
        ProviderCredential.provider == provider.value,
    )
    if account_identifier is None:
        stmt = stmt.where(ProviderCredential.account_identifier.is_(None))
    else:
        stmt = stmt.where(ProviderCredential.account_identifier == account_identifier)
    return (await database_session.scalars(stmt)).first()


def apply_grant(credential: ProviderCredential, grant: Grant, now: datetime) -> None:
    """Overwrite access and refresh material on an existing credential."""
    credential.access_token = grant.access_token
    credential.access_token_expires_at = grant.expires_at
    credential.access_token_issued_at = now
    credential.refresh_token = grant.refresh_token
    credential.refresh_token_expires_at = grant.refresh_token_expires_at
    credential.refresh_token_issued_at = now if grant.refresh_token else None
    credential.updated_at = now


def new_credential(
    user_guid: str,
    provider: Provider,
    account_identifier: Optional[str],
    grant: Grant,
    now: datetime,
) -> ProviderCredential:
    return ProviderCredential(
        guid=str(ULID()),
        user_guid=user_guid,
        provider=provider.value,
        account_identifier=account_identifier,
        access_token=grant.access_token,
        access_token_expires_at=grant.expires_at,
        refresh_token=grant.refresh_token,
        refresh_token_expires_at=grant.refresh_token_expires_at,
        access_token_issued_at=now,
        refresh_token_issued_at=now if grant.refresh_token else None,
        created_at=now,
        updated_at=now,
    )


async def upsert_credential(
    database_session: AsyncSession,
    user_guid: str,
    provider: Provider,
    grant: Grant,
    account_identifier: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ProviderCredential:
    """
    Create or update the credential for (user, provider[, account]).

    Args:
        database_session: SQLAlchemy async session, not inside a transaction
        user_guid: Owning user
        provider: Provider the grant was issued by
        grant: Tokens returned by the code exchange
        account_identifier: External account (storage providers only)
        now: Timestamp to record, defaults to the current UTC time

    Returns:
        ProviderCredential: The stored record

    Raises:
        ValueError: If a storage provider grant has no account identifier
        SQLAlchemyError: For any database failure other than not-found
    """
    account_identifier = _normalize_account_identifier(provider, account_identifier)
    if now is None:
        now = datetime.now(timezone.utc)

    try:
        async with database_session.begin():
            credential = await find_credential(
                database_session, user_guid, provider, account_identifier
            )
            if credential is not None:
                apply_grant(credential, grant, now)
                logger.debug("Updated %s credential %s", provider.value, credential.guid)
                return credential

            credential = new_credential(
                user_guid, provider, account_identifier, grant, now
            )
            database_session.add(credential)
        logger.info("Created %s credential %s", provider.value, credential.guid)
        return credential
    except IntegrityError:
        logger.info(
            "Concurrent insert for %s credential, applying grant as update",
            provider.value,
        )

    async with database_session.begin():
        credential = await find_credential(
            database_session, user_guid, provider, account_identifier
        )
        if credential is None:
            raise NoResultFound("credential missing after a conflicting insert")
        apply_grant(credential, grant, now)
    return credential


async def list_account_identifiers(
    database_session: AsyncSession, user_guid: str, provider: Provider
) -> List[str]:
    """Return the linked account identifiers of a user for one provider."""
    async with database_session.begin():
        stmt = (
            select(ProviderCredential.account_identifier)
            .where(
                ProviderCredential.user_guid == user_guid,
                ProviderCredential.provider == provider.value,
                ProviderCredential.account_identifier.is_not(None),
            )
            .order_by(ProviderCredential.created_at, ProviderCredential.guid)
        )
        result = await database_session.scalars(stmt)
        return [identifier for identifier in result if identifier]


async def find_credential_by_guid(
    database_session: AsyncSession, credential_guid: str
) -> Optional[ProviderCredential]:
    stmt = select(ProviderCredential).where(ProviderCredential.guid == credential_guid)
    return (await database_session.scalars(stmt)).first()


def access_token_validity_left(
    credential: ProviderCredential, now: Optional[datetime] = None
) -> timedelta:
    """
    Time until the stored access token expires.

    Zero when the token has no recorded expiry or has already expired.
    """
    expires_at = as_utc(credential.access_token_expires_at)
    if expires_at is None:
        return timedelta(0)
    if now is None:
        now = datetime.now(timezone.utc)
    if expires_at <= now:
        return timedelta(0)
    return expires_at - now


def apply_refreshed_grant(
    credential: ProviderCredential, grant: Grant, now: datetime
) -> None:
    """
    Store a grant obtained with the credential's refresh token.

    The refresh material and its issuance time change only when the provider
    rotated the refresh token.
    """
    credential.access_token = grant.access_token
    credential.access_token_expires_at = grant.expires_at
    credential.access_token_issued_at = now
    if grant.refresh_token and grant.refresh_token != credential.refresh_token:
        credential.refresh_token = grant.refresh_token
        credential.refresh_token_expires_at = grant.refresh_token_expires_at
        credential.refresh_token_issued_at = now
    credential.updated_at = now


async def refresh_credential(
    database_session: AsyncSession,
    adapter: ProviderAdapter,
    credential_guid: str,
    now: Optional[datetime] = None,
) -> ProviderCredential:
    """
    Redeem a stored refresh token and save the new access token.

    The provider call runs between two transactions so no database transaction is
    held open across network I/O.

    Raises:
        NoResultFound: If the credential does not exist
        ExchangeFailed: If there is no refresh token or the provider rejects it
        SQLAlchemyError: For any other database failure
    """
    async with database_session.begin():
        credential = await find_credential_by_guid(database_session, credential_guid)
        if credential is None:
            raise NoResultFound(f"credential {credential_guid} not found")
        refresh_token = credential.refresh_token or ""

    grant = await adapter.refresh_grant(refresh_token, now=now)
    if now is None:
        now = datetime.now(timezone.utc)

    async with database_session.begin():
        credential = await find_credential_by_guid(database_session, credential_guid)
        if credential is None:
            raise NoResultFound(f"credential {credential_guid} not found")
        apply_refreshed_grant(credential, grant, now)
    logger.info("Refreshed %s credential %s", credential.provider, credential.guid)
    return credential
