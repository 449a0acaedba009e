"""
Unit tests for the account linking policy in datahub.broker.auth.linking

Tests cover create-vs-update semantics for primary and storage providers, the
refresh timestamp rule, conflict handling through the unique indexes, listing, and
refreshing a stored credential.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, NoResultFound
from sqlalchemy.ext.asyncio import AsyncSession

import datahub.broker.auth.linking as linking_module
from datahub.broker.auth.errors import ExchangeFailed
from datahub.broker.auth.linking import (
    access_token_validity_left,
    apply_refreshed_grant,
    as_utc,
    find_credential,
    find_credential_by_guid,
    list_account_identifiers,
    new_credential,
    refresh_credential,
    upsert_credential,
)
from datahub.broker.auth.providers import GoogleAdapter, Grant
from datahub.broker.model.credentials import Provider, ProviderCredential
from datahub.broker.model.users import get_or_create_user


@pytest.fixture
async def user(session: AsyncSession):
    return await get_or_create_user(session, "ada@example.com", "Ada")


async def count_credentials(session: AsyncSession, **filters) -> int:
    stmt = select(func.count()).select_from(ProviderCredential)
    for column, value in filters.items():
        stmt = stmt.where(getattr(ProviderCredential, column) == value)
    async with session.begin():
        return (await session.execute(stmt)).scalar_one()


def grant(access: str, refresh=None, expires_in=3600) -> Grant:
    return Grant(
        access_token=access,
        refresh_token=refresh,
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    )


class TestPrimaryProvider:
    async def test_first_upsert_creates(self, session, user):
        credential = await upsert_credential(
            session, user.guid, Provider.GOOGLE, grant("a1", "r1")
        )

        assert credential.account_identifier is None
        assert credential.access_token == "a1"
        assert credential.refresh_token == "r1"
        assert await count_credentials(session) == 1

    async def test_second_upsert_updates_in_place(self, session, user):
        first = await upsert_credential(
            session, user.guid, Provider.GOOGLE, grant("a1", "r1")
        )
        second = await upsert_credential(
            session, user.guid, Provider.GOOGLE, grant("a2", "r2")
        )

        assert second.guid == first.guid
        assert await count_credentials(session) == 1

        async with session.begin():
            stored = await find_credential(session, user.guid, Provider.GOOGLE)
        assert stored.access_token == "a2"
        assert stored.refresh_token == "r2"

    async def test_account_identifier_is_ignored(self, session, user):
        await upsert_credential(
            session, user.guid, Provider.GOOGLE, grant("a1"), account_identifier="x"
        )
        await upsert_credential(session, user.guid, Provider.GOOGLE, grant("a2"))

        assert await count_credentials(session) == 1


class TestStorageProvider:
    async def test_two_accounts_are_independent(self, session, user):
        alice = await upsert_credential(
            session, user.guid, Provider.GITHUB, grant("a1"), account_identifier="alice"
        )
        bob = await upsert_credential(
            session, user.guid, Provider.GITHUB, grant("b1"), account_identifier="bob"
        )

        assert alice.guid != bob.guid
        assert await count_credentials(session, provider="GITHUB") == 2

    async def test_same_account_is_updated(self, session, user):
        first = await upsert_credential(
            session, user.guid, Provider.GITHUB, grant("a1"), account_identifier="alice"
        )
        second = await upsert_credential(
            session, user.guid, Provider.GITHUB, grant("a2"), account_identifier="alice"
        )

        assert second.guid == first.guid
        assert await count_credentials(session, provider="GITHUB") == 1
        assert second.access_token == "a2"

    async def test_account_identifier_is_required(self, session, user):
        with pytest.raises(ValueError):
            await upsert_credential(session, user.guid, Provider.GITHUB, grant("a1"))

    async def test_same_account_under_two_users(self, session, user):
        other = await get_or_create_user(session, "bob@example.com", "Bob")
        await upsert_credential(
            session, user.guid, Provider.GITHUB, grant("a1"), account_identifier="shared"
        )
        await upsert_credential(
            session, other.guid, Provider.GITHUB, grant("b1"), account_identifier="shared"
        )

        assert await count_credentials(session, account_identifier="shared") == 2


class TestRefreshTimestamps:
    async def test_refresh_issued_at_set_with_refresh_token(self, session, user):
        now = datetime.now(timezone.utc)
        credential = await upsert_credential(
            session, user.guid, Provider.GOOGLE, grant("a1", "r1"), now=now
        )

        assert as_utc(credential.access_token_issued_at) == now
        assert as_utc(credential.refresh_token_issued_at) == now
        assert as_utc(credential.created_at) == now
        assert as_utc(credential.updated_at) == now

    async def test_refresh_issued_at_cleared_without_refresh_token(self, session, user):
        earlier = datetime.now(timezone.utc) - timedelta(hours=1)
        later = datetime.now(timezone.utc)
        await upsert_credential(
            session, user.guid, Provider.GOOGLE, grant("a1", "r1"), now=earlier
        )
        credential = await upsert_credential(
            session, user.guid, Provider.GOOGLE, grant("a2"), now=later
        )

        assert credential.refresh_token is None
        assert credential.refresh_token_issued_at is None
        assert as_utc(credential.access_token_issued_at) == later
        assert as_utc(credential.updated_at) == later
        assert as_utc(credential.created_at) == earlier


class TestUniqueIndexes:
    async def test_duplicate_primary_row_is_rejected(self, session, user):
        now = datetime.now(timezone.utc)
        await upsert_credential(session, user.guid, Provider.GOOGLE, grant("a1"))

        with pytest.raises(IntegrityError):
            async with session.begin():
                session.add(
                    new_credential(user.guid, Provider.GOOGLE, None, grant("a2"), now)
                )

    async def test_conflicting_insert_becomes_update(self, session, user, monkeypatch):
        """An insert losing a race to the unique index is applied as an update."""
        await upsert_credential(
            session, user.guid, Provider.GITHUB, grant("a1"), account_identifier="alice"
        )

        calls = []
        original_find = linking_module.find_credential

        async def stale_find(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                return None
            return await original_find(*args, **kwargs)

        monkeypatch.setattr(linking_module, "find_credential", stale_find)

        credential = await upsert_credential(
            session, user.guid, Provider.GITHUB, grant("a2"), account_identifier="alice"
        )

        assert len(calls) == 2
        assert credential.access_token == "a2"
        assert await count_credentials(session) == 1


class TestListAccountIdentifiers:
    async def test_lists_in_creation_order(self, session, user):
        base = datetime.now(timezone.utc)
        for offset, login in enumerate(["carol", "alice", "bob"]):
            await upsert_credential(
                session,
                user.guid,
                Provider.GITHUB,
                grant(login),
                account_identifier=login,
                now=base + timedelta(seconds=offset),
            )
        await upsert_credential(session, user.guid, Provider.GOOGLE, grant("g1"))

        accounts = await list_account_identifiers(session, user.guid, Provider.GITHUB)

        assert accounts == ["carol", "alice", "bob"]

    async def test_empty_for_user_without_accounts(self, session, user):
        assert await list_account_identifiers(session, user.guid, Provider.GITHUB) == []


class TestAsUtc:
    def test_naive_value_gets_utc(self):
        assert as_utc(datetime(2024, 1, 2, 3, 4, 5)) == datetime(
            2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc
        )

    def test_aware_value_is_unchanged(self):
        value = datetime(2024, 1, 2, tzinfo=timezone(timedelta(hours=2)))
        assert as_utc(value) is value

    def test_none_passes_through(self):
        assert as_utc(None) is None

    async def test_read_back_timestamps_compare_with_aware_values(
        self, session, session_maker, user
    ):
        now = datetime.now(timezone.utc)
        stored = await upsert_credential(
            session, user.guid, Provider.GOOGLE, grant("a1", "r1"), now=now
        )

        async with session_maker() as other_session:
            async with other_session.begin():
                credential = await find_credential_by_guid(other_session, stored.guid)

        assert as_utc(credential.created_at) == now
        assert as_utc(credential.access_token_expires_at) > now


class TestValidityLeft:
    def test_remaining_lifetime(self):
        now = datetime.now(timezone.utc)
        credential = ProviderCredential(access_token_expires_at=now + timedelta(minutes=5))

        assert access_token_validity_left(credential, now) == timedelta(minutes=5)

    def test_expired_token_has_none_left(self):
        now = datetime.now(timezone.utc)
        credential = ProviderCredential(access_token_expires_at=now - timedelta(seconds=1))

        assert access_token_validity_left(credential, now) == timedelta(0)

    def test_token_without_expiry_has_none_left(self):
        credential = ProviderCredential(access_token_expires_at=None)

        assert access_token_validity_left(credential) == timedelta(0)

    def test_naive_stored_expiry_is_treated_as_utc(self):
        now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        credential = ProviderCredential(access_token_expires_at=datetime(2024, 1, 1, 13, 0))

        assert access_token_validity_left(credential, now) == timedelta(hours=1)


class TestApplyRefreshedGrant:
    def test_refresh_material_kept_when_not_rotated(self):
        earlier = datetime.now(timezone.utc) - timedelta(hours=1)
        now = datetime.now(timezone.utc)
        credential = new_credential("u1", Provider.GOOGLE, None, grant("a1", "r1"), earlier)

        apply_refreshed_grant(credential, grant("a2", "r1"), now)

        assert credential.access_token == "a2"
        assert credential.access_token_issued_at == now
        assert credential.refresh_token == "r1"
        assert credential.refresh_token_issued_at == earlier
        assert credential.updated_at == now
        assert credential.created_at == earlier

    def test_rotated_refresh_token_replaces_stored_one(self):
        earlier = datetime.now(timezone.utc) - timedelta(hours=1)
        now = datetime.now(timezone.utc)
        credential = new_credential("u1", Provider.GOOGLE, None, grant("a1", "r1"), earlier)

        apply_refreshed_grant(credential, grant("a2", "r2"), now)

        assert credential.refresh_token == "r2"
        assert credential.refresh_token_issued_at == now


class TestRefreshCredential:
    @pytest.fixture
    def google(self, google_config, http_session):
        return GoogleAdapter(google_config, http_session)

    async def test_refresh_stores_new_access_token(
        self, session, session_maker, user, google, fake_provider
    ):
        stored = await upsert_credential(
            session, user.guid, Provider.GOOGLE, grant("a1", "r1")
        )
        fake_provider.add_refresh("r1", "a2", expires_in=7200)
        now = datetime.now(timezone.utc)

        refreshed = await refresh_credential(session, google, stored.guid, now=now)

        assert refreshed.guid == stored.guid
        assert refreshed.access_token == "a2"
        assert fake_provider.token_requests[-1]["grant_type"] == "refresh_token"

        async with session_maker() as other_session:
            async with other_session.begin():
                credential = await find_credential_by_guid(other_session, stored.guid)
        assert credential.access_token == "a2"
        assert credential.refresh_token == "r1"
        assert as_utc(credential.access_token_expires_at) == now + timedelta(hours=2)
        assert as_utc(credential.access_token_issued_at) == now
        assert await count_credentials(session) == 1

    async def test_rejected_refresh_leaves_credential_unchanged(
        self, session, user, google
    ):
        stored = await upsert_credential(
            session, user.guid, Provider.GOOGLE, grant("a1", "r1")
        )

        with pytest.raises(ExchangeFailed):
            await refresh_credential(session, google, stored.guid)

        async with session.begin():
            credential = await find_credential_by_guid(session, stored.guid)
        assert credential.access_token == "a1"

    async def test_credential_without_refresh_token_fails(
        self, session, user, google, fake_provider
    ):
        stored = await upsert_credential(session, user.guid, Provider.GOOGLE, grant("a1"))

        with pytest.raises(ExchangeFailed):
            await refresh_credential(session, google, stored.guid)
        assert fake_provider.token_requests == []

    async def test_unknown_credential_is_not_found(self, session, google):
        with pytest.raises(NoResultFound):
            await refresh_credential(session, google, "01HZZZZZZZZZZZZZZZZZZZZZZZ")
