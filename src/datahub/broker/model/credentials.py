"""Provider credential data models.

Provides the SQLAlchemy model for OAuth grants stored per user, provider and
(for storage providers) external account, together with the closed enumeration
of supported providers.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from datahub.broker.model.base import Base, guidpk, str50, strtext


class Provider(str, Enum):
    """Supported OAuth providers.

    GOOGLE is the primary identity provider and never carries an account
    identifier. GITHUB is a storage provider; its account identifier is the
    GitHub login and a user may link several of them.
    """

    GOOGLE = "GOOGLE"
    GITHUB = "GITHUB"

    @property
    def slug(self) -> str:
        return self.value.lower()

    @property
    def requires_account_identifier(self) -> bool:
        return self is not Provider.GOOGLE

    @classmethod
    def from_slug(cls, slug: str) -> Optional["Provider"]:
        for provider in cls:
            if provider.slug == slug:
                return provider
        return None


class ProviderCredential(Base):
    """Stored OAuth grant for one (user, provider, account identifier) tuple.

    Two unique indexes enforce the tuple uniqueness at the storage layer. The
    partial index covers primary-provider rows, whose account identifier is NULL
    and would otherwise never collide.
    """

    __tablename__ = "provider_credentials"

    guid: Mapped[guidpk]
    user_guid: Mapped[str] = mapped_column(
        String(26), ForeignKey("users.guid", ondelete="CASCADE"), nullable=False
    )
    provider: Mapped[str50]
    account_identifier: Mapped[Optional[str]] = mapped_column(
        String(512), nullable=True
    )
    access_token: Mapped[strtext]
    access_token_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    refresh_token: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    refresh_token_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    access_token_issued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    refresh_token_issued_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    __table_args__ = (
        Index(
            "idx_provider_credentials_account",
            "user_guid",
            "provider",
            "account_identifier",
            unique=True,
        ),
        Index(
            "idx_provider_credentials_primary",
            "user_guid",
            "provider",
            unique=True,
            postgresql_where=text("account_identifier IS NULL"),
            sqlite_where=text("account_identifier IS NULL"),
        ),
        Index("idx_provider_credentials_user", "user_guid"),
    )
