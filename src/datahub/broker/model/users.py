"""User identity data models.

Provides the SQLAlchemy model for broker users and the lookup helpers used by the
primary sign-in flow. A user is created the first time a primary-provider profile
with a new email is seen and reused on every later sign-in.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Index, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column
from ulid import ULID

from datahub.broker.model.base import Base, guidpk, str255

logger = logging.getLogger(__name__)


class User(Base):
    """Broker user identity keyed by a unique email address."""

    __tablename__ = "users"

    guid: Mapped[guidpk]
    email: Mapped[str255]
    name: Mapped[str255]
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    __table_args__ = (Index("idx_users_email", "email", unique=True),)


async def find_user_by_email(
    database_session: AsyncSession, email: str
) -> Optional[User]:
    stmt = select(User).where(User.email == email)
    return (await database_session.scalars(stmt)).first()


async def find_user_by_guid(
    database_session: AsyncSession, guid: str
) -> Optional[User]:
    stmt = select(User).where(User.guid == guid)
    return (await database_session.scalars(stmt)).first()


async def get_or_create_user(
    database_session: AsyncSession,
    email: str,
    name: str,
    now: Optional[datetime] = None,
) -> User:
    """Return the user with the given email, creating it when none exists.

    Only a definitive "no matching row" result takes the create branch. When a
    concurrent request inserts the same email first, the unique index rejects our
    insert and the row written by the other request is returned instead. Any other
    database error propagates to the caller.
    """
    if now is None:
        now = datetime.now(timezone.utc)

    try:
        async with database_session.begin():
            user = await find_user_by_email(database_session, email)
            if user is not None:
                return user

            user = User(
                guid=str(ULID()),
                email=email,
                name=name,
                created_at=now,
                updated_at=now,
            )
            database_session.add(user)
        logger.info("Created user %s", user.guid)
        return user
    except IntegrityError:
        logger.info("User for email already created concurrently, re-reading")

    async with database_session.begin():
        stmt = select(User).where(User.email == email)
        return (await database_session.scalars(stmt)).one()
