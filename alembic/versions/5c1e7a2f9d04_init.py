"""init

Revision ID: 5c1e7a2f9d04
Revises:
Create Date: 2026-10-17 10:12:41.118204

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5c1e7a2f9d04"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("guid", sa.String(26), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_users_email", "users", ["email"], unique=True)

    op.create_table(
        "provider_credentials",
        sa.Column("guid", sa.String(26), primary_key=True),
        sa.Column(
            "user_guid",
            sa.String(26),
            sa.ForeignKey("users.guid", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("provider", sa.String(50), nullable=False),
        sa.Column("account_identifier", sa.String(512), nullable=True),
        sa.Column("access_token", sa.Text, nullable=False),
        sa.Column("access_token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refresh_token", sa.Text, nullable=True),
        sa.Column("refresh_token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("access_token_issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("refresh_token_issued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_provider_credentials_account",
        "provider_credentials",
        ["user_guid", "provider", "account_identifier"],
        unique=True,
    )
    # NULL identifiers never collide in the index above.
    op.create_index(
        "idx_provider_credentials_primary",
        "provider_credentials",
        ["user_guid", "provider"],
        unique=True,
        postgresql_where=sa.text("account_identifier IS NULL"),
    )
    op.create_index(
        "idx_provider_credentials_user", "provider_credentials", ["user_guid"]
    )


def downgrade() -> None:
    op.drop_table("provider_credentials")
    op.drop_table("users")
