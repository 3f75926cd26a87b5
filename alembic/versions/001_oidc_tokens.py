"""OIDC token store: oidc_tokens.

Revision ID: 001
Revises: None
Create Date: 2026-10-17
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "oidc_tokens",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", sa.String(255), nullable=True),
        sa.Column("username", sa.String(255), nullable=False),
        sa.Column("oidc_unique_id", sa.String(255), nullable=False, server_default=""),
        sa.Column("oidc_username", sa.String(255), nullable=False, server_default=""),
        sa.Column("id_token", sa.Text(), nullable=False, server_default=""),
        sa.Column("access_token", sa.Text(), nullable=False, server_default=""),
        sa.Column("refresh_token", sa.Text(), nullable=False, server_default=""),
        sa.Column("expiry", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scope", sa.Text(), nullable=False, server_default=""),
        sa.Column("resource", sa.String(255), nullable=False, server_default=""),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("username", name="uq_oidc_tokens_username"),
    )
    op.create_index("ix_oidc_tokens_user_id", "oidc_tokens", ["user_id"])
    op.create_index("ix_oidc_tokens_oidc_unique_id", "oidc_tokens", ["oidc_unique_id"])


def downgrade() -> None:
    op.drop_index("ix_oidc_tokens_oidc_unique_id", table_name="oidc_tokens")
    op.drop_index("ix_oidc_tokens_user_id", table_name="oidc_tokens")
    op.drop_table("oidc_tokens")
