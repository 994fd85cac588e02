"""Attempt log and ban tables.

Creates ``login_attempts`` (append-only failure log) and ``ip_bans``
(one row per identity and context with a single expiry column).

Revision ID: 001
Revises: None
Create Date: 2025-03-04
"""

import sqlalchemy as sa

from alembic import op

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "login_attempts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("ip", sa.String(), nullable=False),
        sa.Column("context", sa.String(), nullable=False),
        sa.Column("attempted_email", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_login_attempts_ip_context_created_at",
        "login_attempts",
        ["ip", "context", "created_at"],
    )

    op.create_table(
        "ip_bans",
        sa.Column("ip", sa.String(), nullable=False),
        sa.Column("context", sa.String(), nullable=False),
        sa.Column("banned_until", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("ip", "context"),
    )
    op.create_index("ix_ip_bans_banned_until", "ip_bans", ["banned_until"])


def downgrade() -> None:
    op.drop_index("ix_ip_bans_banned_until", table_name="ip_bans")
    op.drop_table("ip_bans")
    op.drop_index("ix_login_attempts_ip_context_created_at", table_name="login_attempts")
    op.drop_table("login_attempts")
