"""Create secrets and log_events tables

Revision ID: 0001
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "secrets",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("ciphertext", sa.Text, nullable=False),
        sa.Column("pin_hash", sa.String(255), nullable=True),
        sa.Column("views_left", sa.Integer, nullable=False, server_default="1"),
        sa.Column("pin_attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("expires_at", sa.DateTime, nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("creator_ip", sa.String(64), nullable=True),
    )
    op.create_index("ix_secrets_expires_at", "secrets", ["expires_at"])

    op.create_table(
        "log_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("event_type", sa.String(32), nullable=False),
        sa.Column("secret_id", sa.String(64), nullable=True),
        sa.Column("ip_hash", sa.String(64), nullable=False),
        sa.Column("user_agent_hash", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_log_events_event_type", "log_events", ["event_type"])
    op.create_index("ix_log_events_created_at", "log_events", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_log_events_created_at", table_name="log_events")
    op.drop_index("ix_log_events_event_type", table_name="log_events")
    op.drop_table("log_events")

    op.drop_index("ix_secrets_expires_at", table_name="secrets")
    op.drop_table("secrets")
