"""initial users, incidents, query_history tables

Revision ID: d1e2f3a4b5c6
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "d1e2f3a4b5c6"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("username", sa.String(64), nullable=False, unique=True),
        sa.Column("email", sa.String(256), nullable=True),
        sa.Column("role", sa.String(16), server_default="analyst"),
        sa.Column("is_active", sa.Boolean(), server_default="1"),
        sa.Column("display_name", sa.String(128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_users_username", "users", ["username"], unique=True)

    op.create_table(
        "incidents",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("owner", sa.String(64), nullable=False),
        sa.Column("title", sa.String(512), nullable=False),
        sa.Column("severity", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), server_default="open"),
        sa.Column("system_context", sa.Text(), nullable=True),
        sa.Column("log_data", sa.Text(), nullable=False, server_default=""),
        sa.Column("classification", sa.String(32), nullable=True),
        sa.Column("confidence", sa.Integer(), nullable=True),
        sa.Column("mitre_attack", sa.JSON(), nullable=True),
        sa.Column("iocs", sa.JSON(), nullable=True),
        sa.Column("ai_analysis", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_incidents_owner", "incidents", ["owner"])
    op.create_index("ix_incidents_owner_created", "incidents", ["owner", "created_at"])

    op.create_table(
        "query_history",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("query", sa.Text(), nullable=False),
        sa.Column("query_type", sa.String(16), nullable=True),
        sa.Column("translated_query", sa.Text(), nullable=True),
        sa.Column("result_count", sa.Integer(), nullable=True),
        sa.Column("execution_time_ms", sa.Integer(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("is_saved", sa.Boolean(), server_default="0"),
        sa.Column("saved_name", sa.String(256), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_query_history_user_created", "query_history", ["user_id", "created_at"])
    op.create_index("ix_query_history_user_saved", "query_history", ["user_id", "is_saved"])


def downgrade() -> None:
    op.drop_index("ix_query_history_user_saved", table_name="query_history")
    op.drop_index("ix_query_history_user_created", table_name="query_history")
    op.drop_table("query_history")
    op.drop_index("ix_incidents_owner_created", table_name="incidents")
    op.drop_index("ix_incidents_owner", table_name="incidents")
    op.drop_table("incidents")
    op.drop_index("ix_users_username", table_name="users")
    op.drop_table("users")
