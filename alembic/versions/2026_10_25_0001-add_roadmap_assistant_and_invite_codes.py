"""add roadmap assistant and project invite codes

Revision ID: 2026_10_25_0001
Revises: 2026_10_18_0000
Create Date: 2026-10-25 00:00:00.000000

Adds:
- ai_roadmap_chat_groups / ai_roadmap_chats / ai_roadmap_messages for the
  roadmap assistant (same shape as the general and SQL chat tables)
- projects.invite_code: unique code collaborators use to join a project
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_25_0001"
down_revision: str | None = "2026_10_18_0000"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
    )


def _timestamp(name: str) -> sa.Column:
    return sa.Column(
        name, sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")
    )


def upgrade() -> None:
    # ========================================================================
    # Roadmap assistant chat tables
    # ========================================================================
    op.create_table(
        "ai_roadmap_chat_groups",
        _uuid_pk(),
        sa.Column("project_id", UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("metadata", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        _timestamp("created_at"),
    )
    op.create_index(
        "ix_ai_roadmap_chat_groups_project_id", "ai_roadmap_chat_groups", ["project_id"]
    )

    op.create_table(
        "ai_roadmap_chats",
        _uuid_pk(),
        sa.Column("project_id", UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("group_id", UUID(as_uuid=True), nullable=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("total_tokens_used", sa.BigInteger(), nullable=False, server_default="0"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(
            ["group_id"],
            ["ai_roadmap_chat_groups.id"],
            name="fk_ai_roadmap_chats_group",
            ondelete="SET NULL",
        ),
    )
    op.create_index("ix_ai_roadmap_chats_project_id", "ai_roadmap_chats", ["project_id"])

    op.create_table(
        "ai_roadmap_messages",
        _uuid_pk(),
        sa.Column("chat_id", UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", UUID(as_uuid=True), nullable=True),
        sa.Column("role", sa.String(10), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("tokens_used", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("ai_model", sa.String(100), nullable=True),
        _timestamp("created_at"),
        sa.CheckConstraint("role IN ('user', 'ai')", name="ck_ai_roadmap_message_role"),
        sa.ForeignKeyConstraint(
            ["chat_id"],
            ["ai_roadmap_chats.id"],
            name="fk_ai_roadmap_messages_chat",
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_ai_roadmap_messages_chat_id", "ai_roadmap_messages", ["chat_id"])

    # ========================================================================
    # Project invite codes
    # ========================================================================
    op.add_column(
        "projects",
        sa.Column(
            "invite_code",
            UUID(as_uuid=True),
            nullable=False,
            server_default=sa.text("gen_random_uuid()"),
        ),
    )
    op.create_unique_constraint("uq_projects_invite_code", "projects", ["invite_code"])


def downgrade() -> None:
    op.drop_constraint("uq_projects_invite_code", "projects", type_="unique")
    op.drop_column("projects", "invite_code")
    op.drop_table("ai_roadmap_messages")
    op.drop_table("ai_roadmap_chats")
    op.drop_table("ai_roadmap_chat_groups")
