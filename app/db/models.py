"""
Database Models - SQLAlchemy ORM models with strict typing.

All columns use Mapped[] type annotations. JSONB columns hold the
free-form blobs the dashboard stores (profile metadata, per-model token
maps, tags); everything the service computes on is an explicit column.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


# ============================================================================
# Users, plans and projects
# ============================================================================


class User(Base):
    """
    ORM model for users table.

    The id is the Supabase auth user id; rows are created at signup and never
    hard-deleted.
    """

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    surname: Mapped[str | None] = mapped_column(String(255), nullable=True)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict
    )
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    plan_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("plans.id"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        Index(
            "idx_users_stripe_customer",
            "stripe_customer_id",
            postgresql_where=(stripe_customer_id.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<User(id={self.id}, email={self.email})>"


class Plan(Base):
    """ORM model for plans table (subscription plan reference data)."""

    __tablename__ = "plans"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    monthly_price: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    yearly_price: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    features: Mapped[list[Any]] = mapped_column(JSONB, nullable=False, default=list)


class Project(Base):
    """ORM model for projects table."""

    __tablename__ = "projects"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    owner_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict
    )
    # Shared with collaborators to join; regenerating it invalidates the old one
    invite_code: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), nullable=False, unique=True, default=uuid4
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Project(id={self.id}, name={self.name})>"


class ProjectUser(Base):
    """ORM model for project_users table (project membership)."""

    __tablename__ = "project_users"

    project_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id"), primary_key=True
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="member")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("role IN ('owner', 'admin', 'member')", name="ck_project_user_role"),
        Index("idx_project_users_user", "user_id"),
    )


# ============================================================================
# Token accounting
# ============================================================================


class TokenPack(Base):
    """
    ORM model for token_packs table.

    Holds the denormalized per-model balance of a project. The authoritative
    pack is the non-expired one with the latest purchased_at.
    """

    __tablename__ = "token_packs"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    project_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id"), nullable=True
    )

    tokens_purchased: Mapped[dict[str, int]] = mapped_column(JSONB, nullable=False, default=dict)
    remaining_tokens: Mapped[dict[str, int]] = mapped_column(JSONB, nullable=False, default=dict)

    price_paid_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")

    purchased_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict
    )

    __table_args__ = (
        CheckConstraint("price_paid_minor >= 0", name="ck_token_pack_price_non_negative"),
        Index("idx_token_packs_project_active", "project_id", "expires_at", "purchased_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<TokenPack(id={self.id}, project_id={self.project_id}, "
            f"remaining={self.remaining_tokens})>"
        )


class TokenTransaction(Base):
    """
    ORM model for token_transactions table.

    Immutable purchase ledger, one row per model per checkout session.
    """

    __tablename__ = "token_transactions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    project_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    model_key: Mapped[str] = mapped_column(String(100), nullable=False)
    tokens_added: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount_paid_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    source: Mapped[str] = mapped_column(String(100), nullable=False)
    stripe_session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("tokens_added > 0", name="ck_token_transaction_tokens_positive"),
        UniqueConstraint("stripe_session_id", "model_key", name="uq_token_transaction_session"),
        Index(
            "idx_token_transactions_session",
            "stripe_session_id",
            postgresql_where=(stripe_session_id.isnot(None)),
        ),
    )


class TokenUsageLog(Base):
    """
    ORM model for token_usage_logs table.

    Immutable consumption ledger, one row per generation call.
    """

    __tablename__ = "token_usage_logs"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    project_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    )
    token_pack_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("token_packs.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    tokens_used: Mapped[int] = mapped_column(BigInteger, nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("tokens_used >= 0", name="ck_token_usage_non_negative"),
        Index("idx_token_usage_logs_project_created", "project_id", "created_at"),
    )


# ============================================================================
# Assistant chats - one table triple per assistant variant
# ============================================================================


class _ChatGroupColumns:
    """Columns shared by the chat group tables."""

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    project_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )


class _ChatColumns:
    """Columns shared by the chat session tables."""

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    project_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    total_tokens_used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )


class _MessageColumns:
    """Columns shared by the chat message tables."""

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    role: Mapped[str] = mapped_column(String(10), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    tokens_used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    ai_model: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )


class AiChatGroup(_ChatGroupColumns, Base):
    """General assistant chat folder."""

    __tablename__ = "ai_chat_groups"


class AiChat(_ChatColumns, Base):
    """General assistant chat session."""

    __tablename__ = "ai_chats"

    group_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("ai_chat_groups.id", ondelete="SET NULL"),
        nullable=True,
    )


class AiMessage(_MessageColumns, Base):
    """General assistant chat message."""

    __tablename__ = "ai_messages"

    chat_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("ai_chats.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    __table_args__ = (CheckConstraint("role IN ('user', 'ai')", name="ck_ai_message_role"),)


class AiSqlChatGroup(_ChatGroupColumns, Base):
    """SQL assistant chat folder."""

    __tablename__ = "ai_sql_chat_groups"


class AiSqlChat(_ChatColumns, Base):
    """SQL assistant chat session."""

    __tablename__ = "ai_sql_chats"

    group_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("ai_sql_chat_groups.id", ondelete="SET NULL"),
        nullable=True,
    )


class AiSqlMessage(_MessageColumns, Base):
    """SQL assistant chat message."""

    __tablename__ = "ai_sql_messages"

    chat_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("ai_sql_chats.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    __table_args__ = (CheckConstraint("role IN ('user', 'ai')", name="ck_ai_sql_message_role"),)


class AiRoadmapChatGroup(_ChatGroupColumns, Base):
    """Roadmap assistant chat folder."""

    __tablename__ = "ai_roadmap_chat_groups"


class AiRoadmapChat(_ChatColumns, Base):
    """Roadmap assistant chat session."""

    __tablename__ = "ai_roadmap_chats"

    group_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("ai_roadmap_chat_groups.id", ondelete="SET NULL"),
        nullable=True,
    )


class AiRoadmapMessage(_MessageColumns, Base):
    """Roadmap assistant chat message."""

    __tablename__ = "ai_roadmap_messages"

    chat_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("ai_roadmap_chats.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    __table_args__ = (
        CheckConstraint("role IN ('user', 'ai')", name="ck_ai_roadmap_message_role"),
    )


# ============================================================================
# Board and changelog
# ============================================================================


class Concept(Base):
    """
    ORM model for concepts table.

    A kanban/calendar card. metadata holds tags, the completed flag and the
    calendar date.
    """

    __tablename__ = "concepts"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    project_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    )
    created_by: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id"), nullable=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    group_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_concepts_project_created", "project_id", "created_at"),)


class Update(Base):
    """ORM model for updates table (changelog / blog posts)."""

    __tablename__ = "updates"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    author_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id"), nullable=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    tag: Mapped[str | None] = mapped_column(String(50), nullable=True)
    version: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
