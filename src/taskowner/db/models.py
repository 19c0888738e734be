"""taskowner database models: multi-tenant ownership schema.

Design principles:
- Every row hangs off a tenant for isolation
- JSON columns (JSONB on PostgreSQL) for LLM-maintained structures
- All timestamps stored and returned as timezone-aware UTC
- Portable column types so the schema also runs on SQLite
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB as _JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JSONB(TypeDecorator):
    """JSON column that is JSONB on PostgreSQL and handles UUID/datetime/Enum values."""

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect: Any) -> Any:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(_JSONB())
        return dialect.type_descriptor(JSON())

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        """Convert Python objects to JSON-serializable format before storing."""
        if value is None:
            return None
        return json.loads(json.dumps(value, default=self._json_default))

    @staticmethod
    def _json_default(obj: Any) -> Any:
        if isinstance(obj, uuid.UUID):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime; naive values coming back from SQLite are UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base carrying the portable type map."""

    type_annotation_map = {
        dict[str, Any]: JSONB,
        datetime: UTCDateTime,
    }


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class TaskStatus(str, Enum):
    """Ownership lifecycle of a tracked work item."""
    PENDING_OWNER = "pending_owner"  # Proposition out, nobody has claimed
    OWNED = "owned"                  # Claimed and reassigned in the tracker
    COMPLETED = "completed"          # Tracker reports done
    ESCALATED = "escalated"          # Handed to the tenant administrator


class ConversationState(str, Enum):
    IDLE = "idle"
    AWAITING_PROPOSITION_RESPONSE = "awaiting_proposition_response"
    AWAITING_FOLLOW_UP_RESPONSE = "awaiting_follow_up_response"
    IN_CONVERSATION = "in_conversation"


class FollowUpType(str, Enum):
    HALF_TIME = "half_time"
    NEAR_DEADLINE = "near_deadline"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


def _enum(enum_cls: type[Enum]) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        values_callable=lambda x: [e.value for e in x],
        native_enum=False,
        length=40,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# TENANTS
# ═══════════════════════════════════════════════════════════════════════════════

class Tenant(Base):
    """One customer organization, the top-level isolation boundary."""

    __tablename__ = "tenants"
    __table_args__ = (
        Index("ix_tenants_chat_workspace_id", "chat_workspace_id", unique=True),
        Index("ix_tenants_tracker_bot_user_id", "tracker_bot_user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    chat_workspace_id: Mapped[str] = mapped_column(
        String(64), nullable=False, comment="Slack team ID (T1234567890)"
    )
    tracker_workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tracker_bot_user_id: Mapped[str] = mapped_column(
        String(64), nullable=False,
        comment="Tracker user that work items are assigned to when they need an owner",
    )
    admin_chat_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sheet_url: Mapped[str] = mapped_column(Text, nullable=False)

    # Opaque secret references, never secret values
    chat_token_secret_name: Mapped[str] = mapped_column(String(255), nullable=False)
    tracker_token_secret_name: Mapped[str] = mapped_column(String(255), nullable=False)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)


# ═══════════════════════════════════════════════════════════════════════════════
# TASKS
# ═══════════════════════════════════════════════════════════════════════════════

class Task(Base):
    """One tracker work item under ownership orchestration."""

    __tablename__ = "tasks"
    __table_args__ = (
        UniqueConstraint("tenant_id", "external_item_id", name="uix_task_tenant_item"),
        Index("ix_tasks_tenant_status", "tenant_id", "status"),
        Index("ix_tasks_owner", "tenant_id", "owner_chat_user_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    external_item_id: Mapped[str] = mapped_column(String(64), nullable=False)
    external_item_url: Mapped[str] = mapped_column(Text, nullable=False, default="")

    status: Mapped[TaskStatus] = mapped_column(
        _enum(TaskStatus), default=TaskStatus.PENDING_OWNER, nullable=False
    )
    status_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    owner_chat_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    owner_tracker_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    due_date: Mapped[datetime | None] = mapped_column(nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Proposition correlation
    proposition_message_ts: Mapped[str | None] = mapped_column(String(64), nullable=True)
    proposition_sent_at: Mapped[datetime | None] = mapped_column(nullable=True)

    llm_context: Mapped[dict[str, Any] | None] = mapped_column(
        JSONB, nullable=True,
        comment="Accumulated task context maintained by the classifier",
    )

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)


class FollowUp(Base):
    """Scheduled check-in for an owned task."""

    __tablename__ = "follow_ups"
    __table_args__ = (
        Index("ix_follow_ups_task", "task_id"),
        Index("ix_follow_ups_due", "scheduled_at", "sent_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    task_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[FollowUpType] = mapped_column(_enum(FollowUpType), nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)

    response_received: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    response_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_intent: Mapped[str | None] = mapped_column(String(40), nullable=True)
    response_data: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    response_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


# ═══════════════════════════════════════════════════════════════════════════════
# CONVERSATIONS
# ═══════════════════════════════════════════════════════════════════════════════

class Conversation(Base):
    """The chat thread of record for one (tenant, chat user)."""

    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("tenant_id", "chat_user_id", name="uix_conversation_tenant_user"),
        Index("ix_conversations_state", "tenant_id", "state", "last_interaction_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    chat_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    chat_channel_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    state: Mapped[ConversationState] = mapped_column(
        _enum(ConversationState), default=ConversationState.IDLE, nullable=False
    )
    active_task_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True
    )
    pending_proposition_task_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True
    )
    pending_follow_up_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("follow_ups.id", ondelete="SET NULL"), nullable=True
    )

    last_interaction_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)


class ConversationMessage(Base):
    """Append-only turn log for a conversation."""

    __tablename__ = "conversation_messages"
    __table_args__ = (
        Index("ix_conversation_messages_created", "conversation_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[MessageRole] = mapped_column(_enum(MessageRole), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    classified_intent: Mapped[str | None] = mapped_column(String(40), nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    extracted_data: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    chat_message_ts: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
