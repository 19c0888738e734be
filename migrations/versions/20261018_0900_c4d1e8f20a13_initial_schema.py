"""Initial schema: tenants, tasks, follow-ups, conversations, messages.

Revision ID: c4d1e8f20a13
Revises:
Create Date: 2026-10-18 09:00:00.000000+00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers
revision: str = "c4d1e8f20a13"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONB = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    # Tenants
    op.create_table(
        "tenants",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("chat_workspace_id", sa.String(64), nullable=False, comment="Slack team ID (T1234567890)"),
        sa.Column("tracker_workspace_id", sa.String(64), nullable=False),
        sa.Column("tracker_bot_user_id", sa.String(64), nullable=False),
        sa.Column("admin_chat_user_id", sa.String(64), nullable=False),
        sa.Column("sheet_url", sa.Text(), nullable=False),
        sa.Column("chat_token_secret_name", sa.String(255), nullable=False),
        sa.Column("tracker_token_secret_name", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_tenants_chat_workspace_id", "tenants", ["chat_workspace_id"], unique=True)
    op.create_index("ix_tenants_tracker_bot_user_id", "tenants", ["tracker_bot_user_id"])

    # Tasks
    op.create_table(
        "tasks",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.Uuid(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("external_item_id", sa.String(64), nullable=False),
        sa.Column("external_item_url", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(40), nullable=False, server_default="pending_owner"),
        sa.Column("status_reason", sa.Text(), nullable=True),
        sa.Column("owner_chat_user_id", sa.String(64), nullable=True),
        sa.Column("owner_tracker_user_id", sa.String(64), nullable=True),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("proposition_message_ts", sa.String(64), nullable=True),
        sa.Column("proposition_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("llm_context", JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_unique_constraint("uix_task_tenant_item", "tasks", ["tenant_id", "external_item_id"])
    op.create_index("ix_tasks_tenant_status", "tasks", ["tenant_id", "status"])
    op.create_index("ix_tasks_owner", "tasks", ["tenant_id", "owner_chat_user_id", "status"])

    # Follow-ups
    op.create_table(
        "follow_ups",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("task_id", sa.Uuid(), sa.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False),
        sa.Column("type", sa.String(40), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("response_received", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("response_text", sa.Text(), nullable=True),
        sa.Column("response_intent", sa.String(40), nullable=True),
        sa.Column("response_data", JSONB, nullable=True),
        sa.Column("response_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_follow_ups_task", "follow_ups", ["task_id"])
    op.create_index("ix_follow_ups_due", "follow_ups", ["scheduled_at", "sent_at"])

    # Conversations
    op.create_table(
        "conversations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.Uuid(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("chat_user_id", sa.String(64), nullable=False),
        sa.Column("chat_channel_id", sa.String(64), nullable=True),
        sa.Column("state", sa.String(40), nullable=False, server_default="idle"),
        sa.Column("active_task_id", sa.Uuid(), sa.ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True),
        sa.Column(
            "pending_proposition_task_id", sa.Uuid(),
            sa.ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column(
            "pending_follow_up_id", sa.Uuid(),
            sa.ForeignKey("follow_ups.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("last_interaction_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_unique_constraint("uix_conversation_tenant_user", "conversations", ["tenant_id", "chat_user_id"])
    op.create_index("ix_conversations_state", "conversations", ["tenant_id", "state", "last_interaction_at"])

    # Conversation messages
    op.create_table(
        "conversation_messages",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "conversation_id", sa.Uuid(),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("role", sa.String(40), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("classified_intent", sa.String(40), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("extracted_data", JSONB, nullable=True),
        sa.Column("chat_message_ts", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(
        "ix_conversation_messages_created", "conversation_messages", ["conversation_id", "created_at"]
    )


def downgrade() -> None:
    op.drop_table("conversation_messages")
    op.drop_table("conversations")
    op.drop_table("follow_ups")
    op.drop_table("tasks")
    op.drop_table("tenants")
