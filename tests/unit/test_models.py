"""Unit tests for database models.

Run with: pytest tests/unit/test_models.py -v
"""

import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from taskowner.db.models import (
    Conversation,
    ConversationState,
    FollowUp,
    FollowUpType,
    Task,
    TaskStatus,
    Tenant,
)


class TestTask:
    """Test Task model."""

    async def test_defaults_applied_on_flush(self, session_factory, tenant: Tenant) -> None:
        async with session_factory() as db:
            task = Task(tenant_id=tenant.id, external_item_id="42")
            db.add(task)
            await db.flush()

            assert isinstance(task.id, uuid.UUID)
            assert task.status == TaskStatus.PENDING_OWNER
            assert task.external_item_url == ""
            assert task.owner_chat_user_id is None

    async def test_one_row_per_tenant_item(self, session_factory, tenant: Tenant) -> None:
        """Cannot track the same tracker item twice for a tenant."""
        async with session_factory() as db:
            db.add(Task(tenant_id=tenant.id, external_item_id="42"))
            await db.commit()

        async with session_factory() as db:
            db.add(Task(tenant_id=tenant.id, external_item_id="42"))
            with pytest.raises(IntegrityError):
                await db.flush()

    async def test_status_stored_as_value(self, session_factory, tenant: Tenant) -> None:
        async with session_factory() as db:
            task = Task(tenant_id=tenant.id, external_item_id="7", status=TaskStatus.ESCALATED)
            db.add(task)
            await db.commit()

        async with session_factory() as db:
            loaded = await db.get(Task, task.id)
            assert loaded.status is TaskStatus.ESCALATED
            assert loaded.status.value == "escalated"

    async def test_llm_context_serializes_rich_values(self, session_factory, tenant: Tenant) -> None:
        """JSON column turns UUIDs and datetimes into strings."""
        marker = uuid.uuid4()
        stamp = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        async with session_factory() as db:
            task = Task(
                tenant_id=tenant.id,
                external_item_id="8",
                llm_context={"ref": marker, "at": stamp, "key_points": []},
            )
            db.add(task)
            await db.commit()

        async with session_factory() as db:
            loaded = await db.get(Task, task.id)
            assert loaded.llm_context == {
                "ref": str(marker),
                "at": stamp.isoformat(),
                "key_points": [],
            }


class TestTimestamps:
    """Timestamps always come back timezone-aware UTC."""

    async def test_naive_datetime_read_back_as_utc(self, session_factory, tenant: Tenant) -> None:
        async with session_factory() as db:
            task = Task(
                tenant_id=tenant.id,
                external_item_id="9",
                due_date=datetime(2026, 3, 9, 17, 0),
            )
            db.add(task)
            await db.commit()

        async with session_factory() as db:
            loaded = await db.get(Task, task.id)
            assert loaded.due_date == datetime(2026, 3, 9, 17, 0, tzinfo=timezone.utc)
            assert loaded.due_date.tzinfo is not None


class TestConversation:
    """Test Conversation model."""

    async def test_one_conversation_per_user(self, session_factory, tenant: Tenant) -> None:
        async with session_factory() as db:
            db.add(Conversation(tenant_id=tenant.id, chat_user_id="U1"))
            await db.commit()

        async with session_factory() as db:
            db.add(Conversation(tenant_id=tenant.id, chat_user_id="U1"))
            with pytest.raises(IntegrityError):
                await db.flush()

    async def test_starts_idle(self, session_factory, tenant: Tenant) -> None:
        async with session_factory() as db:
            conversation = Conversation(tenant_id=tenant.id, chat_user_id="U2")
            db.add(conversation)
            await db.flush()
            assert conversation.state == ConversationState.IDLE
            assert conversation.active_task_id is None


class TestFollowUp:
    """Test FollowUp model."""

    async def test_response_defaults(self, session_factory, make_task) -> None:
        task = await make_task()
        async with session_factory() as db:
            follow_up = FollowUp(
                task_id=task.id,
                type=FollowUpType.NEAR_DEADLINE,
                scheduled_at=datetime(2026, 3, 5, 9, 0, tzinfo=timezone.utc),
            )
            db.add(follow_up)
            await db.flush()
            assert follow_up.response_received is False
            assert follow_up.sent_at is None
