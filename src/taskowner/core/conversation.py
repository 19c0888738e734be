"""Per-user conversation state machine and message history.

One Conversation row per (tenant, chat user). Transitions are driven
from outside: the orchestrator moves a user into
AWAITING_PROPOSITION_RESPONSE, the follow-up scheduler into
AWAITING_FOLLOW_UP_RESPONSE, and the response loop resolves both.

Every method accepts an optional ``session``. When given, the change
joins the caller's unit of work (the response loop commits a whole turn
at once); otherwise the method commits on its own.
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskowner.config import settings
from taskowner.core.types import ConversationContext
from taskowner.db.models import (
    Conversation,
    ConversationMessage,
    ConversationState,
    FollowUp,
    MessageRole,
    Task,
    TaskStatus,
    utcnow,
)
from taskowner.tenants import as_uuid

logger = structlog.get_logger()

_UPDATABLE_FIELDS = frozenset({
    "state",
    "chat_channel_id",
    "active_task_id",
    "pending_proposition_task_id",
    "pending_follow_up_id",
})


class ConversationContextManager:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_history: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._sessions = session_factory
        self._max_history = max_history or settings.max_conversation_history
        self._now = clock

    @asynccontextmanager
    async def _scope(self, session: AsyncSession | None) -> AsyncIterator[AsyncSession]:
        if session is not None:
            yield session
            return
        async with self._sessions() as db:
            try:
                yield db
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    async def _conversation(
        self,
        db: AsyncSession,
        tenant_id: uuid.UUID,
        chat_user_id: str,
    ) -> Conversation | None:
        # Created earlier in this unit of work but not flushed yet
        for pending in db.new:
            if (
                isinstance(pending, Conversation)
                and pending.tenant_id == tenant_id
                and pending.chat_user_id == chat_user_id
            ):
                return pending
        result = await db.execute(
            select(Conversation).where(
                Conversation.tenant_id == tenant_id,
                Conversation.chat_user_id == chat_user_id,
            )
        )
        return result.scalar_one_or_none()

    async def _get_or_create(
        self,
        db: AsyncSession,
        tenant_id: uuid.UUID,
        chat_user_id: str,
        channel_id: str | None,
    ) -> Conversation:
        conversation = await self._conversation(db, tenant_id, chat_user_id)
        if conversation is None:
            now = self._now()
            conversation = Conversation(
                id=uuid.uuid4(),
                tenant_id=tenant_id,
                chat_user_id=chat_user_id,
                chat_channel_id=channel_id,
                state=ConversationState.IDLE,
                last_interaction_at=now,
                created_at=now,
                updated_at=now,
            )
            db.add(conversation)
            logger.info(
                "conversation_created",
                tenant_id=str(tenant_id),
                chat_user_id=chat_user_id,
            )
        elif channel_id and conversation.chat_channel_id != channel_id:
            conversation.chat_channel_id = channel_id
        return conversation

    # ── Reads ──────────────────────────────────────────────────────────

    async def get_or_create_context(
        self,
        tenant_id: uuid.UUID | str,
        chat_user_id: str,
        channel_id: str | None = None,
        session: AsyncSession | None = None,
    ) -> ConversationContext:
        """Fetch (or lazily create) the conversation plus its recent turns."""
        tid = as_uuid(tenant_id)
        async with self._scope(session) as db:
            conversation = await self._get_or_create(db, tid, chat_user_id, channel_id)

            result = await db.execute(
                select(ConversationMessage)
                .where(ConversationMessage.conversation_id == conversation.id)
                .order_by(ConversationMessage.created_at.desc())
                .limit(self._max_history)
            )
            messages = list(reversed(result.scalars().all()))

        return ConversationContext(
            conversation=conversation,
            messages=messages,
        )

    async def correlate_message_to_task(
        self,
        tenant_id: uuid.UUID | str,
        chat_user_id: str,
        session: AsyncSession | None = None,
    ) -> Task | None:
        """Work out which task an inbound message is about.

        Conversation state is the primary signal; a user owning exactly
        one task is the fallback. Anything else is ambiguous.
        """
        tid = as_uuid(tenant_id)
        async with self._scope(session) as db:
            conversation = await self._conversation(db, tid, chat_user_id)
            if conversation is None:
                return None

            state = conversation.state
            if state == ConversationState.AWAITING_PROPOSITION_RESPONSE and conversation.pending_proposition_task_id:
                return await db.get(Task, conversation.pending_proposition_task_id)

            if state == ConversationState.AWAITING_FOLLOW_UP_RESPONSE:
                if conversation.active_task_id:
                    return await db.get(Task, conversation.active_task_id)
                if conversation.pending_follow_up_id:
                    follow_up = await db.get(FollowUp, conversation.pending_follow_up_id)
                    if follow_up is not None:
                        return await db.get(Task, follow_up.task_id)

            if state == ConversationState.IN_CONVERSATION and conversation.active_task_id:
                return await db.get(Task, conversation.active_task_id)

            owned = await self.owned_tasks(tid, chat_user_id, session=db)
            if len(owned) == 1:
                return owned[0]
            return None

    async def owned_tasks(
        self,
        tenant_id: uuid.UUID | str,
        chat_user_id: str,
        session: AsyncSession | None = None,
    ) -> list[Task]:
        async with self._scope(session) as db:
            result = await db.execute(
                select(Task)
                .where(
                    Task.tenant_id == as_uuid(tenant_id),
                    Task.owner_chat_user_id == chat_user_id,
                    Task.status == TaskStatus.OWNED,
                )
                .order_by(Task.claimed_at)
            )
            return list(result.scalars().all())

    # ── Writes ─────────────────────────────────────────────────────────

    async def add_message(
        self,
        conversation: Conversation,
        role: MessageRole,
        content: str,
        classified_intent: str | None = None,
        confidence: float | None = None,
        extracted_data: dict[str, Any] | None = None,
        chat_message_ts: str | None = None,
        session: AsyncSession | None = None,
    ) -> ConversationMessage:
        """Append a turn and bump the conversation's last-interaction time."""
        now = self._now()
        message = ConversationMessage(
            id=uuid.uuid4(),
            conversation_id=conversation.id,
            role=role,
            content=content,
            classified_intent=classified_intent,
            confidence=confidence,
            extracted_data=extracted_data,
            chat_message_ts=chat_message_ts,
            created_at=now,
        )
        async with self._scope(session) as db:
            db.add(message)
            if session is None:
                conversation = await db.merge(conversation)
            conversation.last_interaction_at = now
        return message

    async def update_context(
        self,
        tenant_id: uuid.UUID | str,
        chat_user_id: str,
        session: AsyncSession | None = None,
        **changes: Any,
    ) -> Conversation:
        """Partial patch of the conversation's state fields."""
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown conversation fields: {sorted(unknown)}")

        tid = as_uuid(tenant_id)
        async with self._scope(session) as db:
            conversation = await self._get_or_create(db, tid, chat_user_id, changes.get("chat_channel_id"))
            for key, value in changes.items():
                setattr(conversation, key, value)
            conversation.last_interaction_at = self._now()

        logger.debug(
            "conversation_updated",
            tenant_id=str(tid),
            chat_user_id=chat_user_id,
            state=conversation.state.value,
        )
        return conversation

    async def set_awaiting_proposition_response(
        self,
        tenant_id: uuid.UUID | str,
        chat_user_id: str,
        task_id: uuid.UUID,
        session: AsyncSession | None = None,
    ) -> Conversation:
        return await self.update_context(
            tenant_id,
            chat_user_id,
            session=session,
            state=ConversationState.AWAITING_PROPOSITION_RESPONSE,
            pending_proposition_task_id=task_id,
        )

    async def set_awaiting_follow_up_response(
        self,
        tenant_id: uuid.UUID | str,
        chat_user_id: str,
        follow_up_id: uuid.UUID,
        task_id: uuid.UUID,
        session: AsyncSession | None = None,
    ) -> Conversation:
        return await self.update_context(
            tenant_id,
            chat_user_id,
            session=session,
            state=ConversationState.AWAITING_FOLLOW_UP_RESPONSE,
            pending_follow_up_id=follow_up_id,
            active_task_id=task_id,
        )

    async def reset_to_idle(
        self,
        tenant_id: uuid.UUID | str,
        chat_user_id: str,
        session: AsyncSession | None = None,
    ) -> Conversation:
        """Back to IDLE, dropping pending pointers. The active task is kept."""
        return await self.update_context(
            tenant_id,
            chat_user_id,
            session=session,
            state=ConversationState.IDLE,
            pending_proposition_task_id=None,
            pending_follow_up_id=None,
        )

    async def expire_stale_contexts(
        self,
        tenant_id: uuid.UUID | str,
        ttl: timedelta | None = None,
    ) -> int:
        """Force non-idle conversations with no recent interaction back to IDLE."""
        tid = as_uuid(tenant_id)
        ttl = ttl or timedelta(hours=settings.conversation_ttl_hours)
        cutoff = self._now() - ttl

        async with self._sessions() as db:
            result = await db.execute(
                select(Conversation.chat_user_id).where(
                    Conversation.tenant_id == tid,
                    Conversation.state != ConversationState.IDLE,
                    Conversation.last_interaction_at < cutoff,
                )
            )
            stale_users = list(result.scalars().all())

        expired = 0
        for chat_user_id in stale_users:
            try:
                await self.reset_to_idle(tid, chat_user_id)
                expired += 1
            except Exception as e:
                logger.error(
                    "conversation_expire_failed",
                    tenant_id=str(tid),
                    chat_user_id=chat_user_id,
                    error=str(e),
                )

        if expired:
            logger.info("stale_conversations_expired", tenant_id=str(tid), count=expired)
        return expired
