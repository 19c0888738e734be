"""Time-based check-ins for owned tasks.

Two check-ins per claimed task: half-way between claim and due date,
and 24 hours before the due date. Rows are created at claim time and
picked up by the periodic ``process_due_follow_ups`` sweep.
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
from taskowner.core.conversation import ConversationContextManager
from taskowner.db.models import FollowUp, FollowUpType, Task, TaskStatus, utcnow
from taskowner.tenants import TenantRegistry, as_uuid

logger = structlog.get_logger()

NEAR_DEADLINE_OFFSET = timedelta(hours=24)


def format_due(due: datetime) -> str:
    return f"{due:%A, %B} {due.day}"


def follow_up_text(follow_up_type: FollowUpType, item_name: str, item_url: str, due: datetime | None) -> str:
    due_text = format_due(due) if due else "soon"
    if follow_up_type == FollowUpType.HALF_TIME:
        opener = (
            f"Hi! Just checking in on *{item_name}*. "
            f"You're about halfway to the due date ({due_text}). How's it going?"
        )
    else:
        opener = (
            f"Quick reminder: *{item_name}* is due {due_text}. "
            f"How's it looking? Let me know if you're blocked or need more time."
        )
    return f"{opener}\n<{item_url}|View in Asana>"


class FollowUpScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: TenantRegistry,
        contexts: ConversationContextManager,
        conversational_enabled: bool | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._sessions = session_factory
        self._registry = registry
        self._contexts = contexts
        self._conversational = (
            settings.conversational_enabled if conversational_enabled is None else conversational_enabled
        )
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

    async def schedule_follow_ups(self, task: Task, session: AsyncSession | None = None) -> list[FollowUp]:
        """Persist the check-ins that still lie in the future for ``task``."""
        if task.due_date is None or task.claimed_at is None:
            logger.debug("follow_ups_skipped_no_dates", task_id=str(task.id))
            return []
        if task.due_date <= task.claimed_at:
            logger.warning(
                "follow_ups_skipped_past_due",
                task_id=str(task.id),
                due_date=task.due_date.isoformat(),
                claimed_at=task.claimed_at.isoformat(),
            )
            return []

        now = self._now()
        candidates = [
            (FollowUpType.HALF_TIME, task.claimed_at + (task.due_date - task.claimed_at) / 2),
            (FollowUpType.NEAR_DEADLINE, task.due_date - NEAR_DEADLINE_OFFSET),
        ]
        created: list[FollowUp] = []
        async with self._scope(session) as db:
            for follow_up_type, at in candidates:
                if at <= now:
                    continue
                follow_up = FollowUp(
                    id=uuid.uuid4(),
                    task_id=task.id,
                    type=follow_up_type,
                    scheduled_at=at,
                    response_received=False,
                    created_at=now,
                )
                db.add(follow_up)
                created.append(follow_up)

        logger.info(
            "follow_ups_scheduled",
            task_id=str(task.id),
            types=[f.type.value for f in created],
        )
        return created

    async def process_due_follow_ups(self) -> int:
        """Send every check-in whose time has come. Returns how many were handled."""
        async with self._sessions() as db:
            result = await db.execute(
                select(FollowUp.id)
                .where(FollowUp.scheduled_at <= self._now(), FollowUp.sent_at.is_(None))
                .order_by(FollowUp.scheduled_at)
            )
            due_ids = list(result.scalars().all())

        handled = 0
        for follow_up_id in due_ids:
            try:
                await self.send_follow_up(follow_up_id)
                handled += 1
            except Exception as e:
                logger.error("follow_up_send_failed", follow_up_id=str(follow_up_id), error=str(e))
        return handled

    async def send_follow_up(self, follow_up_id: uuid.UUID | str) -> bool:
        """Send one check-in. Returns False when it was short-circuited."""
        fid = as_uuid(follow_up_id)
        async with self._sessions() as db:
            follow_up = await db.get(FollowUp, fid)
            if follow_up is None or follow_up.sent_at is not None:
                return False
            task = await db.get(Task, follow_up.task_id)
            if task is None:
                return False

            if task.status != TaskStatus.OWNED or not task.owner_chat_user_id:
                logger.info("follow_up_skipped_not_owned", task_id=str(task.id), status=task.status.value)
                follow_up.sent_at = self._now()
                await db.commit()
                return False

            runtime = self._registry.get(task.tenant_id)
            if await runtime.tracker.is_item_completed(task.external_item_id):
                logger.info("follow_up_skipped_item_completed", task_id=str(task.id))
                follow_up.sent_at = self._now()
                await db.commit()
                return False

            item = await runtime.tracker.get_item(task.external_item_id)
            await runtime.chat.send_direct_message(
                task.owner_chat_user_id,
                follow_up_text(follow_up.type, item.name, item.url, task.due_date),
            )
            follow_up.sent_at = self._now()
            await db.commit()

        logger.info(
            "follow_up_sent",
            task_id=str(task.id),
            follow_up_id=str(fid),
            type=follow_up.type.value,
        )

        if self._conversational:
            await self._contexts.set_awaiting_follow_up_response(
                task.tenant_id, task.owner_chat_user_id, fid, task.id
            )
        return True

    async def record_follow_up_response(
        self,
        task_id: uuid.UUID | str,
        text: str,
        intent: str | None = None,
        extracted_data: dict[str, Any] | None = None,
        session: AsyncSession | None = None,
    ) -> FollowUp | None:
        """Attach a reply to the latest sent, unanswered check-in for the task."""
        async with self._scope(session) as db:
            result = await db.execute(
                select(FollowUp)
                .where(
                    FollowUp.task_id == as_uuid(task_id),
                    FollowUp.sent_at.is_not(None),
                    FollowUp.response_received.is_(False),
                )
                .order_by(FollowUp.sent_at.desc())
                .limit(1)
            )
            follow_up = result.scalar_one_or_none()
            if follow_up is None or follow_up.response_received:
                return None
            follow_up.response_received = True
            follow_up.response_text = text
            follow_up.response_intent = intent
            follow_up.response_data = extracted_data
            follow_up.response_at = self._now()

        logger.info("follow_up_response_recorded", task_id=str(task_id), intent=intent)
        return follow_up
