"""Task ownership orchestration.

Turns tracker signals into the ownership lifecycle:

    PENDING_OWNER ──claim──▶ OWNED ──tracker done──▶ COMPLETED
         │                     │
         └──no match/timeout───┴──decline──▶ ESCALATED

Every escalation goes through ``escalate_to_admin``. Claim, decline and
the other user-triggered actions return an ``ActionOutcome`` instead of
raising so the response loop can phrase the result.
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskowner.config import settings
from taskowner.core.conversation import ConversationContextManager
from taskowner.core.follow_ups import FollowUpScheduler
from taskowner.core.identity import IdentityMatcher
from taskowner.core.types import ActionOutcome, FailureReason, SuggestedActionType
from taskowner.db.models import Task, TaskStatus, utcnow
from taskowner.integrations.interfaces import TrackerItem
from taskowner.tenants import TenantRegistry, TenantRuntime, as_uuid

logger = structlog.get_logger()

REASON_SHEET_MISS = "Task not found in Google Sheet"
COMPLETION_MESSAGE = "Great job completing the task! It's been marked as done in Asana."


class EscalationTimers(Protocol):
    def schedule_once(self, job_id: str, run_at: datetime, func: Callable[..., Any], *args: Any) -> None: ...


def due_phrase(due: datetime | None, now: datetime) -> str:
    """Relative due date in whole days, rounded up."""
    if due is None:
        return "no due date"
    days = math.ceil((due - now).total_seconds() / 86400)
    if days < 0:
        overdue = abs(days)
        return f"overdue by {overdue} day{'s' if overdue != 1 else ''}"
    if days == 0:
        return "due today"
    if days == 1:
        return "due tomorrow"
    return f"due in {days} days"


def proposition_message(item: TrackerItem, phrase: str) -> tuple[str, list[dict[str, Any]]]:
    text = f"New task: {item.name} ({phrase})"
    blocks = [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    "Hi there! Based on your expertise and the team's current workload, "
                    "I thought you'd be a good fit for this task:\n\n"
                    f"<{item.url}|{item.name} ({phrase})>"
                ),
            },
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": "Would you be able to take this one on?"},
        },
    ]
    return text, blocks


def escalation_message(item: TrackerItem, reason: str) -> tuple[str, list[dict[str, Any]]]:
    body = f"*Task Escalation*\n\n*Task:* {item.name}\n*Reason:* {reason}\n\n<{item.url}|View in Asana>"
    return body, [{"type": "section", "text": {"type": "mrkdwn", "text": body}}]


class TaskOwnershipOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: TenantRegistry,
        identity: IdentityMatcher,
        contexts: ConversationContextManager,
        follow_ups: FollowUpScheduler,
        timers: EscalationTimers | None = None,
        claim_timeout_hours: float | None = None,
        default_due_date_days: int | None = None,
        conversational_enabled: bool | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._sessions = session_factory
        self._registry = registry
        self._identity = identity
        self._contexts = contexts
        self._follow_ups = follow_ups
        self._timers = timers
        self._claim_timeout_hours = claim_timeout_hours or settings.claim_timeout_hours
        self._default_due_days = default_due_date_days or settings.default_due_date_days
        self._conversational = (
            settings.conversational_enabled if conversational_enabled is None else conversational_enabled
        )
        self._now = clock

    def attach_timers(self, timers: EscalationTimers) -> None:
        self._timers = timers

    async def _find_task(self, db: AsyncSession, tenant_id: uuid.UUID, external_item_id: str) -> Task | None:
        result = await db.execute(
            select(Task).where(
                Task.tenant_id == tenant_id,
                Task.external_item_id == external_item_id,
            )
        )
        return result.scalar_one_or_none()

    async def _display_name(self, runtime: TenantRuntime, chat_user_id: str) -> str:
        try:
            user = await runtime.chat.get_user(chat_user_id)
        except Exception as e:
            logger.warning("chat_user_lookup_failed", chat_user_id=chat_user_id, error=str(e))
            return chat_user_id
        return user.display_name if user else chat_user_id

    # ═══════════════════════════════════════════════════════════════════════
    # SEEKING AN OWNER
    # ═══════════════════════════════════════════════════════════════════════

    async def seek_ownership(self, external_item_id: str, tenant_id: uuid.UUID | str) -> Task | None:
        """Offer a newly routed work item to its designated owner.

        Safe to call repeatedly for the same item: a task that already
        left PENDING_OWNER, or whose proposition was already sent, is
        left alone.
        """
        runtime = self._registry.get(tenant_id)
        tid = runtime.id
        log = logger.bind(tenant_id=str(tid), external_item_id=external_item_id)
        log.info("seek_ownership_started")

        item = await runtime.tracker.get_item(external_item_id)

        async with self._sessions() as db:
            task = await self._find_task(db, tid, external_item_id)
            if task is not None and (
                task.status != TaskStatus.PENDING_OWNER or task.proposition_sent_at is not None
            ):
                log.info("seek_ownership_duplicate", task_id=str(task.id), status=task.status.value)
                return task
            if task is None:
                now = self._now()
                task = Task(
                    id=uuid.uuid4(),
                    tenant_id=tid,
                    external_item_id=external_item_id,
                    external_item_url=item.url,
                    status=TaskStatus.PENDING_OWNER,
                    due_date=item.due_date,
                    created_at=now,
                    updated_at=now,
                )
                db.add(task)
                await db.commit()
                log.info("task_created", task_id=str(task.id))

        row = await runtime.sheets.find_assignment(runtime.tenant.sheet_url, item.name)
        if row is None:
            log.warning("sheet_assignment_missing", item_name=item.name)
            await self.escalate_to_admin(task.id, runtime, item, REASON_SHEET_MISS)
            task.status = TaskStatus.ESCALATED
            return task

        chat_user = await runtime.chat.find_user_by_name(row.assignee)
        if chat_user is None:
            log.warning("assignee_chat_user_missing", assignee=row.assignee)
            await self.escalate_to_admin(task.id, runtime, item, f"Could not find Slack user: {row.assignee}")
            task.status = TaskStatus.ESCALATED
            return task

        now = self._now()
        text, blocks = proposition_message(item, due_phrase(item.due_date, now))
        message_ts = await runtime.chat.send_direct_message(chat_user.id, text, blocks=blocks)

        async with self._sessions() as db:
            await db.execute(
                update(Task)
                .where(Task.id == task.id)
                .values(proposition_message_ts=message_ts, proposition_sent_at=now, updated_at=now)
            )
            await db.commit()
        task.proposition_message_ts = message_ts
        task.proposition_sent_at = now
        log.info("proposition_sent", task_id=str(task.id), chat_user_id=chat_user.id, message_ts=message_ts)

        if self._conversational:
            await self._contexts.set_awaiting_proposition_response(tid, chat_user.id, task.id)

        self._arm_escalation(task.id, now)
        return task

    def _arm_escalation(self, task_id: uuid.UUID, now: datetime) -> None:
        if self._timers is None:
            logger.warning("escalation_timer_unavailable", task_id=str(task_id))
            return
        run_at = now + timedelta(hours=self._claim_timeout_hours)
        self._timers.schedule_once(f"escalate:{task_id}", run_at, self.escalate_unclaimed, task_id)
        logger.info("escalation_scheduled", task_id=str(task_id), run_at=run_at.isoformat())

    async def escalate_unclaimed(self, task_id: uuid.UUID | str) -> None:
        """Timer callback. A no-op unless the task is still waiting for an owner."""
        try:
            async with self._sessions() as db:
                task = await db.get(Task, as_uuid(task_id))
            if task is None or task.status != TaskStatus.PENDING_OWNER:
                logger.info(
                    "escalation_skipped_not_pending",
                    task_id=str(task_id),
                    status=task.status.value if task else None,
                )
                return
            runtime = self._registry.get(task.tenant_id)
            item = await runtime.tracker.get_item(task.external_item_id)
            await self.escalate_to_admin(
                task.id,
                runtime,
                item,
                f"No one claimed this task within {self._claim_timeout_hours:g} hours",
            )
        except Exception as e:
            logger.error("escalate_unclaimed_failed", task_id=str(task_id), error=str(e))

    async def escalate_to_admin(
        self,
        task_id: uuid.UUID,
        runtime: TenantRuntime,
        item: TrackerItem,
        reason: str,
    ) -> None:
        """Park the task as ESCALATED and tell the tenant administrator why."""
        now = self._now()
        async with self._sessions() as db:
            await db.execute(
                update(Task)
                .where(Task.id == task_id)
                .values(status=TaskStatus.ESCALATED, status_reason=reason, updated_at=now)
            )
            await db.commit()

        text, blocks = escalation_message(item, reason)
        try:
            await runtime.chat.send_direct_message(runtime.tenant.admin_chat_user_id, text, blocks=blocks)
        except Exception as e:
            logger.error("admin_escalation_send_failed", task_id=str(task_id), error=str(e))
            return
        logger.info("task_escalated", task_id=str(task_id), reason=reason)

    # ═══════════════════════════════════════════════════════════════════════
    # USER ACTIONS
    # ═══════════════════════════════════════════════════════════════════════

    async def claim_task(
        self,
        task_id: uuid.UUID | str,
        chat_user_id: str,
        tenant_id: uuid.UUID | str,
    ) -> ActionOutcome:
        action = SuggestedActionType.CLAIM_TASK
        log = logger.bind(task_id=str(task_id), chat_user_id=chat_user_id, tenant_id=str(tenant_id))
        try:
            runtime = self._registry.find(tenant_id)
            if runtime is None:
                return ActionOutcome.fail(action, FailureReason.TENANT_NOT_FOUND)

            async with self._sessions() as db:
                task = await db.get(Task, as_uuid(task_id))
            if task is None or task.tenant_id != runtime.id:
                return ActionOutcome.fail(action, FailureReason.TASK_NOT_FOUND)

            if task.status == TaskStatus.OWNED:
                if task.owner_chat_user_id == chat_user_id:
                    log.info("claim_repeated_by_owner")
                    return ActionOutcome.ok(action, detail="The user already owns this task.")
                owner_name = (
                    await self._display_name(runtime, task.owner_chat_user_id)
                    if task.owner_chat_user_id else "someone else"
                )
                log.warning("claim_rejected_already_owned", owner=task.owner_chat_user_id)
                return ActionOutcome.fail(action, FailureReason.ALREADY_CLAIMED, claimed_by_name=owner_name)
            if task.status == TaskStatus.COMPLETED:
                return ActionOutcome.fail(action, FailureReason.TASK_CLOSED)

            tracker_user_id = await self._identity.match(
                chat_user_id, runtime.id, runtime.tenant.tracker_workspace_id
            )
            if tracker_user_id is None:
                name = await self._display_name(runtime, chat_user_id)
                await self._identity.alert_unmatched(runtime.id, name, chat_user_id)
                return ActionOutcome.fail(action, FailureReason.IDENTITY_MATCH_FAILED)

            now = self._now()
            due = task.due_date or now + timedelta(days=self._default_due_days)
            async with self._sessions() as db:
                result = await db.execute(
                    update(Task)
                    .where(
                        Task.id == task.id,
                        Task.status.in_([TaskStatus.PENDING_OWNER, TaskStatus.ESCALATED]),
                    )
                    .values(
                        status=TaskStatus.OWNED,
                        status_reason=None,
                        owner_chat_user_id=chat_user_id,
                        owner_tracker_user_id=tracker_user_id,
                        claimed_at=now,
                        due_date=due,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await db.rollback()
                    current = await db.get(Task, task.id)
                    owner = current.owner_chat_user_id if current else None
                    log.warning("claim_lost_race", owner=owner)
                    if owner == chat_user_id:
                        return ActionOutcome.ok(action, detail="The user already owns this task.")
                    owner_name = await self._display_name(runtime, owner) if owner else "someone else"
                    return ActionOutcome.fail(action, FailureReason.ALREADY_CLAIMED, claimed_by_name=owner_name)
                await db.commit()

            task.status = TaskStatus.OWNED
            task.owner_chat_user_id = chat_user_id
            task.owner_tracker_user_id = tracker_user_id
            task.claimed_at = now
            task.due_date = due

            await runtime.tracker.reassign_item(task.external_item_id, tracker_user_id)
            name = await self._display_name(runtime, chat_user_id)
            await runtime.tracker.add_comment(
                task.external_item_id,
                f"Assigned to {name} via Slack on {now:%Y-%m-%d %H:%M} UTC",
            )
            await self._follow_ups.schedule_follow_ups(task)

            log.info("task_claimed", tracker_user_id=tracker_user_id, due_date=due.isoformat())
            return ActionOutcome.ok(action)
        except Exception as e:
            log.error("claim_task_failed", error=str(e))
            return ActionOutcome.fail(action, FailureReason.ERROR, detail=str(e))

    async def decline_task(
        self,
        task_id: uuid.UUID | str,
        chat_user_id: str,
        tenant_id: uuid.UUID | str,
        reason: str | None = None,
    ) -> ActionOutcome:
        action = SuggestedActionType.DECLINE_TASK
        log = logger.bind(task_id=str(task_id), chat_user_id=chat_user_id, tenant_id=str(tenant_id))
        try:
            runtime = self._registry.find(tenant_id)
            if runtime is None:
                return ActionOutcome.fail(action, FailureReason.TENANT_NOT_FOUND)

            async with self._sessions() as db:
                task = await db.get(Task, as_uuid(task_id))
            if task is None or task.tenant_id != runtime.id:
                return ActionOutcome.fail(action, FailureReason.TASK_NOT_FOUND)
            if task.status == TaskStatus.COMPLETED:
                return ActionOutcome.fail(action, FailureReason.TASK_CLOSED)
            if task.status == TaskStatus.OWNED and task.owner_chat_user_id != chat_user_id:
                owner_name = (
                    await self._display_name(runtime, task.owner_chat_user_id)
                    if task.owner_chat_user_id else "someone else"
                )
                return ActionOutcome.fail(action, FailureReason.ALREADY_CLAIMED, claimed_by_name=owner_name)

            item = await runtime.tracker.get_item(task.external_item_id)
            name = await self._display_name(runtime, chat_user_id)
            text = f"User {name} declined the task"
            if reason:
                text += f": {reason}"
            await self.escalate_to_admin(task.id, runtime, item, text)
            log.info("task_declined", reason=reason)
            return ActionOutcome.ok(action)
        except Exception as e:
            log.error("decline_task_failed", error=str(e))
            return ActionOutcome.fail(action, FailureReason.ERROR, detail=str(e))

    async def notify_admin(
        self,
        task_id: uuid.UUID | str,
        chat_user_id: str,
        tenant_id: uuid.UUID | str,
        details: dict[str, Any] | None = None,
    ) -> ActionOutcome:
        """Pass a reported blocker on to the administrator. Status is unchanged."""
        action = SuggestedActionType.NOTIFY_ADMIN
        try:
            runtime = self._registry.find(tenant_id)
            if runtime is None:
                return ActionOutcome.fail(action, FailureReason.TENANT_NOT_FOUND)
            async with self._sessions() as db:
                task = await db.get(Task, as_uuid(task_id))
            if task is None or task.tenant_id != runtime.id:
                return ActionOutcome.fail(action, FailureReason.TASK_NOT_FOUND)

            item = await runtime.tracker.get_item(task.external_item_id)
            summary = "\n".join(f"• {k}: {v}" for k, v in (details or {}).items() if v) or "No details given"
            text = (
                f"*Blocker reported*\n\n*Task:* {item.name}\n*Reported by:* <@{chat_user_id}>\n"
                f"{summary}\n\n<{item.url}|View in Asana>"
            )
            await runtime.chat.send_direct_message(runtime.tenant.admin_chat_user_id, text)
            logger.info("admin_notified_of_blocker", task_id=str(task.id), chat_user_id=chat_user_id)
            return ActionOutcome.ok(action)
        except Exception as e:
            logger.error("notify_admin_failed", task_id=str(task_id), error=str(e))
            return ActionOutcome.fail(action, FailureReason.ERROR, detail=str(e))

    async def request_escalation(
        self,
        task_id: uuid.UUID | str,
        chat_user_id: str,
        tenant_id: uuid.UUID | str,
        details: dict[str, Any] | None = None,
    ) -> ActionOutcome:
        """Owner asked for help: hand the task to the administrator."""
        action = SuggestedActionType.ESCALATE
        try:
            runtime = self._registry.find(tenant_id)
            if runtime is None:
                return ActionOutcome.fail(action, FailureReason.TENANT_NOT_FOUND)
            async with self._sessions() as db:
                task = await db.get(Task, as_uuid(task_id))
            if task is None or task.tenant_id != runtime.id:
                return ActionOutcome.fail(action, FailureReason.TASK_NOT_FOUND)
            if task.status == TaskStatus.COMPLETED:
                return ActionOutcome.fail(action, FailureReason.TASK_CLOSED)

            item = await runtime.tracker.get_item(task.external_item_id)
            name = await self._display_name(runtime, chat_user_id)
            what = (details or {}).get("help_needed") or (details or {}).get("description")
            reason = f"{name} asked for help" + (f": {what}" if what else "")
            await self.escalate_to_admin(task.id, runtime, item, reason)
            return ActionOutcome.ok(action)
        except Exception as e:
            logger.error("request_escalation_failed", task_id=str(task_id), error=str(e))
            return ActionOutcome.fail(action, FailureReason.ERROR, detail=str(e))

    # ═══════════════════════════════════════════════════════════════════════
    # COMPLETION
    # ═══════════════════════════════════════════════════════════════════════

    async def mark_task_completed(
        self,
        task_id: uuid.UUID | str,
        notify: bool = True,
        owned_only: bool = False,
    ) -> bool:
        """Move a task to COMPLETED exactly once.

        Returns False when another caller got there first; only the
        caller that performed the transition sends the acknowledgement.
        With ``owned_only`` a task nobody has claimed is left alone.
        """
        tid = as_uuid(task_id)
        now = self._now()
        guard = (
            Task.status == TaskStatus.OWNED if owned_only
            else Task.status != TaskStatus.COMPLETED
        )
        async with self._sessions() as db:
            result = await db.execute(
                update(Task)
                .where(Task.id == tid, guard)
                .values(status=TaskStatus.COMPLETED, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                return False
            await db.commit()
            task = await db.get(Task, tid)

        logger.info("task_completed", task_id=str(tid))
        if notify and task is not None and task.owner_chat_user_id:
            runtime = self._registry.get(task.tenant_id)
            await runtime.chat.send_direct_message(task.owner_chat_user_id, COMPLETION_MESSAGE)
        return True

    async def handle_task_completed(self, external_item_id: str, tenant_id: uuid.UUID | str) -> bool:
        async with self._sessions() as db:
            task = await self._find_task(db, as_uuid(tenant_id), external_item_id)
        if task is None:
            logger.warning("completed_task_unknown", external_item_id=external_item_id, tenant_id=str(tenant_id))
            return False
        return await self.mark_task_completed(task.id)

    async def check_completed_tasks(self) -> int:
        """Periodic scan: complete every OWNED task whose tracker item is done."""
        completed = 0
        for runtime in self._registry.all():
            try:
                async with self._sessions() as db:
                    result = await db.execute(
                        select(Task.id, Task.external_item_id).where(
                            Task.tenant_id == runtime.id,
                            Task.status == TaskStatus.OWNED,
                        )
                    )
                    owned = list(result.all())
            except Exception as e:
                logger.error("completion_scan_failed", tenant_id=str(runtime.id), error=str(e))
                continue

            for task_id, external_item_id in owned:
                try:
                    if not await runtime.tracker.is_item_completed(external_item_id):
                        continue
                    if await self.handle_task_completed(external_item_id, runtime.id):
                        completed += 1
                except Exception as e:
                    logger.error("completion_check_failed", task_id=str(task_id), error=str(e))

        if completed:
            logger.info("completion_check_done", completed=completed)
        return completed
