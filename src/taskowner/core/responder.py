"""Intent classification and response loop.

One inbound chat message is one turn:

1. load the conversation and append the user message
2. correlate the message to a task and pull live tracker detail
3. classify the message (retried on transient failure)
4. below the confidence threshold, ask for clarification and stop
5. map the intent to actions and run them against the orchestrator
6. generate the reply (retried like classification), send and record it
7. advance the conversation state

Conversation rows and history for the turn share one session that is
committed at the end, so a failed turn leaves them as they were.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, TypeVar

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from taskowner.config import settings
from taskowner.core.conversation import ConversationContextManager
from taskowner.core.follow_ups import FollowUpScheduler
from taskowner.core.orchestrator import TaskOwnershipOrchestrator
from taskowner.core.types import (
    FOLLOW_UP_RESOLVING_INTENTS,
    PROPOSITION_RESOLVING_INTENTS,
    QUESTION_INTENTS,
    AccumulatedContext,
    ActionOutcome,
    FailureReason,
    GeneratedReply,
    IncomingMessage,
    IntentClassification,
    MessageIntent,
    SuggestedAction,
    SuggestedActionType,
    suggest_actions,
)
from taskowner.db.models import ConversationState, MessageRole, Task, TaskStatus, utcnow
from taskowner.errors import CollaboratorError, TenantNotFoundError
from taskowner.integrations.interfaces import Classifier
from taskowner.integrations.prompts import format_item_for_llm
from taskowner.tenants import TenantRegistry, TenantRuntime

logger = structlog.get_logger()

T = TypeVar("T")

APOLOGY = (
    "I'm having trouble processing your message right now. "
    "Please try again in a moment."
)

NO_DETAIL_REPLY = (
    "I don't have the full task details here. Please check the Asana card for further detail, "
    "and let me know if you'd like to take it on."
)

CLARIFY_PROPOSITION = (
    "I'm not quite sure how to interpret your response. Would you like to take on this task? "
    "You can say 'yes' to accept, 'no' to decline, or ask me a question about the task."
)
CLARIFY_FOLLOW_UP = (
    "Thanks for your update! Could you clarify how the task is going? "
    "Let me know if you're on track, blocked, or if you've completed it."
)
CLARIFY_GENERAL = (
    "I'm not sure what you're asking. You can:\n"
    "• Ask about your tasks ('What are my tasks?')\n"
    "• Ask a question about a task I've sent you\n"
    "• Reply to any check-in I've sent you"
)


def clarification_for(state: ConversationState) -> str:
    if state == ConversationState.AWAITING_PROPOSITION_RESPONSE:
        return CLARIFY_PROPOSITION
    if state == ConversationState.AWAITING_FOLLOW_UP_RESPONSE:
        return CLARIFY_FOLLOW_UP
    return CLARIFY_GENERAL


class IntentResponseLoop:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: TenantRegistry,
        contexts: ConversationContextManager,
        orchestrator: TaskOwnershipOrchestrator,
        follow_ups: FollowUpScheduler,
        classifier: Classifier,
        confidence_threshold: float | None = None,
        classifier_max_attempts: int | None = None,
        classifier_retry_multiplier: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._sessions = session_factory
        self._registry = registry
        self._contexts = contexts
        self._orchestrator = orchestrator
        self._follow_ups = follow_ups
        self._classifier = classifier
        self._threshold = (
            settings.confidence_threshold if confidence_threshold is None else confidence_threshold
        )
        self._max_attempts = classifier_max_attempts or settings.classifier_max_attempts
        self._retry_multiplier = (
            settings.classifier_retry_multiplier
            if classifier_retry_multiplier is None else classifier_retry_multiplier
        )
        self._now = clock

    async def handle_message(self, message: IncomingMessage) -> GeneratedReply | None:
        """Process one inbound message. Never raises."""
        log = logger.bind(
            chat_user_id=message.user_id,
            tenant_id=message.tenant_id,
            channel_id=message.channel_id,
            message_ts=message.message_ts,
        )
        try:
            runtime = self._registry.get(message.tenant_id)
        except TenantNotFoundError:
            log.warning("message_for_unknown_tenant")
            return None

        try:
            async with self._sessions() as db:
                try:
                    reply = await self._turn(db, runtime, message, log)
                    await db.commit()
                except Exception:
                    await db.rollback()
                    raise
            return reply
        except Exception as e:
            log.error("message_handling_failed", error=str(e), exc_info=True)
            try:
                await runtime.chat.send_direct_message(message.user_id, APOLOGY)
            except Exception as send_error:
                log.error("apology_send_failed", error=str(send_error))
            return None

    async def _with_retry(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Call a classifier method, retrying transient collaborator failures with backoff."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(CollaboratorError),
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._retry_multiplier, max=10),
            reraise=True,
        ):
            with attempt:
                result = await fn(*args, **kwargs)
        return result

    async def _turn(
        self,
        db: AsyncSession,
        runtime: TenantRuntime,
        message: IncomingMessage,
        log: Any,
    ) -> GeneratedReply:
        tenant_id = runtime.id

        # 1. Context + user turn
        context = await self._contexts.get_or_create_context(
            tenant_id, message.user_id, message.channel_id, session=db
        )
        conversation = context.conversation
        state = conversation.state
        recent = context.recent_turns(5)
        user_turn = await self._contexts.add_message(
            conversation, MessageRole.USER, message.text,
            chat_message_ts=message.message_ts, session=db,
        )

        # 2. Task correlation + live detail
        task = await self._contexts.correlate_message_to_task(tenant_id, message.user_id, session=db)
        task_detail: str | None = None
        if task is not None:
            try:
                item = await runtime.tracker.get_item(task.external_item_id)
                task_detail = format_item_for_llm(item)
            except Exception as e:
                log.warning("task_detail_fetch_failed", task_id=str(task.id), error=str(e))

        # 3. Classification
        classification = await self._with_retry(
            self._classifier.classify, message.text, state.value, task_detail, recent
        )
        user_turn.classified_intent = classification.intent.value
        user_turn.confidence = classification.confidence
        user_turn.extracted_data = classification.extracted_data or None
        log.info(
            "message_classified",
            intent=classification.intent.value,
            confidence=classification.confidence,
            task_id=str(task.id) if task else None,
        )

        # 4. Low confidence: clarify, touch nothing else
        if classification.confidence < self._threshold:
            text = clarification_for(state)
            await runtime.chat.send_direct_message(message.user_id, text)
            await self._contexts.add_message(
                conversation, MessageRole.ASSISTANT, text,
                classified_intent=classification.intent.value,
                confidence=classification.confidence,
                extracted_data=classification.extracted_data or None,
                session=db,
            )
            log.info("low_confidence_clarification", state=state.value)
            return GeneratedReply(text=text)

        # 5. Actions
        actions = suggest_actions(classification, str(task.id) if task else None)
        outcome = await self._execute(actions, task, message, log)

        # 6. Reply
        if classification.intent in QUESTION_INTENTS and task is not None and task_detail is None:
            reply = GeneratedReply(text=NO_DETAIL_REPLY)
        else:
            additional = None
            if classification.intent == MessageIntent.LIST_TASKS:
                additional = await self._owned_task_summary(runtime, message.user_id, db)
            reply = await self._with_retry(
                self._classifier.generate_reply,
                classification,
                message.text,
                state.value,
                task_detail,
                outcome,
                accumulated_context=task.llm_context if task is not None else None,
                additional_context=additional,
            )
        reply.suggested_actions = actions

        await runtime.chat.send_direct_message(message.user_id, reply.text, blocks=reply.blocks)
        await self._contexts.add_message(
            conversation, MessageRole.ASSISTANT, reply.text,
            classified_intent=classification.intent.value,
            confidence=classification.confidence,
            extracted_data=classification.extracted_data or None,
            session=db,
        )
        if task is not None and reply.updated_context:
            merged = AccumulatedContext.from_dict(task.llm_context).merge(reply.updated_context, self._now())
            task.llm_context = merged.to_dict()

        # 7. State
        await self._advance_state(db, message, classification, task, outcome, conversation.active_task_id)
        return reply

    async def _execute(
        self,
        actions: list[SuggestedAction],
        task: Task | None,
        message: IncomingMessage,
        log: Any,
    ) -> ActionOutcome | None:
        outcome: ActionOutcome | None = None
        for action in actions:
            if action.type == SuggestedActionType.NO_ACTION:
                continue
            if task is None or action.task_id != str(task.id):
                log.warning(
                    "action_target_mismatch",
                    action=action.type.value,
                    action_task_id=action.task_id,
                    task_id=str(task.id) if task else None,
                )
                continue

            if action.type == SuggestedActionType.CLAIM_TASK:
                outcome = await self._orchestrator.claim_task(task.id, message.user_id, message.tenant_id)
            elif action.type == SuggestedActionType.DECLINE_TASK:
                outcome = await self._orchestrator.decline_task(
                    task.id, message.user_id, message.tenant_id, reason=action.metadata.get("reason"),
                )
            elif action.type == SuggestedActionType.NOTIFY_ADMIN:
                outcome = await self._orchestrator.notify_admin(
                    task.id, message.user_id, message.tenant_id,
                    details=action.metadata.get("blocker_details"),
                )
            elif action.type == SuggestedActionType.ESCALATE:
                outcome = await self._orchestrator.request_escalation(
                    task.id, message.user_id, message.tenant_id, details=action.metadata,
                )
            elif action.type == SuggestedActionType.UPDATE_TASK_STATUS:
                changed = await self._orchestrator.mark_task_completed(
                    task.id, notify=False, owned_only=True
                )
                if changed:
                    outcome = ActionOutcome.ok(action.type)
                elif task.status in (TaskStatus.PENDING_OWNER, TaskStatus.ESCALATED):
                    outcome = ActionOutcome.fail(action.type, FailureReason.NOT_OWNED)
                else:
                    outcome = ActionOutcome.fail(action.type, FailureReason.TASK_CLOSED)
            log.info(
                "action_executed",
                action=action.type.value,
                task_id=str(task.id),
                success=outcome.success if outcome else None,
            )
        return outcome

    async def _owned_task_summary(self, runtime: TenantRuntime, chat_user_id: str, db: AsyncSession) -> str:
        tasks = await self._contexts.owned_tasks(runtime.id, chat_user_id, session=db)
        if not tasks:
            return "The user currently owns no tasks."
        lines = ["The user's current tasks:"]
        for task in tasks:
            name = task.external_item_id
            try:
                item = await runtime.tracker.get_item(task.external_item_id)
                name = item.name
            except Exception as e:
                logger.warning("owned_task_detail_failed", task_id=str(task.id), error=str(e))
            due = f" (due {task.due_date:%Y-%m-%d})" if task.due_date else ""
            lines.append(f"- {name}{due}: {task.external_item_url}")
        return "\n".join(lines)

    async def _advance_state(
        self,
        db: AsyncSession,
        message: IncomingMessage,
        classification: IntentClassification,
        task: Task | None,
        outcome: ActionOutcome | None,
        current_active_task_id: uuid.UUID | None,
    ) -> None:
        intent = classification.intent
        tenant_id, user_id = message.tenant_id, message.user_id

        if intent in PROPOSITION_RESOLVING_INTENTS:
            claimed = (
                intent == MessageIntent.ACCEPT_TASK
                and task is not None
                and outcome is not None
                and outcome.success
            )
            await self._contexts.update_context(
                tenant_id, user_id, session=db,
                state=ConversationState.IDLE,
                pending_proposition_task_id=None,
                active_task_id=task.id if claimed else None,
            )
        elif intent in FOLLOW_UP_RESOLVING_INTENTS:
            if task is not None:
                await self._follow_ups.record_follow_up_response(
                    task.id,
                    message.text,
                    intent=intent.value,
                    extracted_data=classification.extracted_data or None,
                    session=db,
                )
            await self._contexts.update_context(
                tenant_id, user_id, session=db,
                state=(
                    ConversationState.IDLE if intent == MessageIntent.REPORT_COMPLETION
                    else ConversationState.IN_CONVERSATION
                ),
                pending_follow_up_id=None,
            )
        elif intent in QUESTION_INTENTS:
            await self._contexts.update_context(
                tenant_id, user_id, session=db,
                state=ConversationState.IN_CONVERSATION,
                active_task_id=task.id if task is not None else current_active_task_id,
            )
