"""End-to-end conversational turns over in-memory collaborators.

Each test routes a tracker item to the bot, then plays user DMs through
the response loop and checks task, conversation and follow-up state.
"""

import uuid

from sqlalchemy import select

from taskowner.core.responder import APOLOGY, CLARIFY_PROPOSITION, NO_DETAIL_REPLY
from taskowner.core.types import (
    FailureReason,
    IncomingMessage,
    MessageIntent,
    SuggestedAction,
    SuggestedActionType,
)
from taskowner.db.models import (
    ConversationMessage,
    ConversationState,
    FollowUp,
    FollowUpType,
    MessageRole,
    Task,
    TaskStatus,
)
from taskowner.errors import CollaboratorError

from conftest import ADMIN_ID, ITEM_ID, TENANT_ID

_ts = 0


def dm(text: str, user_id: str = "U_DANA", tenant_id: str = str(TENANT_ID)) -> IncomingMessage:
    global _ts
    _ts += 1
    return IncomingMessage(
        text=text,
        user_id=user_id,
        tenant_id=tenant_id,
        channel_id=f"D_{user_id}",
        message_ts=f"1772442000.{_ts:06d}",
    )


async def _task(session_factory, task_id) -> Task:
    async with session_factory() as db:
        return await db.get(Task, task_id)


async def _messages(session_factory) -> list[ConversationMessage]:
    async with session_factory() as db:
        result = await db.execute(select(ConversationMessage))
        return list(result.scalars().all())


# ── Proposition responses ────────────────────────────────────────────


class TestPropositionResponses:
    async def test_accept_claims_and_goes_idle(
        self, orchestrator, responder, classifier, contexts, chat, tracker, session_factory
    ) -> None:
        task = await orchestrator.seek_ownership(ITEM_ID, TENANT_ID)
        classifier.will_return(MessageIntent.ACCEPT_TASK, 0.95)

        reply = await responder.handle_message(dm("Sure, I'll take it"))

        assert reply is not None
        assert [a.type for a in reply.suggested_actions] == [SuggestedActionType.CLAIM_TASK]
        stored = await _task(session_factory, task.id)
        assert stored.status == TaskStatus.OWNED
        assert stored.owner_chat_user_id == "U_DANA"
        assert tracker.reassigned == [(ITEM_ID, "T_DANA")]

        ctx = await contexts.get_or_create_context(TENANT_ID, "U_DANA")
        assert ctx.conversation.state == ConversationState.IDLE
        assert ctx.conversation.active_task_id == task.id
        assert ctx.conversation.pending_proposition_task_id is None

        assert chat.texts_to("U_DANA")[-1] == "reply to accept_task"
        assert classifier.reply_calls[0]["outcome"].success
        assert classifier.classify_calls[0]["state"] == "awaiting_proposition_response"
        assert classifier.classify_calls[0]["task_detail"].startswith("TASK DETAILS:")

        messages = {m.role: m for m in await _messages(session_factory)}
        assert set(messages) == {MessageRole.USER, MessageRole.ASSISTANT}
        assert messages[MessageRole.USER].classified_intent == "accept_task"
        assert messages[MessageRole.USER].confidence == 0.95
        assert messages[MessageRole.USER].chat_message_ts is not None

    async def test_accept_lost_to_other_owner(
        self, orchestrator, responder, classifier, contexts, session_factory
    ) -> None:
        task = await orchestrator.seek_ownership(ITEM_ID, TENANT_ID)
        await orchestrator.claim_task(task.id, "U_LEE", TENANT_ID)
        classifier.will_return(MessageIntent.ACCEPT_TASK, 0.9)

        await responder.handle_message(dm("yes please"))

        outcome = classifier.reply_calls[0]["outcome"]
        assert outcome.failure_reason == FailureReason.ALREADY_CLAIMED
        assert outcome.claimed_by_name == "Lee Wong"
        assert (await _task(session_factory, task.id)).owner_chat_user_id == "U_LEE"
        ctx = await contexts.get_or_create_context(TENANT_ID, "U_DANA")
        assert ctx.conversation.state == ConversationState.IDLE
        assert ctx.conversation.active_task_id is None

    async def test_decline_escalates(
        self, orchestrator, responder, classifier, contexts, chat, session_factory
    ) -> None:
        task = await orchestrator.seek_ownership(ITEM_ID, TENANT_ID)
        classifier.will_return(MessageIntent.DECLINE_TASK, 0.9, reason="too busy this sprint")

        await responder.handle_message(dm("Sorry, too busy this sprint"))

        stored = await _task(session_factory, task.id)
        assert stored.status == TaskStatus.ESCALATED
        assert stored.status_reason == "User Dana Smith declined the task: too busy this sprint"
        assert len(chat.texts_to(ADMIN_ID)) == 1
        ctx = await contexts.get_or_create_context(TENANT_ID, "U_DANA")
        assert ctx.conversation.state == ConversationState.IDLE
        assert ctx.conversation.pending_proposition_task_id is None

    async def test_question_about_proposition_leaves_it_unclaimed(
        self, orchestrator, responder, classifier, contexts, session_factory
    ) -> None:
        task = await orchestrator.seek_ownership(ITEM_ID, TENANT_ID)
        classifier.will_return(MessageIntent.ASK_QUESTION, 0.9, question="What's the deadline?")

        await responder.handle_message(dm("What's the deadline?"))

        assert (await _task(session_factory, task.id)).status == TaskStatus.PENDING_OWNER
        ctx = await contexts.get_or_create_context(TENANT_ID, "U_DANA")
        assert ctx.conversation.state == ConversationState.IN_CONVERSATION
        assert ctx.conversation.active_task_id == task.id
        assert classifier.reply_calls[0]["outcome"] is None

    async def test_question_without_detail_points_to_tracker(
        self, orchestrator, responder, classifier, chat, tracker
    ) -> None:
        await orchestrator.seek_ownership(ITEM_ID, TENANT_ID)
        tracker.fail_get_item = True
        classifier.will_return(MessageIntent.REQUEST_MORE_INFO, 0.9)

        reply = await responder.handle_message(dm("Tell me more"))

        assert reply.text == NO_DETAIL_REPLY
        assert chat.texts_to("U_DANA")[-1] == NO_DETAIL_REPLY
        assert classifier.reply_calls == []


# ── Low confidence and failures ──────────────────────────────────────


class TestLowConfidence:
    async def test_clarifies_without_side_effects(
        self, orchestrator, responder, classifier, contexts, chat, tracker, session_factory
    ) -> None:
        task = await orchestrator.seek_ownership(ITEM_ID, TENANT_ID)
        classifier.will_return(MessageIntent.ACCEPT_TASK, 0.4)

        reply = await responder.handle_message(dm("hmm maybe"))

        assert reply.text == CLARIFY_PROPOSITION
        assert chat.texts_to("U_DANA")[-1] == CLARIFY_PROPOSITION
        assert (await _task(session_factory, task.id)).status == TaskStatus.PENDING_OWNER
        assert tracker.reassigned == []
        assert classifier.reply_calls == []

        ctx = await contexts.get_or_create_context(TENANT_ID, "U_DANA")
        assert ctx.conversation.state == ConversationState.AWAITING_PROPOSITION_RESPONSE
        assert ctx.conversation.pending_proposition_task_id == task.id
        assert len(await _messages(session_factory)) == 2


class TestFailures:
    async def test_failed_turn_rolls_back_and_apologizes(
        self, orchestrator, responder, classifier, contexts, chat, session_factory
    ) -> None:
        task = await orchestrator.seek_ownership(ITEM_ID, TENANT_ID)
        classifier.will_raise(RuntimeError("model exploded"))

        reply = await responder.handle_message(dm("Sure"))

        assert reply is None
        assert chat.texts_to("U_DANA")[-1] == APOLOGY
        assert await _messages(session_factory) == []
        ctx = await contexts.get_or_create_context(TENANT_ID, "U_DANA")
        assert ctx.conversation.state == ConversationState.AWAITING_PROPOSITION_RESPONSE
        assert ctx.conversation.chat_channel_id is None
        assert (await _task(session_factory, task.id)).status == TaskStatus.PENDING_OWNER

    async def test_transient_classifier_error_retried(
        self, orchestrator, responder, classifier, session_factory
    ) -> None:
        task = await orchestrator.seek_ownership(ITEM_ID, TENANT_ID)
        classifier.will_raise(CollaboratorError("503 from provider", status_code=503))
        classifier.will_return(MessageIntent.ACCEPT_TASK, 0.9)

        reply = await responder.handle_message(dm("Sure"))

        assert reply is not None
        assert len(classifier.classify_calls) == 2
        assert (await _task(session_factory, task.id)).status == TaskStatus.OWNED

    async def test_transient_reply_error_retried(
        self, orchestrator, responder, classifier, chat, session_factory
    ) -> None:
        task = await orchestrator.seek_ownership(ITEM_ID, TENANT_ID)
        classifier.will_return(MessageIntent.ACCEPT_TASK, 0.9)
        classifier.reply_will_raise(CollaboratorError("503 from provider", status_code=503))

        reply = await responder.handle_message(dm("Sure"))

        assert reply is not None
        assert reply.text == "reply to accept_task"
        assert len(classifier.classify_calls) == 1
        assert len(classifier.reply_calls) == 2
        assert chat.texts_to("U_DANA")[-1] == "reply to accept_task"
        assert APOLOGY not in chat.texts_to("U_DANA")
        assert (await _task(session_factory, task.id)).status == TaskStatus.OWNED
        assert len(await _messages(session_factory)) == 2

    async def test_action_for_another_task_is_skipped(
        self, orchestrator, responder, classifier, tracker, session_factory, monkeypatch
    ) -> None:
        task = await orchestrator.seek_ownership(ITEM_ID, TENANT_ID)
        stray = SuggestedAction(type=SuggestedActionType.CLAIM_TASK, task_id=str(uuid.uuid4()))
        monkeypatch.setattr(
            "taskowner.core.responder.suggest_actions", lambda classification, task_id: [stray]
        )
        classifier.will_return(MessageIntent.ACCEPT_TASK, 0.95)

        reply = await responder.handle_message(dm("Sure, I'll take it"))

        assert reply is not None
        assert classifier.reply_calls[0]["outcome"] is None
        assert tracker.reassigned == []
        stored = await _task(session_factory, task.id)
        assert stored.status == TaskStatus.PENDING_OWNER
        assert stored.owner_chat_user_id is None

    async def test_unknown_tenant_ignored(self, responder, chat) -> None:
        message = dm("hello", tenant_id="00000000-0000-4000-8000-0000000000ff")

        assert await responder.handle_message(message) is None
        assert chat.sent == []


# ── Follow-up responses ──────────────────────────────────────────────


class TestFollowUpResponses:
    async def _owned_with_check_in(self, orchestrator, follow_ups, responder, classifier, clock):
        task = await orchestrator.seek_ownership(ITEM_ID, TENANT_ID)
        classifier.will_return(MessageIntent.ACCEPT_TASK, 0.95)
        await responder.handle_message(dm("I'll take it"))
        clock.advance(days=4)
        assert await follow_ups.process_due_follow_ups() == 1
        return task

    async def test_status_update_recorded(
        self, orchestrator, follow_ups, responder, classifier, contexts, clock, session_factory
    ) -> None:
        task = await self._owned_with_check_in(orchestrator, follow_ups, responder, classifier, clock)
        classifier.will_return(MessageIntent.STATUS_UPDATE, 0.9, progress_percentage=50)

        await responder.handle_message(dm("About halfway there"))

        async with session_factory() as db:
            half_time = (await db.execute(
                select(FollowUp).where(FollowUp.type == FollowUpType.HALF_TIME)
            )).scalar_one()
        assert half_time.response_received is True
        assert half_time.response_intent == "status_update"
        assert half_time.response_data == {"progress_percentage": 50}

        ctx = await contexts.get_or_create_context(TENANT_ID, "U_DANA")
        assert ctx.conversation.state == ConversationState.IN_CONVERSATION
        assert ctx.conversation.pending_follow_up_id is None
        assert ctx.conversation.active_task_id == task.id

    async def test_reported_completion(
        self, orchestrator, follow_ups, responder, classifier, contexts, chat, clock, session_factory
    ) -> None:
        task = await self._owned_with_check_in(orchestrator, follow_ups, responder, classifier, clock)
        classifier.will_return(MessageIntent.REPORT_COMPLETION, 0.9)

        await responder.handle_message(dm("Finished it this morning"))

        assert (await _task(session_factory, task.id)).status == TaskStatus.COMPLETED
        assert classifier.reply_calls[-1]["outcome"].success
        ctx = await contexts.get_or_create_context(TENANT_ID, "U_DANA")
        assert ctx.conversation.state == ConversationState.IDLE

        # The tracker catching up later does not congratulate twice
        assert await orchestrator.handle_task_completed(ITEM_ID, TENANT_ID) is False

    async def test_reported_completion_on_unclaimed_task(
        self, orchestrator, responder, classifier, chat, session_factory
    ) -> None:
        task = await orchestrator.seek_ownership(ITEM_ID, TENANT_ID)
        classifier.will_return(MessageIntent.REPORT_COMPLETION, 0.9)

        await responder.handle_message(dm("Already done"))

        outcome = classifier.reply_calls[0]["outcome"]
        assert not outcome.success
        assert outcome.failure_reason == FailureReason.NOT_OWNED
        stored = await _task(session_factory, task.id)
        assert stored.status == TaskStatus.PENDING_OWNER

    async def test_blocker_reaches_admin(
        self, orchestrator, follow_ups, responder, classifier, chat, clock, session_factory
    ) -> None:
        task = await self._owned_with_check_in(orchestrator, follow_ups, responder, classifier, clock)
        classifier.will_return(MessageIntent.REPORT_BLOCKER, 0.9, blocker_description="waiting on design")

        await responder.handle_message(dm("Blocked, waiting on design"))

        assert "waiting on design" in chat.texts_to(ADMIN_ID)[-1]
        assert (await _task(session_factory, task.id)).status == TaskStatus.OWNED


# ── General conversation ─────────────────────────────────────────────


class TestGeneralConversation:
    async def test_question_keeps_active_task(
        self, orchestrator, responder, classifier, contexts
    ) -> None:
        task = await orchestrator.seek_ownership(ITEM_ID, TENANT_ID)
        classifier.will_return(MessageIntent.ACCEPT_TASK, 0.95)
        await responder.handle_message(dm("Yes"))
        classifier.will_return(MessageIntent.ASK_QUESTION, 0.9)

        await responder.handle_message(dm("Who created this?"))

        ctx = await contexts.get_or_create_context(TENANT_ID, "U_DANA")
        assert ctx.conversation.state == ConversationState.IN_CONVERSATION
        assert ctx.conversation.active_task_id == task.id
        assert sorted(t["role"] for t in classifier.classify_calls[1]["recent"]) == ["assistant", "user"]

    async def test_list_tasks_gets_owned_summary(self, responder, classifier, make_task) -> None:
        await make_task(external_item_id="1")
        await make_task(external_item_id="2")
        classifier.will_return(MessageIntent.LIST_TASKS, 0.9)

        await responder.handle_message(dm("What are my tasks?"))

        summary = classifier.reply_calls[0]["additional_context"]
        assert summary.startswith("The user's current tasks:")
        assert summary.count("\n- ") == 2

    async def test_reply_context_accumulates_on_task(
        self, orchestrator, responder, classifier, session_factory
    ) -> None:
        task = await orchestrator.seek_ownership(ITEM_ID, TENANT_ID)
        classifier.context_update = {
            "key_points": ["Dana accepted"],
            "current_understanding": "Owned by Dana",
            "commitments": ["Draft by Friday"],
        }
        classifier.will_return(MessageIntent.ACCEPT_TASK, 0.95)

        await responder.handle_message(dm("Yes, draft by Friday"))

        stored = await _task(session_factory, task.id)
        assert stored.status == TaskStatus.OWNED
        assert [p["text"] for p in stored.llm_context["key_points"]] == ["Dana accepted"]
        assert stored.llm_context["commitments"] == ["Draft by Friday"]

    async def test_greeting_with_no_task(self, responder, classifier, contexts, tenant) -> None:
        classifier.will_return(MessageIntent.GREETING, 0.9)

        reply = await responder.handle_message(dm("hi there", user_id="U_LEE"))

        assert reply.text == "reply to greeting"
        assert classifier.classify_calls[0]["task_detail"] is None
        ctx = await contexts.get_or_create_context(TENANT_ID, "U_LEE")
        assert ctx.conversation.state == ConversationState.IDLE
