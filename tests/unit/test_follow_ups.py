"""Tests for check-in scheduling, delivery and response recording."""

import uuid
from datetime import timedelta

from sqlalchemy import select

from taskowner.core.follow_ups import follow_up_text, format_due
from taskowner.db.models import ConversationState, FollowUp, FollowUpType, TaskStatus

from conftest import ITEM_NAME, NOW, TENANT_ID


async def _follow_ups(session_factory) -> list[FollowUp]:
    async with session_factory() as db:
        result = await db.execute(select(FollowUp).order_by(FollowUp.scheduled_at))
        return list(result.scalars().all())


async def _due_follow_up(session_factory, task, follow_up_type=FollowUpType.HALF_TIME) -> FollowUp:
    follow_up = FollowUp(
        id=uuid.uuid4(),
        task_id=task.id,
        type=follow_up_type,
        scheduled_at=NOW - timedelta(minutes=1),
        created_at=NOW,
    )
    async with session_factory() as db:
        db.add(follow_up)
        await db.commit()
    return follow_up


# ── Text ─────────────────────────────────────────────────────────────


class TestFollowUpText:
    def test_half_time(self) -> None:
        text = follow_up_text(FollowUpType.HALF_TIME, "Review Q4 report", "https://x/1", NOW + timedelta(days=7))
        assert text.startswith("Hi! Just checking in on *Review Q4 report*.")
        assert "(Monday, March 9)" in text
        assert text.endswith("<https://x/1|View in Asana>")

    def test_near_deadline(self) -> None:
        text = follow_up_text(FollowUpType.NEAR_DEADLINE, "Review Q4 report", "https://x/1", NOW + timedelta(days=1))
        assert text.startswith("Quick reminder: *Review Q4 report* is due Tuesday, March 3.")

    def test_format_due(self) -> None:
        assert format_due(NOW) == "Monday, March 2"


# ── Scheduling ───────────────────────────────────────────────────────


class TestScheduleFollowUps:
    async def test_two_windows(self, follow_ups, make_task, session_factory) -> None:
        task = await make_task(due_date=NOW + timedelta(days=4), claimed_at=NOW)
        created = await follow_ups.schedule_follow_ups(task)

        assert [f.type for f in created] == [FollowUpType.HALF_TIME, FollowUpType.NEAR_DEADLINE]
        stored = await _follow_ups(session_factory)
        assert [f.scheduled_at for f in stored] == [NOW + timedelta(days=2), NOW + timedelta(days=3)]
        assert all(f.sent_at is None for f in stored)

    async def test_past_windows_skipped(self, follow_ups, make_task, session_factory) -> None:
        task = await make_task(due_date=NOW + timedelta(hours=12), claimed_at=NOW)
        created = await follow_ups.schedule_follow_ups(task)

        assert [f.type for f in created] == [FollowUpType.HALF_TIME]
        assert created[0].scheduled_at == NOW + timedelta(hours=6)

    async def test_due_before_claim(self, follow_ups, make_task, session_factory) -> None:
        task = await make_task(due_date=NOW - timedelta(days=1), claimed_at=NOW)
        assert await follow_ups.schedule_follow_ups(task) == []
        assert await _follow_ups(session_factory) == []


# ── Delivery ─────────────────────────────────────────────────────────


class TestProcessDueFollowUps:
    async def test_sends_and_awaits_response(self, follow_ups, make_task, session_factory, chat, contexts) -> None:
        task = await make_task(due_date=NOW + timedelta(days=7))
        follow_up = await _due_follow_up(session_factory, task)

        assert await follow_ups.process_due_follow_ups() == 1

        texts = chat.texts_to("U_DANA")
        assert len(texts) == 1
        assert texts[0].startswith(f"Hi! Just checking in on *{ITEM_NAME}*")

        stored = await _follow_ups(session_factory)
        assert stored[0].sent_at == NOW

        ctx = await contexts.get_or_create_context(TENANT_ID, "U_DANA")
        assert ctx.conversation.state == ConversationState.AWAITING_FOLLOW_UP_RESPONSE
        assert ctx.conversation.pending_follow_up_id == follow_up.id
        assert ctx.conversation.active_task_id == task.id

    async def test_not_sent_twice(self, follow_ups, make_task, session_factory, chat) -> None:
        task = await make_task()
        await _due_follow_up(session_factory, task)

        await follow_ups.process_due_follow_ups()
        assert await follow_ups.process_due_follow_ups() == 0
        assert len(chat.sent) == 1

    async def test_future_follow_up_untouched(self, follow_ups, make_task, session_factory, chat) -> None:
        task = await make_task(due_date=NOW + timedelta(days=4))
        await follow_ups.schedule_follow_ups(task)

        assert await follow_ups.process_due_follow_ups() == 0
        assert chat.sent == []

    async def test_completed_item_short_circuits(
        self, follow_ups, make_task, session_factory, chat, tracker
    ) -> None:
        task = await make_task()
        follow_up = await _due_follow_up(session_factory, task)
        tracker.items[task.external_item_id].completed = True

        assert await follow_ups.send_follow_up(follow_up.id) is False
        assert chat.sent == []
        stored = await _follow_ups(session_factory)
        assert stored[0].sent_at is not None

    async def test_task_no_longer_owned(self, follow_ups, make_task, session_factory, chat) -> None:
        task = await make_task(status=TaskStatus.ESCALATED)
        follow_up = await _due_follow_up(session_factory, task)

        assert await follow_ups.send_follow_up(follow_up.id) is False
        assert chat.sent == []

    async def test_one_failure_does_not_stop_sweep(
        self, follow_ups, make_task, session_factory, chat, tracker
    ) -> None:
        broken = await make_task(external_item_id="missing")
        healthy = await make_task()
        await _due_follow_up(session_factory, broken)
        await _due_follow_up(session_factory, healthy)

        assert await follow_ups.process_due_follow_ups() == 1
        assert len(chat.sent) == 1


# ── Responses ────────────────────────────────────────────────────────


class TestRecordResponse:
    async def test_attached_to_latest_sent(self, follow_ups, make_task, session_factory) -> None:
        task = await make_task()
        await _due_follow_up(session_factory, task)
        await follow_ups.process_due_follow_ups()

        recorded = await follow_ups.record_follow_up_response(
            task.id, "About halfway", intent="status_update", extracted_data={"progress": 50}
        )
        assert recorded is not None
        stored = (await _follow_ups(session_factory))[0]
        assert stored.response_received is True
        assert stored.response_text == "About halfway"
        assert stored.response_intent == "status_update"
        assert stored.response_data == {"progress": 50}
        assert stored.response_at == NOW

    async def test_nothing_to_answer(self, follow_ups, make_task) -> None:
        task = await make_task()
        assert await follow_ups.record_follow_up_response(task.id, "hello") is None

    async def test_answered_once(self, follow_ups, make_task, session_factory) -> None:
        task = await make_task()
        await _due_follow_up(session_factory, task)
        await follow_ups.process_due_follow_ups()

        assert await follow_ups.record_follow_up_response(task.id, "first") is not None
        assert await follow_ups.record_follow_up_response(task.id, "second") is None
        stored = (await _follow_ups(session_factory))[0]
        assert stored.response_text == "first"
