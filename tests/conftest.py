"""Pytest configuration and shared fixtures.

Run with:
    pytest tests/                    # Run all tests
    pytest tests/unit/test_models.py -v  # Run specific test file

Every test gets its own SQLite file database and in-memory fakes for
the tracker, chat, sheet and classifier collaborators.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Callable

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from taskowner.core.conversation import ConversationContextManager
from taskowner.core.follow_ups import FollowUpScheduler
from taskowner.core.identity import IdentityMatcher
from taskowner.core.orchestrator import TaskOwnershipOrchestrator
from taskowner.core.responder import IntentResponseLoop
from taskowner.core.types import (
    ActionOutcome,
    GeneratedReply,
    IntentClassification,
    MessageIntent,
)
from taskowner.db.models import Base, Task, TaskStatus, Tenant
from taskowner.db.session import make_session_factory
from taskowner.errors import CollaboratorError
from taskowner.integrations.interfaces import ChatUser, SheetRow, TrackerItem, TrackerUser
from taskowner.tenants import TenantRegistry, TenantRuntime

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
TENANT_ID = uuid.UUID("00000000-0000-4000-8000-000000000001")
ADMIN_ID = "U_ADMIN"
BOT_USER_ID = "1100000000000001"
ITEM_ID = "1201"
ITEM_NAME = "Review Q4 report"
ITEM_URL = "https://app.asana.com/0/1/1201"


class Clock:
    """Fixed clock that tests can move forward."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# ── Fake collaborators ───────────────────────────────────────────────


@dataclass
class SentMessage:
    user_id: str
    text: str
    blocks: list[dict[str, Any]] | None


class FakeChat:
    def __init__(self, users: list[ChatUser] | None = None) -> None:
        self.users = {u.id: u for u in users or []}
        self.sent: list[SentMessage] = []
        self.fail_sends = False
        self._counter = 0

    async def send_direct_message(
        self,
        user_id: str,
        text: str,
        blocks: list[dict[str, Any]] | None = None,
    ) -> str | None:
        if self.fail_sends:
            raise CollaboratorError("slack unavailable")
        self._counter += 1
        self.sent.append(SentMessage(user_id, text, blocks))
        return f"1772442000.{self._counter:06d}"

    async def get_user(self, user_id: str) -> ChatUser | None:
        return self.users.get(user_id)

    async def find_user_by_name(self, name: str) -> ChatUser | None:
        wanted = name.strip().lower()
        for user in self.users.values():
            if (user.real_name or "").lower() == wanted or user.name.lower() == wanted:
                return user
        return None

    async def list_members(self) -> list[ChatUser]:
        return list(self.users.values())

    def texts_to(self, user_id: str) -> list[str]:
        return [m.text for m in self.sent if m.user_id == user_id]


class FakeTracker:
    def __init__(self, items: list[TrackerItem] | None = None, users: list[TrackerUser] | None = None) -> None:
        self.items = {i.id: i for i in items or []}
        self.users = list(users or [])
        self.reassigned: list[tuple[str, str]] = []
        self.comments: list[tuple[str, str]] = []
        self.fail_get_item = False

    async def get_item(self, item_id: str) -> TrackerItem:
        if self.fail_get_item or item_id not in self.items:
            raise CollaboratorError(f"item {item_id} unavailable")
        return self.items[item_id]

    async def reassign_item(self, item_id: str, user_id: str) -> None:
        self.reassigned.append((item_id, user_id))

    async def add_comment(self, item_id: str, text: str) -> None:
        self.comments.append((item_id, text))

    async def is_item_completed(self, item_id: str) -> bool:
        return self.items[item_id].completed

    async def list_workspace_users(self, workspace_id: str) -> list[TrackerUser]:
        return list(self.users)

    async def find_user_by_name(self, name: str, workspace_id: str) -> TrackerUser | None:
        return next((u for u in self.users if u.name.lower() == name.lower()), None)

    async def find_user_by_email(self, email: str, workspace_id: str) -> TrackerUser | None:
        return next((u for u in self.users if u.email and u.email.lower() == email.lower()), None)

    def verify_webhook(self, payload: bytes, signature: str) -> bool:
        return True


class FakeSheets:
    def __init__(self, assignments: dict[str, str] | None = None) -> None:
        self.assignments = dict(assignments or {})
        self.lookups: list[str] = []

    async def find_assignment(self, sheet_url: str, item_name: str) -> SheetRow | None:
        self.lookups.append(item_name)
        assignee = self.assignments.get(item_name)
        return SheetRow(item_name=item_name, assignee=assignee) if assignee else None


class FakeClassifier:
    """Replays scripted classifications; an exception in the script is raised."""

    def __init__(self) -> None:
        self.script: list[IntentClassification | Exception] = []
        self.classify_calls: list[dict[str, Any]] = []
        self.reply_calls: list[dict[str, Any]] = []
        self.context_update: dict[str, Any] | None = None
        self.reply_failures: list[Exception] = []

    def will_return(self, intent: MessageIntent, confidence: float = 0.95, **data: Any) -> None:
        self.script.append(IntentClassification(intent=intent, confidence=confidence, extracted_data=data))

    def will_raise(self, error: Exception) -> None:
        self.script.append(error)

    def reply_will_raise(self, error: Exception) -> None:
        self.reply_failures.append(error)

    async def classify(
        self,
        text: str,
        conversation_state: str,
        task_detail: str | None,
        recent_messages: list[dict[str, str]],
    ) -> IntentClassification:
        self.classify_calls.append({
            "text": text,
            "state": conversation_state,
            "task_detail": task_detail,
            "recent": recent_messages,
        })
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        return step

    async def generate_reply(
        self,
        intent: IntentClassification,
        user_message: str,
        conversation_state: str,
        task_detail: str | None,
        outcome: ActionOutcome | None,
        accumulated_context: dict[str, Any] | None = None,
        additional_context: str | None = None,
    ) -> GeneratedReply:
        self.reply_calls.append({
            "intent": intent.intent,
            "outcome": outcome,
            "task_detail": task_detail,
            "accumulated_context": accumulated_context,
            "additional_context": additional_context,
        })
        if self.reply_failures:
            raise self.reply_failures.pop(0)
        return GeneratedReply(text=f"reply to {intent.intent.value}", updated_context=self.context_update)


class FakeTimers:
    def __init__(self) -> None:
        self.scheduled: dict[str, tuple[datetime, Callable[..., Any], tuple[Any, ...]]] = {}

    def schedule_once(self, job_id: str, run_at: datetime, func: Callable[..., Any], *args: Any) -> None:
        self.scheduled[job_id] = (run_at, func, args)


# ── Database ─────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite so separate sessions see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'taskowner.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def tenant(session_factory: async_sessionmaker[AsyncSession]) -> Tenant:
    tenant = Tenant(
        id=TENANT_ID,
        name="Acme",
        chat_workspace_id="T_ACME",
        tracker_workspace_id="W_ACME",
        tracker_bot_user_id=BOT_USER_ID,
        admin_chat_user_id=ADMIN_ID,
        sheet_url="https://docs.google.com/spreadsheets/d/sheet123/edit",
        chat_token_secret_name="acme-slack-bot",
        tracker_token_secret_name="acme-asana-pat",
        created_at=NOW,
        updated_at=NOW,
    )
    async with session_factory() as db:
        db.add(tenant)
        await db.commit()
    return tenant


@pytest.fixture
def make_task(session_factory: async_sessionmaker[AsyncSession], tenant: Tenant):
    """Insert a task row directly, bypassing the orchestrator."""

    async def _make(
        external_item_id: str = ITEM_ID,
        status: TaskStatus = TaskStatus.OWNED,
        owner: str | None = "U_DANA",
        due_date: datetime | None = NOW + timedelta(days=4),
        claimed_at: datetime | None = NOW,
        **fields: Any,
    ) -> Task:
        task = Task(
            id=uuid.uuid4(),
            tenant_id=tenant.id,
            external_item_id=external_item_id,
            external_item_url=f"https://app.asana.com/0/1/{external_item_id}",
            status=status,
            owner_chat_user_id=owner,
            owner_tracker_user_id="T_DANA" if owner else None,
            due_date=due_date,
            claimed_at=claimed_at,
            created_at=NOW,
            updated_at=NOW,
            **fields,
        )
        async with session_factory() as db:
            db.add(task)
            await db.commit()
        return task

    return _make


# ── Collaborators ────────────────────────────────────────────────────


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def chat() -> FakeChat:
    return FakeChat([
        ChatUser(id="U_DANA", name="dana", real_name="Dana Smith", email="dana@acme.test"),
        ChatUser(id="U_LEE", name="lee", real_name="Lee Wong", email="lee@acme.test"),
        ChatUser(id="U_GHOST", name="ghost", real_name="Casper Nobody", email="ghost@elsewhere.test"),
        ChatUser(id=ADMIN_ID, name="admin", real_name="Ada Admin", email="admin@acme.test"),
    ])


@pytest.fixture
def tracker() -> FakeTracker:
    return FakeTracker(
        items=[
            TrackerItem(
                id=ITEM_ID,
                name=ITEM_NAME,
                url=ITEM_URL,
                description="Summarize Q4 revenue and churn",
                due_date=NOW + timedelta(days=7) - timedelta(hours=1),
            ),
        ],
        users=[
            TrackerUser(id="T_DANA", name="Dana Smith", email="dana@acme.test"),
            TrackerUser(id="T_LEE", name="Lee Wong", email="lee@acme.test"),
        ],
    )


@pytest.fixture
def sheets() -> FakeSheets:
    return FakeSheets({ITEM_NAME: "Dana Smith"})


@pytest.fixture
def classifier() -> FakeClassifier:
    return FakeClassifier()


@pytest.fixture
def timers() -> FakeTimers:
    return FakeTimers()


@pytest.fixture
def registry(
    session_factory: async_sessionmaker[AsyncSession],
    tenant: Tenant,
    chat: FakeChat,
    tracker: FakeTracker,
    sheets: FakeSheets,
) -> TenantRegistry:
    registry = TenantRegistry(
        session_factory,
        client_factory=lambda t: TenantRuntime(tenant=t, chat=chat, tracker=tracker, sheets=sheets),
    )
    registry.register(TenantRuntime(tenant=tenant, chat=chat, tracker=tracker, sheets=sheets))
    return registry


# ── Services ─────────────────────────────────────────────────────────


@pytest.fixture
def contexts(session_factory, clock) -> ConversationContextManager:
    return ConversationContextManager(session_factory, max_history=10, clock=clock)


@pytest.fixture
def follow_ups(session_factory, registry, contexts, clock) -> FollowUpScheduler:
    return FollowUpScheduler(session_factory, registry, contexts, conversational_enabled=True, clock=clock)


@pytest.fixture
def identity(registry) -> IdentityMatcher:
    return IdentityMatcher(registry)


@pytest.fixture
def orchestrator(session_factory, registry, identity, contexts, follow_ups, timers, clock) -> TaskOwnershipOrchestrator:
    return TaskOwnershipOrchestrator(
        session_factory,
        registry,
        identity,
        contexts,
        follow_ups,
        timers=timers,
        claim_timeout_hours=24,
        default_due_date_days=14,
        conversational_enabled=True,
        clock=clock,
    )


@pytest.fixture
def responder(session_factory, registry, contexts, orchestrator, follow_ups, classifier, clock) -> IntentResponseLoop:
    return IntentResponseLoop(
        session_factory,
        registry,
        contexts,
        orchestrator,
        follow_ups,
        classifier,
        confidence_threshold=0.7,
        classifier_max_attempts=3,
        classifier_retry_multiplier=0,
        clock=clock,
    )
