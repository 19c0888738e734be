"""Shared types for the ownership core.

Kept in a separate module so the integrations layer can import them
without pulling in the services.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from taskowner.db.models import Conversation, ConversationMessage


class MessageIntent(str, Enum):
    """Intents recognised by the classifier."""

    # Proposition responses
    ACCEPT_TASK = "accept_task"
    DECLINE_TASK = "decline_task"
    ASK_QUESTION = "ask_question"
    NEGOTIATE_TIMING = "negotiate_timing"
    REQUEST_MORE_INFO = "request_more_info"

    # Follow-up responses
    STATUS_UPDATE = "status_update"
    REPORT_BLOCKER = "report_blocker"
    REPORT_COMPLETION = "report_completion"
    REQUEST_HELP = "request_help"
    REQUEST_EXTENSION = "request_extension"

    # General
    GENERAL_QUESTION = "general_question"
    LIST_TASKS = "list_tasks"
    GREETING = "greeting"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "MessageIntent":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.UNKNOWN


PROPOSITION_RESOLVING_INTENTS = frozenset({
    MessageIntent.ACCEPT_TASK,
    MessageIntent.DECLINE_TASK,
})

FOLLOW_UP_RESOLVING_INTENTS = frozenset({
    MessageIntent.STATUS_UPDATE,
    MessageIntent.REPORT_BLOCKER,
    MessageIntent.REPORT_COMPLETION,
    MessageIntent.REQUEST_HELP,
    MessageIntent.REQUEST_EXTENSION,
})

QUESTION_INTENTS = frozenset({
    MessageIntent.ASK_QUESTION,
    MessageIntent.REQUEST_MORE_INFO,
})


class SuggestedActionType(str, Enum):
    CLAIM_TASK = "claim_task"
    DECLINE_TASK = "decline_task"
    ESCALATE = "escalate"
    UPDATE_TASK_STATUS = "update_task_status"
    NOTIFY_ADMIN = "notify_admin"
    NO_ACTION = "no_action"


class FailureReason(str, Enum):
    TASK_NOT_FOUND = "task_not_found"
    TENANT_NOT_FOUND = "tenant_not_found"
    ALREADY_CLAIMED = "already_claimed"
    IDENTITY_MATCH_FAILED = "identity_match_failed"
    TASK_CLOSED = "task_closed"
    NOT_OWNED = "not_owned"
    ERROR = "error"


@dataclass
class SuggestedAction:
    type: SuggestedActionType
    task_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ActionOutcome:
    """Tagged result of an orchestrator action.

    Returned rather than raised so reply generation can phrase the result.
    """

    action: SuggestedActionType
    success: bool
    failure_reason: FailureReason | None = None
    claimed_by_name: str | None = None
    detail: str | None = None

    @classmethod
    def ok(cls, action: SuggestedActionType, detail: str | None = None) -> "ActionOutcome":
        return cls(action=action, success=True, detail=detail)

    @classmethod
    def fail(
        cls,
        action: SuggestedActionType,
        reason: FailureReason,
        claimed_by_name: str | None = None,
        detail: str | None = None,
    ) -> "ActionOutcome":
        return cls(
            action=action,
            success=False,
            failure_reason=reason,
            claimed_by_name=claimed_by_name,
            detail=detail,
        )

    def describe(self) -> str:
        """One-line summary for the reply prompt."""
        if self.success:
            text = f"Action {self.action.value} succeeded."
        else:
            text = f"Action {self.action.value} failed ({self.failure_reason.value if self.failure_reason else 'error'})."
            if self.claimed_by_name:
                text += f" The task is already owned by {self.claimed_by_name}."
        if self.detail:
            text += f" {self.detail}"
        return text


@dataclass
class IntentClassification:
    intent: MessageIntent
    confidence: float
    extracted_data: dict[str, Any] = field(default_factory=dict)
    reasoning: str | None = None


@dataclass
class GeneratedReply:
    text: str
    blocks: list[dict[str, Any]] | None = None
    suggested_actions: list[SuggestedAction] = field(default_factory=list)
    updated_context: dict[str, Any] | None = None


@dataclass
class IncomingMessage:
    """A chat message already translated out of the transport's event shape."""

    text: str
    user_id: str
    tenant_id: str
    channel_id: str
    message_ts: str
    thread_ts: str | None = None


@dataclass
class ConversationContext:
    """Conversation row plus the bounded recent-message window."""

    conversation: Conversation
    messages: list[ConversationMessage]

    def recent_turns(self, limit: int = 5) -> list[dict[str, str]]:
        return [
            {"role": m.role.value, "content": m.content}
            for m in self.messages[-limit:]
        ]


@dataclass
class AccumulatedContext:
    """Cumulative LLM-maintained memory of everything discussed about a task.

    Key points and commitments only ever grow; the current understanding
    and open questions track the newest non-empty values.
    """

    key_points: list[dict[str, str]] = field(default_factory=list)
    current_understanding: str = ""
    open_questions: list[str] = field(default_factory=list)
    commitments: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AccumulatedContext":
        if not data:
            return cls()
        points = []
        for point in data.get("key_points") or []:
            if isinstance(point, dict) and point.get("text"):
                points.append({"at": str(point.get("at", "")), "text": str(point["text"])})
            elif isinstance(point, str) and point:
                points.append({"at": "", "text": point})
        return cls(
            key_points=points,
            current_understanding=str(data.get("current_understanding") or ""),
            open_questions=[str(q) for q in data.get("open_questions") or []],
            commitments=[str(c) for c in data.get("commitments") or []],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "key_points": list(self.key_points),
            "current_understanding": self.current_understanding,
            "open_questions": list(self.open_questions),
            "commitments": list(self.commitments),
        }

    def merge(self, update: dict[str, Any] | None, now: datetime | None = None) -> "AccumulatedContext":
        if not update:
            return self
        stamp = (now or datetime.now(timezone.utc)).isoformat()
        known = {p["text"] for p in self.key_points}
        for point in update.get("key_points") or update.get("new_key_points") or []:
            text = point.get("text") if isinstance(point, dict) else point
            if text and str(text) not in known:
                self.key_points.append({"at": stamp, "text": str(text)})
                known.add(str(text))
        understanding = update.get("current_understanding")
        if understanding:
            self.current_understanding = str(understanding)
        if "open_questions" in update and update["open_questions"] is not None:
            self.open_questions = [str(q) for q in update["open_questions"]]
        for commitment in update.get("commitments") or []:
            if commitment and str(commitment) not in self.commitments:
                self.commitments.append(str(commitment))
        return self


def suggest_actions(classification: IntentClassification, task_id: str | None) -> list[SuggestedAction]:
    """Deterministic intent → action mapping; anything unmapped is a no-op."""
    intent = classification.intent
    data = classification.extracted_data or {}
    if task_id is None:
        return [SuggestedAction(type=SuggestedActionType.NO_ACTION)]

    if intent == MessageIntent.ACCEPT_TASK:
        return [SuggestedAction(type=SuggestedActionType.CLAIM_TASK, task_id=task_id)]
    if intent == MessageIntent.DECLINE_TASK:
        return [SuggestedAction(
            type=SuggestedActionType.DECLINE_TASK,
            task_id=task_id,
            metadata={"reason": data.get("reason")},
        )]
    if intent == MessageIntent.REPORT_BLOCKER:
        return [SuggestedAction(
            type=SuggestedActionType.NOTIFY_ADMIN,
            task_id=task_id,
            metadata={"blocker_details": data},
        )]
    if intent == MessageIntent.REPORT_COMPLETION:
        return [SuggestedAction(
            type=SuggestedActionType.UPDATE_TASK_STATUS,
            task_id=task_id,
            metadata={"status": "completed"},
        )]
    if intent == MessageIntent.REQUEST_HELP:
        return [SuggestedAction(type=SuggestedActionType.ESCALATE, task_id=task_id, metadata=data)]
    return [SuggestedAction(type=SuggestedActionType.NO_ACTION)]
