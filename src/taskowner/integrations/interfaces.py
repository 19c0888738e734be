"""Collaborator contracts consumed by the ownership core.

Concrete clients live next to this module (Asana, Slack, Google Sheets,
LLM). The core only depends on these protocols, which keeps it testable
with in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from taskowner.core.types import (
    ActionOutcome,
    GeneratedReply,
    IntentClassification,
)


@dataclass
class TrackerUser:
    id: str
    name: str
    email: str | None = None


@dataclass
class TrackerItem:
    """Work-item detail as read from the tracker."""

    id: str
    name: str
    url: str
    completed: bool = False
    description: str | None = None
    assignee: TrackerUser | None = None
    due_date: datetime | None = None
    created_by: TrackerUser | None = None
    created_at: datetime | None = None
    projects: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    custom_fields: dict[str, str] = field(default_factory=dict)


@dataclass
class ChatUser:
    id: str
    name: str
    real_name: str | None = None
    email: str | None = None

    @property
    def display_name(self) -> str:
        return self.real_name or self.name


@dataclass
class SheetRow:
    """Designated assignee for an item name plus any auxiliary columns."""

    item_name: str
    assignee: str
    extra: dict[str, str] = field(default_factory=dict)


class TrackerClient(Protocol):
    async def get_item(self, item_id: str) -> TrackerItem: ...

    async def reassign_item(self, item_id: str, user_id: str) -> None: ...

    async def add_comment(self, item_id: str, text: str) -> None: ...

    async def is_item_completed(self, item_id: str) -> bool: ...

    async def list_workspace_users(self, workspace_id: str) -> list[TrackerUser]: ...

    async def find_user_by_name(self, name: str, workspace_id: str) -> TrackerUser | None: ...

    async def find_user_by_email(self, email: str, workspace_id: str) -> TrackerUser | None: ...

    def verify_webhook(self, payload: bytes, signature: str) -> bool: ...


class ChatClient(Protocol):
    async def send_direct_message(
        self,
        user_id: str,
        text: str,
        blocks: list[dict[str, Any]] | None = None,
    ) -> str | None:
        """Send a DM and return the message reference (Slack ``ts``)."""
        ...

    async def get_user(self, user_id: str) -> ChatUser | None: ...

    async def find_user_by_name(self, name: str) -> ChatUser | None: ...

    async def list_members(self) -> list[ChatUser]: ...


class SheetClient(Protocol):
    async def find_assignment(self, sheet_url: str, item_name: str) -> SheetRow | None: ...


class Classifier(Protocol):
    async def classify(
        self,
        text: str,
        conversation_state: str,
        task_detail: str | None,
        recent_messages: list[dict[str, str]],
    ) -> IntentClassification: ...

    async def generate_reply(
        self,
        intent: IntentClassification,
        user_message: str,
        conversation_state: str,
        task_detail: str | None,
        outcome: ActionOutcome | None,
        accumulated_context: dict[str, Any] | None = None,
        additional_context: str | None = None,
    ) -> GeneratedReply: ...


__all__ = [
    "ChatClient",
    "ChatUser",
    "Classifier",
    "SheetClient",
    "SheetRow",
    "TrackerClient",
    "TrackerItem",
    "TrackerUser",
]
