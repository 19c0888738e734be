"""Collaborator contracts and thin clients (Asana, Slack, Google Sheets, LLM)."""

from taskowner.integrations.interfaces import (
    ChatClient,
    ChatUser,
    Classifier,
    SheetClient,
    SheetRow,
    TrackerClient,
    TrackerItem,
    TrackerUser,
)

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
