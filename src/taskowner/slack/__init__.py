"""Slack integration: translating Bolt events into core calls."""

from taskowner.slack.handlers import register_handlers

__all__ = ["register_handlers"]
