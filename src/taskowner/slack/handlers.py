"""Slack event handlers.

Only direct messages reach the core: a DM from a human becomes an
``IncomingMessage`` for the response loop. Slack retries deliveries,
so events seen within ``event_dedup_ttl`` seconds are dropped.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import structlog
from slack_bolt.async_app import AsyncApp, AsyncBoltContext

from taskowner.config import settings
from taskowner.core.responder import IntentResponseLoop
from taskowner.core.types import IncomingMessage
from taskowner.tenants import TenantRegistry

logger = structlog.get_logger()

_processed_events: dict[str, float] = {}
_dedup_lock: asyncio.Lock | None = None
EVENT_DEDUP_TTL = settings.event_dedup_ttl


def _get_dedup_lock() -> asyncio.Lock:
    """Lazily create the dedup lock inside the running event loop."""
    global _dedup_lock
    if _dedup_lock is None:
        _dedup_lock = asyncio.Lock()
    return _dedup_lock


async def is_duplicate_event(key: str) -> bool:
    global _processed_events

    async with _get_dedup_lock():
        now = time.monotonic()
        if key in _processed_events:
            logger.debug("event_dedup_skip", event_key=key)
            return True
        _processed_events[key] = now
        _processed_events = {
            k: v for k, v in _processed_events.items()
            if now - v < EVENT_DEDUP_TTL
        }
    return False


def to_incoming_message(event: dict[str, Any], tenant_id: str) -> IncomingMessage | None:
    """Map a Slack ``message`` event to an IncomingMessage, or None to ignore it."""
    if event.get("channel_type") != "im":
        return None
    if event.get("subtype") or event.get("bot_id"):
        return None
    user_id = event.get("user")
    text = (event.get("text") or "").strip()
    if not user_id or not text:
        return None
    return IncomingMessage(
        text=text,
        user_id=user_id,
        tenant_id=tenant_id,
        channel_id=event.get("channel") or "",
        message_ts=event.get("ts") or "",
        thread_ts=event.get("thread_ts"),
    )


def register_handlers(app: AsyncApp, registry: TenantRegistry, responder: IntentResponseLoop) -> None:
    """Register the DM handler with the Bolt app."""

    # ═══ DIRECT MESSAGES ════════════════════════════════════════════════

    @app.event("message")
    async def handle_message(event: dict[str, Any], context: AsyncBoltContext) -> None:
        if event.get("user") and event.get("user") == context.get("bot_user_id"):
            return

        team_id = context.get("team_id") or event.get("team")
        runtime = registry.by_chat_workspace(team_id) if team_id else None
        if runtime is None:
            logger.warning("slack_event_unknown_workspace", team_id=team_id)
            return

        message = to_incoming_message(event, str(runtime.id))
        if message is None:
            return
        if await is_duplicate_event(f"{message.channel_id}:{message.message_ts}"):
            return

        logger.info(
            "direct_message_received",
            tenant_id=message.tenant_id,
            chat_user_id=message.user_id,
            text=message.text[:200],
        )
        await responder.handle_message(message)
