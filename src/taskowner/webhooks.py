"""Tracker webhook translation.

Asana delivers batches of change events. Two matter here:

- ``assignee`` changed to a tenant's bot user → ``seek_ownership``
- ``completed`` changed to true → ``handle_task_completed``

The first delivery to a new webhook is a handshake carrying
``X-Hook-Secret``, which must be echoed back.
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskowner.config import settings
from taskowner.core.orchestrator import TaskOwnershipOrchestrator
from taskowner.db.models import Task
from taskowner.errors import WebhookSignatureError
from taskowner.integrations.asana import verify_signature
from taskowner.tenants import TenantRegistry, TenantRuntime

logger = structlog.get_logger()

HANDSHAKE_HEADER = "x-hook-secret"
SIGNATURE_HEADER = "x-hook-signature"


def _new_assignee_id(event: dict[str, Any]) -> str | None:
    new_value = (event.get("change") or {}).get("new_value")
    if isinstance(new_value, dict):
        return new_value.get("gid")
    return None


class TrackerWebhookHandler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: TenantRegistry,
        orchestrator: TaskOwnershipOrchestrator,
        webhook_secret: str | None = None,
    ) -> None:
        self._sessions = session_factory
        self._registry = registry
        self._orchestrator = orchestrator
        self._secret = webhook_secret if webhook_secret is not None else settings.asana_webhook_secret

    def verify(self, body: bytes, signature: str | None) -> None:
        """Raise WebhookSignatureError unless the body is signed with our secret."""
        if not self._secret:
            if settings.env == "production":
                raise WebhookSignatureError("Webhook secret not configured")
            logger.debug("webhook_signature_check_skipped")
            return
        if not signature:
            raise WebhookSignatureError("Missing signature")
        if not verify_signature(self._secret, body, signature):
            raise WebhookSignatureError("Invalid signature")

    async def dispatch(self, events: list[dict[str, Any]]) -> int:
        """Handle a batch. One failing event does not stop the rest."""
        handled = 0
        for event in events:
            try:
                if await self.handle_event(event):
                    handled += 1
            except Exception as e:
                logger.error(
                    "tracker_event_failed",
                    resource=(event.get("resource") or {}).get("gid"),
                    error=str(e),
                )
        return handled

    async def handle_event(self, event: dict[str, Any]) -> bool:
        resource = event.get("resource") or {}
        if resource.get("resource_type") != "task":
            return False
        item_id = resource.get("gid")
        if not item_id:
            logger.warning("tracker_event_without_item", action=event.get("action"))
            return False

        action = event.get("action")
        field = (event.get("change") or {}).get("field")
        if action != "changed" or field not in ("assignee", "completed"):
            return False

        runtime = await self.resolve_tenant(event, item_id)
        if runtime is None:
            logger.warning("tracker_event_unknown_tenant", external_item_id=item_id, field=field)
            return False

        if field == "assignee":
            assignee = _new_assignee_id(event)
            if assignee != runtime.tenant.tracker_bot_user_id:
                logger.debug("assignee_not_bot_user", external_item_id=item_id, assignee=assignee)
                return False
            logger.info("item_routed_to_bot", external_item_id=item_id, tenant_id=str(runtime.id))
            await self._orchestrator.seek_ownership(item_id, runtime.id)
            return True

        if (event.get("change") or {}).get("new_value") is True:
            logger.info("item_completed_in_tracker", external_item_id=item_id, tenant_id=str(runtime.id))
            await self._orchestrator.handle_task_completed(item_id, runtime.id)
            return True
        return False

    async def resolve_tenant(self, event: dict[str, Any], item_id: str) -> TenantRuntime | None:
        """By the bot user the item was assigned to, else by an existing task row."""
        if (event.get("change") or {}).get("field") == "assignee":
            assignee = _new_assignee_id(event)
            if assignee:
                runtime = self._registry.by_tracker_bot_user(assignee)
                if runtime is not None:
                    return runtime

        async with self._sessions() as db:
            result = await db.execute(
                select(Task.tenant_id).where(Task.external_item_id == item_id).limit(1)
            )
            tenant_id = result.scalar_one_or_none()
        return self._registry.find(tenant_id) if tenant_id else None
