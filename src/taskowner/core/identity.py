"""Chat identity → tracker identity resolution."""

from __future__ import annotations

import uuid

import structlog

from taskowner.integrations.interfaces import ChatUser, TrackerUser
from taskowner.tenants import TenantRegistry

logger = structlog.get_logger()


def match_user(chat_user: ChatUser, candidates: list[TrackerUser]) -> TrackerUser | None:
    """First hit wins: exact name, then substring either way, then email."""
    name = chat_user.display_name.strip().lower()

    if name:
        for user in candidates:
            if user.name.strip().lower() == name:
                return user
        for user in candidates:
            other = user.name.strip().lower()
            if other and (name in other or other in name):
                return user

    email = (chat_user.email or "").strip().lower()
    if email:
        for user in candidates:
            if user.email and user.email.strip().lower() == email:
                return user
    return None


class IdentityMatcher:
    def __init__(self, registry: TenantRegistry) -> None:
        self._registry = registry

    async def match(
        self,
        chat_user_id: str,
        tenant_id: uuid.UUID | str,
        tracker_workspace_id: str,
    ) -> str | None:
        """Return the tracker user id for ``chat_user_id``, or None."""
        runtime = self._registry.get(tenant_id)
        chat_user = await runtime.chat.get_user(chat_user_id)
        if chat_user is None:
            logger.warning("identity_chat_user_missing", chat_user_id=chat_user_id)
            return None

        candidates = await runtime.tracker.list_workspace_users(tracker_workspace_id)
        found = match_user(chat_user, candidates)
        if found is None:
            logger.warning(
                "identity_match_failed",
                tenant_id=str(tenant_id),
                chat_user_id=chat_user_id,
                display_name=chat_user.display_name,
            )
            return None

        logger.info(
            "identity_matched",
            tenant_id=str(tenant_id),
            chat_user_id=chat_user_id,
            tracker_user_id=found.id,
        )
        return found.id

    async def alert_unmatched(
        self,
        tenant_id: uuid.UUID | str,
        display_name: str,
        chat_user_id: str,
    ) -> None:
        """Tell the administrator a chat user has no tracker account. Never raises."""
        try:
            runtime = self._registry.get(tenant_id)
            await runtime.chat.send_direct_message(
                runtime.tenant.admin_chat_user_id,
                f"*User Matching Failed*\n\n"
                f"Could not match Slack user *{display_name}* (<@{chat_user_id}>) "
                f"to an Asana account. Please make sure their names or emails match.",
            )
        except Exception as e:
            logger.error(
                "identity_alert_failed",
                tenant_id=str(tenant_id),
                chat_user_id=chat_user_id,
                error=str(e),
            )
