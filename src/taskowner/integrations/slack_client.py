"""Slack Web API wrapper: the chat collaborator."""

from __future__ import annotations

from typing import Any

import structlog
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from taskowner.errors import CollaboratorError
from taskowner.integrations.interfaces import ChatUser

logger = structlog.get_logger()


def _chat_user(member: dict[str, Any]) -> ChatUser:
    profile = member.get("profile") or {}
    return ChatUser(
        id=member["id"],
        name=member.get("name") or "",
        real_name=member.get("real_name") or profile.get("real_name") or None,
        email=profile.get("email"),
    )


class SlackChatClient:
    """One tenant's bot identity on Slack."""

    def __init__(self, token: str | None = None, client: AsyncWebClient | None = None) -> None:
        self.client = client or AsyncWebClient(token=token)

    async def send_direct_message(
        self,
        user_id: str,
        text: str,
        blocks: list[dict[str, Any]] | None = None,
    ) -> str | None:
        try:
            opened = await self.client.conversations_open(users=user_id)
            channel_id = opened["channel"]["id"]
            kwargs: dict[str, Any] = {"channel": channel_id, "text": text}
            if blocks:
                kwargs["blocks"] = blocks
            result = await self.client.chat_postMessage(**kwargs)
        except SlackApiError as e:
            logger.error("slack_dm_failed", user_id=user_id, error=str(e))
            raise CollaboratorError(f"Slack DM to {user_id} failed: {e}") from e
        return result.get("ts")

    async def get_user(self, user_id: str) -> ChatUser | None:
        try:
            result = await self.client.users_info(user=user_id)
        except SlackApiError as e:
            if e.response.get("error") == "user_not_found":
                return None
            raise CollaboratorError(f"Slack users.info failed: {e}") from e
        user = result.get("user")
        return _chat_user(user) if user else None

    async def list_members(self) -> list[ChatUser]:
        members: list[ChatUser] = []
        cursor: str | None = None
        try:
            while True:
                result = await self.client.users_list(cursor=cursor, limit=200)
                for member in result.get("members") or []:
                    if member.get("deleted") or member.get("is_bot"):
                        continue
                    members.append(_chat_user(member))
                cursor = (result.get("response_metadata") or {}).get("next_cursor")
                if not cursor:
                    return members
        except SlackApiError as e:
            raise CollaboratorError(f"Slack users.list failed: {e}") from e

    async def find_user_by_name(self, name: str) -> ChatUser | None:
        """Case-insensitive match on real name or handle."""
        wanted = name.strip().lower()
        if not wanted:
            return None
        for member in await self.list_members():
            if (member.real_name or "").strip().lower() == wanted:
                return member
            if member.name.strip().lower() == wanted:
                return member
        return None
