"""Asana REST client: the tracker collaborator.

One instance per tenant (each tenant has its own personal access token).
Only the handful of endpoints the ownership flow needs are wrapped.
"""

from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timezone
from typing import Any

import certifi
import httpx
import structlog

from taskowner.config import settings
from taskowner.errors import CollaboratorError
from taskowner.integrations.interfaces import TrackerItem, TrackerUser

logger = structlog.get_logger()

_ITEM_FIELDS = ",".join([
    "name",
    "permalink_url",
    "notes",
    "completed",
    "due_on",
    "due_at",
    "assignee.name",
    "assignee.email",
    "created_by.name",
    "created_at",
    "projects.name",
    "tags.name",
    "custom_fields.name",
    "custom_fields.display_value",
])


def parse_due(data: dict[str, Any]) -> datetime | None:
    """Prefer ``due_at`` (full timestamp); fall back to ``due_on`` at midnight UTC."""
    due_at = data.get("due_at")
    if due_at:
        return _parse_timestamp(due_at)
    due_on = data.get("due_on")
    if due_on:
        return datetime.strptime(due_on, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    return None


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _user(raw: dict[str, Any] | None) -> TrackerUser | None:
    if not raw or not raw.get("gid"):
        return None
    return TrackerUser(id=raw["gid"], name=raw.get("name") or "", email=raw.get("email"))


def item_from_payload(data: dict[str, Any]) -> TrackerItem:
    custom_fields = {}
    for cf in data.get("custom_fields") or []:
        if cf.get("name") and cf.get("display_value") not in (None, ""):
            custom_fields[cf["name"]] = str(cf["display_value"])

    created_at = data.get("created_at")
    return TrackerItem(
        id=data["gid"],
        name=data.get("name") or "",
        url=data.get("permalink_url") or f"https://app.asana.com/0/0/{data['gid']}",
        completed=bool(data.get("completed")),
        description=data.get("notes") or None,
        assignee=_user(data.get("assignee")),
        due_date=parse_due(data),
        created_by=_user(data.get("created_by")),
        created_at=_parse_timestamp(created_at) if created_at else None,
        projects=[p["name"] for p in data.get("projects") or [] if p.get("name")],
        tags=[t["name"] for t in data.get("tags") or [] if t.get("name")],
        custom_fields=custom_fields,
    )


class AsanaClient:
    """HTTP client for the Asana API, scoped to one tenant's token."""

    def __init__(
        self,
        access_token: str,
        webhook_secret: str | None = None,
        base_url: str | None = None,
    ) -> None:
        self._webhook_secret = webhook_secret if webhook_secret is not None else settings.asana_webhook_secret
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.asana_base_url,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
            },
            verify=certifi.where(),
            timeout=httpx.Timeout(settings.asana_timeout_s, connect=5.0),
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "asana_request_failed",
                method=method,
                path=path,
                status_code=e.response.status_code,
                response=e.response.text[:500],
            )
            raise CollaboratorError(
                f"Asana {method} {path} failed: {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.error("asana_request_error", method=method, path=path, error=str(e))
            raise CollaboratorError(f"Asana {method} {path} failed: {e}") from e
        return response.json()

    async def get_item(self, item_id: str) -> TrackerItem:
        body = await self._request("GET", f"/tasks/{item_id}", params={"opt_fields": _ITEM_FIELDS})
        return item_from_payload(body["data"])

    async def reassign_item(self, item_id: str, user_id: str) -> None:
        await self._request("PUT", f"/tasks/{item_id}", json={"data": {"assignee": user_id}})
        logger.info("asana_item_reassigned", item_id=item_id, user_id=user_id)

    async def add_comment(self, item_id: str, text: str) -> None:
        await self._request("POST", f"/tasks/{item_id}/stories", json={"data": {"text": text}})

    async def is_item_completed(self, item_id: str) -> bool:
        body = await self._request("GET", f"/tasks/{item_id}", params={"opt_fields": "completed"})
        return bool(body["data"].get("completed"))

    async def list_workspace_users(self, workspace_id: str) -> list[TrackerUser]:
        users: list[TrackerUser] = []
        params: dict[str, Any] = {"opt_fields": "name,email", "limit": 100}
        while True:
            body = await self._request("GET", f"/workspaces/{workspace_id}/users", params=params)
            for raw in body.get("data") or []:
                user = _user(raw)
                if user:
                    users.append(user)
            next_page = body.get("next_page") or {}
            if not next_page.get("offset"):
                return users
            params["offset"] = next_page["offset"]

    async def find_user_by_name(self, name: str, workspace_id: str) -> TrackerUser | None:
        """Exact case-insensitive match first, then substring in either direction."""
        wanted = name.strip().lower()
        if not wanted:
            return None
        users = await self.list_workspace_users(workspace_id)
        for user in users:
            if user.name.strip().lower() == wanted:
                return user
        for user in users:
            have = user.name.strip().lower()
            if have and (wanted in have or have in wanted):
                return user
        return None

    async def find_user_by_email(self, email: str, workspace_id: str) -> TrackerUser | None:
        wanted = email.strip().lower()
        for user in await self.list_workspace_users(workspace_id):
            if user.email and user.email.strip().lower() == wanted:
                return user
        return None

    def verify_webhook(self, payload: bytes, signature: str) -> bool:
        return verify_signature(self._webhook_secret, payload, signature)


def verify_signature(secret: str, payload: bytes, signature: str) -> bool:
    """Asana signs the raw body with HMAC-SHA256 (hex) in X-Hook-Signature."""
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip())
