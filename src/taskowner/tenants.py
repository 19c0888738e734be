"""Tenant registry.

Holds every tenant row together with its collaborator clients. The
registry is built once at startup and handed to each service; a tenant
whose credentials were rotated is refreshed with ``reload``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Callable

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskowner.db.models import Tenant
from taskowner.errors import TenantNotFoundError
from taskowner.integrations.interfaces import ChatClient, SheetClient, TrackerClient

logger = structlog.get_logger()


@dataclass
class TenantRuntime:
    """A tenant plus the clients that act on its behalf."""

    tenant: Tenant
    chat: ChatClient
    tracker: TrackerClient
    sheets: SheetClient

    @property
    def id(self) -> uuid.UUID:
        return self.tenant.id


ClientFactory = Callable[[Tenant], TenantRuntime]


def build_runtime(tenant: Tenant) -> TenantRuntime:
    """Default factory: resolve the tenant's secrets and build real clients."""
    from taskowner.integrations.asana import AsanaClient
    from taskowner.integrations.sheets import GoogleSheetClient
    from taskowner.integrations.slack_client import SlackChatClient
    from taskowner.secrets import resolve_secret

    return TenantRuntime(
        tenant=tenant,
        chat=SlackChatClient(token=resolve_secret(tenant.chat_token_secret_name)),
        tracker=AsanaClient(access_token=resolve_secret(tenant.tracker_token_secret_name)),
        sheets=GoogleSheetClient(),
    )


def as_uuid(value: uuid.UUID | str) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


class TenantRegistry:
    """In-process map of tenant id → TenantRuntime."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        client_factory: ClientFactory = build_runtime,
    ) -> None:
        self._sessions = session_factory
        self._client_factory = client_factory
        self._runtimes: dict[uuid.UUID, TenantRuntime] = {}

    async def load_all(self) -> int:
        """Load every tenant from the database. Returns how many loaded."""
        if self._sessions is None:
            raise RuntimeError("TenantRegistry has no session factory")
        async with self._sessions() as db:
            tenants = list((await db.execute(select(Tenant))).scalars().all())

        loaded = 0
        for tenant in tenants:
            try:
                self.register(self._client_factory(tenant))
                loaded += 1
            except Exception as e:
                logger.error("tenant_load_failed", tenant_id=str(tenant.id), error=str(e))
        logger.info("tenants_loaded", loaded=loaded, total=len(tenants))
        return loaded

    async def reload(self, tenant_id: uuid.UUID | str) -> TenantRuntime:
        """Re-read one tenant and rebuild its clients."""
        if self._sessions is None:
            raise RuntimeError("TenantRegistry has no session factory")
        tid = as_uuid(tenant_id)
        async with self._sessions() as db:
            tenant = await db.get(Tenant, tid)
        if tenant is None:
            self._runtimes.pop(tid, None)
            raise TenantNotFoundError(str(tid))
        runtime = self._client_factory(tenant)
        self.register(runtime)
        logger.info("tenant_reloaded", tenant_id=str(tid))
        return runtime

    def register(self, runtime: TenantRuntime) -> None:
        self._runtimes[runtime.id] = runtime

    def find(self, tenant_id: uuid.UUID | str) -> TenantRuntime | None:
        try:
            return self._runtimes.get(as_uuid(tenant_id))
        except ValueError:
            return None

    def get(self, tenant_id: uuid.UUID | str) -> TenantRuntime:
        runtime = self.find(tenant_id)
        if runtime is None:
            raise TenantNotFoundError(str(tenant_id))
        return runtime

    def by_chat_workspace(self, team_id: str) -> TenantRuntime | None:
        for runtime in self._runtimes.values():
            if runtime.tenant.chat_workspace_id == team_id:
                return runtime
        return None

    def by_tracker_bot_user(self, user_id: str) -> TenantRuntime | None:
        for runtime in self._runtimes.values():
            if runtime.tenant.tracker_bot_user_id == user_id:
                return runtime
        return None

    def all(self) -> list[TenantRuntime]:
        return list(self._runtimes.values())
