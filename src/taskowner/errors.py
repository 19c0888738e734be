"""Exception hierarchy for taskowner."""

from __future__ import annotations


class TaskOwnerError(Exception):
    """Root exception for all taskowner domain errors."""


class TenantNotFoundError(TaskOwnerError):
    def __init__(self, tenant_id: str):
        super().__init__(f"Tenant not found: {tenant_id}")
        self.tenant_id = tenant_id


class SecretNotFoundError(TaskOwnerError):
    def __init__(self, name: str):
        super().__init__(f"Secret not configured: {name}")
        self.name = name


class CollaboratorError(TaskOwnerError):
    """Network or API failure from the tracker, chat, sheet or classifier."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class WebhookSignatureError(TaskOwnerError):
    """Inbound tracker webhook failed signature verification."""
