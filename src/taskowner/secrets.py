"""Resolve opaque per-tenant credential references to usable tokens.

Tenant rows only carry secret *names*. A name resolves from the
environment (upper-cased, dashes and dots turned into underscores) or
from the ``secrets`` section of keys.json.
"""

from __future__ import annotations

import os
import re

import structlog

from taskowner.config import load_keys_json
from taskowner.errors import SecretNotFoundError

logger = structlog.get_logger()

_ENV_UNSAFE = re.compile(r"[^A-Z0-9_]")


def env_name(name: str) -> str:
    return _ENV_UNSAFE.sub("_", name.strip().upper())


def resolve_secret(name: str) -> str:
    """Return the secret value for ``name`` or raise SecretNotFoundError."""
    value = os.environ.get(env_name(name))
    if value:
        return value

    keys = load_keys_json()
    value = (keys.get("secrets") or {}).get(name)
    if value:
        return str(value)

    logger.warning("secret_not_found", secret_name=name)
    raise SecretNotFoundError(name)
