"""Google Sheets lookup: the designated-assignee collaborator.

Reads the tenant's assignment sheet through the Sheets v4 values API.
The sheet is always re-read on lookup so edits by the team are seen
immediately.
"""

from __future__ import annotations

import re
from typing import Any
from urllib.parse import quote

import certifi
import httpx
import structlog

from taskowner.config import settings
from taskowner.errors import CollaboratorError
from taskowner.integrations.interfaces import SheetRow

logger = structlog.get_logger()

_SHEET_ID_RE = re.compile(r"/spreadsheets/d/([a-zA-Z0-9-_]+)")

ITEM_NAME_COLUMNS = ("Task Name", "task_name", "taskName")
ASSIGNEE_COLUMNS = ("Recommended Developer", "recommended_developer", "Assignee", "assignee")
NO_MATCH_SENTINELS = frozenset({"no match", "no developers available"})


def extract_sheet_id(url: str) -> str:
    match = _SHEET_ID_RE.search(url)
    if not match:
        raise ValueError(f"Invalid Google Sheets URL: {url}")
    return match.group(1)


def _first(row: dict[str, str], columns: tuple[str, ...]) -> str:
    for column in columns:
        value = row.get(column)
        if value:
            return value.strip()
    return ""


def find_row(values: list[list[str]], item_name: str) -> SheetRow | None:
    """Locate ``item_name`` in a header-first value grid.

    Returns None when the item is absent or its assignee cell holds a
    no-match sentinel.
    """
    if not values:
        return None
    headers = [h.strip() for h in values[0]]
    wanted = item_name.strip().lower()

    for raw in values[1:]:
        row = {headers[i]: (raw[i] if i < len(raw) else "") for i in range(len(headers))}
        row_name = _first(row, ITEM_NAME_COLUMNS)
        if row_name.lower() != wanted:
            continue

        assignee = _first(row, ASSIGNEE_COLUMNS)
        if not assignee or assignee.lower() in NO_MATCH_SENTINELS:
            logger.warning("sheet_row_without_assignee", item_name=item_name, assignee=assignee)
            return None

        extra = {
            k: v for k, v in row.items()
            if k not in ITEM_NAME_COLUMNS and k not in ASSIGNEE_COLUMNS
        }
        return SheetRow(item_name=row_name, assignee=assignee, extra=extra)
    return None


class GoogleSheetClient:
    def __init__(self, api_key: str | None = None, tab_name: str | None = None) -> None:
        self._api_key = api_key if api_key is not None else settings.sheets_api_key
        self._tab_name = tab_name or settings.sheets_tab_name
        self._client = httpx.AsyncClient(
            base_url=settings.sheets_base_url,
            verify=certifi.where(),
            timeout=httpx.Timeout(settings.sheets_timeout_s, connect=5.0),
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, **params: Any) -> dict[str, Any]:
        if self._api_key:
            params["key"] = self._api_key
        try:
            response = await self._client.get(path, params=params)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("sheets_request_failed", path=path, error=str(e))
            raise CollaboratorError(f"Google Sheets request failed: {e}") from e
        return response.json()

    async def _tab_title(self, sheet_id: str) -> str:
        meta = await self._get(f"/{sheet_id}", fields="sheets.properties.title")
        titles = [s["properties"]["title"] for s in meta.get("sheets") or []]
        if self._tab_name in titles:
            return self._tab_name
        if not titles:
            raise CollaboratorError(f"Spreadsheet {sheet_id} has no tabs")
        return titles[0]

    async def find_assignment(self, sheet_url: str, item_name: str) -> SheetRow | None:
        sheet_id = extract_sheet_id(sheet_url)
        tab = await self._tab_title(sheet_id)
        body = await self._get(f"/{sheet_id}/values/{quote(tab, safe='')}")
        row = find_row(body.get("values") or [], item_name)
        logger.debug("sheet_lookup", item_name=item_name, tab=tab, found=row is not None)
        return row
