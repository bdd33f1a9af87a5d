"""Poller for the overall status summary and per-component states."""

from __future__ import annotations

import contextlib
import logging
import sqlite3
from collections.abc import Callable, Iterator
from datetime import datetime, timezone
from typing import Any, TypeVar

import aiosqlite
import httpx

from .client import CollectorError, fetch_json, status_api_url
from .models import SummaryResponse

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


@contextlib.contextmanager
def _database_errors() -> Iterator[None]:
    """Turn SQLite failures into collector errors."""
    try:
        yield
    except sqlite3.Error as exc:
        raise CollectorError(f"Database error: {exc}") from exc


async def _fetch_status(
    client: httpx.AsyncClient, endpoint: str, parse: Callable[[Any], _T]
) -> _T:
    """Fetch a status API endpoint and parse its body, raising CollectorError on failure."""
    data = await fetch_json(client, status_api_url(endpoint))
    try:
        return parse(data)
    except ValueError as exc:
        raise CollectorError(f"HTTP request failed: {exc}") from exc


async def poll(client: httpx.AsyncClient, db: aiosqlite.Connection) -> None:
    """Fetch /summary.json and store new status and component log rows."""
    summary = await _fetch_status(client, "/summary.json", SummaryResponse.from_dict)
    with _database_errors():
        await _store(db, summary)


async def _exists(db: aiosqlite.Connection, sql: str, params: tuple) -> bool:
    async with db.execute(sql, params) as cursor:
        return await cursor.fetchone() is not None


async def _store(db: aiosqlite.Connection, summary: SummaryResponse) -> None:
    source_timestamp = summary.page.updated_at.isoformat()
    now = datetime.now(timezone.utc).isoformat()

    if await _exists(
        db, "SELECT 1 FROM status_logs WHERE source_timestamp = ?", (source_timestamp,)
    ):
        logger.debug("Status log already exists for timestamp, skipping")
    else:
        await db.execute(
            "INSERT INTO status_logs (indicator, description, source_timestamp, created_at) "
            "VALUES (?, ?, ?, ?)",
            (summary.status.indicator, summary.status.description, source_timestamp, now),
        )
        logger.debug("Inserted new status log indicator=%s", summary.status.indicator)

    for component in summary.components:
        if await _exists(
            db,
            "SELECT 1 FROM component_logs WHERE component_id = ? AND source_timestamp = ?",
            (component.id, source_timestamp),
        ):
            continue
        await db.execute(
            "INSERT INTO component_logs (component_id, name, status, source_timestamp, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (component.id, component.name, component.status, source_timestamp, now),
        )
        logger.debug(
            "Inserted component log component_id=%s name=%s status=%s",
            component.id,
            component.name,
            component.status,
        )
    await db.commit()