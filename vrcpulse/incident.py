"""Poller for unresolved incidents and their updates."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import aiosqlite
import httpx

from .client import CollectorError
from .models import Incident, IncidentUpdate, UnresolvedIncidentsResponse, parse_timestamp
from .status import _database_errors, _fetch_status

logger = logging.getLogger(__name__)


async def poll(client: httpx.AsyncClient, db: aiosqlite.Connection) -> None:
    """Fetch unresolved incidents, resolve the ones that vanished and upsert the rest."""
    try:
        response = await _fetch_status(
            client, "/incidents/unresolved.json", UnresolvedIncidentsResponse.from_dict
        )
    except CollectorError as exc:
        logger.warning("API fetch failed, skipping resolution detection: %s", exc)
        raise

    api_ids = {incident.id for incident in response.incidents}
    now = datetime.now(timezone.utc).isoformat()

    with _database_errors():
        async with db.execute("SELECT id FROM incidents WHERE status != 'resolved'") as cursor:
            vanished = [row[0] for row in await cursor.fetchall() if row[0] not in api_ids]
        for incident_id in vanished:
            await db.execute(
                "UPDATE incidents SET status = 'resolved', resolved_at = ?, updated_at = ? "
                "WHERE id = ?",
                (now, now, incident_id),
            )
            logger.info("Marked incident as resolved incident_id=%s", incident_id)
        await db.commit()

    for incident in response.incidents:
        await upsert_incident(db, incident)
        for update in incident.incident_updates:
            await upsert_incident_update(db, incident.id, update)


def _changed(row: tuple, incident: Incident) -> bool:
    title, impact, status, updated_at = row
    return (
        status != incident.status
        or impact != incident.impact
        or title != incident.name
        or parse_timestamp(updated_at) != incident.updated_at
    )


async def upsert_incident(db: aiosqlite.Connection, incident: Incident) -> bool:
    """Insert the incident or refresh it if it changed; True if a row was written."""
    with _database_errors():
        async with db.execute(
            "SELECT title, impact, status, updated_at FROM incidents WHERE id = ?",
            (incident.id,),
        ) as cursor:
            row = await cursor.fetchone()

        fields = (
            incident.name,
            incident.impact,
            incident.status,
            incident.updated_at.isoformat(),
            incident.id,
        )
        if row is None:
            created_at = incident.created_at.isoformat()
            await db.execute(
                "INSERT INTO incidents "
                "(title, impact, status, updated_at, id, started_at, created_at, resolved_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, NULL)",
                fields + (created_at, created_at),
            )
        elif _changed(row, incident):
            await db.execute(
                "UPDATE incidents SET title = ?, impact = ?, status = ?, updated_at = ? "
                "WHERE id = ?",
                fields,
            )
        else:
            return False
        await db.commit()

    if row is None:
        logger.info("Inserted new incident incident_id=%s title=%s", incident.id, incident.name)
    else:
        logger.debug("Updated incident incident_id=%s", incident.id)
    return True


async def upsert_incident_update(
    db: aiosqlite.Connection, incident_id: str, update: IncidentUpdate
) -> bool:
    """Insert an incident update unless it is already stored; updates never change."""
    with _database_errors():
        async with db.execute(
            "SELECT 1 FROM incident_updates WHERE id = ?", (update.id,)
        ) as cursor:
            if await cursor.fetchone() is not None:
                return False
        created = update.created_at.isoformat()
        await db.execute(
            "INSERT INTO incident_updates "
            "(id, incident_id, body, status, published_at, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (update.id, incident_id, update.body, update.status, created, created, created),
        )
        await db.commit()
    logger.debug("Inserted incident update update_id=%s", update.id)
    return True