"""Poller for scheduled maintenances."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from itertools import chain

import aiosqlite
import httpx

from .models import Maintenance, MaintenancesResponse, parse_timestamp
from .status import _database_errors, _fetch_status

logger = logging.getLogger(__name__)

_COLUMNS = "id, title, status, scheduled_for, scheduled_until, created_at, updated_at"


def _from_row(row: tuple) -> Maintenance:
    maintenance_id, name, status, *stamps = row
    scheduled_for, scheduled_until, created_at, updated_at = map(parse_timestamp, stamps)
    return Maintenance(
        id=maintenance_id,
        name=name,
        status=status,
        scheduled_for=scheduled_for,
        scheduled_until=scheduled_until,
        created_at=created_at,
        updated_at=updated_at,
    )


async def _with_status(db: aiosqlite.Connection, status: str) -> list[Maintenance]:
    async with db.execute(
        f"SELECT {_COLUMNS} FROM maintenances WHERE status = ?", (status,)
    ) as cursor:
        return [_from_row(row) for row in await cursor.fetchall()]


async def poll(client: httpx.AsyncClient, db: aiosqlite.Connection) -> None:
    """Sync upcoming and active maintenances and mark finished ones completed."""
    upcoming, active = [
        await _fetch_status(
            client, f"/scheduled-maintenances/{kind}.json", MaintenancesResponse.from_dict
        )
        for kind in ("upcoming", "active")
    ]
    now = datetime.now(timezone.utc)

    for maintenance in chain(upcoming.scheduled_maintenances, active.scheduled_maintenances):
        await upsert_maintenance(db, maintenance)

    active_ids = {m.id for m in active.scheduled_maintenances}
    with _database_errors():
        finished = [
            (m.id, "Marked maintenance as completed maintenance_id=%s")
            for m in await _with_status(db, "in_progress")
            if m.id not in active_ids and now > m.scheduled_until
        ]
        skipped = [
            (m.id, "Marked skipped maintenance as completed maintenance_id=%s")
            for m in await _with_status(db, "scheduled")
            if now > m.scheduled_until
        ]
        for maintenance_id, message in finished + skipped:
            await db.execute(
                "UPDATE maintenances SET status = 'completed', updated_at = ? WHERE id = ?",
                (now.isoformat(), maintenance_id),
            )
            logger.info(message, maintenance_id)
        await db.commit()


async def upsert_maintenance(db: aiosqlite.Connection, maintenance: Maintenance) -> bool:
    """Insert the maintenance or refresh it if its schedule changed; True if written."""
    fields = (
        maintenance.name,
        maintenance.status,
        maintenance.scheduled_for.isoformat(),
        maintenance.scheduled_until.isoformat(),
        maintenance.updated_at.isoformat(),
        maintenance.id,
    )
    with _database_errors():
        async with db.execute(
            f"SELECT {_COLUMNS} FROM maintenances WHERE id = ?", (maintenance.id,)
        ) as cursor:
            row = await cursor.fetchone()

        if row is None:
            await db.execute(
                "INSERT INTO maintenances (title, status, scheduled_for, scheduled_until, "
                "updated_at, id, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                fields + (maintenance.created_at.isoformat(),),
            )
        elif should_update(_from_row(row), maintenance):
            await db.execute(
                "UPDATE maintenances SET title = ?, status = ?, scheduled_for = ?, "
                "scheduled_until = ?, updated_at = ? WHERE id = ?",
                fields,
            )
        else:
            return False
        await db.commit()

    if row is None:
        logger.info(
            "Inserted new maintenance maintenance_id=%s title=%s",
            maintenance.id,
            maintenance.name,
        )
    else:
        logger.debug(
            "Updated maintenance maintenance_id=%s status=%s", maintenance.id, maintenance.status
        )
    return True


def should_update(existing: Maintenance, incoming: Maintenance) -> bool:
    """True if the status or the scheduled window differs."""
    return (
        existing.status != incoming.status
        or existing.scheduled_for != incoming.scheduled_for
        or existing.scheduled_until != incoming.scheduled_until
    )