"""Audit logging of executed commands."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone

import aiosqlite

logger = logging.getLogger(__name__)


async def log_command(
    db: aiosqlite.Connection | None,
    command_name: str,
    subcommand: str | None,
    user_id: int | str,
    guild_id: int | str | None,
    channel_id: int | str,
) -> int | None:
    """Log a command to the console and record it in command_logs.

    Returns the new row id, or None when there is no database or the insert
    failed; failures are logged and never interrupt command handling.
    """
    guild = None if guild_id is None else str(guild_id)
    logger.info(
        "Command received command=%s subcommand=%s user_id=%s guild_id=%s channel_id=%s",
        command_name,
        subcommand,
        user_id,
        guild,
        channel_id,
    )
    if db is None:
        return None
    try:
        cursor = await db.execute(
            "INSERT INTO command_logs "
            "(command_name, subcommand, user_id, guild_id, channel_id, executed_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                command_name,
                subcommand,
                str(user_id),
                guild,
                str(channel_id),
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        await db.commit()
    except sqlite3.Error as exc:
        logger.error("Failed to insert command log: %s", exc)
        return None
    return cursor.lastrowid