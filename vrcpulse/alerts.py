"""Threshold alerts raised when enough users report the same problem.

Reports carry a status: ``active`` reports inside the time window count
towards the threshold; ``counted`` and ``expired`` are reserved and not yet
used.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Protocol

import aiosqlite

from .models import parse_timestamp

logger = logging.getLogger(__name__)

MAX_RECENT_REPORTS = 5
"""Number of recent report times shown in an alert."""

ALERT_TYPE = "threshold"

_I64_RANGE = (-(2**63), 2**63 - 1)
_SIGNED = re.compile(r"[+-]?[0-9]+")
_UNSIGNED = re.compile(r"\+?[0-9]+")


class RecordResult(Enum):
    """Outcome of trying to record a sent alert."""

    RECORDED = "recorded"
    ALREADY_SENT = "already_sent"
    ERROR = "error"


@dataclass(frozen=True)
class ThresholdAlert:
    """What an alert says: how many users reported a problem, and when."""

    incident_type: str
    count: int
    interval: int
    recent_reports: tuple[datetime, ...]
    reference_id: str


class AlertNotifier(Protocol):
    """Delivers alerts; a method raises if delivery failed."""

    async def send_to_channel(
        self, channel_id: int, alert: ThresholdAlert, language: str | None
    ) -> None:
        """Post the alert in a guild channel."""

    async def send_to_user(
        self, user_id: int, alert: ThresholdAlert, language: str | None
    ) -> None:
        """Send the alert to a user as a direct message."""


def _parse_i64(text: str) -> int | None:
    if not _SIGNED.fullmatch(text):
        return None
    value = int(text)
    low, high = _I64_RANGE
    return value if low <= value <= high else None


def _parse_snowflake(text: str) -> int | None:
    if not _UNSIGNED.fullmatch(text):
        return None
    value = int(text)
    return value if 0 < value < 2**64 else None


def _cutoff(interval: int) -> str:
    return (datetime.now(timezone.utc) - timedelta(minutes=interval)).isoformat()


async def get_config_value(db: aiosqlite.Connection, key: str) -> int | None:
    """Read an integer setting from bot_config; None if absent or not a number."""
    try:
        async with db.execute("SELECT value FROM bot_config WHERE key = ?", (key,)) as cursor:
            row = await cursor.fetchone()
    except sqlite3.Error as exc:
        logger.error("Failed to read config key=%s error=%s", key, exc)
        return None
    if row is None:
        return None
    return _parse_i64(str(row[0]))


async def count_active_reports(
    db: aiosqlite.Connection, incident_type: str, interval: int
) -> int:
    """Count distinct users with an active report of this type in the last ``interval`` minutes."""
    try:
        async with db.execute(
            "SELECT COUNT(DISTINCT user_id) FROM user_reports "
            "WHERE incident_type = ? AND status = 'active' AND created_at > ?",
            (incident_type, _cutoff(interval)),
        ) as cursor:
            row = await cursor.fetchone()
    except sqlite3.Error as exc:
        logger.error("Failed to count reports error=%s", exc)
        return 0
    return 0 if row is None or row[0] is None else int(row[0])


async def get_recent_reports(
    db: aiosqlite.Connection, incident_type: str, interval: int, limit: int
) -> list[datetime]:
    """Return the creation times of the newest active reports, newest first."""
    try:
        async with db.execute(
            "SELECT created_at FROM user_reports "
            "WHERE incident_type = ? AND status = 'active' AND created_at > ? "
            "ORDER BY created_at DESC LIMIT ?",
            (incident_type, _cutoff(interval), limit),
        ) as cursor:
            rows = await cursor.fetchall()
        return [parse_timestamp(row[0]) for row in rows]
    except (sqlite3.Error, ValueError) as exc:
        logger.error("Failed to fetch recent reports error=%s", exc)
        return []


async def get_registered_guilds(db: aiosqlite.Connection) -> list[dict[str, Any]]:
    """Return enabled guilds that have an alert channel set."""
    try:
        async with db.execute(
            "SELECT guild_id, channel_id, language FROM guild_configs "
            "WHERE enabled = 1 AND channel_id IS NOT NULL"
        ) as cursor:
            rows = await cursor.fetchall()
    except sqlite3.Error as exc:
        logger.error("Failed to fetch registered guilds for alerts error=%s", exc)
        return []
    return [{"guild_id": g, "channel_id": c, "language": lang} for g, c, lang in rows]


async def get_registered_users(db: aiosqlite.Connection) -> list[dict[str, Any]]:
    """Return users who enabled direct-message alerts."""
    try:
        async with db.execute(
            "SELECT user_id, language FROM user_configs WHERE enabled = 1"
        ) as cursor:
            rows = await cursor.fetchall()
    except sqlite3.Error as exc:
        logger.error("Failed to fetch registered users for alerts error=%s", exc)
        return []
    return [{"user_id": u, "language": lang} for u, lang in rows]


async def try_record_sent_alert(
    db: aiosqlite.Connection,
    guild_id: str | None,
    user_id: str | None,
    reference_id: str,
) -> tuple[RecordResult, int | None]:
    """Record an alert as sent in one atomic statement.

    Returns the outcome and, when recorded, the new row id so that the record
    can be removed again if delivery fails.
    """
    now = datetime.now(timezone.utc).isoformat()
    try:
        cursor = await db.execute(
            "INSERT INTO sent_alerts "
            "(guild_id, user_id, alert_type, reference_id, notified_at, created_at) "
            "SELECT ?, ?, ?, ?, ?, ? WHERE NOT EXISTS ("
            "SELECT 1 FROM sent_alerts WHERE guild_id IS ? AND user_id IS ? "
            "AND alert_type = ? AND reference_id = ?)",
            (
                guild_id,
                user_id,
                ALERT_TYPE,
                reference_id,
                now,
                now,
                guild_id,
                user_id,
                ALERT_TYPE,
                reference_id,
            ),
        )
        await db.commit()
    except sqlite3.Error as exc:
        text = str(exc).lower()
        if "unique" in text or "duplicate" in text:
            return RecordResult.ALREADY_SENT, None
        logger.error("Failed to record sent alert error=%s", exc)
        return RecordResult.ERROR, None
    if cursor.rowcount == 0:
        return RecordResult.ALREADY_SENT, None
    return RecordResult.RECORDED, cursor.lastrowid


async def delete_sent_alert(db: aiosqlite.Connection, record_id: int) -> None:
    """Remove a sent-alert record so the alert is retried on the next trigger."""
    try:
        await db.execute("DELETE FROM sent_alerts WHERE id = ?", (record_id,))
        await db.commit()
    except sqlite3.Error as exc:
        logger.error(
            "Failed to delete sent_alert record for retry record_id=%d error=%s",
            record_id,
            exc,
        )


def generate_reference_id(incident_type: str, now: datetime | None = None) -> str:
    """Build the deduplication key: the incident type and the UTC 15-minute block."""
    moment = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    block = moment.minute // 15 * 15
    return f"threshold_{incident_type}_{moment:%Y-%m-%dT%H}:{block:02d}"


def format_recent_reports(reports: Sequence[datetime], now: datetime | None = None) -> str:
    """Describe report times relative to ``now``, one line each."""
    if not reports:
        return "No recent reports"
    moment = now or datetime.now(timezone.utc)
    lines = []
    for reported in reports:
        minutes = int((moment - reported).total_seconds() / 60)
        if minutes < 1:
            lines.append("- just now")
        elif minutes == 1:
            lines.append("- 1 min ago")
        else:
            lines.append(f"- {minutes} mins ago")
    return "\n".join(lines)


async def _send_guild_alert(
    db: aiosqlite.Connection,
    guild: dict[str, Any],
    alert: ThresholdAlert,
    notifier: AlertNotifier,
) -> bool:
    guild_id = guild["guild_id"]
    channel_text = guild["channel_id"]
    if channel_text is None:
        return False
    channel_id = _parse_snowflake(str(channel_text))
    if channel_id is None:
        logger.warning("Invalid channel ID guild_id=%s", guild_id)
        return False

    outcome, record_id = await try_record_sent_alert(db, guild_id, None, alert.reference_id)
    if outcome is not RecordResult.RECORDED or record_id is None:
        return False

    try:
        await notifier.send_to_channel(channel_id, alert, guild["language"])
    except Exception as exc:
        logger.error(
            "Failed to send alert to guild channel, will retry on next trigger "
            "guild_id=%s error=%s",
            guild_id,
            exc,
        )
        await delete_sent_alert(db, record_id)
        return False
    logger.info(
        "Sent threshold alert to guild guild_id=%s incident_type=%s count=%d",
        guild_id,
        alert.incident_type,
        alert.count,
    )
    return True


async def _send_user_alert(
    db: aiosqlite.Connection,
    user: dict[str, Any],
    alert: ThresholdAlert,
    notifier: AlertNotifier,
) -> bool:
    user_text = str(user["user_id"])
    user_id = _parse_snowflake(user_text)
    if user_id is None:
        logger.warning("Invalid user ID user_id=%s", user_text)
        return False

    outcome, record_id = await try_record_sent_alert(db, None, user_text, alert.reference_id)
    if outcome is not RecordResult.RECORDED or record_id is None:
        return False

    try:
        await notifier.send_to_user(user_id, alert, user["language"])
    except Exception as exc:
        logger.error(
            "Failed to send alert to user DM, will retry on next trigger user_id=%s error=%s",
            user_text,
            exc,
        )
        await delete_sent_alert(db, record_id)
        return False
    logger.info(
        "Sent threshold alert to user DM user_id=%s incident_type=%s count=%d",
        user_text,
        alert.incident_type,
        alert.count,
    )
    return True


async def check_and_send_alerts(
    db: aiosqlite.Connection, incident_type: str, notifier: AlertNotifier
) -> int:
    """Alert every registered guild and user if the report threshold is reached.

    Returns the number of alerts delivered.
    """
    threshold = await get_config_value(db, "report_threshold")
    if threshold is None:
        logger.error("Missing required config: report_threshold")
        return 0
    interval = await get_config_value(db, "report_interval")
    if interval is None:
        logger.error("Missing required config: report_interval")
        return 0

    count = await count_active_reports(db, incident_type, interval)
    logger.info(
        "Checking alert threshold incident_type=%s count=%d threshold=%d",
        incident_type,
        count,
        threshold,
    )
    if count < threshold:
        return 0

    alert = ThresholdAlert(
        incident_type=incident_type,
        count=count,
        interval=interval,
        recent_reports=tuple(
            await get_recent_reports(db, incident_type, interval, MAX_RECENT_REPORTS)
        ),
        reference_id=generate_reference_id(incident_type),
    )

    delivered = 0
    for guild in await get_registered_guilds(db):
        delivered += await _send_guild_alert(db, guild, alert, notifier)
    for user in await get_registered_users(db):
        delivered += await _send_user_alert(db, user, alert, notifier)
    return delivered