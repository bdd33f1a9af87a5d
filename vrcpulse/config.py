"""Polling intervals stored in the database and shared with running pollers."""

from __future__ import annotations

import asyncio
import logging
import re
import sqlite3
from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum

import aiosqlite

from .client import CollectorError

logger = logging.getLogger(__name__)

MIN_INTERVAL = 60
"""Minimum polling interval in seconds (1 minute)."""

MAX_INTERVAL = 3600
"""Maximum polling interval in seconds (1 hour)."""

DEFAULT_INTERVAL = 60
"""Interval every poller is reset to."""

_MAX_U64 = 2**64 - 1
_UNSIGNED = re.compile(r"\+?[0-9]+")


class ConfigError(Exception):
    """The polling configuration could not be loaded."""


class MissingKeyError(ConfigError):
    def __init__(self, key: str) -> None:
        super().__init__(f"Missing config key: {key}")
        self.key = key


class InvalidValueError(ConfigError):
    def __init__(self, key: str, value: str) -> None:
        super().__init__(f"Invalid config value for {key}: {value}")
        self.key = key
        self.value = value


class PollerType(Enum):
    STATUS = "status"
    INCIDENT = "incident"
    MAINTENANCE = "maintenance"
    METRICS = "metrics"

    def db_key(self) -> str:
        """The bot_config key holding this poller's interval."""
        return f"polling.{self.value}"

    @classmethod
    def parse(cls, text: str) -> PollerType | None:
        """Look a poller up by name, ignoring case; None if unknown."""
        try:
            return cls(text.lower())
        except ValueError:
            return None


class IntervalWatch:
    """Holds the latest interval and lets a consumer wait for it to change."""

    def __init__(self, seconds: int) -> None:
        self._seconds = seconds
        self._version = 0
        self._seen = 0
        self._changed = asyncio.Event()

    def get(self) -> int:
        return self._seconds

    def set(self, seconds: int) -> None:
        self._seconds = seconds
        self._version += 1
        self._changed.set()

    async def wait_changed(self) -> int:
        """Wait for a value not yet seen by this method, and return it."""
        while self._version == self._seen:
            self._changed.clear()
            await self._changed.wait()
        self._seen = self._version
        return self._seconds


class CollectorConfig:
    """The live polling interval of every poller."""

    def __init__(self, intervals: Mapping[PollerType, int]) -> None:
        missing = [p.value for p in PollerType if p not in intervals]
        if missing:
            raise ValueError(f"no interval given for: {', '.join(missing)}")
        self._watches = {p: IntervalWatch(intervals[p]) for p in PollerType}

    def watch(self, poller: PollerType) -> IntervalWatch:
        return self._watches[poller]

    async def update(
        self, db: aiosqlite.Connection, poller: PollerType, seconds: int
    ) -> None:
        """Change a poller's interval and persist it."""
        self._watches[poller].set(seconds)
        await set_interval(db, poller, seconds)
        logger.info("Updated polling interval poller=%s seconds=%d", poller.value, seconds)

    async def reset_all(self, db: aiosqlite.Connection) -> None:
        """Reset every poller to the default interval."""
        for poller in PollerType:
            self._watches[poller].set(DEFAULT_INTERVAL)
            await set_interval(db, poller, DEFAULT_INTERVAL)
        logger.info("Reset all polling intervals to default seconds=%d", DEFAULT_INTERVAL)


async def _load_interval(db: aiosqlite.Connection, poller: PollerType) -> int:
    key = poller.db_key()
    try:
        async with db.execute("SELECT value FROM bot_config WHERE key = ?", (key,)) as cursor:
            row = await cursor.fetchone()
    except sqlite3.Error as exc:
        raise ConfigError(f"Database error: {exc}") from exc
    if row is None:
        raise MissingKeyError(key)
    value = str(row[0])
    if not _UNSIGNED.fullmatch(value) or int(value) > _MAX_U64:
        raise InvalidValueError(key, value)
    return int(value)


async def init_config(db: aiosqlite.Connection) -> CollectorConfig:
    """Load every poller's interval from the database."""
    intervals = {p: await _load_interval(db, p) for p in PollerType}
    logger.info(
        "Loaded polling intervals from database %s",
        " ".join(f"{p.value}={s}" for p, s in intervals.items()),
    )
    return CollectorConfig(intervals)


async def get_interval(db: aiosqlite.Connection, poller: PollerType) -> int:
    """Read a poller's interval from the database."""
    return await _load_interval(db, poller)


async def set_interval(db: aiosqlite.Connection, poller: PollerType, seconds: int) -> None:
    """Store a poller's interval, inserting the key if it is absent."""
    if seconds < 0:
        raise ValueError(f"interval must not be negative, got {seconds}")
    key = poller.db_key()
    now = datetime.now(timezone.utc).isoformat()
    try:
        async with db.execute("SELECT 1 FROM bot_config WHERE key = ?", (key,)) as cursor:
            exists = await cursor.fetchone() is not None
        if exists:
            await db.execute(
                "UPDATE bot_config SET value = ?, updated_at = ? WHERE key = ?",
                (str(seconds), now, key),
            )
        else:
            await db.execute(
                "INSERT INTO bot_config (key, value, updated_at) VALUES (?, ?, ?)",
                (key, str(seconds), now),
            )
        await db.commit()
    except sqlite3.Error as exc:
        raise CollectorError(f"Database error: {exc}") from exc


def validate_interval(seconds: int) -> None:
    """Raise ValueError unless the interval lies within the allowed range."""
    if seconds < MIN_INTERVAL:
        raise ValueError(f"Interval must be at least {MIN_INTERVAL} seconds")
    if seconds > MAX_INTERVAL:
        raise ValueError(f"Interval must be at most {MAX_INTERVAL} seconds")