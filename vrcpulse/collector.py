"""Runs all pollers concurrently, each at its own adjustable interval."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sqlite3
import sys
from collections.abc import Awaitable, Callable, Sequence

import aiosqlite
import httpx

from . import incident, maintenance, metrics, status
from .client import CollectorError
from .config import CollectorConfig, ConfigError, IntervalWatch, PollerType, init_config
from .schema import migrate_up

logger = logging.getLogger(__name__)

USER_AGENT = "vrc-pulse/1.0.0"

PollFn = Callable[[], Awaitable[object]]


def _checked_period(seconds: int) -> int:
    if seconds <= 0:
        raise ValueError(f"polling interval must be positive, got {seconds}")
    return seconds


async def poll_loop(name: str, watch: IntervalWatch, poll_fn: PollFn) -> None:
    """Call ``poll_fn`` at once and then every interval, restarting when it changes.

    Missed ticks are skipped rather than made up; poll errors are logged.
    """
    loop = asyncio.get_running_loop()
    period = _checked_period(watch.get())
    next_tick = loop.time()
    changed = asyncio.ensure_future(watch.wait_changed())
    try:
        while True:
            delay = max(0.0, next_tick - loop.time())
            done, _ = await asyncio.wait({changed}, timeout=delay)
            if changed in done:
                period = _checked_period(changed.result())
                next_tick = loop.time()
                changed = asyncio.ensure_future(watch.wait_changed())
                logger.info(
                    "Polling interval updated poller=%s interval_secs=%d", name, period
                )
                continue

            try:
                await poll_fn()
            except CollectorError as exc:
                logger.error("Poll failed poller=%s error=%s", name, exc)
            else:
                logger.debug("Polled poller=%s", name)

            now = loop.time()
            next_tick += period
            if next_tick <= now:
                next_tick += ((now - next_tick) // period + 1) * period
    finally:
        changed.cancel()


async def start(
    client: httpx.AsyncClient, db: aiosqlite.Connection, config: CollectorConfig
) -> None:
    """Run the status, incident, maintenance and metrics pollers until cancelled."""
    logger.info("Starting data collector...")
    logger.info(
        "Polling intervals (seconds) %s",
        " ".join(f"{p.value}={config.watch(p).get()}" for p in PollerType),
    )
    pollers = {
        PollerType.STATUS: status.poll,
        PollerType.INCIDENT: incident.poll,
        PollerType.MAINTENANCE: maintenance.poll,
        PollerType.METRICS: metrics.poll,
    }
    await asyncio.gather(
        *(
            poll_loop(
                poller.value,
                config.watch(poller),
                lambda fn=fn: fn(client, db),
            )
            for poller, fn in pollers.items()
        )
    )


def _database_path(database_url: str) -> str:
    for prefix in ("sqlite://", "sqlite:"):
        if database_url.startswith(prefix):
            path = database_url[len(prefix):].split("?", 1)[0]
            return path or ":memory:"
    raise ValueError(f"Unsupported database URL: {database_url}")


async def connect_database(database_url: str) -> aiosqlite.Connection:
    """Open the SQLite database with WAL journaling and a busy timeout."""
    db = await aiosqlite.connect(_database_path(database_url), timeout=10)
    try:
        await db.execute("PRAGMA journal_mode=WAL")
        await db.execute("PRAGMA busy_timeout=5000")
    except BaseException:
        await db.close()
        raise
    return db


def create_http_client() -> httpx.AsyncClient:
    """Create the HTTP client used for API requests."""
    return httpx.AsyncClient(headers={"User-Agent": USER_AGENT})


async def _run(database_url: str, migrate: bool) -> None:
    db = await connect_database(database_url)
    try:
        logger.info("Database connected (WAL mode enabled)")
        if migrate:
            for name in await migrate_up(db):
                logger.info("Applied migration %s", name)
        config = await init_config(db)
        logger.info("Collector config loaded")
        async with create_http_client() as client:
            await start(client, db, config)
    finally:
        await db.close()


def main(argv: Sequence[str] | None = None) -> int:
    """Run the data collector until interrupted."""
    parser = argparse.ArgumentParser(prog="vrcpulse-collector", description=__doc__)
    parser.add_argument(
        "-u",
        "--database-url",
        default=os.environ.get("DATABASE_URL"),
        help="database URL (defaults to $DATABASE_URL)",
    )
    parser.add_argument(
        "--migrate", action="store_true", help="apply pending migrations before starting"
    )
    parser.add_argument("--log-level", default="INFO", help="logging level")
    args = parser.parse_args(argv)
    if not args.database_url:
        parser.error("a database URL is required (--database-url or DATABASE_URL)")

    logging.basicConfig(level=args.log_level.upper())
    try:
        asyncio.run(_run(args.database_url, args.migrate))
    except KeyboardInterrupt:
        return 130
    except (ConfigError, ValueError, sqlite3.Error) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())