"""Poller for the CloudFront metric feeds."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone

import aiosqlite
import httpx

from .client import CollectorError, fetch_json, metrics_api_url
from .models import CLOUDFRONT_METRICS, MetricDefinition, parse_metrics, parse_timestamp

logger = logging.getLogger(__name__)

METRIC_INTERVAL_SEC = 60
"""Sample interval recorded for every CloudFront metric."""


async def poll(client: httpx.AsyncClient, db: aiosqlite.Connection) -> int:
    """Poll every metric feed, skipping ones that fail; return rows inserted."""
    inserted = 0
    for metric in CLOUDFRONT_METRICS:
        try:
            inserted += await poll_metric(client, db, metric)
        except CollectorError as exc:
            logger.warning("Failed to poll metric, skipping metric=%s error=%s", metric.name, exc)
    return inserted


async def poll_metric(
    client: httpx.AsyncClient, db: aiosqlite.Connection, metric: MetricDefinition
) -> int:
    """Store the samples of one feed newer than the latest stored one; return the count."""
    data = await fetch_json(client, metrics_api_url(metric.endpoint))
    try:
        points = parse_metrics(data)
    except ValueError as exc:
        raise CollectorError(f"HTTP request failed: {exc}") from exc
    if not points:
        return 0

    latest = await latest_timestamp(db, metric.name)
    now = datetime.now(timezone.utc).isoformat()
    inserted = 0
    try:
        for timestamp, value in points:
            try:
                moment = datetime.fromtimestamp(timestamp, timezone.utc)
            except (OverflowError, OSError, ValueError):
                logger.warning("Invalid timestamp, skipping timestamp=%d", timestamp)
                continue
            if latest is not None and moment <= latest:
                continue
            await db.execute(
                "INSERT INTO metric_logs "
                "(metric_name, value, unit, interval_sec, timestamp, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (metric.name, value, metric.unit, METRIC_INTERVAL_SEC, moment.isoformat(), now),
            )
            inserted += 1
        await db.commit()
    except sqlite3.Error as exc:
        raise CollectorError(f"Database error: {exc}") from exc

    if inserted:
        logger.debug("Inserted metric data points metric=%s count=%d", metric.name, inserted)
    return inserted


async def latest_timestamp(db: aiosqlite.Connection, metric_name: str) -> datetime | None:
    """Return the newest stored sample time of a metric, or None if there is none."""
    try:
        async with db.execute(
            "SELECT timestamp FROM metric_logs WHERE metric_name = ? "
            "ORDER BY timestamp DESC LIMIT 1",
            (metric_name,),
        ) as cursor:
            row = await cursor.fetchone()
    except sqlite3.Error as exc:
        raise CollectorError(f"Database error: {exc}") from exc
    return None if row is None else parse_timestamp(row[0])