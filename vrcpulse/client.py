"""HTTP access to the status page and metrics APIs."""

from __future__ import annotations

from typing import Any

import httpx

VRCHAT_STATUS_API_BASE = "https://status.vrchat.com/api/v2"
CLOUDFRONT_METRICS_BASE = "https://d31qqo63tn8lj0.cloudfront.net"


class CollectorError(Exception):
    """A poll failed because of an HTTP or database problem."""


async def fetch_json(client: httpx.AsyncClient, url: str) -> Any:
    """Fetch ``url`` and return its decoded JSON body."""
    try:
        response = await client.get(url)
        response.raise_for_status()
        return response.json()
    except (httpx.HTTPError, ValueError) as exc:
        raise CollectorError(f"HTTP request failed: {exc}") from exc


def status_api_url(endpoint: str) -> str:
    """Build the full URL of a status API endpoint."""
    return f"{VRCHAT_STATUS_API_BASE}{endpoint}"


def metrics_api_url(endpoint: str) -> str:
    """Build the full URL of a metrics endpoint."""
    return f"{CLOUDFRONT_METRICS_BASE}{endpoint}"