"""Response types for the status page API and the CloudFront metrics feed."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

MetricDataPoint = tuple[int, float]
"""A single metric sample: (unix timestamp, value)."""


def parse_timestamp(value: Any) -> datetime:
    """Parse an RFC 3339 timestamp into an aware UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as exc:
            raise ValueError(f"invalid timestamp: {value!r}") from exc
    else:
        raise ValueError(f"expected a timestamp string, got {type(value).__name__}")
    if parsed.tzinfo is None or parsed.utcoffset() is None:
        raise ValueError(f"timestamp has no UTC offset: {value!r}")
    return parsed.astimezone(timezone.utc)


def _field(data: Any, key: str) -> Any:
    if not isinstance(data, Mapping):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    try:
        return data[key]
    except KeyError:
        raise ValueError(f"missing field `{key}`") from None


def _text(data: Any, key: str) -> str:
    value = _field(data, key)
    if not isinstance(value, str):
        raise ValueError(f"field `{key}` must be a string")
    return value


def _items(data: Any, key: str) -> list:
    value = _field(data, key)
    if not isinstance(value, list):
        raise ValueError(f"field `{key}` must be an array")
    return value


def _time(data: Any, key: str) -> datetime:
    return parse_timestamp(_field(data, key))


@dataclass(frozen=True)
class PageInfo:
    updated_at: datetime


@dataclass(frozen=True)
class StatusInfo:
    """Overall status; indicator is none, minor, major or critical."""

    indicator: str
    description: str


@dataclass(frozen=True)
class Component:
    """A service component; status is operational, degraded_performance,
    partial_outage or major_outage."""

    id: str
    name: str
    status: str


@dataclass(frozen=True)
class SummaryResponse:
    """Response from /summary.json."""

    page: PageInfo
    status: StatusInfo
    components: list[Component]

    @classmethod
    def from_dict(cls, data: Any) -> SummaryResponse:
        page = _field(data, "page")
        status = _field(data, "status")
        return cls(
            page=PageInfo(updated_at=_time(page, "updated_at")),
            status=StatusInfo(
                indicator=_text(status, "indicator"),
                description=_text(status, "description"),
            ),
            components=[
                Component(id=_text(c, "id"), name=_text(c, "name"), status=_text(c, "status"))
                for c in _items(data, "components")
            ],
        )


@dataclass(frozen=True)
class IncidentUpdate:
    id: str
    status: str
    body: str
    created_at: datetime


@dataclass(frozen=True)
class Incident:
    """An incident; status is investigating, identified, monitoring or resolved."""

    id: str
    name: str
    status: str
    impact: str
    created_at: datetime
    updated_at: datetime
    incident_updates: list[IncidentUpdate]


def _incident_update(data: Any) -> IncidentUpdate:
    return IncidentUpdate(
        id=_text(data, "id"),
        status=_text(data, "status"),
        body=_text(data, "body"),
        created_at=_time(data, "created_at"),
    )


def _incident(data: Any) -> Incident:
    return Incident(
        id=_text(data, "id"),
        name=_text(data, "name"),
        status=_text(data, "status"),
        impact=_text(data, "impact"),
        created_at=_time(data, "created_at"),
        updated_at=_time(data, "updated_at"),
        incident_updates=[_incident_update(u) for u in _items(data, "incident_updates")],
    )


@dataclass(frozen=True)
class UnresolvedIncidentsResponse:
    """Response from /incidents/unresolved.json."""

    incidents: list[Incident]

    @classmethod
    def from_dict(cls, data: Any) -> UnresolvedIncidentsResponse:
        return cls(incidents=[_incident(i) for i in _items(data, "incidents")])


@dataclass(frozen=True)
class Maintenance:
    """A scheduled maintenance; status is scheduled, in_progress or completed."""

    id: str
    name: str
    status: str
    scheduled_for: datetime
    scheduled_until: datetime
    created_at: datetime
    updated_at: datetime


def _maintenance(data: Any) -> Maintenance:
    return Maintenance(
        id=_text(data, "id"),
        name=_text(data, "name"),
        status=_text(data, "status"),
        scheduled_for=_time(data, "scheduled_for"),
        scheduled_until=_time(data, "scheduled_until"),
        created_at=_time(data, "created_at"),
        updated_at=_time(data, "updated_at"),
    )


@dataclass(frozen=True)
class MaintenancesResponse:
    """Response from the upcoming and active scheduled-maintenance endpoints."""

    scheduled_maintenances: list[Maintenance]

    @classmethod
    def from_dict(cls, data: Any) -> MaintenancesResponse:
        return cls(
            scheduled_maintenances=[
                _maintenance(m) for m in _items(data, "scheduled_maintenances")
            ]
        )


def parse_metrics(data: Any) -> list[MetricDataPoint]:
    """Parse a metrics feed: an array of [unix_timestamp, value] pairs."""
    if not isinstance(data, list):
        raise ValueError("metrics response must be an array")
    points: list[MetricDataPoint] = []
    for item in data:
        if not isinstance(item, (list, tuple)) or len(item) != 2:
            raise ValueError(f"metric data point must be a pair, got {item!r}")
        timestamp, value = item
        if isinstance(timestamp, bool) or not isinstance(timestamp, int):
            raise ValueError(f"metric timestamp must be an integer, got {timestamp!r}")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"metric value must be a number, got {value!r}")
        points.append((timestamp, float(value)))
    return points


@dataclass(frozen=True)
class MetricDefinition:
    endpoint: str
    name: str
    unit: str


CLOUDFRONT_METRICS: tuple[MetricDefinition, ...] = (
    MetricDefinition("/apilatency.json", "api_latency", "ms"),
    MetricDefinition("/visits.json", "visits", "count"),
    MetricDefinition("/apirequests.json", "api_requests", "count"),
    MetricDefinition("/apierrors.json", "api_errors", "count"),
    MetricDefinition("/extauth_steam.json", "extauth_steam", "ms"),
    MetricDefinition("/extauth_oculus.json", "extauth_oculus", "ms"),
    MetricDefinition("/extauth_steam_count.json", "extauth_steam_count", "count"),
    MetricDefinition("/extauth_oculus_count.json", "extauth_oculus_count", "count"),
)