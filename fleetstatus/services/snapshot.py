from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, Sequence

from fleetstatus.core.errors import PublishError
from fleetstatus.core.models import (
    Deployment,
    FleetMetrics,
    Incident,
    ServiceState,
    ServiceStatus,
    StatusSnapshot,
    SystemInfo,
    to_iso,
)
from fleetstatus.publish.base import RestorableSink, SnapshotSink
from fleetstatus.services.deployments import DeploymentLedger
from fleetstatus.services.incidents import IncidentStateMachine
from fleetstatus.services.metrics import MetricsAggregator

logger = logging.getLogger(__name__)

STATUS_MESSAGES = {
    ServiceState.OPERATIONAL: "All systems operational",
    ServiceState.DEGRADED: "Some systems are experiencing issues",
    ServiceState.DOWN: "Major outage: critical systems are unavailable",
}


def overall_status(services: Iterable[ServiceStatus]) -> ServiceState:
    """Worst case over critical services; non-critical ones cap at degraded."""
    result = ServiceState.OPERATIONAL
    for service in services:
        if service.status is ServiceState.DOWN and service.critical:
            return ServiceState.DOWN
        if service.status in (ServiceState.DOWN, ServiceState.DEGRADED):
            result = ServiceState.DEGRADED
    return result


class SnapshotBuilder:
    def __init__(
        self,
        *,
        environment: str = "production",
        region: str = "self-hosted",
        monitoring_interval_sec: float = 300.0,
        app_version: str = "1.0.0",
        incident_window: timedelta = timedelta(days=7),
    ) -> None:
        self._environment = environment
        self._region = region
        self._interval = monitoring_interval_sec
        self._app_version = app_version
        self._incident_window = incident_window

    def build(
        self,
        *,
        version: int,
        now: datetime,
        metrics: MetricsAggregator,
        ledger: DeploymentLedger,
        incidents: IncidentStateMachine,
    ) -> StatusSnapshot:
        services = tuple(metrics.service_status(t.name, now) for t in metrics.targets)
        status = overall_status(services)
        fleet = FleetMetrics(
            total_uptime=metrics.fleet_uptime(now),
            avg_response_time_ms=metrics.fleet_average_latency(now),
            total_deployments=ledger.total_deployments,
            success_rate=ledger.success_rate(),
            active_services=sum(
                1 for s in services if s.status in (ServiceState.OPERATIONAL, ServiceState.DEGRADED)
            ),
            incidents_resolved=incidents.resolved_count(now, self._incident_window),
            throughput=metrics.throughput(now),
        )
        return StatusSnapshot(
            version=version,
            last_updated=now,
            status=status,
            message=STATUS_MESSAGES[status],
            services=services,
            metrics=fleet,
            deployments=tuple(ledger.recent()),
            incidents=tuple(incidents.recent(now, self._incident_window)),
            system=SystemInfo(
                environment=self._environment,
                region=self._region,
                monitoring_interval_sec=self._interval,
                version=self._app_version,
                last_deployment=ledger.last_deployment(),
            ),
        )


class SnapshotPublisher:
    """Single publish point for the current snapshot.

    Delivery sinks are tried in order until one accepts the document.
    Restorable sinks are archives and receive every document; they also
    stand in for delivery when no delivery sink accepted it. The current
    value is swapped only after some sink accepted the new one, so readers
    keep getting the last good snapshot when publishing fails.
    """

    def __init__(self, sinks: Sequence[SnapshotSink] = ()) -> None:
        self._sinks = list(sinks)
        self._delivery = [s for s in self._sinks if not isinstance(s, RestorableSink)]
        self._archives = [s for s in self._sinks if isinstance(s, RestorableSink)]
        self._current: StatusSnapshot | None = None

    @property
    def sinks(self) -> list[SnapshotSink]:
        return list(self._sinks)

    @property
    def current(self) -> StatusSnapshot | None:
        return self._current

    @property
    def next_version(self) -> int:
        return self._current.version + 1 if self._current else 1

    def document(self) -> dict[str, Any] | None:
        snapshot = self._current
        return render_document(snapshot) if snapshot else None

    async def publish(self, snapshot: StatusSnapshot) -> None:
        document = render_document(snapshot)
        errors: list[str] = []
        delivered = False
        for sink in self._delivery:
            if await _write(sink, document, snapshot.version, errors):
                delivered = True
                break
        archived = False
        for sink in self._archives:
            if await _write(sink, document, snapshot.version, errors):
                archived = True
        if self._sinks and not (delivered or archived):
            raise PublishError(f"no sink accepted snapshot v{snapshot.version}", errors)

        self._current = snapshot
        logger.info(
            "snapshot published",
            extra={"version": snapshot.version, "status": snapshot.status.value},
        )


async def _write(
    sink: SnapshotSink, document: dict[str, Any], version: int, errors: list[str]
) -> bool:
    try:
        await sink.write(document)
        return True
    except Exception as exc:
        logger.warning(
            "snapshot sink failed",
            extra={"sink": sink.name, "version": version, "error": str(exc)},
        )
        errors.append(f"{sink.name}: {exc}")
        return False


def render_document(snapshot: StatusSnapshot) -> dict[str, Any]:
    """Serialise a snapshot into the JSON layout the status page reads."""
    m = snapshot.metrics
    metrics: dict[str, Any] = {
        "total_uptime": format_percent(m.total_uptime, digits=2),
        "avg_response_time": format_ms(m.avg_response_time_ms, default="0ms"),
        "total_deployments": str(m.total_deployments),
        "success_rate": format_percent(m.success_rate, digits=1),
        "active_services": str(m.active_services),
        "incidents_resolved": str(m.incidents_resolved),
    }
    if m.throughput is not None:
        metrics["api_requests_per_second"] = round(m.throughput.requests_per_second, 3)
        metrics["total_api_requests"] = m.throughput.total_requests
        metrics["api_endpoints"] = {
            e.name: {"rps": round(e.requests_per_second, 3), "requests": e.requests}
            for e in m.throughput.endpoints
        }
        metrics["api_metrics_updated"] = to_iso(m.throughput.updated_at)

    system = snapshot.system
    return {
        "version": snapshot.version,
        "last_updated": to_iso(snapshot.last_updated),
        "overall_status": {"status": snapshot.status.value, "message": snapshot.message},
        "services": [_service_document(s) for s in snapshot.services],
        "metrics": metrics,
        "recent_deployments": [d.to_document() for d in snapshot.deployments],
        "incidents": [i.to_document() for i in snapshot.incidents],
        "system_info": {
            "version": system.version,
            "environment": system.environment,
            "region": system.region,
            "monitoring_interval": format_interval(system.monitoring_interval_sec),
            "last_deployment": (
                system.last_deployment.to_document() if system.last_deployment else None
            ),
        },
    }


def parse_document(document: dict[str, Any]) -> tuple[list[Deployment], int, list[Incident]]:
    """Recover ledger and incident state from a published document."""
    deployments = [Deployment.from_document(d) for d in document.get("recent_deployments") or ()]
    raw_total = (document.get("metrics") or {}).get("total_deployments", 0)
    try:
        total = int(raw_total)
    except (TypeError, ValueError):
        total = len(deployments)
    incidents = [Incident.from_document(i) for i in document.get("incidents") or ()]
    return deployments, total, incidents


def _service_document(service: ServiceStatus) -> dict[str, Any]:
    return {
        "name": service.name,
        "description": service.description,
        "status": service.status.value,
        "response_time": format_ms(service.response_time_ms),
        "uptime": format_percent(service.uptime, digits=2),
        "message": service.message,
        "last_checked": to_iso(service.last_checked) if service.last_checked else None,
        "critical": service.critical,
        "category": service.category,
    }


def format_percent(value: float | None, *, digits: int) -> str:
    if value is None:
        return "N/A"
    return f"{value:.{digits}f}%"


def format_ms(value: float | None, *, default: str = "N/A") -> str:
    if value is None:
        return default
    return f"{round(value)}ms"


def format_interval(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        return f"{int(seconds // 60)}m"
    return f"{seconds:g}s"
