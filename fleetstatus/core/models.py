from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fleetstatus.core.config import TargetConfig


class ServiceState(str, enum.Enum):
    OPERATIONAL = "operational"
    DEGRADED = "degraded"
    DOWN = "down"
    UNKNOWN = "unknown"


class DeploymentOutcome(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    IN_PROGRESS = "in-progress"


class Severity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IncidentStatus(str, enum.Enum):
    INVESTIGATING = "investigating"
    IDENTIFIED = "identified"
    MONITORING = "monitoring"
    RESOLVED = "resolved"

    @property
    def rank(self) -> int:
        return INCIDENT_FLOW.index(self)


INCIDENT_FLOW = (
    IncidentStatus.INVESTIGATING,
    IncidentStatus.IDENTIFIED,
    IncidentStatus.MONITORING,
    IncidentStatus.RESOLVED,
)


class IncidentSource(str, enum.Enum):
    PROBE = "probe"
    DEPLOYMENT = "deployment"
    MANUAL = "manual"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Target:
    name: str
    url: str
    description: str = ""
    expected_content: str | None = None
    timeout: float = 10.0
    critical: bool = False
    category: str = "core"

    @classmethod
    def from_config(cls, cfg: TargetConfig) -> "Target":
        return cls(
            name=cfg.name,
            url=str(cfg.url),
            description=cfg.description,
            expected_content=cfg.expected_content,
            timeout=cfg.timeout,
            critical=cfg.critical,
            category=cfg.category,
        )


@dataclass(frozen=True)
class ProbeResult:
    target: str
    status: ServiceState
    latency_ms: int
    checked_at: datetime
    message: str | None = None
    http_status: int | None = None


@dataclass(frozen=True)
class ServiceStatus:
    name: str
    description: str
    status: ServiceState
    uptime: float | None
    response_time_ms: float | None
    message: str | None
    last_checked: datetime | None
    critical: bool
    category: str


@dataclass(frozen=True)
class Deployment:
    service: str
    deployment_id: str
    status: DeploymentOutcome
    deployed_by: str
    commit_sha: str
    deployed_at: datetime
    duration: str | None = None
    runner_environment: str | None = None
    repository: str | None = None
    workflow_run_url: str | None = None

    def to_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "deployment_id": self.deployment_id,
            "service": self.service,
            "status": self.status.value,
            "deployed_at": to_iso(self.deployed_at),
            "deployed_by": self.deployed_by,
            "commit_sha": self.commit_sha,
            "duration": self.duration,
        }
        if self.runner_environment:
            doc["runner_environment"] = self.runner_environment
        if self.repository:
            doc["repository"] = self.repository
        if self.workflow_run_url:
            doc["workflow_run_url"] = self.workflow_run_url
        return doc

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "Deployment":
        return cls(
            service=doc["service"],
            deployment_id=str(doc["deployment_id"]),
            status=DeploymentOutcome(doc["status"]),
            deployed_by=doc.get("deployed_by", ""),
            commit_sha=doc.get("commit_sha", ""),
            deployed_at=parse_iso(doc["deployed_at"]),
            duration=doc.get("duration") or None,
            runner_environment=doc.get("runner_environment"),
            repository=doc.get("repository"),
            workflow_run_url=doc.get("workflow_run_url"),
        )


@dataclass(frozen=True)
class IncidentUpdate:
    status: IncidentStatus
    message: str
    at: datetime


@dataclass(frozen=True)
class Incident:
    id: str
    title: str
    description: str
    severity: Severity
    status: IncidentStatus
    services: tuple[str, ...]
    created_at: datetime
    updated_at: datetime
    auto_created: bool = False
    source: IncidentSource = IncidentSource.MANUAL
    resolved_at: datetime | None = None
    deployment_id: str | None = None
    commit_sha: str | None = None
    updates: tuple[IncidentUpdate, ...] = field(default_factory=tuple)

    @property
    def is_open(self) -> bool:
        return self.status is not IncidentStatus.RESOLVED

    def to_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "severity": self.severity.value,
            "status": self.status.value,
            "services_affected": list(self.services),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "resolved_at": to_iso(self.resolved_at) if self.resolved_at else None,
            "auto_created": self.auto_created,
            "source": self.source.value,
            "updates": [
                {"status": u.status.value, "message": u.message, "at": to_iso(u.at)}
                for u in self.updates
            ],
        }
        if self.deployment_id:
            doc["deployment_id"] = self.deployment_id
        if self.commit_sha:
            doc["commit_sha"] = self.commit_sha
        return doc

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "Incident":
        created_at = parse_iso(doc["created_at"])
        return cls(
            id=doc["id"],
            title=doc["title"],
            description=doc.get("description", ""),
            severity=Severity(doc.get("severity", Severity.HIGH.value)),
            status=IncidentStatus(doc["status"]),
            services=tuple(doc.get("services_affected", ())),
            created_at=created_at,
            updated_at=parse_iso(doc["updated_at"]) if doc.get("updated_at") else created_at,
            auto_created=bool(doc.get("auto_created", False)),
            source=IncidentSource(doc.get("source", IncidentSource.MANUAL.value)),
            resolved_at=parse_iso(doc["resolved_at"]) if doc.get("resolved_at") else None,
            deployment_id=doc.get("deployment_id"),
            commit_sha=doc.get("commit_sha"),
            updates=tuple(
                IncidentUpdate(
                    status=IncidentStatus(u["status"]),
                    message=u.get("message", ""),
                    at=parse_iso(u["at"]),
                )
                for u in doc.get("updates", ())
            ),
        )


@dataclass(frozen=True)
class EndpointThroughput:
    name: str
    requests_per_second: float
    requests: int


@dataclass(frozen=True)
class Throughput:
    requests_per_second: float
    total_requests: int
    endpoints: tuple[EndpointThroughput, ...]
    updated_at: datetime


@dataclass(frozen=True)
class FleetMetrics:
    total_uptime: float | None
    avg_response_time_ms: float | None
    total_deployments: int
    success_rate: float
    active_services: int
    incidents_resolved: int
    throughput: Throughput | None = None


@dataclass(frozen=True)
class SystemInfo:
    environment: str
    region: str
    monitoring_interval_sec: float
    version: str
    last_deployment: Deployment | None = None


@dataclass(frozen=True)
class StatusSnapshot:
    version: int
    last_updated: datetime
    status: ServiceState
    message: str
    services: tuple[ServiceStatus, ...]
    metrics: FleetMetrics
    deployments: tuple[Deployment, ...]
    incidents: tuple[Incident, ...]
    system: SystemInfo
