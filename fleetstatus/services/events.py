from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from fleetstatus.core.errors import InvalidEventError
from fleetstatus.core.models import DeploymentOutcome, IncidentStatus, Severity


class _Payload(BaseModel):
    class Config:
        extra = "forbid"


class DeploymentUpdatePayload(_Payload):
    service: str = Field(..., min_length=1, max_length=255)
    deployment_id: str = Field(..., min_length=1)
    status: DeploymentOutcome
    deployed_by: str
    commit_sha: str
    duration: str | None = None
    deployed_at: datetime | None = None
    runner_environment: str | None = None
    repository: str | None = None
    workflow_run_id: str | None = None
    workflow_run_url: str | None = None
    script_version: str | None = None

    @field_validator("deployment_id", "workflow_run_id", "duration", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        if isinstance(value, (int, float)):
            return str(value)
        if value == "":
            return None
        return value


class CreateIncidentPayload(_Payload):
    title: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    severity: Severity = Severity.MEDIUM
    services_affected: list[str] = Field(default_factory=list)
    id: str | None = None
    status: IncidentStatus = IncidentStatus.INVESTIGATING
    deployment_id: str | None = None
    commit_sha: str | None = None
    deployed_by: str | None = None
    created_at: datetime | None = None
    auto_created: bool = False
    source: str | None = None

    @field_validator("status")
    @classmethod
    def _starts_investigating(cls, value: IncidentStatus) -> IncidentStatus:
        if value is not IncidentStatus.INVESTIGATING:
            raise ValueError("new incidents start in 'investigating'")
        return value


class ServiceUpdatePayload(_Payload):
    service: str = Field(..., min_length=1)
    trigger: str = "manual"


class ApiMetricsPayload(_Payload):
    endpoints: dict[str, Annotated[int, Field(ge=0)]]
    window_seconds: float = Field(default=300.0, gt=0)
    collected_at: datetime | None = None


class DeploymentUpdate(BaseModel):
    event_type: Literal["deployment-update"]
    client_payload: DeploymentUpdatePayload


class CreateIncident(BaseModel):
    event_type: Literal["create-incident"]
    client_payload: CreateIncidentPayload


class ServiceUpdate(BaseModel):
    event_type: Literal["service-update"]
    client_payload: ServiceUpdatePayload


class ApiMetricsUpdate(BaseModel):
    event_type: Literal["api-metrics"]
    client_payload: ApiMetricsPayload


InboundEvent = Annotated[
    Union[DeploymentUpdate, CreateIncident, ServiceUpdate, ApiMetricsUpdate],
    Field(discriminator="event_type"),
]

EVENT_TYPES = ("deployment-update", "create-incident", "service-update", "api-metrics")

_adapter: TypeAdapter[InboundEvent] = TypeAdapter(InboundEvent)


def parse_event(data: Any) -> DeploymentUpdate | CreateIncident | ServiceUpdate | ApiMetricsUpdate:
    """Turn an untyped dispatch payload into one of the known event variants."""
    if not isinstance(data, dict):
        raise InvalidEventError("event must be a JSON object")
    event_type = data.get("event_type")
    if event_type not in EVENT_TYPES:
        raise InvalidEventError(f"unknown event type: {event_type!r}")
    unexpected = set(data) - {"event_type", "client_payload"}
    if unexpected:
        raise InvalidEventError(f"unexpected envelope fields: {', '.join(sorted(unexpected))}")
    try:
        return _adapter.validate_python(data)
    except ValidationError as exc:
        raise InvalidEventError(f"invalid {event_type} payload: {exc.errors()}") from exc
