from __future__ import annotations


class StatusError(Exception):
    """Base class for errors raised by the status engine."""


class ProbeError(StatusError):
    """A single probe failed; always converted into a ProbeResult by the prober."""

    def __init__(self, reason: str, *, http_status: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.http_status = http_status


class UnknownTargetError(StatusError):
    def __init__(self, name: str) -> None:
        super().__init__(f"unknown target: {name}")
        self.name = name


class InvalidTransitionError(StatusError):
    def __init__(self, incident_id: str, current: str, requested: str) -> None:
        super().__init__(f"incident {incident_id}: cannot move from {current} to {requested}")
        self.incident_id = incident_id
        self.current = current
        self.requested = requested


class IncidentNotFoundError(StatusError):
    def __init__(self, incident_id: str) -> None:
        super().__init__(f"incident not found: {incident_id}")
        self.incident_id = incident_id


class DuplicateDeploymentIdError(StatusError):
    def __init__(self, service: str, deployment_id: str) -> None:
        super().__init__(f"deployment {deployment_id} already recorded for {service}")
        self.service = service
        self.deployment_id = deployment_id


class InvalidEventError(StatusError):
    pass


class PublishError(StatusError):
    """No sink accepted the snapshot; the previous snapshot stays current."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []
