from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Iterable, Sequence

from fleetstatus.core.errors import IncidentNotFoundError, InvalidTransitionError
from fleetstatus.core.models import (
    Deployment,
    Incident,
    IncidentSource,
    IncidentStatus,
    IncidentUpdate,
    ProbeResult,
    ServiceState,
    Severity,
    Target,
)

logger = logging.getLogger(__name__)


class IncidentStateMachine:
    """Owns incident records and the only legal ways of changing them.

    Records are immutable; each transition swaps in a new ``Incident`` so a
    failed request never leaves a half-updated record behind.
    """

    def __init__(
        self,
        *,
        dedup_window: timedelta = timedelta(hours=1),
        auto_resolve_enabled: bool = True,
        auto_resolve_threshold: int = 3,
        retention: timedelta = timedelta(days=30),
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._dedup_window = dedup_window
        self._auto_resolve_enabled = auto_resolve_enabled
        self._auto_resolve_threshold = auto_resolve_threshold
        self._retention = retention
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))
        self._incidents: dict[str, Incident] = {}
        self._dedup_keys: dict[str, str] = {}

    def create(
        self,
        *,
        title: str,
        description: str,
        severity: Severity,
        services: Iterable[str],
        now: datetime,
        source: IncidentSource = IncidentSource.MANUAL,
        auto_created: bool = False,
        incident_id: str | None = None,
        deployment_id: str | None = None,
        commit_sha: str | None = None,
    ) -> Incident:
        services = tuple(sorted(set(services)))
        if incident_id and incident_id in self._incidents:
            return self._incidents[incident_id]

        key = _dedup_key(title, services)
        existing = self._find_duplicate(key, now)
        if existing is not None:
            logger.info("duplicate incident request", extra={"incident_id": existing.id})
            return existing

        incident = Incident(
            id=incident_id or self._id_factory(),
            title=title,
            description=description,
            severity=severity,
            status=IncidentStatus.INVESTIGATING,
            services=services,
            created_at=now,
            updated_at=now,
            auto_created=auto_created,
            source=source,
            deployment_id=deployment_id,
            commit_sha=commit_sha,
            updates=(IncidentUpdate(IncidentStatus.INVESTIGATING, description, now),),
        )
        self._incidents[incident.id] = incident
        self._dedup_keys[key] = incident.id
        logger.info(
            "incident created",
            extra={"incident_id": incident.id, "source": source.value, "services": list(services)},
        )
        return incident

    def get(self, incident_id: str) -> Incident:
        incident = self._incidents.get(incident_id)
        if incident is None:
            raise IncidentNotFoundError(incident_id)
        return incident

    def list(self, *, open_only: bool = False) -> list[Incident]:
        incidents = [i for i in self._incidents.values() if i.is_open or not open_only]
        return sorted(incidents, key=lambda i: i.created_at, reverse=True)

    def open_for_service(self, service: str) -> list[Incident]:
        return [i for i in self._incidents.values() if i.is_open and service in i.services]

    def transition(
        self,
        incident_id: str,
        status: IncidentStatus,
        *,
        now: datetime,
        message: str | None = None,
    ) -> Incident:
        incident = self.get(incident_id)
        current = incident.status
        if current is IncidentStatus.RESOLVED or status.rank <= current.rank:
            raise InvalidTransitionError(incident_id, current.value, status.value)

        updated = replace(
            incident,
            status=status,
            updated_at=now,
            resolved_at=now if status is IncidentStatus.RESOLVED else None,
            updates=incident.updates + (IncidentUpdate(status, message or "", now),),
        )
        self._incidents[incident_id] = updated
        logger.info(
            "incident transitioned",
            extra={"incident_id": incident_id, "from": current.value, "to": status.value},
        )
        return updated

    def on_probe_result(
        self, target: Target, result: ProbeResult, consecutive_operational: int
    ) -> list[Incident]:
        """Apply auto-create and auto-resolve for one fresh probe result."""
        changed: list[Incident] = []
        now = result.checked_at

        if result.status is ServiceState.DOWN:
            if target.critical and not self.open_for_service(target.name):
                changed.append(
                    self.create(
                        title=f"{target.name} is down",
                        description=(
                            f"Health check for {target.name} failed: {result.message or 'unreachable'}"
                        ),
                        severity=Severity.HIGH,
                        services=(target.name,),
                        now=now,
                        source=IncidentSource.PROBE,
                        auto_created=True,
                    )
                )
            return changed

        if not self._auto_resolve_enabled or consecutive_operational < self._auto_resolve_threshold:
            return changed

        for incident in self.open_for_service(target.name):
            if not incident.auto_created or incident.source is not IncidentSource.PROBE:
                continue
            changed.append(
                self.transition(
                    incident.id,
                    IncidentStatus.RESOLVED,
                    now=now,
                    message=(
                        f"{target.name} recovered after {consecutive_operational} "
                        "consecutive successful checks"
                    ),
                )
            )
        return changed

    def on_deployment_failed(self, deployment: Deployment, *, now: datetime) -> Incident:
        cutoff = now - self._dedup_window
        for incident in self.open_for_service(deployment.service):
            if incident.auto_created and incident.created_at >= cutoff:
                logger.info(
                    "deployment failure folded into open incident",
                    extra={"incident_id": incident.id, "deployment_id": deployment.deployment_id},
                )
                return incident

        return self.create(
            title=f"{deployment.service} Deployment Failure",
            description=(
                f"Deployment #{deployment.deployment_id} failed during automated "
                "deployment process. Rollback procedures have been initiated."
            ),
            severity=Severity.HIGH,
            services=(deployment.service,),
            now=now,
            source=IncidentSource.DEPLOYMENT,
            auto_created=True,
            deployment_id=deployment.deployment_id,
            commit_sha=deployment.commit_sha,
        )

    def recent(self, now: datetime, window: timedelta) -> list[Incident]:
        cutoff = now - window
        return [
            i for i in self.list() if i.is_open or (i.resolved_at is not None and i.resolved_at >= cutoff)
        ]

    def resolved_count(self, now: datetime, window: timedelta) -> int:
        cutoff = now - window
        return sum(
            1
            for i in self._incidents.values()
            if i.resolved_at is not None and i.resolved_at >= cutoff
        )

    def prune(self, now: datetime) -> int:
        cutoff = now - self._retention
        stale = [
            i.id
            for i in self._incidents.values()
            if i.resolved_at is not None and i.resolved_at < cutoff
        ]
        for incident_id in stale:
            del self._incidents[incident_id]
        self._dedup_keys = {k: v for k, v in self._dedup_keys.items() if v in self._incidents}
        return len(stale)

    def restore(self, incidents: Sequence[Incident]) -> None:
        for incident in incidents:
            # records changed since start-up are newer than the stored copy
            if incident.id in self._incidents:
                continue
            self._incidents[incident.id] = incident
            self._dedup_keys.setdefault(_dedup_key(incident.title, incident.services), incident.id)

    def _find_duplicate(self, key: str, now: datetime) -> Incident | None:
        incident_id = self._dedup_keys.get(key)
        if incident_id is None:
            return None
        incident = self._incidents.get(incident_id)
        if incident is None or not incident.is_open:
            return None
        if incident.created_at < now - self._dedup_window:
            return None
        return incident


def _dedup_key(title: str, services: Iterable[str]) -> str:
    return f"{title.strip().lower()}|{','.join(sorted(services))}"
