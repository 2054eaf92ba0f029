from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable

from fleetstatus.core.errors import PublishError, UnknownTargetError
from fleetstatus.core.models import (
    Deployment,
    DeploymentOutcome,
    Incident,
    IncidentSource,
    IncidentStatus,
    ProbeResult,
    ServiceState,
    Severity,
    StatusSnapshot,
    Target,
    utcnow,
)
from fleetstatus.publish.base import RestorableSink
from fleetstatus.services.deployments import DeploymentLedger
from fleetstatus.services.events import (
    ApiMetricsUpdate,
    CreateIncident,
    DeploymentUpdate,
    ServiceUpdate,
)
from fleetstatus.services.incidents import IncidentStateMachine
from fleetstatus.services.metrics import MetricsAggregator
from fleetstatus.services.prober import HealthProber
from fleetstatus.services.snapshot import SnapshotBuilder, SnapshotPublisher, parse_document

logger = logging.getLogger(__name__)

# headroom on top of a target's own timeout before the probe task is abandoned
PROBE_GRACE_SEC = 1.0


class StatusMonitor:
    """Owns the engine state and serialises every change to it.

    Mutations of the aggregator, ledger and incident machine and every
    snapshot build happen under one lock; probes for the same target are
    serialised by a per-target lock so overlapping ticks cannot interleave.
    """

    def __init__(
        self,
        targets: Iterable[Target],
        *,
        prober: HealthProber | None = None,
        metrics: MetricsAggregator | None = None,
        incidents: IncidentStateMachine | None = None,
        ledger: DeploymentLedger | None = None,
        builder: SnapshotBuilder | None = None,
        publisher: SnapshotPublisher | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep_func: Callable[[float], Awaitable[Any]] | None = None,
        probe_concurrency: int = 20,
        publish_retries: int = 2,
        publish_retry_backoff_sec: float = 5.0,
    ) -> None:
        self._targets = {t.name: t for t in targets}
        self._clock = clock or utcnow
        self._prober = prober or HealthProber(clock=self._clock)
        self.metrics = metrics or MetricsAggregator(self._targets.values())
        self.incidents = incidents or IncidentStateMachine()
        self.ledger = ledger or DeploymentLedger()
        self._builder = builder or SnapshotBuilder()
        self.publisher = publisher or SnapshotPublisher()
        self._sleep = sleep_func or asyncio.sleep
        self._semaphore = asyncio.Semaphore(probe_concurrency)
        self._state_lock = asyncio.Lock()
        self._publish_lock = asyncio.Lock()
        self._target_locks = {name: asyncio.Lock() for name in self._targets}
        self._publish_retries = publish_retries
        self._publish_backoff = publish_retry_backoff_sec

    @property
    def targets(self) -> list[Target]:
        return list(self._targets.values())

    @property
    def snapshot(self) -> StatusSnapshot | None:
        return self.publisher.current

    def document(self) -> dict[str, Any] | None:
        return self.publisher.document()

    def now(self) -> datetime:
        return self._clock()

    def target(self, name: str) -> Target:
        target = self._targets.get(name)
        if target is None:
            raise UnknownTargetError(name)
        return target

    async def restore(self) -> bool:
        """Seed ledger and incidents from the newest document a sink still holds."""
        for sink in self.publisher.sinks:
            if not isinstance(sink, RestorableSink):
                continue
            try:
                document = await sink.load_latest()
            except Exception:
                logger.exception("failed to load previous snapshot", extra={"sink": sink.name})
                continue
            if not document:
                continue
            try:
                deployments, total, incidents = parse_document(document)
            except (AttributeError, KeyError, TypeError, ValueError):
                logger.exception("unreadable previous snapshot", extra={"sink": sink.name})
                continue
            async with self._state_lock:
                self.ledger.restore(deployments, total)
                self.incidents.restore(incidents)
            logger.info(
                "state restored",
                extra={"sink": sink.name, "deployments": len(deployments), "incidents": len(incidents)},
            )
            return True
        return False

    async def run_tick(self) -> StatusSnapshot | None:
        """Probe every target concurrently, then publish one snapshot."""
        await asyncio.gather(*(self._probe_target(t) for t in self._targets.values()))
        async with self._state_lock:
            self.incidents.prune(self._clock())
        try:
            return await self.refresh()
        except PublishError:
            logger.error("snapshot publish failed after retries; serving previous snapshot")
            return None

    async def probe_now(self, name: str) -> ProbeResult | None:
        target = self.target(name)
        result = await self._probe_target(target)
        await self._refresh_quietly()
        return result

    async def record_deployment(self, deployment: Deployment) -> tuple[Deployment, Incident | None]:
        async with self._state_lock:
            self.ledger.record(deployment)
            incident = None
            if deployment.status is DeploymentOutcome.FAILED:
                incident = self.incidents.on_deployment_failed(deployment, now=self._clock())
        await self._refresh_quietly()
        return deployment, incident

    async def create_incident(
        self,
        *,
        title: str,
        description: str,
        severity: Severity,
        services: Iterable[str],
        incident_id: str | None = None,
        auto_created: bool = False,
        deployment_id: str | None = None,
        commit_sha: str | None = None,
    ) -> Incident:
        services = list(services)
        async with self._state_lock:
            # configured targets, or services that reported deployments
            for name in services:
                if name not in self._targets and not self.ledger.knows(name):
                    raise UnknownTargetError(name)
            incident = self.incidents.create(
                title=title,
                description=description,
                severity=severity,
                services=services,
                now=self._clock(),
                source=IncidentSource.MANUAL,
                auto_created=auto_created,
                incident_id=incident_id,
                deployment_id=deployment_id,
                commit_sha=commit_sha,
            )
        await self._refresh_quietly()
        return incident

    async def transition_incident(
        self, incident_id: str, status: IncidentStatus, message: str | None = None
    ) -> Incident:
        async with self._state_lock:
            incident = self.incidents.transition(
                incident_id, status, now=self._clock(), message=message
            )
        await self._refresh_quietly()
        return incident

    async def record_api_metrics(
        self, endpoints: dict[str, int], *, window_seconds: float, collected_at: datetime | None
    ) -> None:
        at = collected_at or self._clock()
        async with self._state_lock:
            for endpoint, count in endpoints.items():
                self.metrics.record_requests(
                    endpoint, count, collected_at=at, window_seconds=window_seconds
                )
        await self._refresh_quietly()

    async def handle_event(
        self, event: DeploymentUpdate | CreateIncident | ServiceUpdate | ApiMetricsUpdate
    ) -> dict[str, Any]:
        payload = event.client_payload
        if isinstance(event, DeploymentUpdate):
            deployment, incident = await self.record_deployment(
                Deployment(
                    service=payload.service,
                    deployment_id=payload.deployment_id,
                    status=payload.status,
                    deployed_by=payload.deployed_by,
                    commit_sha=payload.commit_sha,
                    deployed_at=payload.deployed_at or self._clock(),
                    duration=payload.duration,
                    runner_environment=payload.runner_environment,
                    repository=payload.repository,
                    workflow_run_url=payload.workflow_run_url,
                )
            )
            return {
                "deployment_id": deployment.deployment_id,
                "incident_id": incident.id if incident else None,
            }
        if isinstance(event, CreateIncident):
            incident = await self.create_incident(
                title=payload.title,
                description=payload.description,
                severity=payload.severity,
                services=payload.services_affected,
                incident_id=payload.id,
                auto_created=payload.auto_created,
                deployment_id=payload.deployment_id,
                commit_sha=payload.commit_sha,
            )
            return {"incident_id": incident.id}
        if isinstance(event, ServiceUpdate):
            logger.info("out-of-band probe", extra={"service": payload.service, "trigger": payload.trigger})
            result = await self.probe_now(payload.service)
            return {"service": payload.service, "status": result.status.value if result else None}
        await self.record_api_metrics(
            payload.endpoints,
            window_seconds=payload.window_seconds,
            collected_at=payload.collected_at,
        )
        return {"endpoints": sorted(payload.endpoints)}

    async def refresh(self) -> StatusSnapshot:
        """Build from current state and publish, retrying a failed publish."""
        async with self._publish_lock:
            attempt = 0
            while True:
                attempt += 1
                async with self._state_lock:
                    snapshot = self._builder.build(
                        version=self.publisher.next_version,
                        now=self._clock(),
                        metrics=self.metrics,
                        ledger=self.ledger,
                        incidents=self.incidents,
                    )
                try:
                    await self.publisher.publish(snapshot)
                except PublishError as exc:
                    logger.warning(
                        "publish attempt failed",
                        extra={"attempt": attempt, "errors": exc.errors},
                    )
                    if attempt > self._publish_retries:
                        raise
                    await self._sleep(self._publish_backoff)
                else:
                    return snapshot

    async def aclose(self) -> None:
        for sink in self.publisher.sinks:
            closer = getattr(sink, "aclose", None)
            if closer is not None:
                await closer()

    async def _refresh_quietly(self) -> None:
        try:
            await self.refresh()
        except PublishError:
            logger.error("snapshot publish failed after retries; serving previous snapshot")

    async def _probe_target(self, target: Target) -> ProbeResult | None:
        async with self._target_locks[target.name]:
            try:
                async with self._semaphore:
                    result = await self._bounded_probe(target)
                async with self._state_lock:
                    self.metrics.record(result)
                    self.incidents.on_probe_result(
                        target, result, self.metrics.consecutive_operational(target.name)
                    )
                return result
            except Exception:  # pragma: no cover - logging catch-all
                logger.exception("probe job failed", extra={"target": target.name})
                return None

    async def _bounded_probe(self, target: Target) -> ProbeResult:
        try:
            return await asyncio.wait_for(
                self._prober.probe(target), timeout=target.timeout + PROBE_GRACE_SEC
            )
        except asyncio.TimeoutError:
            return ProbeResult(
                target=target.name,
                status=ServiceState.DOWN,
                latency_ms=int((target.timeout + PROBE_GRACE_SEC) * 1000),
                checked_at=self._clock(),
                message="timeout",
            )
