from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from conftest import ScriptedProber, make_deployment
from fleetstatus.core.errors import DuplicateDeploymentIdError, UnknownTargetError
from fleetstatus.core.models import (
    DeploymentOutcome,
    IncidentSource,
    IncidentStatus,
    ServiceState,
    Severity,
    Target,
)
from fleetstatus.publish.dispatch import DispatchSink
from fleetstatus.publish.file import FileSink
from fleetstatus.services import monitor as monitor_module
from fleetstatus.services.events import parse_event
from fleetstatus.services.incidents import IncidentStateMachine
from fleetstatus.services.monitor import StatusMonitor
from fleetstatus.services.snapshot import SnapshotPublisher

OP = ServiceState.OPERATIONAL
DOWN = ServiceState.DOWN


class _FlakySink:
    name = "flaky"

    def __init__(self) -> None:
        self.fail = False
        self.writes = 0

    async def write(self, document: dict) -> None:
        if self.fail:
            raise OSError("remote unavailable")
        self.writes += 1


class _RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _monitor(targets, clock, prober, **kwargs) -> StatusMonitor:
    return StatusMonitor(targets, prober=prober, clock=clock, **kwargs)


@pytest.mark.asyncio
@pytest.mark.parametrize("threshold", [1, 3])
async def test_outage_opens_one_incident_and_resolves_it(targets, clock, threshold):
    prober = ScriptedProber(clock, {"Platform API": [OP, DOWN, DOWN] + [OP] * threshold})
    monitor = _monitor(
        targets, clock, prober,
        incidents=IncidentStateMachine(auto_resolve_threshold=threshold),
    )

    for _ in range(3):
        await monitor.run_tick()
        clock.advance(minutes=5)

    incidents = monitor.incidents.list()
    assert len(incidents) == 1
    incident = incidents[0]
    assert incident.source is IncidentSource.PROBE
    assert incident.is_open
    assert monitor.document()["overall_status"]["status"] == "down"

    for _ in range(threshold):
        assert monitor.incidents.get(incident.id).is_open
        await monitor.run_tick()
        clock.advance(minutes=5)

    assert len(monitor.incidents.list()) == 1
    assert monitor.incidents.get(incident.id).status is IncidentStatus.RESOLVED
    assert monitor.document()["overall_status"]["status"] == "operational"
    assert monitor.document()["metrics"]["incidents_resolved"] == "1"


@pytest.mark.asyncio
async def test_hung_target_does_not_delay_the_tick(targets, clock, monkeypatch):
    monkeypatch.setattr(monitor_module, "PROBE_GRACE_SEC", 0.0)
    slow = Target(name="Slow", url="https://slow.example.test/", timeout=0.2, critical=True)
    fleet = targets + [slow]
    prober = ScriptedProber(clock, delays={"Slow": 30})
    monitor = _monitor(fleet, clock, prober)

    loop = asyncio.get_running_loop()
    started = loop.time()
    snapshot = await monitor.run_tick()
    elapsed = loop.time() - started

    assert elapsed < 5
    by_name = {s.name: s for s in snapshot.services}
    assert by_name["Slow"].status is DOWN
    assert by_name["Slow"].message == "timeout"
    assert all(by_name[t.name].status is OP for t in targets)
    assert prober.active["Slow"] == 0


@pytest.mark.asyncio
async def test_failed_deployment_opens_incident_and_duplicates_are_rejected(targets, clock):
    monitor = _monitor(targets, clock, ScriptedProber(clock))

    deployment, incident = await monitor.record_deployment(
        make_deployment("88", status=DeploymentOutcome.FAILED)
    )

    assert incident is not None
    assert incident.source is IncidentSource.DEPLOYMENT
    assert monitor.snapshot.version == 1

    with pytest.raises(DuplicateDeploymentIdError):
        await monitor.record_deployment(make_deployment("88", status=DeploymentOutcome.SUCCESS))

    assert len(monitor.ledger.recent()) == 1
    assert monitor.ledger.total_deployments == 1
    assert monitor.snapshot.version == 1
    document = monitor.document()
    assert document["recent_deployments"][0]["status"] == "failed"
    assert document["metrics"]["success_rate"] == "0.0%"


@pytest.mark.asyncio
async def test_publish_failure_keeps_previous_snapshot(targets, clock):
    sink = _FlakySink()
    sleep = _RecordingSleep()
    monitor = _monitor(
        targets, clock, ScriptedProber(clock),
        publisher=SnapshotPublisher([sink]),
        sleep_func=sleep,
        publish_retries=2,
        publish_retry_backoff_sec=5.0,
    )
    first = await monitor.run_tick()
    assert first.version == 1

    sink.fail = True
    clock.advance(minutes=5)
    assert await monitor.run_tick() is None

    assert monitor.snapshot is first
    assert monitor.document()["version"] == 1
    assert sleep.calls == [5.0, 5.0]

    sink.fail = False
    clock.advance(minutes=5)
    recovered = await monitor.run_tick()
    assert recovered.version == 2


@pytest.mark.asyncio
async def test_overlapping_ticks_never_probe_a_target_twice_at_once(targets, clock):
    prober = ScriptedProber(clock, delays={t.name: 0.05 for t in targets})
    monitor = _monitor(targets, clock, prober)

    await asyncio.gather(monitor.run_tick(), monitor.run_tick())

    assert all(prober.max_active[t.name] == 1 for t in targets)
    assert all(len(monitor.metrics.history(t.name)) == 2 for t in targets)


@pytest.mark.asyncio
async def test_probe_concurrency_is_bounded(targets, clock):
    prober = ScriptedProber(clock, delays={t.name: 0.05 for t in targets})
    monitor = _monitor(targets, clock, prober, probe_concurrency=1)
    in_flight = []

    original = prober.probe

    async def tracking_probe(target):
        in_flight.append(sum(prober.active.values()))
        return await original(target)

    prober.probe = tracking_probe
    await monitor.run_tick()

    assert max(in_flight) == 0
    assert len(prober.calls) == len(targets)


@pytest.mark.asyncio
async def test_state_survives_restart_through_file_sink(targets, clock, tmp_path):
    path = tmp_path / "status.json"
    first = _monitor(
        targets, clock, ScriptedProber(clock), publisher=SnapshotPublisher([FileSink(path)])
    )
    await first.record_deployment(make_deployment("1"))
    await first.record_deployment(make_deployment("2", status=DeploymentOutcome.FAILED))

    second = _monitor(
        targets, clock, ScriptedProber(clock), publisher=SnapshotPublisher([FileSink(path)])
    )
    assert await second.restore() is True

    assert [d.deployment_id for d in second.ledger.recent()] == ["2", "1"]
    assert second.ledger.total_deployments == 2
    assert len(second.incidents.list(open_only=True)) == 1
    with pytest.raises(DuplicateDeploymentIdError):
        await second.record_deployment(make_deployment("1"))


@pytest.mark.asyncio
async def test_restore_without_previous_state(targets, clock, tmp_path):
    monitor = _monitor(
        targets, clock, ScriptedProber(clock),
        publisher=SnapshotPublisher([FileSink(tmp_path / "missing.json")]),
    )

    assert await monitor.restore() is False
    assert monitor.ledger.total_deployments == 0


@pytest.mark.asyncio
async def test_service_update_event_probes_immediately(targets, clock):
    prober = ScriptedProber(clock, {"Docs": [DOWN]})
    monitor = _monitor(targets, clock, prober)

    result = await monitor.handle_event(
        parse_event({"event_type": "service-update", "client_payload": {"service": "Docs"}})
    )

    assert result == {"service": "Docs", "status": "down"}
    assert prober.calls == ["Docs"]
    assert monitor.document()["overall_status"]["status"] == "degraded"


@pytest.mark.asyncio
async def test_service_update_for_unknown_target(targets, clock):
    monitor = _monitor(targets, clock, ScriptedProber(clock))
    event = parse_event({"event_type": "service-update", "client_payload": {"service": "ghost"}})

    with pytest.raises(UnknownTargetError):
        await monitor.handle_event(event)


@pytest.mark.asyncio
async def test_manual_incident_must_reference_known_targets(targets, clock):
    monitor = _monitor(targets, clock, ScriptedProber(clock))

    with pytest.raises(UnknownTargetError):
        await monitor.create_incident(
            title="Ghost outage", description="", severity=Severity.LOW, services=["ghost"]
        )

    assert monitor.incidents.list() == []


@pytest.mark.asyncio
async def test_api_metrics_event_feeds_throughput(targets, clock):
    monitor = _monitor(targets, clock, ScriptedProber(clock))

    await monitor.handle_event(
        parse_event(
            {
                "event_type": "api-metrics",
                "client_payload": {"endpoints": {"detect": 600}, "window_seconds": 300},
            }
        )
    )

    metrics = monitor.document()["metrics"]
    assert metrics["api_requests_per_second"] == 2.0
    assert metrics["total_api_requests"] == 600


@pytest.mark.asyncio
async def test_state_survives_restart_when_dispatch_delivers(targets, clock, tmp_path):
    path = tmp_path / "status.json"
    delivered = []

    def handler(request: httpx.Request) -> httpx.Response:
        delivered.append(json.loads(request.content))
        return httpx.Response(204)

    dispatch = DispatchSink(
        "https://dispatch.example.test/hooks",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    first = _monitor(
        targets, clock, ScriptedProber(clock),
        publisher=SnapshotPublisher([dispatch, FileSink(path)]),
    )
    await first.record_deployment(make_deployment("12", status=DeploymentOutcome.FAILED))
    await first.aclose()

    assert len(delivered) == 1
    assert path.exists()

    second = _monitor(
        targets, clock, ScriptedProber(clock), publisher=SnapshotPublisher([FileSink(path)])
    )
    assert await second.restore() is True
    assert second.ledger.total_deployments == 1
    assert len(second.incidents.list(open_only=True)) == 1


class _StoredSink:
    def __init__(self, name: str, document: dict) -> None:
        self.name = name
        self._document = document

    async def write(self, document: dict) -> None:
        self._document = document

    async def load_latest(self) -> dict:
        return self._document


@pytest.mark.asyncio
async def test_unreadable_document_is_skipped_on_restore(targets, clock):
    broken = {
        "recent_deployments": [
            {
                "service": "Platform API",
                "deployment_id": "1",
                "status": "cancelled",
                "deployed_at": "2026-03-01T12:00:00Z",
            }
        ],
        "metrics": {"total_deployments": "1"},
    }
    good = {
        "recent_deployments": [make_deployment("7").to_document()],
        "metrics": {"total_deployments": "31"},
        "incidents": [],
    }
    monitor = _monitor(
        targets, clock, ScriptedProber(clock),
        publisher=SnapshotPublisher([_StoredSink("file", broken), _StoredSink("database", good)]),
    )

    assert await monitor.restore() is True

    assert [d.deployment_id for d in monitor.ledger.recent()] == ["7"]
    assert monitor.ledger.total_deployments == 31


@pytest.mark.asyncio
async def test_unreadable_status_file_does_not_stop_the_worker(targets, clock, tmp_path):
    path = tmp_path / "status.json"
    path.write_text(json.dumps({"incidents": [{"id": "x", "title": "no timestamps"}]}))
    monitor = _monitor(
        targets, clock, ScriptedProber(clock), publisher=SnapshotPublisher([FileSink(path)])
    )

    assert await monitor.restore() is False
    snapshot = await monitor.run_tick()

    assert snapshot.version == 1
    assert json.loads(path.read_text())["version"] == 1


@pytest.mark.asyncio
async def test_restore_keeps_deployments_recorded_since_start(targets, clock, tmp_path):
    path = tmp_path / "status.json"
    first = _monitor(
        targets, clock, ScriptedProber(clock), publisher=SnapshotPublisher([FileSink(path)])
    )
    for deployment_id in ("1", "2", "3"):
        await first.record_deployment(make_deployment(deployment_id))
    stored = FileSink(path)

    second = _monitor(targets, clock, ScriptedProber(clock))
    await second.record_deployment(make_deployment("99"))
    second.publisher = SnapshotPublisher([stored])
    assert await second.restore() is True

    assert [d.deployment_id for d in second.ledger.recent()] == ["99", "3", "2", "1"]
    assert second.ledger.last_deployment().deployment_id == "99"
    assert second.ledger.total_deployments == 4


@pytest.mark.asyncio
async def test_incident_event_accepts_service_known_from_deployments(targets, clock):
    monitor = _monitor(targets, clock, ScriptedProber(clock))
    await monitor.handle_event(
        parse_event(
            {
                "event_type": "deployment-update",
                "client_payload": {
                    "service": "Billing Worker",
                    "deployment_id": "314",
                    "status": "failed",
                    "deployed_by": "ci",
                    "commit_sha": "abc",
                },
            }
        )
    )

    result = await monitor.handle_event(
        parse_event(
            {
                "event_type": "create-incident",
                "client_payload": {
                    "title": "Billing Worker rollout halted",
                    "severity": "high",
                    "services_affected": ["Billing Worker"],
                    "deployment_id": "314",
                },
            }
        )
    )

    incident = monitor.incidents.get(result["incident_id"])
    assert incident.services == ("Billing Worker",)
