from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable

from fleetstatus.core.config import Settings, load_targets, settings
from fleetstatus.core.models import Target
from fleetstatus.db.session import make_engine, make_session_factory
from fleetstatus.publish.base import SnapshotSink
from fleetstatus.publish.database import DatabaseSink
from fleetstatus.publish.dispatch import DispatchSink
from fleetstatus.publish.file import FileSink
from fleetstatus.services.deployments import DeploymentLedger
from fleetstatus.services.incidents import IncidentStateMachine
from fleetstatus.services.metrics import MetricsAggregator
from fleetstatus.services.monitor import StatusMonitor
from fleetstatus.services.snapshot import SnapshotBuilder, SnapshotPublisher

logger = logging.getLogger(__name__)


class MonitoringWorker:
    """Fires a probe tick every interval.

    A tick still running when the next one is due keeps going; per-target
    locks inside the monitor keep the two from interleaving results.
    """

    def __init__(
        self,
        monitor: StatusMonitor,
        *,
        interval_sec: float,
        sleep_func: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self._monitor = monitor
        self._interval = interval_sec
        self._sleep = sleep_func or asyncio.sleep
        self._ticks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._ticks)

    async def run_forever(self, *, restore: bool = True) -> None:
        if restore:
            await self._monitor.restore()
        logger.info(
            "worker started",
            extra={"targets": len(self._monitor.targets), "interval_sec": self._interval},
        )
        while True:
            self.start_tick()
            await self._sleep(self._interval)

    def start_tick(self) -> asyncio.Task:
        task = asyncio.create_task(self._run_tick())
        self._ticks.add(task)
        task.add_done_callback(self._ticks.discard)
        return task

    async def drain(self) -> None:
        if self._ticks:
            await asyncio.gather(*self._ticks, return_exceptions=True)

    async def _run_tick(self) -> None:
        try:
            await self._monitor.run_tick()
        except Exception:  # pragma: no cover - logging catch-all
            logger.exception("tick failed")


def build_sinks(cfg: Settings) -> list[SnapshotSink]:
    """Publish sinks in the order they are tried."""
    sinks: list[SnapshotSink] = []
    if cfg.dispatch_url:
        sinks.append(
            DispatchSink(str(cfg.dispatch_url), token=cfg.dispatch_token, timeout=cfg.dispatch_timeout_sec)
        )
    if cfg.status_file:
        sinks.append(FileSink(cfg.status_file))
    if cfg.database_url:
        engine = make_engine(str(cfg.database_url))
        sinks.append(
            DatabaseSink(
                make_session_factory(engine),
                engine=engine,
                retention=timedelta(days=cfg.snapshot_retention_days),
            )
        )
    return sinks


def build_monitor(cfg: Settings = settings) -> StatusMonitor:
    targets = [Target.from_config(t) for t in load_targets(cfg.targets_file)]
    return StatusMonitor(
        targets,
        metrics=MetricsAggregator(targets, capacity=cfg.history_capacity),
        incidents=IncidentStateMachine(
            dedup_window=timedelta(seconds=cfg.incident_dedup_window_sec),
            auto_resolve_enabled=cfg.auto_resolve_enabled,
            auto_resolve_threshold=cfg.auto_resolve_threshold,
            retention=timedelta(days=cfg.incident_retention_days),
        ),
        ledger=DeploymentLedger(
            rate_window=cfg.deployment_rate_window,
            display_count=cfg.deployment_display_count,
        ),
        builder=SnapshotBuilder(
            environment=cfg.environment,
            region=cfg.region,
            monitoring_interval_sec=cfg.probe_interval_sec,
            incident_window=timedelta(days=cfg.incident_recent_days),
        ),
        publisher=SnapshotPublisher(build_sinks(cfg)),
        probe_concurrency=cfg.probe_concurrency,
        publish_retries=cfg.publish_retries,
        publish_retry_backoff_sec=cfg.publish_retry_backoff_sec,
    )


def main() -> None:
    logging.basicConfig(level=settings.log_level.upper())
    worker = MonitoringWorker(build_monitor(), interval_sec=settings.probe_interval_sec)
    asyncio.run(worker.run_forever())


if __name__ == "__main__":
    main()
