from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Iterator

from fleetstatus.core.errors import UnknownTargetError
from fleetstatus.core.models import (
    EndpointThroughput,
    ProbeResult,
    ServiceState,
    ServiceStatus,
    Target,
    Throughput,
)

SERVICE_WINDOW = timedelta(hours=24)
FLEET_WINDOW = timedelta(days=30)
THROUGHPUT_WINDOW = timedelta(minutes=15)


@dataclass(frozen=True)
class RequestSample:
    endpoint: str
    count: int
    window_seconds: float
    collected_at: datetime


class MetricsAggregator:
    """Bounded per-target probe history and the figures derived from it."""

    def __init__(
        self,
        targets: Iterable[Target],
        *,
        capacity: int = 8640,
        throughput_window: timedelta = THROUGHPUT_WINDOW,
        throughput_capacity: int = 1000,
    ) -> None:
        self._targets = {t.name: t for t in targets}
        self._history: dict[str, deque[ProbeResult]] = {
            name: deque(maxlen=capacity) for name in self._targets
        }
        self._throughput_window = throughput_window
        self._samples: deque[RequestSample] = deque(maxlen=throughput_capacity)
        self._request_totals: dict[str, int] = {}

    @property
    def targets(self) -> list[Target]:
        return list(self._targets.values())

    def record(self, result: ProbeResult) -> None:
        history = self._history.get(result.target)
        if history is None:
            raise UnknownTargetError(result.target)
        history.append(result)

    def history(self, name: str) -> tuple[ProbeResult, ...]:
        return tuple(self._buffer(name))

    def latest(self, name: str) -> ProbeResult | None:
        history = self._buffer(name)
        return history[-1] if history else None

    def uptime(self, name: str, now: datetime, window: timedelta = SERVICE_WINDOW) -> float | None:
        return _uptime(self._window(name, now, window))

    def average_latency(
        self, name: str, now: datetime, window: timedelta = SERVICE_WINDOW
    ) -> float | None:
        return _average_latency(self._window(name, now, window))

    def sample_count(self, name: str, now: datetime, window: timedelta = SERVICE_WINDOW) -> int:
        return len(self._window(name, now, window))

    def consecutive_operational(self, name: str) -> int:
        count = 0
        for result in reversed(self._buffer(name)):
            if result.status is not ServiceState.OPERATIONAL:
                break
            count += 1
        return count

    def service_status(self, name: str, now: datetime) -> ServiceStatus:
        target = self._targets.get(name)
        if target is None:
            raise UnknownTargetError(name)
        latest = self.latest(name)
        return ServiceStatus(
            name=target.name,
            description=target.description,
            status=latest.status if latest else ServiceState.UNKNOWN,
            uptime=self.uptime(name, now),
            response_time_ms=self.average_latency(name, now),
            message=latest.message if latest else None,
            last_checked=latest.checked_at if latest else None,
            critical=target.critical,
            category=target.category,
        )

    def fleet_uptime(self, now: datetime, window: timedelta = FLEET_WINDOW) -> float | None:
        results = [r for name in self._targets for r in self._window(name, now, window)]
        return _uptime(results)

    def fleet_average_latency(
        self, now: datetime, window: timedelta = SERVICE_WINDOW
    ) -> float | None:
        results = [r for name in self._targets for r in self._window(name, now, window)]
        return _average_latency(results)

    def record_requests(
        self,
        endpoint: str,
        count: int,
        *,
        collected_at: datetime,
        window_seconds: float,
    ) -> None:
        if count < 0 or window_seconds <= 0:
            raise ValueError("request samples need a non-negative count and a positive window")
        self._samples.append(RequestSample(endpoint, count, window_seconds, collected_at))
        self._request_totals[endpoint] = self._request_totals.get(endpoint, 0) + count

    def throughput(self, now: datetime) -> Throughput | None:
        if not self._samples:
            return None
        cutoff = now - self._throughput_window
        counts: dict[str, int] = {}
        seconds: dict[str, float] = {}
        for sample in self._samples:
            if sample.collected_at < cutoff:
                continue
            counts[sample.endpoint] = counts.get(sample.endpoint, 0) + sample.count
            seconds[sample.endpoint] = seconds.get(sample.endpoint, 0.0) + sample.window_seconds

        endpoints = tuple(
            EndpointThroughput(
                name=name,
                requests_per_second=(counts[name] / seconds[name]) if name in counts else 0.0,
                requests=self._request_totals[name],
            )
            for name in sorted(self._request_totals)
        )
        return Throughput(
            requests_per_second=sum(e.requests_per_second for e in endpoints),
            total_requests=sum(self._request_totals.values()),
            endpoints=endpoints,
            updated_at=max(s.collected_at for s in self._samples),
        )

    def _buffer(self, name: str) -> deque[ProbeResult]:
        history = self._history.get(name)
        if history is None:
            raise UnknownTargetError(name)
        return history

    def _window(self, name: str, now: datetime, window: timedelta) -> list[ProbeResult]:
        cutoff = now - window
        return list(_newer_than(self._buffer(name), cutoff))


def _newer_than(history: deque[ProbeResult], cutoff: datetime) -> Iterator[ProbeResult]:
    # history is append-only in time order, walk from the newest end
    for result in reversed(history):
        if result.checked_at < cutoff:
            break
        yield result


def _uptime(results: list[ProbeResult]) -> float | None:
    if not results:
        return None
    up = sum(1 for r in results if r.status is ServiceState.OPERATIONAL)
    return up / len(results) * 100


def _average_latency(results: list[ProbeResult]) -> float | None:
    latencies = [r.latency_ms for r in results if r.status is not ServiceState.DOWN]
    if not latencies:
        return None
    return sum(latencies) / len(latencies)
