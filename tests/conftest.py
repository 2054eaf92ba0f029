"""
Shared fixtures for the status engine tests.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from fleetstatus.core.models import (
    Deployment,
    DeploymentOutcome,
    ProbeResult,
    ServiceState,
    Target,
)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ScriptedProber:
    """Returns pre-scripted outcomes per target, one per probe call."""

    def __init__(self, clock, script: dict[str, list[ServiceState]] | None = None, delays=None):
        self._clock = clock
        self._script = {name: list(states) for name, states in (script or {}).items()}
        self._delays = delays or {}
        self.calls: list[str] = []
        self.active: dict[str, int] = {}
        self.max_active: dict[str, int] = {}

    def push(self, name: str, *states: ServiceState) -> None:
        self._script.setdefault(name, []).extend(states)

    async def probe(self, target: Target) -> ProbeResult:
        self.calls.append(target.name)
        self.active[target.name] = self.active.get(target.name, 0) + 1
        self.max_active[target.name] = max(
            self.max_active.get(target.name, 0), self.active[target.name]
        )
        try:
            delay = self._delays.get(target.name, 0)
            if delay:
                await asyncio.sleep(delay)
            states = self._script.get(target.name) or [ServiceState.OPERATIONAL]
            status = states.pop(0) if len(states) > 1 else states[0]
            return ProbeResult(
                target=target.name,
                status=status,
                latency_ms=120 if status is not ServiceState.DOWN else 0,
                checked_at=self._clock(),
                message=None if status is ServiceState.OPERATIONAL else f"scripted {status.value}",
            )
        finally:
            self.active[target.name] -= 1


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def api_target() -> Target:
    return Target(
        name="Platform API",
        url="https://api.example.test/health",
        description="Backend API",
        expected_content="ok",
        timeout=5.0,
        critical=True,
    )


@pytest.fixture
def web_target() -> Target:
    return Target(
        name="Web Interface",
        url="https://www.example.test/",
        description="Frontend",
        critical=True,
    )


@pytest.fixture
def docs_target() -> Target:
    return Target(
        name="Docs",
        url="https://docs.example.test/",
        description="Documentation",
        critical=False,
        category="content",
    )


@pytest.fixture
def targets(api_target, web_target, docs_target) -> list[Target]:
    return [api_target, web_target, docs_target]


def make_result(
    target: str,
    status: ServiceState,
    at: datetime,
    latency_ms: int = 100,
    message: str | None = None,
) -> ProbeResult:
    return ProbeResult(
        target=target, status=status, latency_ms=latency_ms, checked_at=at, message=message
    )


def make_deployment(
    deployment_id: str,
    *,
    service: str = "Platform API",
    status: DeploymentOutcome = DeploymentOutcome.SUCCESS,
    at: datetime | None = None,
) -> Deployment:
    return Deployment(
        service=service,
        deployment_id=deployment_id,
        status=status,
        deployed_by="octocat",
        commit_sha="0123456789abcdef",
        deployed_at=at or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc),
        duration="2m 10s",
    )
