from __future__ import annotations

import asyncio
import logging
import socket
from datetime import datetime
from typing import Callable

import httpx

from fleetstatus.core.errors import ProbeError
from fleetstatus.core.models import ProbeResult, ServiceState, Target, utcnow

logger = logging.getLogger(__name__)


class HealthProber:
    """One-shot health check against a single target.

    Retries and scheduling are the caller's concern; a probe never raises,
    every failure is folded into a ``down`` or ``degraded`` result.
    """

    def __init__(
        self,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._client_factory = client_factory or (lambda: httpx.AsyncClient(follow_redirects=True))
        self._clock = clock or utcnow

    async def probe(self, target: Target) -> ProbeResult:
        loop = asyncio.get_running_loop()
        started = loop.time()
        http_status: int | None = None
        message: str | None = None

        try:
            http_status = await self._fetch(target)
            status = ServiceState.OPERATIONAL
        except ProbeError as exc:
            http_status = exc.http_status
            message = exc.reason
            status = ServiceState.DEGRADED if exc.reason == CONTENT_MISMATCH else ServiceState.DOWN

        latency_ms = int((loop.time() - started) * 1000)
        if status is not ServiceState.OPERATIONAL:
            logger.info(
                "probe failed",
                extra={"target": target.name, "status": status.value, "reason": message},
            )

        return ProbeResult(
            target=target.name,
            status=status,
            latency_ms=latency_ms,
            checked_at=self._clock(),
            message=message,
            http_status=http_status,
        )

    async def _fetch(self, target: Target) -> int:
        try:
            async with self._client_factory() as client:
                response = await client.get(target.url, timeout=target.timeout)
        except (httpx.TimeoutException, httpx.ConnectError, httpx.TransportError) as exc:
            raise ProbeError(_normalize_error(exc)) from exc
        except Exception as exc:  # pragma: no cover - unexpected
            raise ProbeError(_normalize_error(exc)) from exc

        if not 200 <= response.status_code < 400:
            raise ProbeError(f"HTTP {response.status_code}", http_status=response.status_code)
        if target.expected_content and target.expected_content not in response.text:
            raise ProbeError(CONTENT_MISMATCH, http_status=response.status_code)
        return response.status_code


CONTENT_MISMATCH = "expected content not found"


def _normalize_error(exc: Exception) -> str:
    if isinstance(exc, httpx.TimeoutException):
        return "timeout"
    if isinstance(exc, httpx.ConnectError):
        return "connect_error"
    if isinstance(exc, httpx.TransportError):
        return exc.__class__.__name__.lower()
    if isinstance(exc, socket.gaierror):
        return "dns_error"
    return str(exc)
