from __future__ import annotations

import logging
from collections import deque
from typing import Sequence

from fleetstatus.core.errors import DuplicateDeploymentIdError
from fleetstatus.core.models import Deployment, DeploymentOutcome

logger = logging.getLogger(__name__)


class DeploymentLedger:
    """Most-recent-first record of deployments and the rates derived from it."""

    def __init__(self, *, rate_window: int = 20, display_count: int = 10) -> None:
        self._rate_window = rate_window
        self._display_count = display_count
        capacity = max(rate_window, display_count)
        self._recent: deque[Deployment] = deque(maxlen=capacity)
        self._by_service: dict[str, deque[Deployment]] = {}
        self._capacity = capacity
        self._seen: dict[str, set[str]] = {}
        self._total = 0

    @property
    def total_deployments(self) -> int:
        return self._total

    def record(self, deployment: Deployment) -> Deployment:
        seen = self._seen.setdefault(deployment.service, set())
        if deployment.deployment_id in seen:
            raise DuplicateDeploymentIdError(deployment.service, deployment.deployment_id)

        seen.add(deployment.deployment_id)
        self._recent.appendleft(deployment)
        self._by_service.setdefault(deployment.service, deque(maxlen=self._capacity)).appendleft(
            deployment
        )
        self._total += 1
        logger.info(
            "deployment recorded",
            extra={
                "service": deployment.service,
                "deployment_id": deployment.deployment_id,
                "status": deployment.status.value,
            },
        )
        return deployment

    def recent(self, limit: int | None = None) -> list[Deployment]:
        limit = self._display_count if limit is None else limit
        return list(self._recent)[:limit]

    def for_service(self, service: str) -> list[Deployment]:
        return list(self._by_service.get(service, ()))

    def last_deployment(self) -> Deployment | None:
        return self._recent[0] if self._recent else None

    def success_rate(self) -> float:
        window = list(self._recent)[: self._rate_window]
        if not window:
            return 100.0
        successes = sum(1 for d in window if d.status is DeploymentOutcome.SUCCESS)
        return successes / len(window) * 100

    def knows(self, service: str) -> bool:
        return service in self._seen

    def restore(self, deployments: Sequence[Deployment], total: int) -> None:
        """Reload most-recent-first history from a previously published document.

        Restored entries are older than anything recorded since start-up, so
        they go behind the current history and add to the running total.
        """
        restored: list[Deployment] = []
        for deployment in deployments:
            seen = self._seen.setdefault(deployment.service, set())
            if deployment.deployment_id in seen:
                continue
            seen.add(deployment.deployment_id)
            restored.append(deployment)

        combined = list(self._recent) + restored
        self._recent = deque(combined[: self._capacity], maxlen=self._capacity)
        for deployment in restored:
            history = self._by_service.setdefault(deployment.service, deque(maxlen=self._capacity))
            if len(history) < self._capacity:
                history.append(deployment)
        self._total += max(total, len(restored))
