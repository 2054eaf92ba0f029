from __future__ import annotations

from fastapi import Request

from fleetstatus.services.monitor import StatusMonitor


def get_monitor(request: Request) -> StatusMonitor:
    return request.app.state.monitor
