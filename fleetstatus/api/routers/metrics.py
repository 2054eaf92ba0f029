from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status

from fleetstatus.api.dependencies import get_monitor
from fleetstatus.api.schemas.metrics import UptimeMetrics
from fleetstatus.core.errors import UnknownTargetError
from fleetstatus.services.monitor import StatusMonitor

router = APIRouter(prefix="/metrics", tags=["metrics"])


@router.get("/")
async def get_metrics(monitor: StatusMonitor = Depends(get_monitor)) -> dict:
    document = monitor.document()
    if document is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="No snapshot yet")
    return document["metrics"]


@router.get("/uptime", response_model=UptimeMetrics)
async def get_uptime_metrics(
    service: str = Query(...),
    window_hours: int = Query(24, ge=1, le=24 * 30),
    monitor: StatusMonitor = Depends(get_monitor),
) -> UptimeMetrics:
    now = monitor.now()
    window = timedelta(hours=window_hours)
    aggregator = monitor.metrics
    try:
        return UptimeMetrics(
            service=service,
            window_hours=window_hours,
            availability=aggregator.uptime(service, now, window),
            average_latency_ms=aggregator.average_latency(service, now, window),
            sample_count=aggregator.sample_count(service, now, window),
            consecutive_operational=aggregator.consecutive_operational(service),
            from_ts=now - window,
            to_ts=now,
        )
    except UnknownTargetError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Service not found")
