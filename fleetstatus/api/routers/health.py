from __future__ import annotations

from fastapi import APIRouter, Depends

from fleetstatus.api.dependencies import get_monitor
from fleetstatus.core.models import to_iso
from fleetstatus.services.monitor import StatusMonitor

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(monitor: StatusMonitor = Depends(get_monitor)) -> dict:
    snapshot = monitor.snapshot
    return {
        "status": "ok",
        "targets": len(monitor.targets),
        "snapshot_version": snapshot.version if snapshot else None,
        "last_updated": to_iso(snapshot.last_updated) if snapshot else None,
    }
