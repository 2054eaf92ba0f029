from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from fleetstatus.api.dependencies import get_monitor
from fleetstatus.services.monitor import StatusMonitor

router = APIRouter(prefix="/status", tags=["status"])


def _document(monitor: StatusMonitor) -> dict:
    document = monitor.document()
    if document is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="No snapshot yet")
    return document


@router.get("/")
async def get_status(monitor: StatusMonitor = Depends(get_monitor)) -> dict:
    return _document(monitor)


@router.get("/services")
async def get_services(monitor: StatusMonitor = Depends(get_monitor)) -> list[dict]:
    return _document(monitor)["services"]
