from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, status

from fleetstatus.api.dependencies import get_monitor
from fleetstatus.core.errors import DuplicateDeploymentIdError, InvalidEventError, UnknownTargetError
from fleetstatus.services.events import parse_event
from fleetstatus.services.monitor import StatusMonitor

router = APIRouter(prefix="/events", tags=["events"])


@router.post("/", status_code=status.HTTP_202_ACCEPTED)
async def receive_event(
    payload: Any = Body(...),
    monitor: StatusMonitor = Depends(get_monitor),
) -> dict:
    try:
        event = parse_event(payload)
    except InvalidEventError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))

    try:
        result = await monitor.handle_event(event)
    except DuplicateDeploymentIdError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except UnknownTargetError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))

    snapshot = monitor.snapshot
    return {
        "event_type": event.event_type,
        "result": result,
        "snapshot_version": snapshot.version if snapshot else None,
    }
