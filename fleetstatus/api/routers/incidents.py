from __future__ import annotations

from typing import Sequence

from fastapi import APIRouter, Depends, HTTPException, Query, status

from fleetstatus.api.dependencies import get_monitor
from fleetstatus.api.schemas.incidents import IncidentCreate, IncidentRead, IncidentTransition
from fleetstatus.core.errors import IncidentNotFoundError, InvalidTransitionError, UnknownTargetError
from fleetstatus.services.monitor import StatusMonitor

router = APIRouter(prefix="/incidents", tags=["incidents"])


@router.get("/", response_model=Sequence[IncidentRead])
async def list_incidents(
    open_only: bool = Query(False),
    offset: int = 0,
    limit: int = 100,
    monitor: StatusMonitor = Depends(get_monitor),
) -> Sequence[IncidentRead]:
    incidents = monitor.incidents.list(open_only=open_only)[offset : offset + limit]
    return [IncidentRead.model_validate(i) for i in incidents]


@router.get("/{incident_id}", response_model=IncidentRead)
async def get_incident(
    incident_id: str,
    monitor: StatusMonitor = Depends(get_monitor),
) -> IncidentRead:
    try:
        incident = monitor.incidents.get(incident_id)
    except IncidentNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Incident not found")
    return IncidentRead.model_validate(incident)


@router.post("/", response_model=IncidentRead, status_code=status.HTTP_201_CREATED)
async def create_incident(
    payload: IncidentCreate,
    monitor: StatusMonitor = Depends(get_monitor),
) -> IncidentRead:
    try:
        incident = await monitor.create_incident(
            title=payload.title,
            description=payload.description,
            severity=payload.severity,
            services=payload.services,
        )
    except UnknownTargetError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return IncidentRead.model_validate(incident)


@router.post("/{incident_id}/transition", response_model=IncidentRead)
async def transition_incident(
    incident_id: str,
    payload: IncidentTransition,
    monitor: StatusMonitor = Depends(get_monitor),
) -> IncidentRead:
    try:
        incident = await monitor.transition_incident(incident_id, payload.status, payload.message)
    except IncidentNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Incident not found")
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return IncidentRead.model_validate(incident)
