from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from fleetstatus.core.models import IncidentSource, IncidentStatus, Severity


class IncidentCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    severity: Severity = Severity.MEDIUM
    services: list[str] = Field(default_factory=list)


class IncidentTransition(BaseModel):
    status: IncidentStatus
    message: str | None = None


class IncidentUpdateRead(BaseModel):
    status: IncidentStatus
    message: str
    at: datetime

    class Config:
        from_attributes = True


class IncidentRead(BaseModel):
    id: str
    title: str
    description: str
    severity: Severity
    status: IncidentStatus
    services: list[str]
    created_at: datetime
    updated_at: datetime
    resolved_at: datetime | None
    auto_created: bool
    source: IncidentSource
    deployment_id: str | None
    commit_sha: str | None
    updates: list[IncidentUpdateRead]

    class Config:
        from_attributes = True
