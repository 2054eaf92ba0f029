from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class UptimeMetrics(BaseModel):
    service: str
    window_hours: int = Field(..., ge=1)
    availability: float | None  # percent, None without samples
    average_latency_ms: float | None
    sample_count: int
    consecutive_operational: int
    from_ts: datetime
    to_ts: datetime
