from __future__ import annotations

import json
from pathlib import Path

from pydantic import AnyUrl, BaseModel, Field, HttpUrl
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: AnyUrl | None = None
    api_host: str = "0.0.0.0"
    api_port: int = Field(default=8000, ge=1, le=65535)
    targets_file: Path = Path("targets.json")
    probe_interval_sec: float = Field(default=300.0, gt=0)
    probe_concurrency: int = Field(default=20, ge=1)
    history_capacity: int = Field(default=8640, ge=1)  # 30d at 5 minute ticks
    deployment_rate_window: int = Field(default=20, ge=1)
    deployment_display_count: int = Field(default=10, ge=1)
    incident_dedup_window_sec: float = Field(default=3600.0, ge=0)
    incident_recent_days: int = Field(default=7, ge=1)
    incident_retention_days: int = Field(default=30, ge=1)
    snapshot_retention_days: int = Field(default=30, ge=1)
    auto_resolve_enabled: bool = True
    auto_resolve_threshold: int = Field(default=3, ge=1)
    status_file: Path | None = None
    dispatch_url: HttpUrl | None = None
    dispatch_token: str | None = None
    dispatch_timeout_sec: float = Field(default=10.0, gt=0)
    publish_retries: int = Field(default=2, ge=0)
    publish_retry_backoff_sec: float = Field(default=5.0, ge=0)
    environment: str = "production"
    region: str = "self-hosted"
    log_level: str = "INFO"

    class Config:
        # ENV-only configuration, no prefix
        env_prefix = ""


class TargetConfig(BaseModel):
    name: str = Field(..., max_length=255)
    url: HttpUrl
    description: str = ""
    expected_content: str | None = None
    timeout: float = Field(default=10.0, gt=0)
    critical: bool = False
    category: str = "core"


def load_targets(path: Path) -> list[TargetConfig]:
    raw = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        raw = raw.get("targets", [])
    targets = [TargetConfig(**item) for item in raw]
    names = [t.name for t in targets]
    duplicates = {n for n in names if names.count(n) > 1}
    if duplicates:
        raise ValueError(f"duplicate target names: {', '.join(sorted(duplicates))}")
    return targets


settings = Settings()
