from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete, desc, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from fleetstatus.db.models import SnapshotRecord
from fleetstatus.publish.base import RestorableSink


class DatabaseSink(RestorableSink):
    """Archives every published document; the newest row seeds a restart."""

    name = "database"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        engine: AsyncEngine | None = None,
        retention: timedelta = timedelta(days=30),
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine
        self._retention = retention

    async def write(self, document: dict[str, Any]) -> None:
        now = datetime.now(timezone.utc)
        async with self._session_factory() as session:
            async with session.begin():
                session.add(
                    SnapshotRecord(
                        version=int(document.get("version", 0)),
                        overall_status=document["overall_status"]["status"],
                        document=document,
                        published_at=now,
                    )
                )
                await session.execute(
                    delete(SnapshotRecord).where(SnapshotRecord.published_at < now - self._retention)
                )

    async def load_latest(self) -> dict[str, Any] | None:
        async with self._session_factory() as session:
            row = await session.scalar(
                select(SnapshotRecord).order_by(desc(SnapshotRecord.published_at)).limit(1)
            )
            return dict(row.document) if row is not None else None

    async def aclose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
