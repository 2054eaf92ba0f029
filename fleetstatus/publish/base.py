from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class SnapshotSink(Protocol):
    name: str

    async def write(self, document: dict[str, Any]) -> None:  # pragma: no cover - interface
        ...


@runtime_checkable
class RestorableSink(SnapshotSink, Protocol):
    async def load_latest(self) -> dict[str, Any] | None:  # pragma: no cover - interface
        ...
