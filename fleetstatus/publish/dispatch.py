from __future__ import annotations

from typing import Any

import httpx

from fleetstatus.publish.base import SnapshotSink


class DispatchSink(SnapshotSink):
    """Hands the document to a remote dispatch endpoint that rebuilds the page."""

    name = "dispatch"

    def __init__(
        self,
        url: str,
        *,
        token: str | None = None,
        event_type: str = "status-snapshot",
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._url = url
        self._token = token
        self._event_type = event_type
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def write(self, document: dict[str, Any]) -> None:
        headers = {"Accept": "application/json", "User-Agent": "fleetstatus"}
        if self._token:
            headers["Authorization"] = f"token {self._token}"
        payload = {"event_type": self._event_type, "client_payload": document}
        resp = await self._client.post(self._url, json=payload, headers=headers)
        resp.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()
