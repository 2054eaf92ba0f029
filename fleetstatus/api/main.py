from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import AsyncIterator

import uvicorn
from fastapi import FastAPI

from fleetstatus.api.routers import events, health, incidents, metrics, status
from fleetstatus.core.config import settings
from fleetstatus.services.monitor import StatusMonitor
from fleetstatus.workers.runner import MonitoringWorker, build_monitor


def create_app(monitor: StatusMonitor | None = None, *, run_worker: bool = True) -> FastAPI:
    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        active = monitor or build_monitor(settings)
        # restore before serving, so no event can publish over the stored document
        await active.restore()
        app.state.monitor = active
        worker = MonitoringWorker(active, interval_sec=settings.probe_interval_sec)
        task = asyncio.create_task(worker.run_forever(restore=False)) if run_worker else None
        try:
            yield
        finally:
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            await worker.drain()
            await active.aclose()

    app = FastAPI(title="Fleet Status API", lifespan=lifespan)
    app.include_router(status.router)
    app.include_router(metrics.router)
    app.include_router(incidents.router)
    app.include_router(events.router)
    app.include_router(health.router)
    return app


app = create_app()


def main() -> None:
    logging.basicConfig(level=settings.log_level.upper())
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
