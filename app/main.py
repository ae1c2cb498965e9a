from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from app.api import router
from logging_config import configure_logging
from services.logbook import LogbookService, build_default_logbook
from services.synchronizer import build_default_synchronizer
from settings import get_settings

logger = logging.getLogger(__name__)


async def _periodic_sync(logbook: LogbookService, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        if not logbook.queue.has_any():
            continue
        try:
            await logbook.sync()
        except Exception:
            logger.exception("Periodic sync pass failed")


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    logbook = build_default_logbook()
    synchronizer = logbook.synchronizer
    interval = get_settings().sync_interval
    loop = asyncio.get_running_loop()

    def on_connectivity_change(online: bool) -> None:
        loop.call_soon_threadsafe(synchronizer.on_connectivity_change, online)

    # Stores that report connectivity trigger a pass when they come back online.
    add_listener = getattr(synchronizer.remote, "add_listener", None)
    if add_listener is not None:
        add_listener(on_connectivity_change)
    task: Optional[asyncio.Task] = None
    if interval > 0:
        task = asyncio.create_task(_periodic_sync(logbook, interval))
        logger.info("Periodic sync enabled", extra={"delay_ms": round(interval * 1000)})
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        remote = synchronizer.remote
        if add_listener is not None:
            remote.remove_listener(on_connectivity_change)
        aclose = getattr(remote, "aclose", None)
        if aclose is not None:
            await aclose()
        build_default_logbook.cache_clear()
        build_default_synchronizer.cache_clear()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="Fieldlog Sync",
        description="Offline-first intake and sync of hourly field compliance readings.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(router)
    return app

app = create_app()
