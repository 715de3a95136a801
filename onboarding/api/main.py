"""ASGI application for the member onboarding API.

Lifespan: configure logging, sweep stale uploads in the background,
dispose the engine on shutdown.  onboarding/main.py re-exports ``app``.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from onboarding.api.middleware.pii_filter import PIIFilterMiddleware
from onboarding.api.routes.audit import router as audit_router
from onboarding.api.routes.health import router as health_router
from onboarding.api.routes.imports import router as imports_router
from onboarding.api.routes.members import router as members_router
from onboarding.api.uploads import UPLOAD_SWEEP_INTERVAL, UploadStore
from onboarding.core.logging import setup_logging
from onboarding.core.settings import get_settings
from onboarding.db.session import dispose_engine

logger = logging.getLogger(__name__)


async def _sweep_uploads(store: UploadStore) -> None:
    while True:
        await asyncio.sleep(UPLOAD_SWEEP_INTERVAL)
        removed = await asyncio.to_thread(store.sweep)
        if removed:
            logger.info("Upload sweep removed %d expired uploads", removed)


@asynccontextmanager
async def lifespan(_: FastAPI):
    setup_logging()
    sweeper = asyncio.create_task(_sweep_uploads(UploadStore(get_settings().upload_dir)))
    logger.info("Onboarding API started (%s)", get_settings().app_env)
    try:
        yield
    finally:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
        dispose_engine()


def create_app() -> FastAPI:
    settings = get_settings()
    application = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

    # Origins are narrowed at the gateway.
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Added after CORS so it sees the route's response first.
    application.add_middleware(PIIFilterMiddleware)

    for router in (health_router, imports_router, members_router, audit_router):
        application.include_router(router)
    return application


app = create_app()
