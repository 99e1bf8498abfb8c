"""FastAPI application factory.

Assembles CORS and all API routers, and runs the campaign scheduler for the
lifetime of the app when ``SCHEDULER_ENABLED`` is set.
pushcast/main.py re-exports the app object from here.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pushcast.api.routes.campaigns import router as campaigns_router
from pushcast.api.routes.deliveries import router as deliveries_router
from pushcast.api.routes.health import router as health_router
from pushcast.api.routes.scheduler import router as scheduler_router
from pushcast.core.logging import setup_logging
from pushcast.core.settings import get_settings
from pushcast.scheduling.scheduler import build_scheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    settings = get_settings()
    scheduler = build_scheduler(settings)
    app.state.scheduler = scheduler
    if settings.scheduler_enabled:
        scheduler.start()
    else:
        logger.info("Scheduler disabled; campaigns only dispatch through the API")
    yield
    scheduler.stop()


settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

# Click/close callbacks come from service workers on subscriber sites.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_router)
app.include_router(campaigns_router)
app.include_router(scheduler_router)
app.include_router(deliveries_router)
