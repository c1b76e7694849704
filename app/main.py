# app/main.py

import logging
import os
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from app.core import logging_config  # noqa: F401  configures logging on import
from app.core.config import get_settings
from app.core.security import get_current_username, require_auth
from app.routes import health, marketplace, sync
from app.routes.webhooks import admin_router as webhook_admin_router
from app.routes.webhooks import router as webhook_router
from app.scheduler import get_scheduler_status, orphaned_job_sweep_task, start_scheduler, stop_scheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Jobs left queued/running by a previous process are failed before anything new starts
    await orphaned_job_sweep_task()

    scheduler_enabled = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"
    if scheduler_enabled:
        await start_scheduler()
    else:
        logger.info("Scheduler disabled via SCHEDULER_ENABLED=false")

    yield

    if scheduler_enabled:
        await stop_scheduler()


settings = get_settings()

app = FastAPI(
    title="Marketplace Sync",
    description="Marketplace catalog sync and payment webhook reconciliation",
    debug=settings.DEBUG,
    lifespan=lifespan
)

app.include_router(sync.router, dependencies=[require_auth()])
app.include_router(marketplace.router, dependencies=[require_auth()])
app.include_router(webhook_admin_router, dependencies=[require_auth()])
app.include_router(webhook_router)  # Webhooks need to be accessible without auth
app.include_router(health.router)  # Health check should be accessible without auth


@app.get("/scheduler/status", dependencies=[Depends(get_current_username)])
async def scheduler_status():
    return await get_scheduler_status()
