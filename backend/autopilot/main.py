"""
Campaign Autopilot — FastAPI entry point
Exposes the scheduler trigger for per-tenant desired-state reconciliation
runs and a health endpoint.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from autopilot.config import get_settings
from autopilot.routers import cron
from autopilot.routers.cron import PlatformFactory
from autopilot.transport import BackendClient

settings = get_settings()

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)


async def check_backend_connection() -> bool:
    return await BackendClient.from_settings().check_connection()


def register_platform_factory(app: FastAPI, factory: Optional[PlatformFactory]) -> None:
    """Called by the hosting process with tenant id → AdsPlatformClient."""
    app.state.platform_factory = factory


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting Campaign Autopilot ({settings.environment}, default mode {settings.default_run_mode})...")
    if getattr(app.state, "platform_factory", None) is None:
        logger.warning("No platform client factory registered; run endpoints will answer 503")
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title="Campaign Autopilot",
    description="Desired-state reconciliation for multi-tenant ad accounts",
    version="1.0.0",
    lifespan=lifespan,
)
app.state.platform_factory = None

app.include_router(cron.router, prefix="/api")  # No JWT; uses CRON_SECRET


@app.get("/api/health")
async def health_check():
    backend_ok = await check_backend_connection()
    return {
        "status": "healthy" if backend_ok else "degraded",
        "service": "Campaign Autopilot",
        "backend": "connected" if backend_ok else "disconnected",
        "platform": "registered" if app.state.platform_factory is not None else "missing",
    }
