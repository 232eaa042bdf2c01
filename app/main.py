"""
SwapFlow matching — FastAPI application entry point.

Serves the operational endpoints of the matching subsystem (queue
depth, enqueue triggers, maintenance).  Matching itself runs in worker
processes started with scripts/run_worker.py.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.api import matching
from app.matching_engine.config import matching_config

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Log the effective matching config; close pools on shutdown."""
    from app.database import engine
    from app.redis_client import redis

    logger.info(
        "%s starting (instance=%s, triangle=%s)",
        settings.APP_NAME, matching_config.instance_id, matching_config.triangle_enabled,
    )
    yield

    await engine.dispose()
    await redis.aclose()


app = FastAPI(
    title=settings.APP_NAME,
    description="Dwelling-exchange matching engine: queue, workers, maintenance.",
    version="0.1.0",
    lifespan=lifespan,
)

# --- CORS Middleware ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Routers ---
app.include_router(matching.router, prefix="/api/v1/matching", tags=["Matching"])


@app.get("/health")
async def health_check():
    """Liveness probe; also reports which matching instance answered."""
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
        "version": "0.1.0",
        "instance_id": matching_config.instance_id,
    }
