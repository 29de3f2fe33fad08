# =============================================================================
# FastAPI Application Entry Point
# =============================================================================
#
# Run the API:
#   uvicorn app.main:app --reload
# Run the workers (separate processes):
#   celery -A app.workers.celery_app worker --loglevel=info
#   celery -A app.workers.celery_app beat --loglevel=info
#
# LIFESPAN:
#   startup  → create job store tables, start the session expiry sweeper
#   shutdown → stop the sweeper
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api import chat, queue
from app.config import settings
from app.db.engine import init_db
from app.models.responses import HealthResponse
from app.services.sessions import SessionSweeper, get_session_store

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    init_db()
    sweeper = SessionSweeper(get_session_store())
    sweeper.start()
    logger.info("%s %s started", settings.app_name, settings.app_version)
    try:
        yield
    finally:
        await sweeper.stop()
        logger.info("%s stopped", settings.app_name)


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Shark Tank conversational agent backed by a durable job queue.",
    lifespan=lifespan,
)

app.include_router(queue.router)
app.include_router(chat.router)


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health() -> HealthResponse:
    return HealthResponse(version=settings.app_version, service=settings.app_name)
