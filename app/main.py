# =============================================================================
# FastAPI Application — Entry Point
# =============================================================================
#
# Run locally:
#   uvicorn app.main:app --reload
#
# LIFESPAN:
#   startup  → start the clarification-session sweeper task
#   shutdown → cancel the sweeper, dispose of the database engine
# =============================================================================

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api.search import router as search_router
from app.config import settings
from app.models.responses import HealthResponse
from app.services.session_store import get_clarification_store, run_sweeper

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting %s v%s", settings.app_name, settings.app_version)
    sweeper = asyncio.create_task(
        run_sweeper(get_clarification_store(), settings.clarification_sweep_interval_seconds)
    )
    try:
        yield
    finally:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper

        from app.db.engine import async_engine

        await async_engine.dispose()
        logger.info("Shutdown complete")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description=(
        "Agentic company search: iterative planning, multi-strategy "
        "retrieval, LLM reranking and a stop/continue critic."
    ),
    lifespan=lifespan,
)
app.include_router(search_router)


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health() -> HealthResponse:
    return HealthResponse(version=settings.app_version, service=settings.app_name)
