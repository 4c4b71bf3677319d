"""
FastAPI application entry point for the evolution engine.

The lifespan handler builds the engine context (pool, health monitor and
services), registers the learning jobs and starts the scheduler. On shutdown
the scheduler is stopped first so in-flight items finish before the pool is
closed.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from evolution_engine import __version__
from evolution_engine.api import api_router
from evolution_engine.core.config import get_settings
from evolution_engine.core.context import close_context, create_context
from evolution_engine.core.errors import StoreError
from evolution_engine.jobs.learning_jobs import register_learning_jobs
from evolution_engine.jobs.scheduler import Scheduler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    On startup:
        - Create the engine context
        - Register the learning jobs and start the scheduler if enabled

    On shutdown:
        - Stop the scheduler, then release the HTTP client and the pool
    """
    settings = get_settings()
    logger.info("Evolution engine starting")

    app.state.engine = None
    app.state.scheduler = None
    try:
        ctx = await create_context(settings)
    except StoreError as e:
        # the API stays up and reports 503 until restarted with a reachable store
        logger.error("Failed to initialise the engine: %s", e)
        ctx = None

    if ctx is not None:
        scheduler = register_learning_jobs(Scheduler(ctx.health), ctx)
        app.state.engine = ctx
        app.state.scheduler = scheduler
        if settings.scheduler_enabled:
            scheduler.start()

    yield

    logger.info("Evolution engine shutting down")
    if app.state.scheduler is not None:
        await app.state.scheduler.stop()
    if app.state.engine is not None:
        await close_context(app.state.engine)


app = FastAPI(
    title="Evolution Engine API",
    version=__version__,
    description=(
        "Self-evolving rule engine: conversation analysis, rule lifecycle, "
        "knowledge aggregation and exploration experiments."
    ),
    lifespan=lifespan,
)

# Admin console runs on a separate origin in development
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


@app.get("/health")
async def health_check():
    """Liveness probe."""
    return {"status": "healthy"}


# Run with uvicorn when executed directly
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "evolution_engine.main:app",
        host="0.0.0.0",
        port=8000,
    )
