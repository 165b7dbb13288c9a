# ============================================================================
# GENFLOW - MAIN APPLICATION
# ============================================================================
# STATUS: Core - FastAPI application entry point
# PURPOSE: HTTP API plus the engine's background loops
# CREATED: 19 OCT 2026
# ============================================================================
"""
genflow Main Application

FastAPI application that:
1. Provides the HTTP API (executions, provider webhooks, admin views)
2. Runs the poller, recovery sweep and retention job in the background
3. Optionally runs a queue consumer in-process

Usage:
    uvicorn main:app --host 0.0.0.0 --port 8000

Environment Variables:
    STORAGE_BACKEND: "postgres" (default) or "memory"
    AUTO_BOOTSTRAP_SCHEMA: "true" to deploy the schema at startup
    RUN_WORKER_IN_PROCESS: "true" to consume the queue in this process
        (always on for the memory backend)
    PROVIDERS_DIR, PUBLIC_BASE_URL, HANDLER_MODULES: node type catalog
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from __version__ import __version__, BUILD_DATE
from core.config import get_defaults
from core.logging import ComponentType, configure_logging, get_logger
from handlers import build_registry
from orchestrator import build_engine
from repositories import close_pool, create_repositories, deploy_schema, init_pool
from worker.consumer import QueueConsumer
from api.routes import router, health_router, set_services

configure_logging(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    json_output=os.environ.get("LOG_FORMAT", "").lower() == "json",
)
logger = get_logger(__name__, ComponentType.API)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Initializes the engine on startup, stops its loops on shutdown.
    """
    logger.info(f"Starting genflow v{__version__} (Build {BUILD_DATE})")

    backend = os.environ.get("STORAGE_BACKEND", "postgres").lower()

    # Optional: Bootstrap schema on startup (for development)
    if backend == "postgres" and os.environ.get("AUTO_BOOTSTRAP_SCHEMA", "").lower() == "true":
        logger.info("Auto-bootstrap enabled, deploying schema...")
        pool = await init_pool()
        try:
            statements = await deploy_schema(pool)
            logger.info(f"Schema bootstrap completed ({len(statements)} statements)")
        except Exception as e:
            logger.warning(f"Schema bootstrap failed (may already exist): {e}")

    repos = await create_repositories(backend)
    logger.info(f"Storage backend: {repos.backend}")

    defaults = get_defaults()
    registry = build_registry()
    engine = build_engine(repos, registry, defaults)

    scheduler = engine.build_scheduler()
    consumer = None
    if backend == "memory" or os.environ.get("RUN_WORKER_IN_PROCESS", "").lower() == "true":
        consumer = QueueConsumer(repos, engine.dispatcher, defaults.queue, defaults.worker)

    set_services(engine, scheduler=scheduler, consumer=consumer)
    app.state.engine = engine

    await scheduler.start()
    if consumer:
        await consumer.start()
        logger.info("In-process queue consumer started")

    yield

    # Shutdown
    logger.info("Shutting down genflow...")
    if consumer:
        await consumer.stop()
    await scheduler.stop()
    if repos.backend == "postgres":
        await close_pool()
    logger.info("genflow stopped")


def create_app() -> FastAPI:
    """Build the FastAPI application."""
    app = FastAPI(
        title="genflow",
        description="Workflow execution engine for generation pipelines",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Health check routes (no prefix)
    app.include_router(health_router)

    # API routes
    app.include_router(router, prefix="/api/v1")

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": "genflow",
            "version": __version__,
            "build_date": BUILD_DATE,
            "status": "running",
            "docs": "/docs",
        }

    return app


app = create_app()


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "8000"))

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=os.environ.get("RELOAD", "false").lower() == "true",
    )
