# ============================================================================
# WORKER MAIN ENTRY POINT
# ============================================================================
# STATUS: Core - Worker process entry point
# PURPOSE: Start a standalone queue worker
# CREATED: 19 OCT 2026
# ============================================================================
"""
Worker Main Entry Point

Starts a worker process that:
1. Builds the node type registry (built-ins, providers/*.yaml, HANDLER_MODULES)
2. Connects to PostgreSQL
3. Claims and dispatches queue jobs until shutdown

Any number of these can run against one database; leases keep them
from executing the same job twice.

Usage:
    # With environment variables
    python -m worker.main

Environment Variables:
    WORKER_ID: Unique worker identifier (default hostname-pid-random)
    WORKER_CONCURRENCY: Concurrent claim slots
    DATABASE_URL / POSTGRES_*: Database connection
    PROVIDERS_DIR: Provider catalog directory
    HANDLER_MODULES: Comma-separated extra node type modules
    PORT: Health server port (default 8000)
"""

import asyncio
import os
import sys
from typing import Optional

from aiohttp import web

from core.config import get_defaults
from core.logging import ComponentType, configure_logging, get_logger
from handlers import build_registry
from orchestrator import build_engine
from repositories import close_pool, create_repositories
from worker.consumer import QueueConsumer, install_signal_handlers
from __version__ import __version__, BUILD_DATE

configure_logging(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    json_output=os.environ.get("LOG_FORMAT", "").lower() == "json",
)
logger = get_logger(__name__, ComponentType.WORKER)

# Worker state for health checks
_worker_healthy = True
_worker_status = "starting"
_consumer: Optional[QueueConsumer] = None


# ============================================================================
# HEALTH SERVER (for container probes)
# ============================================================================

async def health_handler(request):
    """
    Health check endpoint.

    Returns version and consumer status.
    """
    response_data = {
        "status": "healthy" if _worker_healthy else "unhealthy",
        "worker_status": _worker_status,
        "version": __version__,
        "build_date": BUILD_DATE,
        "worker_id": _consumer.worker_id if _consumer else "unknown",
        "consuming": _consumer.is_running if _consumer else False,
    }
    if _consumer:
        response_data["stats"] = _consumer.stats

    if _worker_healthy:
        return web.json_response(response_data)
    return web.json_response(response_data, status=503)


def create_health_app() -> web.Application:
    app = web.Application()
    app.router.add_get("/", health_handler)
    app.router.add_get("/health", health_handler)
    app.router.add_get("/livez", health_handler)
    app.router.add_get("/readyz", health_handler)
    return app


async def start_health_server(port: int = 8000) -> web.AppRunner:
    """Start minimal HTTP server for health probes."""
    runner = web.AppRunner(create_health_app())
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    logger.info(f"Health server started on port {port}")
    return runner


# ============================================================================
# MAIN
# ============================================================================

async def main() -> None:
    """Main entry point."""
    global _worker_healthy, _worker_status, _consumer

    logger.info("=" * 60)
    logger.info(f"genflow worker starting v{__version__}")
    logger.info("=" * 60)

    health_port = int(os.environ.get("PORT", "8000"))
    health_runner = await start_health_server(health_port)

    defaults = get_defaults()
    logger.info(f"Worker ID: {defaults.worker.worker_id}")
    logger.info(f"Concurrency: {defaults.worker.concurrency}")

    if os.environ.get("STORAGE_BACKEND", "postgres").lower() != "postgres":
        # An in-memory queue is private to one process
        logger.error("Standalone workers need STORAGE_BACKEND=postgres")
        _worker_healthy = False
        _worker_status = "no_database"
        await health_runner.cleanup()
        sys.exit(1)

    try:
        repos = await create_repositories("postgres")
        registry = build_registry()
        engine = build_engine(repos, registry, defaults)
        _consumer = QueueConsumer(repos, engine.dispatcher, defaults.queue, defaults.worker)
        install_signal_handlers(_consumer)
        _worker_status = "running"
        await _consumer.run()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.exception(f"Worker failed: {e}")
        _worker_healthy = False
        _worker_status = f"error: {str(e)[:100]}"
        sys.exit(1)
    finally:
        await close_pool()
        await health_runner.cleanup()

    logger.info("genflow worker stopped")


def run() -> None:
    """Synchronous entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
