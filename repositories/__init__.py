# ============================================================================
# REPOSITORIES MODULE
# ============================================================================
# STATUS: Data access layer exports
# PURPOSE: Storage backends for queue jobs, executions, node tasks, webhooks
# CREATED: 19 OCT 2026
# ============================================================================
"""
Repositories Module

Two interchangeable backends with identical method signatures:
- PostgreSQL (psycopg3 async pool) for production
- In-memory for tests and single-process local runs

Usage:
    from repositories import create_postgres_repositories, create_memory_repositories

    repos = create_postgres_repositories(pool)
    job_id = await repos.queue.enqueue("node_execution", {...})
"""

import os
from dataclasses import dataclass
from typing import Any, Optional

from psycopg_pool import AsyncConnectionPool

from .database import init_pool, get_pool, close_pool, get_connection_string
from .schema import deploy_schema, generate_ddl
from .job_queue_repo import JobQueueRepository
from .execution_repo import ExecutionRepository
from .node_task_repo import NodeTaskRepository
from .webhook_repo import WebhookEventRepository
from .memory import (
    InMemoryStore,
    InMemoryJobQueueRepository,
    InMemoryExecutionRepository,
    InMemoryNodeTaskRepository,
    InMemoryWebhookEventRepository,
)


@dataclass
class Repositories:
    """The four stores every engine component works against."""
    queue: Any
    executions: Any
    tasks: Any
    webhooks: Any
    backend: str = "postgres"


def create_postgres_repositories(pool: AsyncConnectionPool) -> Repositories:
    """Build PostgreSQL-backed repositories sharing one pool."""
    return Repositories(
        queue=JobQueueRepository(pool),
        executions=ExecutionRepository(pool),
        tasks=NodeTaskRepository(pool),
        webhooks=WebhookEventRepository(pool),
        backend="postgres",
    )


def create_memory_repositories(store: InMemoryStore = None) -> Repositories:
    """Build in-memory repositories sharing one store."""
    store = store or InMemoryStore()
    return Repositories(
        queue=InMemoryJobQueueRepository(store),
        executions=InMemoryExecutionRepository(store),
        tasks=InMemoryNodeTaskRepository(store),
        webhooks=InMemoryWebhookEventRepository(store),
        backend="memory",
    )


async def create_repositories(backend: Optional[str] = None) -> Repositories:
    """
    Build repositories for the configured backend.

    Args:
        backend: "postgres" or "memory" (defaults to STORAGE_BACKEND, then postgres)
    """
    backend = (backend or os.environ.get("STORAGE_BACKEND", "postgres")).lower()
    if backend == "memory":
        return create_memory_repositories()
    if backend == "postgres":
        return create_postgres_repositories(await init_pool())
    raise ValueError(f"Unknown STORAGE_BACKEND: {backend}")


__all__ = [
    # Database
    "init_pool",
    "get_pool",
    "close_pool",
    "get_connection_string",
    "deploy_schema",
    "generate_ddl",
    # PostgreSQL repositories
    "JobQueueRepository",
    "ExecutionRepository",
    "NodeTaskRepository",
    "WebhookEventRepository",
    # In-memory repositories
    "InMemoryStore",
    "InMemoryJobQueueRepository",
    "InMemoryExecutionRepository",
    "InMemoryNodeTaskRepository",
    "InMemoryWebhookEventRepository",
    # Bundles
    "Repositories",
    "create_postgres_repositories",
    "create_memory_repositories",
    "create_repositories",
]
