# ============================================================================
# SCHEMA DEPLOYMENT
# ============================================================================
# STATUS: Infrastructure - DDL for the engine's tables
# PURPOSE: Idempotent CREATE statements and deployment helper
# CREATED: 19 OCT 2026
# ============================================================================
"""
Schema Deployment

DDL for the four engine tables. Every statement is CREATE ... IF NOT
EXISTS, so deploy_schema() is safe to run repeatedly (startup with
AUTO_BOOTSTRAP_SCHEMA=true, or the bootstrap admin endpoint).

There are no foreign keys between node_tasks and workflow_executions:
the execution owns its tasks and the retention job deletes tasks
before their execution explicitly.
"""

import logging
from typing import List

from psycopg import sql
from psycopg_pool import AsyncConnectionPool

from .database import (
    SCHEMA,
    TABLE_JOB_QUEUE,
    TABLE_EXECUTIONS,
    TABLE_NODE_TASKS,
    TABLE_WEBHOOK_EVENTS,
)

logger = logging.getLogger(__name__)


def _index(name: str, table: sql.Identifier, body: str) -> sql.Composed:
    return sql.SQL("CREATE INDEX IF NOT EXISTS {} ON {} " + body).format(
        sql.Identifier(name), table
    )


def generate_ddl() -> List[sql.Composable]:
    """
    Build the ordered list of DDL statements.

    Returns:
        Statements ready for conn.execute()
    """
    return [
        sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(sql.Identifier(SCHEMA)),

        # Queue: workload-agnostic, references work only through payload
        sql.SQL("""
        CREATE TABLE IF NOT EXISTS {} (
            id BIGSERIAL PRIMARY KEY,
            task_type VARCHAR(64) NOT NULL,
            payload JSONB NOT NULL DEFAULT '{{}}',
            status VARCHAR(16) NOT NULL DEFAULT 'pending',
            priority INTEGER NOT NULL DEFAULT 0,
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            locked_by VARCHAR(128),
            locked_at TIMESTAMPTZ,
            available_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            last_error VARCHAR(2000),
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """).format(TABLE_JOB_QUEUE),
        _index(
            "idx_job_queue_claim", TABLE_JOB_QUEUE,
            "(status, priority DESC, id) WHERE status IN ('pending', 'processing')",
        ),

        sql.SQL("""
        CREATE TABLE IF NOT EXISTS {} (
            id VARCHAR(64) PRIMARY KEY,
            workflow_id VARCHAR(64) NOT NULL,
            status VARCHAR(16) NOT NULL DEFAULT 'pending',
            progress INTEGER NOT NULL DEFAULT 0,
            graph JSONB NOT NULL,
            input_params JSONB NOT NULL DEFAULT '{{}}',
            error_message VARCHAR(2000),
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            started_at TIMESTAMPTZ,
            completed_at TIMESTAMPTZ,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT chk_execution_progress CHECK (progress BETWEEN 0 AND 100)
        )
        """).format(TABLE_EXECUTIONS),
        _index("idx_execution_status", TABLE_EXECUTIONS, "(status, completed_at)"),
        _index("idx_execution_created", TABLE_EXECUTIONS, "(created_at DESC)"),

        sql.SQL("""
        CREATE TABLE IF NOT EXISTS {} (
            id VARCHAR(64) PRIMARY KEY,
            execution_id VARCHAR(64) NOT NULL,
            node_id VARCHAR(64) NOT NULL,
            node_type VARCHAR(64) NOT NULL,
            status VARCHAR(16) NOT NULL DEFAULT 'pending',
            optional BOOLEAN NOT NULL DEFAULT false,
            external_task_id VARCHAR(255),
            resolved_external_id VARCHAR(255),
            provider VARCHAR(64),
            input_data JSONB NOT NULL DEFAULT '{{}}',
            output_data JSONB,
            error_message VARCHAR(2000),
            attempts INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            queued_at TIMESTAMPTZ,
            started_at TIMESTAMPTZ,
            completed_at TIMESTAMPTZ,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_node_task_execution_node UNIQUE (execution_id, node_id)
        )
        """).format(TABLE_NODE_TASKS),
        _index("idx_node_task_execution", TABLE_NODE_TASKS, "(execution_id)"),
        _index(
            "idx_node_task_external", TABLE_NODE_TASKS,
            "(external_task_id) WHERE external_task_id IS NOT NULL",
        ),
        _index(
            "idx_node_task_resolved_external", TABLE_NODE_TASKS,
            "(resolved_external_id) WHERE resolved_external_id IS NOT NULL",
        ),
        _index(
            "idx_node_task_processing", TABLE_NODE_TASKS,
            "(started_at) WHERE status = 'processing'",
        ),

        sql.SQL("""
        CREATE TABLE IF NOT EXISTS {} (
            id BIGSERIAL PRIMARY KEY,
            source VARCHAR(64) NOT NULL,
            external_id VARCHAR(255),
            payload TEXT NOT NULL DEFAULT '',
            processed BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """).format(TABLE_WEBHOOK_EVENTS),
        _index("idx_webhook_created", TABLE_WEBHOOK_EVENTS, "(created_at DESC)"),
        _index(
            "idx_webhook_unprocessed", TABLE_WEBHOOK_EVENTS,
            "(created_at) WHERE processed = false",
        ),
    ]


async def deploy_schema(pool: AsyncConnectionPool, dry_run: bool = False) -> List[str]:
    """
    Deploy the schema in a single transaction.

    Args:
        pool: Database connection pool
        dry_run: Render the statements without executing them

    Returns:
        Rendered SQL of every statement
    """
    statements = generate_ddl()
    async with pool.connection() as conn:
        rendered = [stmt.as_string(conn) for stmt in statements]
        if dry_run:
            return rendered
        async with conn.transaction():
            for stmt in statements:
                await conn.execute(stmt)

    logger.info(f"Schema {SCHEMA} deployed ({len(statements)} statements)")
    return rendered


__all__ = ["generate_ddl", "deploy_schema"]
