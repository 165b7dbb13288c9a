# ============================================================================
# EXECUTION REPOSITORY
# ============================================================================
# STATUS: Core - WorkflowExecution persistence
# PURPOSE: Database access for workflow_executions (and owned node tasks
#          on deletion)
# CREATED: 19 OCT 2026
# ============================================================================
"""
Execution Repository

CRUD and compare-and-swap status updates for workflow executions.

Terminal transitions are conditional on the current status being
non-terminal, so exactly one caller observes the transition and
stamps completed_at. Progress only ever moves up (GREATEST).
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Json
from psycopg_pool import AsyncConnectionPool

from core.contracts import ExecutionStatus
from core.models import WorkflowExecution, WorkflowGraph
from .database import TABLE_EXECUTIONS, TABLE_NODE_TASKS

logger = logging.getLogger(__name__)


class ExecutionRepository:
    """Repository for WorkflowExecution entities."""

    def __init__(self, pool: AsyncConnectionPool):
        self.pool = pool

    async def create(self, execution: WorkflowExecution) -> WorkflowExecution:
        """
        Create a new execution.

        Args:
            execution: WorkflowExecution instance to persist

        Returns:
            Created execution
        """
        async with self.pool.connection() as conn:
            await conn.execute(
                sql.SQL("""
                INSERT INTO {} (
                    id, workflow_id, status, progress, graph, input_params,
                    error_message, created_at, started_at, completed_at, updated_at
                ) VALUES (
                    %(id)s, %(workflow_id)s, %(status)s, %(progress)s, %(graph)s,
                    %(input_params)s, %(error_message)s, %(created_at)s,
                    %(started_at)s, %(completed_at)s, %(updated_at)s
                )
                """).format(TABLE_EXECUTIONS),
                {
                    "id": execution.id,
                    "workflow_id": execution.workflow_id,
                    "status": execution.status.value,
                    "progress": execution.progress,
                    "graph": Json(execution.graph.model_dump()),
                    "input_params": Json(execution.input_params),
                    "error_message": execution.error_message,
                    "created_at": execution.created_at,
                    "started_at": execution.started_at,
                    "completed_at": execution.completed_at,
                    "updated_at": execution.updated_at,
                },
            )
            logger.debug(f"Created execution {execution.id} for workflow {execution.workflow_id}")
            return execution

    async def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        """Get an execution by id."""
        async with self.pool.connection() as conn:
            conn.row_factory = dict_row
            result = await conn.execute(
                sql.SQL("SELECT * FROM {} WHERE id = %s").format(TABLE_EXECUTIONS),
                (execution_id,),
            )
            row = await result.fetchone()
            return self._row_to_execution(row) if row else None

    async def mark_running(self, execution_id: str, now: Optional[datetime] = None) -> bool:
        """
        PENDING -> RUNNING, stamping started_at.

        Returns:
            True if this call made the transition
        """
        now = now or datetime.now(timezone.utc)
        async with self.pool.connection() as conn:
            result = await conn.execute(
                sql.SQL("""
                UPDATE {}
                SET status = 'running', started_at = COALESCE(started_at, %(now)s),
                    updated_at = %(now)s
                WHERE id = %(id)s AND status = 'pending'
                """).format(TABLE_EXECUTIONS),
                {"id": execution_id, "now": now},
            )
            return result.rowcount > 0

    async def update_progress(self, execution_id: str, progress: int) -> bool:
        """
        Raise progress of a non-terminal execution; never lowers it.

        Returns:
            True if a row was updated
        """
        async with self.pool.connection() as conn:
            result = await conn.execute(
                sql.SQL("""
                UPDATE {}
                SET progress = GREATEST(progress, %(progress)s), updated_at = NOW()
                WHERE id = %(id)s
                  AND status IN ('pending', 'running')
                  AND progress < %(progress)s
                """).format(TABLE_EXECUTIONS),
                {"id": execution_id, "progress": progress},
            )
            return result.rowcount > 0

    async def finalize(
        self,
        execution_id: str,
        status: ExecutionStatus,
        progress: int,
        error_message: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Move a non-terminal execution to COMPLETED or FAILED.

        Compare-and-swap on the previous status: only the first caller
        wins, so completed_at is stamped once.

        Returns:
            True if this call made the transition
        """
        now = now or datetime.now(timezone.utc)
        async with self.pool.connection() as conn:
            result = await conn.execute(
                sql.SQL("""
                UPDATE {}
                SET status = %(status)s,
                    progress = GREATEST(progress, %(progress)s),
                    error_message = %(error_message)s,
                    started_at = COALESCE(started_at, %(now)s),
                    completed_at = %(now)s,
                    updated_at = %(now)s
                WHERE id = %(id)s AND status IN ('pending', 'running')
                """).format(TABLE_EXECUTIONS),
                {
                    "id": execution_id,
                    "status": status.value,
                    "progress": progress,
                    "error_message": error_message[:2000] if error_message else None,
                    "now": now,
                },
            )
            return result.rowcount > 0

    async def cancel(self, execution_id: str, now: Optional[datetime] = None) -> bool:
        """
        PENDING/RUNNING -> CANCELLED.

        Returns:
            True if this call cancelled the execution
        """
        now = now or datetime.now(timezone.utc)
        async with self.pool.connection() as conn:
            result = await conn.execute(
                sql.SQL("""
                UPDATE {}
                SET status = 'cancelled', completed_at = %(now)s, updated_at = %(now)s
                WHERE id = %(id)s AND status IN ('pending', 'running')
                """).format(TABLE_EXECUTIONS),
                {"id": execution_id, "now": now},
            )
            return result.rowcount > 0

    async def list_by_status(
        self,
        status: ExecutionStatus,
        limit: int = 100,
    ) -> List[WorkflowExecution]:
        """Executions in one status, oldest first."""
        async with self.pool.connection() as conn:
            conn.row_factory = dict_row
            result = await conn.execute(
                sql.SQL("""
                SELECT * FROM {}
                WHERE status = %s
                ORDER BY created_at
                LIMIT %s
                """).format(TABLE_EXECUTIONS),
                (status.value, limit),
            )
            rows = await result.fetchall()
            return [self._row_to_execution(row) for row in rows]

    async def list_recent(self, limit: int = 20) -> List[WorkflowExecution]:
        """Most recently created executions first."""
        async with self.pool.connection() as conn:
            conn.row_factory = dict_row
            result = await conn.execute(
                sql.SQL("SELECT * FROM {} ORDER BY created_at DESC LIMIT %s").format(TABLE_EXECUTIONS),
                (limit,),
            )
            rows = await result.fetchall()
            return [self._row_to_execution(row) for row in rows]

    async def purge(self, status: ExecutionStatus, older_than: datetime) -> Tuple[int, int]:
        """
        Delete terminal executions of one status finished before older_than.

        The execution owns its node tasks: tasks are deleted first, then
        the executions, in one transaction.

        Returns:
            (executions_deleted, node_tasks_deleted)
        """
        if not status.is_terminal():
            raise ValueError(f"Refusing to purge non-terminal status {status.value}")

        async with self.pool.connection() as conn:
            async with conn.transaction():
                tasks = await conn.execute(
                    sql.SQL("""
                    DELETE FROM {}
                    WHERE execution_id IN (
                        SELECT id FROM {}
                        WHERE status = %(status)s AND completed_at < %(cutoff)s
                    )
                    """).format(TABLE_NODE_TASKS, TABLE_EXECUTIONS),
                    {"status": status.value, "cutoff": older_than},
                )
                executions = await conn.execute(
                    sql.SQL("""
                    DELETE FROM {}
                    WHERE status = %(status)s AND completed_at < %(cutoff)s
                    """).format(TABLE_EXECUTIONS),
                    {"status": status.value, "cutoff": older_than},
                )
                return executions.rowcount, tasks.rowcount

    def _row_to_execution(self, row: Dict[str, Any]) -> WorkflowExecution:
        """Convert database row to WorkflowExecution model."""
        return WorkflowExecution(
            id=row["id"],
            workflow_id=row["workflow_id"],
            status=ExecutionStatus(row["status"]),
            progress=row["progress"],
            graph=WorkflowGraph.model_validate(row["graph"]),
            input_params=row.get("input_params") or {},
            error_message=row.get("error_message"),
            created_at=row["created_at"],
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
            updated_at=row["updated_at"],
        )


__all__ = ["ExecutionRepository"]
