# ============================================================================
# NODE TASK REPOSITORY
# ============================================================================
# STATUS: Core - NodeTask CRUD and state machine transitions
# PURPOSE: Database access for node_tasks
# CREATED: 19 OCT 2026
# ============================================================================
"""
Node Task Repository

Every transition is a single conditional UPDATE keyed by id plus the
expected prior status (compare-and-swap). A zero rowcount means another
actor won the race; callers treat that as a benign no-op.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Json
from psycopg_pool import AsyncConnectionPool

from core.contracts import NodeTaskStatus
from core.models import NodeTask
from .database import TABLE_NODE_TASKS

logger = logging.getLogger(__name__)


class NodeTaskRepository:
    """Repository for NodeTask entities."""

    def __init__(self, pool: AsyncConnectionPool):
        self.pool = pool

    async def create_many(self, tasks: List[NodeTask]) -> List[NodeTask]:
        """
        Create node tasks in a single transaction.

        Args:
            tasks: NodeTask instances (one per graph node)

        Returns:
            List of created tasks
        """
        if not tasks:
            return []

        async with self.pool.connection() as conn:
            async with conn.transaction():
                async with conn.cursor() as cur:
                    await cur.executemany(
                        sql.SQL("""
                        INSERT INTO {} (
                            id, execution_id, node_id, node_type, status, optional,
                            input_data, attempts, created_at, updated_at
                        ) VALUES (
                            %(id)s, %(execution_id)s, %(node_id)s, %(node_type)s,
                            %(status)s, %(optional)s, %(input_data)s, %(attempts)s,
                            %(created_at)s, %(updated_at)s
                        )
                        """).format(TABLE_NODE_TASKS),
                        [
                            {
                                "id": task.id,
                                "execution_id": task.execution_id,
                                "node_id": task.node_id,
                                "node_type": task.node_type,
                                "status": task.status.value,
                                "optional": task.optional,
                                "input_data": Json(task.input_data),
                                "attempts": task.attempts,
                                "created_at": task.created_at,
                                "updated_at": task.updated_at,
                            }
                            for task in tasks
                        ],
                    )
        logger.info(f"Created {len(tasks)} node tasks for execution {tasks[0].execution_id}")
        return tasks

    async def get(self, task_id: str) -> Optional[NodeTask]:
        """Get a node task by id."""
        async with self.pool.connection() as conn:
            conn.row_factory = dict_row
            result = await conn.execute(
                sql.SQL("SELECT * FROM {} WHERE id = %s").format(TABLE_NODE_TASKS),
                (task_id,),
            )
            row = await result.fetchone()
            return self._row_to_task(row) if row else None

    async def list_for_execution(self, execution_id: str) -> List[NodeTask]:
        """All node tasks of one execution, in creation order."""
        async with self.pool.connection() as conn:
            conn.row_factory = dict_row
            result = await conn.execute(
                sql.SQL("""
                SELECT * FROM {}
                WHERE execution_id = %s
                ORDER BY created_at, node_id
                """).format(TABLE_NODE_TASKS),
                (execution_id,),
            )
            rows = await result.fetchall()
            return [self._row_to_task(row) for row in rows]

    # =========================================================================
    # STATE TRANSITIONS (compare-and-swap)
    # =========================================================================

    async def mark_queued(self, task_id: str, now: Optional[datetime] = None) -> bool:
        """PENDING -> QUEUED. Only the winner may enqueue the queue job."""
        now = now or datetime.now(timezone.utc)
        async with self.pool.connection() as conn:
            result = await conn.execute(
                sql.SQL("""
                UPDATE {}
                SET status = 'queued', queued_at = %(now)s, updated_at = %(now)s
                WHERE id = %(id)s AND status = 'pending'
                """).format(TABLE_NODE_TASKS),
                {"id": task_id, "now": now},
            )
            return result.rowcount > 0

    async def mark_processing(
        self,
        task_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[NodeTask]:
        """
        QUEUED -> PROCESSING, or restart a PROCESSING task that never got
        an external id (its worker died before submitting).

        Returns:
            Updated task, or None if the guard failed
        """
        now = now or datetime.now(timezone.utc)
        async with self.pool.connection() as conn:
            conn.row_factory = dict_row
            result = await conn.execute(
                sql.SQL("""
                UPDATE {}
                SET status = 'processing',
                    attempts = attempts + 1,
                    started_at = %(now)s,
                    updated_at = %(now)s
                WHERE id = %(id)s
                  AND (status = 'queued'
                       OR (status = 'processing' AND external_task_id IS NULL))
                RETURNING *
                """).format(TABLE_NODE_TASKS),
                {"id": task_id, "now": now},
            )
            row = await result.fetchone()
            return self._row_to_task(row) if row else None

    async def set_external_id(
        self,
        task_id: str,
        external_task_id: str,
        provider: Optional[str] = None,
    ) -> bool:
        """Record the provider task id on a PROCESSING task that has none."""
        async with self.pool.connection() as conn:
            result = await conn.execute(
                sql.SQL("""
                UPDATE {}
                SET external_task_id = %(external_task_id)s,
                    provider = %(provider)s,
                    updated_at = NOW()
                WHERE id = %(id)s AND status = 'processing' AND external_task_id IS NULL
                """).format(TABLE_NODE_TASKS),
                {"id": task_id, "external_task_id": external_task_id, "provider": provider},
            )
            return result.rowcount > 0

    async def requeue(self, task_id: str, now: Optional[datetime] = None) -> bool:
        """PROCESSING -> QUEUED for a transient retry (never once submitted)."""
        now = now or datetime.now(timezone.utc)
        async with self.pool.connection() as conn:
            result = await conn.execute(
                sql.SQL("""
                UPDATE {}
                SET status = 'queued', queued_at = %(now)s, updated_at = %(now)s
                WHERE id = %(id)s AND status = 'processing' AND external_task_id IS NULL
                """).format(TABLE_NODE_TASKS),
                {"id": task_id, "now": now},
            )
            return result.rowcount > 0

    async def finalize(
        self,
        task_id: str,
        status: NodeTaskStatus,
        output_data: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        PROCESSING -> COMPLETED/FAILED, exactly once.

        The external id moves to resolved_external_id so late or duplicate
        callbacks are still recognised.

        Returns:
            True if this call finalized the task
        """
        if status not in (NodeTaskStatus.COMPLETED, NodeTaskStatus.FAILED):
            raise ValueError(f"Finalize status must be completed or failed, got {status}")

        now = now or datetime.now(timezone.utc)
        async with self.pool.connection() as conn:
            result = await conn.execute(
                sql.SQL("""
                UPDATE {}
                SET status = %(status)s,
                    output_data = %(output_data)s,
                    error_message = %(error_message)s,
                    resolved_external_id = COALESCE(external_task_id, resolved_external_id),
                    external_task_id = NULL,
                    completed_at = %(now)s,
                    updated_at = %(now)s
                WHERE id = %(id)s AND status = 'processing'
                """).format(TABLE_NODE_TASKS),
                {
                    "id": task_id,
                    "status": status.value,
                    "output_data": Json(output_data) if output_data is not None else None,
                    "error_message": error_message[:2000] if error_message else None,
                    "now": now,
                },
            )
            if result.rowcount == 0:
                logger.debug(f"Finalize of task {task_id} lost the race (no longer processing)")
                return False
            return True

    async def skip(
        self,
        task_id: str,
        include_queued: bool = False,
        now: Optional[datetime] = None,
    ) -> bool:
        """PENDING (or QUEUED, for cancellation) -> SKIPPED."""
        now = now or datetime.now(timezone.utc)
        statuses = ["pending", "queued"] if include_queued else ["pending"]
        async with self.pool.connection() as conn:
            result = await conn.execute(
                sql.SQL("""
                UPDATE {}
                SET status = 'skipped', completed_at = %(now)s, updated_at = %(now)s
                WHERE id = %(id)s AND status = ANY(%(statuses)s)
                """).format(TABLE_NODE_TASKS),
                {"id": task_id, "statuses": statuses, "now": now},
            )
            return result.rowcount > 0

    async def skip_open_for_execution(self, execution_id: str, now: Optional[datetime] = None) -> int:
        """Skip every PENDING/QUEUED task of an execution (cancellation)."""
        now = now or datetime.now(timezone.utc)
        async with self.pool.connection() as conn:
            result = await conn.execute(
                sql.SQL("""
                UPDATE {}
                SET status = 'skipped', completed_at = %(now)s, updated_at = %(now)s
                WHERE execution_id = %(execution_id)s AND status IN ('pending', 'queued')
                """).format(TABLE_NODE_TASKS),
                {"execution_id": execution_id, "now": now},
            )
            return result.rowcount

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def find_by_external_id(self, external_task_id: str) -> Optional[NodeTask]:
        """
        Find the task correlated with a provider task id.

        Prefers the live (PROCESSING) task; falls back to a task that
        already resolved this id.
        """
        async with self.pool.connection() as conn:
            conn.row_factory = dict_row
            result = await conn.execute(
                sql.SQL("""
                SELECT * FROM {}
                WHERE external_task_id = %(ext)s OR resolved_external_id = %(ext)s
                ORDER BY (external_task_id = %(ext)s) DESC NULLS LAST, updated_at DESC
                LIMIT 1
                """).format(TABLE_NODE_TASKS),
                {"ext": external_task_id},
            )
            row = await result.fetchone()
            return self._row_to_task(row) if row else None

    async def list_processing(
        self,
        started_before: Optional[datetime] = None,
        external_only: bool = False,
        node_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[NodeTask]:
        """
        PROCESSING tasks, oldest start first.

        Args:
            started_before: Only tasks whose started_at is earlier
            external_only: Only tasks awaiting a provider
            node_type: Only tasks of this node type
            limit: Maximum number of tasks to return
        """
        clauses = ["status = 'processing'"]
        params: Dict[str, Any] = {"limit": limit}
        if started_before is not None:
            clauses.append("started_at < %(started_before)s")
            params["started_before"] = started_before
        if external_only:
            clauses.append("external_task_id IS NOT NULL")
        if node_type is not None:
            clauses.append("node_type = %(node_type)s")
            params["node_type"] = node_type

        async with self.pool.connection() as conn:
            conn.row_factory = dict_row
            result = await conn.execute(
                sql.SQL(
                    "SELECT * FROM {} WHERE " + " AND ".join(clauses)
                    + " ORDER BY started_at LIMIT %(limit)s"
                ).format(TABLE_NODE_TASKS),
                params,
            )
            rows = await result.fetchall()
            return [self._row_to_task(row) for row in rows]

    def _row_to_task(self, row: Dict[str, Any]) -> NodeTask:
        """Convert database row to NodeTask model."""
        return NodeTask(
            id=row["id"],
            execution_id=row["execution_id"],
            node_id=row["node_id"],
            node_type=row["node_type"],
            status=NodeTaskStatus(row["status"]),
            optional=row.get("optional", False),
            external_task_id=row.get("external_task_id"),
            resolved_external_id=row.get("resolved_external_id"),
            provider=row.get("provider"),
            input_data=row.get("input_data") or {},
            output_data=row.get("output_data"),
            error_message=row.get("error_message"),
            attempts=row.get("attempts", 0),
            created_at=row["created_at"],
            queued_at=row.get("queued_at"),
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
            updated_at=row["updated_at"],
        )


__all__ = ["NodeTaskRepository"]
