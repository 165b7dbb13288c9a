# ============================================================================
# JOB QUEUE REPOSITORY
# ============================================================================
# STATUS: Core - Durable lease-based priority queue
# PURPOSE: Enqueue, claim, complete and fail queue jobs in PostgreSQL
# CREATED: 19 OCT 2026
# ============================================================================
"""
Job Queue Repository

PostgreSQL-backed work queue. Workers compete for jobs with claim();
the CTE + FOR UPDATE SKIP LOCKED + UPDATE ... RETURNING pattern makes
each claim a single atomic read-modify-write, so two workers can never
both receive the same job while its lease is live.

Ordering: priority DESC, then id ASC (FIFO within a priority).

The queue has no knowledge of workflows; callers put whatever they
need into payload.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Json
from psycopg_pool import AsyncConnectionPool

from core.contracts import QueueJobStatus
from core.models import QueueJob
from .database import TABLE_JOB_QUEUE

logger = logging.getLogger(__name__)


class JobQueueRepository:
    """Repository for QueueJob entities."""

    def __init__(self, pool: AsyncConnectionPool):
        self.pool = pool

    async def enqueue(
        self,
        task_type: str,
        payload: Dict[str, Any],
        priority: int = 0,
        max_attempts: int = 3,
        delay_seconds: int = 0,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Add a job to the queue.

        No uniqueness constraint: callers must not enqueue duplicate work.

        Args:
            task_type: Job discriminator
            payload: Opaque JSON payload
            priority: Higher is claimed first
            max_attempts: Claims allowed before the job fails for good
            delay_seconds: Job is not claimable before now + delay
            now: Current time (defaults to now, UTC)

        Returns:
            New job id
        """
        now = now or datetime.now(timezone.utc)
        async with self.pool.connection() as conn:
            conn.row_factory = dict_row
            result = await conn.execute(
                sql.SQL("""
                INSERT INTO {} (
                    task_type, payload, status, priority, attempts, max_attempts,
                    available_at, created_at, updated_at
                ) VALUES (
                    %(task_type)s, %(payload)s, 'pending', %(priority)s, 0,
                    %(max_attempts)s,
                    %(now)s + %(delay)s * INTERVAL '1 second',
                    %(now)s, %(now)s
                )
                RETURNING id
                """).format(TABLE_JOB_QUEUE),
                {
                    "task_type": task_type,
                    "payload": Json(payload),
                    "priority": priority,
                    "max_attempts": max_attempts,
                    "delay": delay_seconds,
                    "now": now,
                },
            )
            row = await result.fetchone()
            job_id = row["id"]
            logger.debug(f"Enqueued {task_type} job {job_id} (priority={priority})")
            return job_id

    async def claim(
        self,
        worker_id: str,
        lease_seconds: int,
        now: Optional[datetime] = None,
    ) -> Optional[QueueJob]:
        """
        Atomically lease the highest-priority claimable job.

        Claimable means pending and available, or processing with an
        expired lease and attempts remaining. The claim increments
        attempts.

        Args:
            worker_id: Identity of the claiming worker
            lease_seconds: Lease duration used to detect expired leases
            now: Current time (defaults to now, UTC)

        Returns:
            The leased QueueJob, or None if nothing is claimable
        """
        now = now or datetime.now(timezone.utc)
        async with self.pool.connection() as conn:
            conn.row_factory = dict_row
            result = await conn.execute(
                sql.SQL("""
                WITH candidate AS (
                    SELECT id FROM {}
                    WHERE (status = 'pending' AND available_at <= %(now)s)
                       OR (status = 'processing'
                           AND attempts < max_attempts
                           AND locked_at < %(now)s - %(lease)s * INTERVAL '1 second')
                    ORDER BY priority DESC, id ASC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE {} AS q
                SET status = 'processing',
                    locked_by = %(worker_id)s,
                    locked_at = %(now)s,
                    attempts = q.attempts + 1,
                    updated_at = %(now)s
                FROM candidate
                WHERE q.id = candidate.id
                RETURNING q.*
                """).format(TABLE_JOB_QUEUE, TABLE_JOB_QUEUE),
                {"now": now, "lease": lease_seconds, "worker_id": worker_id},
            )
            row = await result.fetchone()
            if row is None:
                return None

            job = self._row_to_job(row)
            logger.debug(
                f"Worker {worker_id} claimed job {job.id} "
                f"(attempt {job.attempts}/{job.max_attempts})"
            )
            return job

    async def complete(self, job_id: int, worker_id: Optional[str] = None) -> bool:
        """
        Mark a leased job completed.

        Args:
            job_id: Job id
            worker_id: If given, only the current lease holder may complete

        Returns:
            True if the job moved to completed
        """
        now = datetime.now(timezone.utc)
        lease_guard = " AND locked_by = %(worker_id)s" if worker_id is not None else ""
        async with self.pool.connection() as conn:
            query = sql.SQL("""
                UPDATE {}
                SET status = 'completed', locked_by = NULL, locked_at = NULL,
                    updated_at = %(now)s
                WHERE id = %(id)s AND status = 'processing'
            """ + lease_guard)
            result = await conn.execute(
                query.format(TABLE_JOB_QUEUE),
                {"id": job_id, "now": now, "worker_id": worker_id},
            )
            if result.rowcount == 0:
                logger.warning(f"Job {job_id} not completed: no longer leased by {worker_id or 'anyone'}")
                return False
            return True

    async def fail(
        self,
        job_id: int,
        reason: str,
        retryable: bool = True,
        backoff_seconds: int = 0,
        worker_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[QueueJobStatus]:
        """
        Record a failed attempt.

        While retryable and attempts < max_attempts the job goes back to
        pending (claimable after backoff_seconds); otherwise it becomes
        terminal failed.

        Args:
            job_id: Job id
            reason: Error text stored in last_error
            retryable: False forces a terminal failure
            backoff_seconds: Delay before a retry is claimable
            worker_id: If given, only the current lease holder may fail it
            now: Current time (defaults to now, UTC)

        Returns:
            Resulting status, or None if the job was not leased
        """
        now = now or datetime.now(timezone.utc)
        lease_guard = " AND locked_by = %(worker_id)s" if worker_id is not None else ""
        async with self.pool.connection() as conn:
            conn.row_factory = dict_row
            query = sql.SQL("""
                UPDATE {}
                SET status = CASE
                        WHEN %(retryable)s AND attempts < max_attempts THEN 'pending'
                        ELSE 'failed'
                    END,
                    available_at = CASE
                        WHEN %(retryable)s AND attempts < max_attempts
                        THEN %(now)s + %(backoff)s * INTERVAL '1 second'
                        ELSE available_at
                    END,
                    locked_by = NULL,
                    locked_at = NULL,
                    last_error = LEFT(%(reason)s, 2000),
                    updated_at = %(now)s
                WHERE id = %(id)s AND status = 'processing'
            """ + lease_guard + " RETURNING status, attempts, max_attempts")
            result = await conn.execute(
                query.format(TABLE_JOB_QUEUE),
                {
                    "id": job_id,
                    "reason": reason,
                    "retryable": retryable,
                    "backoff": backoff_seconds,
                    "worker_id": worker_id,
                    "now": now,
                },
            )
            row = await result.fetchone()
            if row is None:
                logger.warning(f"Job {job_id} not failed: no longer leased")
                return None

            status = QueueJobStatus(row["status"])
            if status == QueueJobStatus.FAILED:
                logger.warning(
                    f"Job {job_id} failed permanently after "
                    f"{row['attempts']}/{row['max_attempts']} attempts: {reason}"
                )
            else:
                logger.info(f"Job {job_id} will retry in {backoff_seconds}s: {reason}")
            return status

    async def expire_exhausted(
        self,
        lease_seconds: int,
        now: Optional[datetime] = None,
    ) -> List[QueueJob]:
        """
        Fail processing jobs whose lease expired with no attempts left.

        These can never be claimed again, so without this they would sit
        in processing forever.

        Returns:
            Jobs moved to failed
        """
        now = now or datetime.now(timezone.utc)
        async with self.pool.connection() as conn:
            conn.row_factory = dict_row
            result = await conn.execute(
                sql.SQL("""
                UPDATE {}
                SET status = 'failed',
                    last_error = 'Lease expired with no attempts left',
                    locked_by = NULL,
                    locked_at = NULL,
                    updated_at = %(now)s
                WHERE status = 'processing'
                  AND attempts >= max_attempts
                  AND locked_at < %(now)s - %(lease)s * INTERVAL '1 second'
                RETURNING *
                """).format(TABLE_JOB_QUEUE),
                {"now": now, "lease": lease_seconds},
            )
            rows = await result.fetchall()
            return [self._row_to_job(row) for row in rows]

    async def get(self, job_id: int) -> Optional[QueueJob]:
        """Get a job by id."""
        async with self.pool.connection() as conn:
            conn.row_factory = dict_row
            result = await conn.execute(
                sql.SQL("SELECT * FROM {} WHERE id = %s").format(TABLE_JOB_QUEUE),
                (job_id,),
            )
            row = await result.fetchone()
            return self._row_to_job(row) if row else None

    async def stats(self) -> Dict[str, int]:
        """
        Count jobs by status.

        Returns:
            Dict mapping every status to its count (zeros included)
        """
        async with self.pool.connection() as conn:
            conn.row_factory = dict_row
            result = await conn.execute(
                sql.SQL("""
                SELECT status, COUNT(*) AS count
                FROM {}
                GROUP BY status
                """).format(TABLE_JOB_QUEUE),
            )
            rows = await result.fetchall()
            counts = {status.value: 0 for status in QueueJobStatus}
            counts.update({row["status"]: row["count"] for row in rows})
            return counts

    async def list_recent(self, limit: int = 10) -> List[QueueJob]:
        """Most recently created jobs first."""
        async with self.pool.connection() as conn:
            conn.row_factory = dict_row
            result = await conn.execute(
                sql.SQL("SELECT * FROM {} ORDER BY id DESC LIMIT %s").format(TABLE_JOB_QUEUE),
                (limit,),
            )
            rows = await result.fetchall()
            return [self._row_to_job(row) for row in rows]

    async def purge(self, older_than: datetime) -> int:
        """
        Delete completed/failed jobs last updated before older_than.

        Returns:
            Number of jobs deleted
        """
        async with self.pool.connection() as conn:
            result = await conn.execute(
                sql.SQL("""
                DELETE FROM {}
                WHERE status IN ('completed', 'failed') AND updated_at < %s
                """).format(TABLE_JOB_QUEUE),
                (older_than,),
            )
            return result.rowcount

    def _row_to_job(self, row: Dict[str, Any]) -> QueueJob:
        """Convert database row to QueueJob model."""
        return QueueJob(
            id=row["id"],
            task_type=row["task_type"],
            payload=row.get("payload") or {},
            status=QueueJobStatus(row["status"]),
            priority=row["priority"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            locked_by=row.get("locked_by"),
            locked_at=row.get("locked_at"),
            available_at=row["available_at"],
            last_error=row.get("last_error"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


__all__ = ["JobQueueRepository"]
