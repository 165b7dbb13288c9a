# ============================================================================
# IN-MEMORY REPOSITORIES
# ============================================================================
# STATUS: Core - Process-local storage backend
# PURPOSE: Same contracts as the PostgreSQL repositories, held in dicts
# CREATED: 19 OCT 2026
# ============================================================================
"""
In-Memory Repositories

Drop-in replacements for the PostgreSQL repositories. Useful for tests
or single-process local runs (STORAGE_BACKEND=memory). Data is not
persisted across process restarts.

All four repositories share one InMemoryStore and one asyncio.Lock;
each method is a single read-modify-write under that lock, which gives
the same atomicity the SQL versions get from conditional UPDATEs.
Models are copied in and out so callers never alias stored state.
"""

import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from core.contracts import ExecutionStatus, NodeTaskStatus, QueueJobStatus
from core.models import NodeTask, QueueJob, WebhookEvent, WorkflowExecution


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStore:
    """Shared state for the in-memory repositories."""

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.jobs: Dict[int, QueueJob] = {}
        self.executions: Dict[str, WorkflowExecution] = {}
        self.tasks: Dict[str, NodeTask] = {}
        self.webhooks: Dict[int, WebhookEvent] = {}
        self.job_ids = itertools.count(1)
        self.webhook_ids = itertools.count(1)


# ============================================================================
# JOB QUEUE
# ============================================================================

class InMemoryJobQueueRepository:
    """Lease-based priority queue held in memory."""

    def __init__(self, store: InMemoryStore):
        self._store = store

    async def enqueue(
        self,
        task_type: str,
        payload: Dict[str, Any],
        priority: int = 0,
        max_attempts: int = 3,
        delay_seconds: int = 0,
        now: Optional[datetime] = None,
    ) -> int:
        now = now or _now()
        async with self._store.lock:
            job_id = next(self._store.job_ids)
            self._store.jobs[job_id] = QueueJob(
                id=job_id,
                task_type=task_type,
                payload=dict(payload),
                priority=priority,
                max_attempts=max_attempts,
                available_at=now + timedelta(seconds=delay_seconds),
                created_at=now,
                updated_at=now,
            )
            return job_id

    async def claim(
        self,
        worker_id: str,
        lease_seconds: int,
        now: Optional[datetime] = None,
    ) -> Optional[QueueJob]:
        now = now or _now()
        async with self._store.lock:
            candidates = [
                job for job in self._store.jobs.values()
                if job.is_claimable(lease_seconds, now)
            ]
            if not candidates:
                return None
            job = min(candidates, key=lambda j: (-j.priority, j.id))
            job.status = QueueJobStatus.PROCESSING
            job.locked_by = worker_id
            job.locked_at = now
            job.attempts += 1
            job.updated_at = now
            return job.model_copy(deep=True)

    async def complete(self, job_id: int, worker_id: Optional[str] = None) -> bool:
        async with self._store.lock:
            job = self._store.jobs.get(job_id)
            if job is None or job.status != QueueJobStatus.PROCESSING:
                return False
            if worker_id is not None and job.locked_by != worker_id:
                return False
            job.status = QueueJobStatus.COMPLETED
            job.locked_by = None
            job.locked_at = None
            job.updated_at = _now()
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
        now = now or _now()
        async with self._store.lock:
            job = self._store.jobs.get(job_id)
            if job is None or job.status != QueueJobStatus.PROCESSING:
                return None
            if worker_id is not None and job.locked_by != worker_id:
                return None
            if retryable and job.has_attempts_left():
                job.status = QueueJobStatus.PENDING
                job.available_at = now + timedelta(seconds=backoff_seconds)
            else:
                job.status = QueueJobStatus.FAILED
            job.locked_by = None
            job.locked_at = None
            job.last_error = reason[:2000]
            job.updated_at = now
            return job.status

    async def expire_exhausted(
        self,
        lease_seconds: int,
        now: Optional[datetime] = None,
    ) -> List[QueueJob]:
        now = now or _now()
        expired = []
        async with self._store.lock:
            for job in self._store.jobs.values():
                if (
                    job.status == QueueJobStatus.PROCESSING
                    and not job.has_attempts_left()
                    and job.lease_expired(lease_seconds, now)
                ):
                    job.status = QueueJobStatus.FAILED
                    job.last_error = "Lease expired with no attempts left"
                    job.locked_by = None
                    job.locked_at = None
                    job.updated_at = now
                    expired.append(job.model_copy(deep=True))
        return expired

    async def get(self, job_id: int) -> Optional[QueueJob]:
        async with self._store.lock:
            job = self._store.jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    async def stats(self) -> Dict[str, int]:
        async with self._store.lock:
            counts = {status.value: 0 for status in QueueJobStatus}
            for job in self._store.jobs.values():
                counts[job.status.value] += 1
            return counts

    async def list_recent(self, limit: int = 10) -> List[QueueJob]:
        async with self._store.lock:
            jobs = sorted(self._store.jobs.values(), key=lambda j: j.id, reverse=True)
            return [job.model_copy(deep=True) for job in jobs[:limit]]

    async def purge(self, older_than: datetime) -> int:
        async with self._store.lock:
            doomed = [
                job_id for job_id, job in self._store.jobs.items()
                if job.status.is_terminal() and job.updated_at < older_than
            ]
            for job_id in doomed:
                del self._store.jobs[job_id]
            return len(doomed)


# ============================================================================
# EXECUTIONS
# ============================================================================

class InMemoryExecutionRepository:
    """Workflow executions held in memory."""

    def __init__(self, store: InMemoryStore):
        self._store = store

    async def create(self, execution: WorkflowExecution) -> WorkflowExecution:
        async with self._store.lock:
            self._store.executions[execution.id] = execution.model_copy(deep=True)
            return execution

    async def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        async with self._store.lock:
            execution = self._store.executions.get(execution_id)
            return execution.model_copy(deep=True) if execution else None

    async def mark_running(self, execution_id: str, now: Optional[datetime] = None) -> bool:
        now = now or _now()
        async with self._store.lock:
            execution = self._store.executions.get(execution_id)
            if execution is None or execution.status != ExecutionStatus.PENDING:
                return False
            execution.status = ExecutionStatus.RUNNING
            execution.started_at = execution.started_at or now
            execution.updated_at = now
            return True

    async def update_progress(self, execution_id: str, progress: int) -> bool:
        async with self._store.lock:
            execution = self._store.executions.get(execution_id)
            if execution is None or execution.status.is_terminal():
                return False
            if execution.progress >= progress:
                return False
            execution.progress = progress
            execution.updated_at = _now()
            return True

    async def finalize(
        self,
        execution_id: str,
        status: ExecutionStatus,
        progress: int,
        error_message: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        now = now or _now()
        async with self._store.lock:
            execution = self._store.executions.get(execution_id)
            if execution is None or execution.status.is_terminal():
                return False
            execution.status = status
            execution.progress = max(execution.progress, progress)
            execution.error_message = error_message[:2000] if error_message else None
            execution.started_at = execution.started_at or now
            execution.completed_at = now
            execution.updated_at = now
            return True

    async def cancel(self, execution_id: str, now: Optional[datetime] = None) -> bool:
        now = now or _now()
        async with self._store.lock:
            execution = self._store.executions.get(execution_id)
            if execution is None or execution.status.is_terminal():
                return False
            execution.status = ExecutionStatus.CANCELLED
            execution.completed_at = now
            execution.updated_at = now
            return True

    async def list_by_status(
        self,
        status: ExecutionStatus,
        limit: int = 100,
    ) -> List[WorkflowExecution]:
        async with self._store.lock:
            matches = sorted(
                (e for e in self._store.executions.values() if e.status == status),
                key=lambda e: e.created_at,
            )
            return [e.model_copy(deep=True) for e in matches[:limit]]

    async def list_recent(self, limit: int = 20) -> List[WorkflowExecution]:
        async with self._store.lock:
            ordered = sorted(self._store.executions.values(), key=lambda e: e.created_at, reverse=True)
            return [e.model_copy(deep=True) for e in ordered[:limit]]

    async def purge(self, status: ExecutionStatus, older_than: datetime) -> Tuple[int, int]:
        if not status.is_terminal():
            raise ValueError(f"Refusing to purge non-terminal status {status.value}")
        async with self._store.lock:
            doomed = {
                e.id for e in self._store.executions.values()
                if e.status == status and e.completed_at is not None and e.completed_at < older_than
            }
            task_ids = [t.id for t in self._store.tasks.values() if t.execution_id in doomed]
            for task_id in task_ids:
                del self._store.tasks[task_id]
            for execution_id in doomed:
                del self._store.executions[execution_id]
            return len(doomed), len(task_ids)


# ============================================================================
# NODE TASKS
# ============================================================================

class InMemoryNodeTaskRepository:
    """Node tasks held in memory."""

    def __init__(self, store: InMemoryStore):
        self._store = store

    async def create_many(self, tasks: List[NodeTask]) -> List[NodeTask]:
        async with self._store.lock:
            for task in tasks:
                for existing in self._store.tasks.values():
                    if existing.execution_id == task.execution_id and existing.node_id == task.node_id:
                        raise ValueError(
                            f"Duplicate node task {task.node_id} for execution {task.execution_id}"
                        )
                self._store.tasks[task.id] = task.model_copy(deep=True)
            return tasks

    async def get(self, task_id: str) -> Optional[NodeTask]:
        async with self._store.lock:
            task = self._store.tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    async def list_for_execution(self, execution_id: str) -> List[NodeTask]:
        async with self._store.lock:
            tasks = sorted(
                (t for t in self._store.tasks.values() if t.execution_id == execution_id),
                key=lambda t: (t.created_at, t.node_id),
            )
            return [t.model_copy(deep=True) for t in tasks]

    async def mark_queued(self, task_id: str, now: Optional[datetime] = None) -> bool:
        async with self._store.lock:
            task = self._store.tasks.get(task_id)
            if task is None or task.status != NodeTaskStatus.PENDING:
                return False
            task.mark_queued(now)
            return True

    async def mark_processing(
        self,
        task_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[NodeTask]:
        async with self._store.lock:
            task = self._store.tasks.get(task_id)
            if task is None:
                return None
            restartable = task.status == NodeTaskStatus.PROCESSING and task.external_task_id is None
            if task.status != NodeTaskStatus.QUEUED and not restartable:
                return None
            task.mark_processing(now)
            return task.model_copy(deep=True)

    async def set_external_id(
        self,
        task_id: str,
        external_task_id: str,
        provider: Optional[str] = None,
    ) -> bool:
        async with self._store.lock:
            task = self._store.tasks.get(task_id)
            if task is None or task.status != NodeTaskStatus.PROCESSING or task.external_task_id:
                return False
            task.external_task_id = external_task_id
            task.provider = provider
            task.updated_at = _now()
            return True

    async def requeue(self, task_id: str, now: Optional[datetime] = None) -> bool:
        now = now or _now()
        async with self._store.lock:
            task = self._store.tasks.get(task_id)
            if task is None or task.status != NodeTaskStatus.PROCESSING or task.external_task_id:
                return False
            task.status = NodeTaskStatus.QUEUED
            task.queued_at = now
            task.updated_at = now
            return True

    async def finalize(
        self,
        task_id: str,
        status: NodeTaskStatus,
        output_data: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        if status not in (NodeTaskStatus.COMPLETED, NodeTaskStatus.FAILED):
            raise ValueError(f"Finalize status must be completed or failed, got {status}")
        async with self._store.lock:
            task = self._store.tasks.get(task_id)
            if task is None or task.status != NodeTaskStatus.PROCESSING:
                return False
            task.mark_finalized(status, output_data, error_message, now)
            return True

    async def skip(
        self,
        task_id: str,
        include_queued: bool = False,
        now: Optional[datetime] = None,
    ) -> bool:
        allowed = {NodeTaskStatus.PENDING}
        if include_queued:
            allowed.add(NodeTaskStatus.QUEUED)
        async with self._store.lock:
            task = self._store.tasks.get(task_id)
            if task is None or task.status not in allowed:
                return False
            task.mark_skipped(now)
            return True

    async def skip_open_for_execution(self, execution_id: str, now: Optional[datetime] = None) -> int:
        count = 0
        async with self._store.lock:
            for task in self._store.tasks.values():
                if task.execution_id == execution_id and task.status in (
                    NodeTaskStatus.PENDING, NodeTaskStatus.QUEUED,
                ):
                    task.mark_skipped(now)
                    count += 1
        return count

    async def find_by_external_id(self, external_task_id: str) -> Optional[NodeTask]:
        async with self._store.lock:
            live = [t for t in self._store.tasks.values() if t.external_task_id == external_task_id]
            if live:
                return live[0].model_copy(deep=True)
            resolved = sorted(
                (t for t in self._store.tasks.values() if t.resolved_external_id == external_task_id),
                key=lambda t: t.updated_at,
                reverse=True,
            )
            return resolved[0].model_copy(deep=True) if resolved else None

    async def list_processing(
        self,
        started_before: Optional[datetime] = None,
        external_only: bool = False,
        node_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[NodeTask]:
        async with self._store.lock:
            matches = []
            for task in self._store.tasks.values():
                if task.status != NodeTaskStatus.PROCESSING:
                    continue
                if started_before is not None and not (task.started_at and task.started_at < started_before):
                    continue
                if external_only and not task.external_task_id:
                    continue
                if node_type is not None and task.node_type != node_type:
                    continue
                matches.append(task)
            far_past = datetime.min.replace(tzinfo=timezone.utc)
            matches.sort(key=lambda t: t.started_at or far_past)
            return [t.model_copy(deep=True) for t in matches[:limit]]


# ============================================================================
# WEBHOOK EVENTS
# ============================================================================

class InMemoryWebhookEventRepository:
    """Webhook audit log held in memory."""

    def __init__(self, store: InMemoryStore):
        self._store = store

    async def record(
        self,
        source: str,
        payload: str,
        external_id: Optional[str] = None,
    ) -> WebhookEvent:
        async with self._store.lock:
            event = WebhookEvent(
                id=next(self._store.webhook_ids),
                source=source,
                external_id=external_id,
                payload=payload,
            )
            self._store.webhooks[event.id] = event
            return event.model_copy(deep=True)

    async def attach_external_id(self, event_id: int, external_id: str) -> None:
        async with self._store.lock:
            event = self._store.webhooks.get(event_id)
            if event is not None:
                event.external_id = external_id

    async def mark_processed(self, event_id: int) -> bool:
        async with self._store.lock:
            event = self._store.webhooks.get(event_id)
            if event is None or event.processed:
                return False
            event.processed = True
            return True

    async def get(self, event_id: int) -> Optional[WebhookEvent]:
        async with self._store.lock:
            event = self._store.webhooks.get(event_id)
            return event.model_copy(deep=True) if event else None

    async def list_recent(
        self,
        limit: int = 20,
        processed: Optional[bool] = None,
    ) -> List[WebhookEvent]:
        async with self._store.lock:
            events = sorted(self._store.webhooks.values(), key=lambda e: e.id, reverse=True)
            if processed is not None:
                events = [e for e in events if e.processed == processed]
            return [e.model_copy(deep=True) for e in events[:limit]]

    async def purge(self, older_than: datetime, processed: bool = True) -> int:
        async with self._store.lock:
            doomed = [
                event_id for event_id, event in self._store.webhooks.items()
                if event.processed == processed and event.created_at < older_than
            ]
            for event_id in doomed:
                del self._store.webhooks[event_id]
            return len(doomed)


__all__ = [
    "InMemoryStore",
    "InMemoryJobQueueRepository",
    "InMemoryExecutionRepository",
    "InMemoryNodeTaskRepository",
    "InMemoryWebhookEventRepository",
]
