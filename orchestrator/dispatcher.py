# ============================================================================
# DISPATCHER
# ============================================================================
# STATUS: Core - Queue job execution
# PURPOSE: Run local nodes / submit external nodes for claimed queue jobs
# CREATED: 19 OCT 2026
# EXPORTS: Dispatcher, DispatchOutcome
# ============================================================================
"""
Dispatcher

Handles one claimed node_execution queue job:

1. Load the node task and its execution; stale work (cancelled or
   finished execution, terminal task, task already submitted) just
   completes the job
2. PROCESSING compare-and-swap (attempts + 1)
3. Resolve inputs from upstream outputs
4. Local node: run under a timeout, finalize COMPLETED, advance
   External node: submit under a timeout, store the provider task id,
   leave the task PROCESSING for the poller / webhook

Error handling:
    PermanentProviderError / ValueError  -> finalize FAILED, complete job
    DataIntegrityError                   -> finalize FAILED, fail job (no retry)
    TransientProviderError / timeout /
    anything else                        -> task back to QUEUED, job retried
                                            with backoff; on the last
                                            attempt finalize FAILED
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from core.config import QueueDefaults, WorkerDefaults
from core.contracts import NodeTaskStatus, TaskType
from core.logging import log_context
from core.models import NodeTask, QueueJob
from handlers.registry import (
    DataIntegrityError,
    ExternalNode,
    NodeContext,
    NodeTypeRegistry,
    PermanentProviderError,
)
from services.node_task_service import NodeTaskService

logger = logging.getLogger(__name__)


class DispatchOutcome(str, Enum):
    """What a dispatch did with its job."""
    COMPLETED = "completed"      # Local node finished
    SUBMITTED = "submitted"      # External node handed to its provider
    SKIPPED = "skipped"          # Stale job, nothing to do
    RETRY = "retry"              # Transient failure, job back in the queue
    FAILED = "failed"            # Task finalized FAILED


class Dispatcher:
    """Executes claimed node_execution queue jobs."""

    def __init__(
        self,
        repos: Any,
        registry: NodeTypeRegistry,
        node_tasks: NodeTaskService,
        queue_defaults: Optional[QueueDefaults] = None,
        worker_defaults: Optional[WorkerDefaults] = None,
    ):
        """
        Initialize dispatcher.

        Args:
            repos: Repositories bundle
            registry: Node type registry
            node_tasks: Node task service (finalize + advance)
            queue_defaults: Backoff settings for retries
            worker_defaults: Local and provider timeouts
        """
        self.repos = repos
        self.registry = registry
        self.node_tasks = node_tasks
        self.queue_defaults = queue_defaults or QueueDefaults()
        self.worker_defaults = worker_defaults or WorkerDefaults()

    async def dispatch(self, job: QueueJob, worker_id: str) -> DispatchOutcome:
        """
        Handle one leased queue job.

        Args:
            job: Job returned by claim()
            worker_id: Lease holder (passed through to queue calls)

        Returns:
            DispatchOutcome
        """
        with log_context(queue_job_id=job.id, worker_id=worker_id):
            if job.task_type != TaskType.NODE_EXECUTION.value or not job.payload.get("node_task_id"):
                reason = f"Malformed queue job: task_type={job.task_type}, payload={job.payload}"
                logger.error(reason)
                await self.repos.queue.fail(job.id, reason, retryable=False, worker_id=worker_id)
                return DispatchOutcome.FAILED

            task = await self.repos.tasks.get(job.payload["node_task_id"])
            if task is None:
                reason = f"Node task {job.payload['node_task_id']} not found"
                logger.error(reason)
                await self.repos.queue.fail(job.id, reason, retryable=False, worker_id=worker_id)
                return DispatchOutcome.FAILED

            with log_context(execution_id=task.execution_id, node_id=task.node_id, node_task_id=task.id):
                return await self._dispatch_task(job, task, worker_id)

    async def _dispatch_task(self, job: QueueJob, task: NodeTask, worker_id: str) -> DispatchOutcome:
        execution = await self.repos.executions.get(task.execution_id)
        if execution is None:
            reason = f"Execution {task.execution_id} not found for task {task.id}"
            logger.error(reason)
            await self.repos.queue.fail(job.id, reason, retryable=False, worker_id=worker_id)
            return DispatchOutcome.FAILED

        if execution.status.is_terminal():
            logger.info(f"Execution is {execution.status.value}; dropping job for node {task.node_id}")
            await self.repos.queue.complete(job.id, worker_id=worker_id)
            return DispatchOutcome.SKIPPED

        if task.status.is_terminal() or task.external_task_id:
            logger.info(
                f"Node {task.node_id} is {task.status.value}"
                f"{' and awaiting its provider' if task.external_task_id else ''}; nothing to do"
            )
            await self.repos.queue.complete(job.id, worker_id=worker_id)
            return DispatchOutcome.SKIPPED

        claimed = await self.repos.tasks.mark_processing(task.id)
        if claimed is None:
            logger.info(f"Node {task.node_id} could not move to processing (status={task.status.value})")
            await self.repos.queue.complete(job.id, worker_id=worker_id)
            return DispatchOutcome.SKIPPED

        try:
            node = self.registry.get(claimed.node_type)
            tasks = await self.repos.tasks.list_for_execution(execution.id)
            by_node = {t.node_id: t for t in tasks}
            ctx = NodeContext(
                execution_id=execution.id,
                node_task_id=claimed.id,
                node_id=claimed.node_id,
                node_type=claimed.node_type,
                inputs=self.node_tasks.resolve_inputs(execution, claimed, by_node),
                input_params=dict(execution.input_params),
                attempt=claimed.attempts,
                worker_id=worker_id,
            )

            if isinstance(node, ExternalNode):
                return await self._submit(job, claimed, node, ctx, worker_id)
            return await self._run_local(job, claimed, node, ctx, worker_id)

        except DataIntegrityError as e:
            logger.error(f"Data integrity error on node {claimed.node_id}: {e}")
            await self.node_tasks.finalize(claimed, NodeTaskStatus.FAILED, error_message=str(e))
            await self.repos.queue.fail(job.id, str(e), retryable=False, worker_id=worker_id)
            return DispatchOutcome.FAILED

        except (PermanentProviderError, ValueError) as e:
            logger.warning(f"Node {claimed.node_id} failed permanently: {e}")
            await self.node_tasks.finalize(claimed, NodeTaskStatus.FAILED, error_message=str(e))
            await self.repos.queue.complete(job.id, worker_id=worker_id)
            return DispatchOutcome.FAILED

        except asyncio.TimeoutError:
            return await self._retry_or_fail(job, claimed, worker_id, "Node execution timed out")

        except Exception as e:
            return await self._retry_or_fail(job, claimed, worker_id, f"{type(e).__name__}: {e}")

    async def _run_local(self, job, task, node, ctx, worker_id) -> DispatchOutcome:
        output = await asyncio.wait_for(node.run(ctx), timeout=self.worker_defaults.local_timeout_seconds)
        if not isinstance(output, dict):
            output = {"output": output}

        await self.node_tasks.finalize(task, NodeTaskStatus.COMPLETED, output_data=output)
        await self.repos.queue.complete(job.id, worker_id=worker_id)
        logger.info(f"Node {task.node_id} ({task.node_type}) completed locally")
        return DispatchOutcome.COMPLETED

    async def _submit(self, job, task, adapter, ctx, worker_id) -> DispatchOutcome:
        external_task_id = await asyncio.wait_for(
            adapter.submit(ctx),
            timeout=self.worker_defaults.provider_timeout_seconds,
        )
        stored = await self.repos.tasks.set_external_id(task.id, external_task_id, provider=adapter.provider)
        if not stored:
            logger.warning(
                f"Node {task.node_id} left processing before external id {external_task_id} was stored"
            )
        else:
            with log_context(external_task_id=external_task_id):
                logger.info(f"Node {task.node_id} submitted to {adapter.provider}")
        await self.repos.queue.complete(job.id, worker_id=worker_id)
        return DispatchOutcome.SUBMITTED

    async def _retry_or_fail(
        self,
        job: QueueJob,
        task: NodeTask,
        worker_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> DispatchOutcome:
        """Transient failure: requeue while attempts remain, otherwise fail for good."""
        now = now or datetime.now(timezone.utc)
        if job.has_attempts_left():
            backoff = self.queue_defaults.backoff_for(job.attempts)
            await self.repos.tasks.requeue(task.id, now=now)
            await self.repos.queue.fail(
                job.id, reason, retryable=True, backoff_seconds=backoff, worker_id=worker_id, now=now,
            )
            logger.warning(
                f"Node {task.node_id} transient failure "
                f"(attempt {job.attempts}/{job.max_attempts}), retry in {backoff}s: {reason}"
            )
            return DispatchOutcome.RETRY

        logger.error(f"Node {task.node_id} failed after {job.attempts} attempts: {reason}")
        await self.node_tasks.finalize(task, NodeTaskStatus.FAILED, error_message=reason, now=now)
        await self.repos.queue.fail(job.id, reason, retryable=False, worker_id=worker_id, now=now)
        return DispatchOutcome.FAILED


__all__ = ["Dispatcher", "DispatchOutcome"]
