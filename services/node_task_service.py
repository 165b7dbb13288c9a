# ============================================================================
# NODE TASK SERVICE
# ============================================================================
# STATUS: Core - Dependency gating, downstream dispatch, finalization
# PURPOSE: Move node tasks forward once their upstream nodes settle
# CREATED: 19 OCT 2026
# EXPORTS: NodeTaskService
# ============================================================================
"""
Node Task Service

Shared by run start, the dispatcher, the reconciler and the recovery
sweep:

- advance(): skip tasks doomed by a fatal upstream failure, then queue
  every PENDING task whose upstream nodes are all satisfied
  (completed, skipped, or failed-optional)
- finalize(): compare-and-swap a PROCESSING task to COMPLETED/FAILED
  and, only for the winner, advance the execution and recompute it
- resolve_inputs(): build a task's inputs from its static data and the
  outputs of upstream nodes, port to port
- stop(): operator action that fails an open task through finalize()

Only the caller that wins pending -> queued enqueues the queue job, so
a task never gets two jobs from concurrent advances.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.config import QueueDefaults
from core.contracts import ExecutionStatus, NodeTaskStatus, TaskType
from core.logging import log_checkpoint, log_context
from core.models import NodeTask, WorkflowExecution
from .aggregator import ExecutionAggregator

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "execution cancelled"
STOPPED_MESSAGE = "Stopped by user"


class NodeTaskService:
    """Service for node task gating and completion."""

    def __init__(
        self,
        repos: Any,
        aggregator: ExecutionAggregator,
        queue_defaults: Optional[QueueDefaults] = None,
    ):
        """
        Initialize node task service.

        Args:
            repos: Repositories bundle (queue, executions, tasks, webhooks)
            aggregator: Execution aggregator
            queue_defaults: Priority and attempt budget for enqueued jobs
        """
        self.repos = repos
        self.aggregator = aggregator
        self.queue_defaults = queue_defaults or QueueDefaults()

    # =========================================================================
    # DEPENDENCY GATING
    # =========================================================================

    @staticmethod
    def dependencies_satisfied(
        execution: WorkflowExecution,
        node_id: str,
        by_node: Dict[str, NodeTask],
    ) -> bool:
        """True when every upstream task is completed, skipped or failed-optional."""
        for upstream_id in execution.graph.upstream_of(node_id):
            upstream = by_node.get(upstream_id)
            if upstream is None or not upstream.satisfies_dependents:
                return False
        return True

    @staticmethod
    def doomed_nodes(execution: WorkflowExecution, tasks: List[NodeTask]) -> set:
        """Nodes downstream of a fatal failure; they can never run."""
        fatal = {task.node_id for task in tasks if task.is_fatal_failure}
        if not fatal:
            return set()
        return execution.graph.descendants_of(fatal)

    async def advance(
        self,
        execution_id: str,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """
        Queue every runnable PENDING task of an execution.

        Args:
            execution_id: Execution to advance
            now: Current time (defaults to now, UTC)

        Returns:
            node_ids that this call queued
        """
        execution = await self.repos.executions.get(execution_id)
        if execution is None or execution.status.is_terminal():
            return []

        tasks = await self.repos.tasks.list_for_execution(execution_id)
        by_node = {task.node_id: task for task in tasks}
        doomed = self.doomed_nodes(execution, tasks)

        queued: List[str] = []
        for node_id in execution.graph.topological_order():
            task = by_node.get(node_id)
            if task is None or task.status != NodeTaskStatus.PENDING:
                continue

            if node_id in doomed:
                if await self.repos.tasks.skip(task.id, now=now):
                    logger.info(f"Skipped node {node_id}: upstream failed")
                continue

            if not self.dependencies_satisfied(execution, node_id, by_node):
                continue

            if not await self.repos.tasks.mark_queued(task.id, now=now):
                logger.debug(f"Node {node_id} already queued by another actor")
                continue

            job_id = await self.repos.queue.enqueue(
                TaskType.NODE_EXECUTION.value,
                {
                    "execution_id": execution_id,
                    "node_task_id": task.id,
                    "node_id": node_id,
                },
                priority=self.queue_defaults.default_priority,
                max_attempts=self.queue_defaults.max_attempts,
                now=now,
            )
            with log_context(execution_id=execution_id, node_id=node_id, queue_job_id=job_id):
                logger.info(f"Queued node {node_id} ({task.node_type}) as job {job_id}")
            queued.append(node_id)

        if queued:
            await self.repos.executions.mark_running(execution_id, now=now)
        return queued

    # =========================================================================
    # INPUT RESOLUTION
    # =========================================================================

    @staticmethod
    def resolve_inputs(
        execution: WorkflowExecution,
        task: NodeTask,
        by_node: Dict[str, NodeTask],
    ) -> Dict[str, Any]:
        """
        Static node data overlaid with upstream outputs along connections.

        The value sent over a connection is the upstream output's
        from_port entry, falling back to its result_url. An upstream that
        did not complete (failed-optional or skipped) contributes None.
        Several connections into one port collect into a list.
        """
        inputs: Dict[str, Any] = dict(task.input_data)
        fed: Dict[str, int] = {}

        for conn in execution.graph.incoming(task.node_id):
            upstream = by_node.get(conn.from_node)
            value = None
            if upstream is not None and upstream.status == NodeTaskStatus.COMPLETED:
                output = upstream.output_data or {}
                value = output.get(conn.from_port)
                if value is None:
                    value = output.get("result_url")

            count = fed.get(conn.to_port, 0)
            if count == 0:
                inputs[conn.to_port] = value
            elif count == 1:
                inputs[conn.to_port] = [inputs[conn.to_port], value]
            else:
                inputs[conn.to_port].append(value)
            fed[conn.to_port] = count + 1

        return inputs

    # =========================================================================
    # FINALIZATION
    # =========================================================================

    async def finalize(
        self,
        task: NodeTask,
        status: NodeTaskStatus,
        output_data: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Finalize a PROCESSING task exactly once, then move the run on.

        A losing compare-and-swap is a no-op and triggers nothing. A
        result for a cancelled execution is recorded as a failure.

        Returns:
            True if this call finalized the task
        """
        if status == NodeTaskStatus.COMPLETED:
            execution = await self.repos.executions.get(task.execution_id)
            if execution is not None and execution.status == ExecutionStatus.CANCELLED:
                status, output_data, error_message = NodeTaskStatus.FAILED, None, CANCELLED_MESSAGE

        won = await self.repos.tasks.finalize(
            task.id,
            status,
            output_data=output_data,
            error_message=error_message,
            now=now,
        )
        if not won:
            logger.info(f"Node {task.node_id} already finalized; ignoring {status.value}")
            return False

        log_checkpoint(
            f"node_{status.value}",
            {"execution_id": task.execution_id, "node_id": task.node_id, "error": error_message},
            logger=logger,
        )
        await self.after_change(task.execution_id, now=now)
        return True

    async def after_change(self, execution_id: str, now: Optional[datetime] = None) -> None:
        """Advance the execution's downstream tasks and recompute it."""
        await self.advance(execution_id, now=now)
        await self.aggregator.recompute(execution_id, now=now)

    async def stop(self, task_id: str, now: Optional[datetime] = None) -> bool:
        """
        Operator stop: fail an open task with STOPPED_MESSAGE.

        PENDING and QUEUED tasks are walked to PROCESSING through the
        usual compare-and-swaps so that finalize() stays the only way a
        task becomes terminal. A queue job left behind is skipped by the
        dispatcher, and a late provider result for the task is a
        duplicate.

        Returns:
            True if this call stopped the task, False if it was already
            terminal (or unknown)
        """
        task = await self.repos.tasks.get(task_id)
        if task is None or task.status.is_terminal():
            return False

        if task.status == NodeTaskStatus.PENDING:
            await self.repos.tasks.mark_queued(task.id, now=now)
        if task.status in (NodeTaskStatus.PENDING, NodeTaskStatus.QUEUED):
            # Losing to a worker here is fine; finalize() below decides
            await self.repos.tasks.mark_processing(task.id, now=now)

        with log_context(execution_id=task.execution_id, node_id=task.node_id):
            logger.warning(f"Stopping node {task.node_id} ({task.status.value}) on operator request")
            return await self.finalize(
                task, NodeTaskStatus.FAILED, error_message=STOPPED_MESSAGE, now=now,
            )


__all__ = ["NodeTaskService", "CANCELLED_MESSAGE", "STOPPED_MESSAGE"]
