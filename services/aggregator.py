# ============================================================================
# EXECUTION AGGREGATOR
# ============================================================================
# STATUS: Core - Execution status and progress derivation
# PURPOSE: Fold node task states into execution status/progress
# CREATED: 19 OCT 2026
# EXPORTS: ExecutionAggregator, compute_progress, derive_status
# ============================================================================
"""
Execution Aggregator

Derives a WorkflowExecution's status and progress from its NodeTasks
and persists them.

Rules:
    progress = round-half-up(100 * terminal / total), held at 99 until
               every task is terminal
    status   = COMPLETED  every task terminal, no fatal failure
               FAILED     every task terminal, a non-optional task failed
               RUNNING    otherwise

The store only ever raises progress, and the terminal transition is a
compare-and-swap on the previous (non-terminal) status, so concurrent
recomputes agree and exactly one of them notifies listeners.

Usage:
    aggregator = ExecutionAggregator(repos.executions, repos.tasks)
    aggregator.add_listener(on_finished)
    await aggregator.recompute(execution_id)
"""

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from core.contracts import ExecutionStatus
from core.logging import log_checkpoint
from core.models import NodeTask, WorkflowExecution

logger = logging.getLogger(__name__)

TerminalListener = Callable[[WorkflowExecution], Awaitable[None]]


# ============================================================================
# PURE DERIVATION
# ============================================================================

def compute_progress(tasks: Sequence[NodeTask]) -> int:
    """
    Percentage of terminal tasks, rounded half up.

    Returns 100 only when every task is terminal (an empty task list
    counts as all terminal).
    """
    total = len(tasks)
    if total == 0:
        return 100
    terminal = sum(1 for task in tasks if task.status.is_terminal())
    if terminal == total:
        return 100
    # Integer round-half-up of 100 * terminal / total
    progress = (200 * terminal + total) // (2 * total)
    return min(progress, 99)


def derive_status(tasks: Sequence[NodeTask]) -> ExecutionStatus:
    """Execution status implied by its node tasks."""
    if not all(task.status.is_terminal() for task in tasks):
        return ExecutionStatus.RUNNING
    if any(task.is_fatal_failure for task in tasks):
        return ExecutionStatus.FAILED
    return ExecutionStatus.COMPLETED


def first_fatal_error(tasks: Sequence[NodeTask]) -> Optional[str]:
    """Error message of the earliest-finished non-optional failure."""
    fatal = [task for task in tasks if task.is_fatal_failure]
    if not fatal:
        return None
    far_future = datetime.max.replace(tzinfo=timezone.utc)
    first = min(fatal, key=lambda t: t.completed_at or far_future)
    return first.error_message or f"Node {first.node_id} failed"


# ============================================================================
# AGGREGATOR
# ============================================================================

class ExecutionAggregator:
    """Persists derived execution state and fires terminal callbacks."""

    def __init__(self, executions: Any, tasks: Any):
        """
        Args:
            executions: Execution repository
            tasks: Node task repository
        """
        self.executions = executions
        self.tasks = tasks
        self._listeners: List[TerminalListener] = []

    def add_listener(self, listener: TerminalListener) -> None:
        """Register an async callback run once per execution reaching a terminal status."""
        self._listeners.append(listener)

    async def recompute(
        self,
        execution_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[WorkflowExecution]:
        """
        Re-derive and persist status/progress for one execution.

        A terminal execution (including CANCELLED) is returned unchanged.

        Returns:
            The execution as stored after the update, or None if missing
        """
        execution = await self.executions.get(execution_id)
        if execution is None:
            logger.warning(f"Recompute skipped: execution {execution_id} not found")
            return None
        if execution.status.is_terminal():
            return execution

        tasks = await self.tasks.list_for_execution(execution_id)
        progress = compute_progress(tasks)
        status = derive_status(tasks)

        if status.is_terminal():
            won = await self.executions.finalize(
                execution_id,
                status,
                progress,
                error_message=first_fatal_error(tasks),
                now=now,
            )
            execution = await self.executions.get(execution_id)
            if won and execution is not None:
                logger.info(
                    f"Execution {execution_id} {status.value} "
                    f"({len(tasks)} tasks, duration={execution.duration_seconds}s)"
                )
                await self.notify_terminal(execution)
            return execution

        if await self.executions.update_progress(execution_id, progress):
            logger.debug(f"Execution {execution_id} progress -> {progress}%")
            execution = await self.executions.get(execution_id)
        return execution

    async def notify_terminal(self, execution: WorkflowExecution) -> None:
        """Run terminal listeners; a failing listener never affects the others."""
        log_checkpoint(
            "execution_finalized",
            {"execution_id": execution.id, "status": execution.status.value},
            logger=logger,
        )
        for listener in self._listeners:
            try:
                await listener(execution)
            except Exception as e:
                logger.exception(f"Terminal listener failed for execution {execution.id}: {e}")


__all__ = [
    "ExecutionAggregator",
    "compute_progress",
    "derive_status",
    "first_fatal_error",
]
