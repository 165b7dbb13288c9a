# ============================================================================
# RECONCILER
# ============================================================================
# STATUS: Core - External result application
# PURPOSE: Apply a provider result to its node task exactly once
# CREATED: 19 OCT 2026
# EXPORTS: Reconciler, ReconcileOutcome
# ============================================================================
"""
Reconciler

Single entry point for provider results, whether they came from the
poller, a webhook or the recovery sweep.

    success  -> task COMPLETED with {"result_url", ...}, downstream advanced
    failure  -> task FAILED with the provider's error
    pending  -> nothing changes

Duplicate and late signals land on a task that already left
PROCESSING (matched through resolved_external_id) and are no-ops.
Results for a cancelled execution are recorded as failures and
dispatch nothing.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from core.contracts import ExecutionStatus, ExternalOutcome, NodeTaskStatus
from core.logging import log_context
from core.models import NodeTask
from handlers.registry import ExternalResult
from services.node_task_service import CANCELLED_MESSAGE, NodeTaskService

logger = logging.getLogger(__name__)


class ReconcileOutcome(str, Enum):
    """Result of applying an external result."""
    APPLIED = "applied"              # Task finalized by this call
    DUPLICATE = "duplicate"          # Task already terminal
    STILL_PENDING = "still_pending"  # Provider not done yet
    NOT_FOUND = "not_found"          # No task carries this external id
    SUPPRESSED = "suppressed"        # Execution cancelled; recorded as failure

    @property
    def settled(self) -> bool:
        """True when the task has its final answer and the signal needs no more handling."""
        return self in (ReconcileOutcome.APPLIED, ReconcileOutcome.DUPLICATE, ReconcileOutcome.SUPPRESSED)


class Reconciler:
    """Applies provider results to node tasks."""

    def __init__(self, repos: Any, node_tasks: NodeTaskService):
        self.repos = repos
        self.node_tasks = node_tasks

    async def apply(
        self,
        external_task_id: str,
        result: ExternalResult,
        now: Optional[datetime] = None,
    ) -> ReconcileOutcome:
        """
        Look up the task by provider id and apply the result.

        Args:
            external_task_id: Provider task id
            result: Normalized provider result
            now: Current time (defaults to now, UTC)
        """
        task = await self.repos.tasks.find_by_external_id(external_task_id)
        if task is None:
            logger.info(f"No node task for external id {external_task_id}")
            return ReconcileOutcome.NOT_FOUND
        return await self.apply_to_task(task, result, now=now)

    async def apply_to_task(
        self,
        task: NodeTask,
        result: ExternalResult,
        now: Optional[datetime] = None,
    ) -> ReconcileOutcome:
        """Apply a result to a task already in hand."""
        with log_context(
            execution_id=task.execution_id,
            node_id=task.node_id,
            external_task_id=task.external_task_id or task.resolved_external_id,
        ):
            if task.status != NodeTaskStatus.PROCESSING:
                logger.info(f"Node {task.node_id} already {task.status.value}; duplicate result ignored")
                return ReconcileOutcome.DUPLICATE

            if not result.is_terminal:
                logger.debug(f"Node {task.node_id} still pending at provider ({result.raw_status})")
                return ReconcileOutcome.STILL_PENDING

            execution = await self.repos.executions.get(task.execution_id)
            if execution is not None and execution.status == ExecutionStatus.CANCELLED:
                won = await self.node_tasks.finalize(
                    task, NodeTaskStatus.FAILED, error_message=CANCELLED_MESSAGE, now=now,
                )
                logger.info(f"Node {task.node_id} result arrived after cancellation")
                return ReconcileOutcome.SUPPRESSED if won else ReconcileOutcome.DUPLICATE

            if result.outcome == ExternalOutcome.SUCCESS:
                won = await self.node_tasks.finalize(
                    task, NodeTaskStatus.COMPLETED, output_data=dict(result.output), now=now,
                )
            else:
                won = await self.node_tasks.finalize(
                    task, NodeTaskStatus.FAILED, error_message=result.error_message, now=now,
                )

            if not won:
                return ReconcileOutcome.DUPLICATE
            logger.info(f"Node {task.node_id} resolved by provider: {result.outcome.value}")
            return ReconcileOutcome.APPLIED


__all__ = ["Reconciler", "ReconcileOutcome"]
