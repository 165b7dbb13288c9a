# ============================================================================
# RECOVERY SWEEP
# ============================================================================
# STATUS: Core - Stuck work detection and resolution
# PURPOSE: Resolve work that crashed workers or silent providers left behind
# CREATED: 19 OCT 2026
# EXPORTS: RecoverySweep, RecoveryReport
# ============================================================================
"""
Recovery Sweep

Periodic pass over everything that can get stuck:

1. Queue jobs whose lease expired with no attempts left become FAILED;
   their node tasks (if not awaiting a provider) are finalized FAILED
2. PROCESSING tasks older than stuck_threshold:
   - external: polled once; a terminal answer goes to the Reconciler,
     otherwise past hard_ceiling the task is force-completed with a note
   - local: past hard_ceiling finalized FAILED
3. RUNNING executions are advanced and recomputed, which picks up
   downstream tasks a crash left unqueued and runs whose last task
   finished without a recompute

Also offers force_complete_by_type(), the manual remediation for a
node type whose provider never reports back.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

from core.config import QueueDefaults, RecoveryDefaults
from core.contracts import ExecutionStatus, NodeTaskStatus
from core.logging import log_context
from core.models import NodeTask
from handlers.registry import NodeTypeRegistry
from services.node_task_service import NodeTaskService
from .poller import query_provider
from .reconciler import Reconciler, ReconcileOutcome

logger = logging.getLogger(__name__)

FORCED_NOTE = "Auto-completed by recovery: provider did not report a result"


@dataclass
class RecoveryReport:
    """Counts from one sweep."""
    expired_jobs: int = 0
    failed_tasks: int = 0
    reconciled_tasks: int = 0
    forced_tasks: int = 0
    executions_checked: int = 0
    touched_executions: Set[str] = field(default_factory=set)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "expired_jobs": self.expired_jobs,
            "failed_tasks": self.failed_tasks,
            "reconciled_tasks": self.reconciled_tasks,
            "forced_tasks": self.forced_tasks,
            "executions_checked": self.executions_checked,
        }


class RecoverySweep:
    """Finds and resolves stuck queue jobs, tasks and executions."""

    def __init__(
        self,
        repos: Any,
        registry: NodeTypeRegistry,
        reconciler: Reconciler,
        node_tasks: NodeTaskService,
        queue_defaults: Optional[QueueDefaults] = None,
        defaults: Optional[RecoveryDefaults] = None,
        provider_timeout_seconds: float = 30.0,
    ):
        self.repos = repos
        self.registry = registry
        self.reconciler = reconciler
        self.node_tasks = node_tasks
        self.queue_defaults = queue_defaults or QueueDefaults()
        self.defaults = defaults or RecoveryDefaults()
        self.provider_timeout_seconds = provider_timeout_seconds

    async def sweep(self, now: Optional[datetime] = None) -> RecoveryReport:
        """Run all recovery steps once."""
        now = now or datetime.now(timezone.utc)
        report = RecoveryReport()

        await self._expire_leases(report, now)
        await self._resolve_stuck_tasks(report, now)
        await self._settle_executions(report, now)

        if report.expired_jobs or report.failed_tasks or report.reconciled_tasks or report.forced_tasks:
            logger.warning(f"Recovery sweep resolved stuck work: {report.to_dict()}")
        else:
            logger.debug(f"Recovery sweep: nothing stuck ({report.executions_checked} executions checked)")
        return report

    # =========================================================================
    # STEP 1: EXHAUSTED LEASES
    # =========================================================================

    async def _expire_leases(self, report: RecoveryReport, now: datetime) -> None:
        expired = await self.repos.queue.expire_exhausted(self.queue_defaults.lease_seconds, now=now)
        report.expired_jobs = len(expired)

        for job in expired:
            task_id = job.payload.get("node_task_id")
            task = await self.repos.tasks.get(task_id) if task_id else None
            if task is None or task.status.is_terminal() or task.external_task_id:
                continue

            if task.status == NodeTaskStatus.QUEUED:
                # Worker died between claim and start; finalize needs PROCESSING
                task = await self.repos.tasks.mark_processing(task.id, now=now)
                if task is None:
                    continue
            if task.status != NodeTaskStatus.PROCESSING:
                continue

            with log_context(execution_id=task.execution_id, node_id=task.node_id, queue_job_id=job.id):
                logger.warning(f"Node {task.node_id} lost its worker after {job.attempts} attempts")
                if await self.node_tasks.finalize(
                    task,
                    NodeTaskStatus.FAILED,
                    error_message=f"Worker lease expired after {job.attempts} attempts",
                    now=now,
                ):
                    report.failed_tasks += 1
                    report.touched_executions.add(task.execution_id)

    # =========================================================================
    # STEP 2: STUCK PROCESSING TASKS
    # =========================================================================

    async def _resolve_stuck_tasks(self, report: RecoveryReport, now: datetime) -> None:
        stuck = await self.repos.tasks.list_processing(
            started_before=now - timedelta(seconds=self.defaults.stuck_threshold_seconds),
            limit=self.defaults.batch_size,
        )
        ceiling = timedelta(seconds=self.defaults.hard_ceiling_seconds)

        for task in stuck:
            age = now - task.started_at if task.started_at else ceiling
            with log_context(execution_id=task.execution_id, node_id=task.node_id):
                if task.external_task_id:
                    result = await query_provider(self.registry, task, self.provider_timeout_seconds)
                    if result is not None and result.is_terminal:
                        outcome = await self.reconciler.apply_to_task(task, result, now=now)
                        if outcome in (ReconcileOutcome.APPLIED, ReconcileOutcome.SUPPRESSED):
                            report.reconciled_tasks += 1
                            report.touched_executions.add(task.execution_id)
                        continue
                    if age >= ceiling:
                        if await self._force_complete(task, now):
                            report.forced_tasks += 1
                            report.touched_executions.add(task.execution_id)
                    else:
                        logger.warning(
                            f"Node {task.node_id} waiting on {task.provider or 'provider'} "
                            f"for {int(age.total_seconds())}s"
                        )
                elif age >= ceiling:
                    logger.warning(f"Local node {task.node_id} stuck for {int(age.total_seconds())}s")
                    if await self.node_tasks.finalize(
                        task,
                        NodeTaskStatus.FAILED,
                        error_message=(
                            f"Node did not finish within {self.defaults.hard_ceiling_seconds}s"
                        ),
                        now=now,
                    ):
                        report.failed_tasks += 1
                        report.touched_executions.add(task.execution_id)

    async def _force_complete(self, task: NodeTask, now: datetime) -> bool:
        logger.warning(
            f"Force-completing node {task.node_id}: no result from "
            f"{task.provider or 'provider'} for task {task.external_task_id}"
        )
        return await self.node_tasks.finalize(
            task,
            NodeTaskStatus.COMPLETED,
            output_data={
                "note": FORCED_NOTE,
                "forced": True,
                "external_task_id": task.external_task_id,
                "result_url": None,
            },
            now=now,
        )

    # =========================================================================
    # STEP 3: EXECUTIONS
    # =========================================================================

    async def _settle_executions(self, report: RecoveryReport, now: datetime) -> None:
        running = await self.repos.executions.list_by_status(
            ExecutionStatus.RUNNING,
            limit=self.defaults.batch_size,
        )
        execution_ids = {e.id for e in running} | report.touched_executions
        for execution_id in execution_ids:
            await self.node_tasks.after_change(execution_id, now=now)
        report.executions_checked = len(execution_ids)

    # =========================================================================
    # MANUAL REMEDIATION
    # =========================================================================

    async def force_complete_by_type(
        self,
        node_type: str,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """
        Force-complete every PROCESSING task of one node type.

        Returns:
            ids of the tasks this call completed
        """
        now = now or datetime.now(timezone.utc)
        tasks = await self.repos.tasks.list_processing(node_type=node_type, limit=1000)
        fixed: List[str] = []
        for task in tasks:
            with log_context(execution_id=task.execution_id, node_id=task.node_id):
                if await self._force_complete(task, now):
                    fixed.append(task.id)
        logger.warning(f"Remediation force-completed {len(fixed)} {node_type} task(s)")
        return fixed


__all__ = ["RecoverySweep", "RecoveryReport", "FORCED_NOTE"]
