# ============================================================================
# EXECUTION SERVICE
# ============================================================================
# STATUS: Core - Execution lifecycle
# PURPOSE: Start, cancel and inspect workflow executions
# CREATED: 19 OCT 2026
# EXPORTS: ExecutionService, InvalidWorkflowError, ExecutionNotFoundError
# ============================================================================
"""
Execution Service

Manages execution lifecycle:
- Start: validate graph, create execution + one NodeTask per node,
  queue the roots
- Cancel: CAS the execution to CANCELLED and skip every task that has
  not started
- Status: execution with its node tasks
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from core.contracts import ExecutionStatus
from core.logging import log_context
from core.models import NodeTask, WorkflowExecution, WorkflowGraph
from .aggregator import ExecutionAggregator
from .node_task_service import NodeTaskService

logger = logging.getLogger(__name__)


class InvalidWorkflowError(ValueError):
    """Raised when a workflow graph cannot be executed."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


class ExecutionNotFoundError(LookupError):
    """Raised when an execution id is unknown."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")


class ExecutionService:
    """Service for workflow execution lifecycle."""

    def __init__(
        self,
        repos: Any,
        node_tasks: NodeTaskService,
        aggregator: ExecutionAggregator,
        registry: Optional[Any] = None,
    ):
        """
        Initialize execution service.

        Args:
            repos: Repositories bundle
            node_tasks: Node task service (for the initial advance)
            aggregator: Execution aggregator (for cancellation callbacks)
            registry: Optional NodeTypeRegistry used to reject unknown node types
        """
        self.repos = repos
        self.node_tasks = node_tasks
        self.aggregator = aggregator
        self.registry = registry

    async def start_execution(
        self,
        workflow_id: str,
        graph: WorkflowGraph,
        input_params: Optional[Dict[str, Any]] = None,
    ) -> WorkflowExecution:
        """
        Create and start an execution.

        Args:
            workflow_id: Identifier of the saved workflow
            graph: Graph snapshot to run
            input_params: Run-level parameters

        Returns:
            The execution after its root tasks were queued

        Raises:
            InvalidWorkflowError: Graph is empty, cyclic, dangling, or uses
                unregistered node types
        """
        errors = graph.validate_structure()
        if self.registry is not None:
            for node_id, node in graph.nodes.items():
                if node.node_type not in self.registry:
                    errors.append(f"Node '{node_id}' has unknown type '{node.node_type}'")
        if errors:
            raise InvalidWorkflowError(errors)

        now = datetime.now(timezone.utc)
        execution = WorkflowExecution(
            workflow_id=workflow_id,
            graph=graph,
            input_params=input_params or {},
            created_at=now,
            updated_at=now,
        )
        tasks = [
            NodeTask(
                execution_id=execution.id,
                node_id=node_id,
                node_type=node.node_type,
                optional=node.optional,
                input_data=dict(node.data),
                created_at=now,
                updated_at=now,
            )
            for node_id, node in graph.nodes.items()
        ]

        await self.repos.executions.create(execution)
        await self.repos.tasks.create_many(tasks)

        with log_context(execution_id=execution.id):
            roots = await self.node_tasks.advance(execution.id)
            logger.info(
                f"Started execution {execution.id} of workflow {workflow_id}: "
                f"{len(tasks)} nodes, roots={roots}"
            )

        return await self.repos.executions.get(execution.id)

    async def cancel_execution(self, execution_id: str) -> bool:
        """
        Cancel a pending or running execution.

        Tasks already PROCESSING are left to finish; their results are
        recorded as failures and dispatch nothing further.

        Returns:
            True if this call cancelled it, False if it was already terminal

        Raises:
            ExecutionNotFoundError: Unknown execution id
        """
        execution = await self.repos.executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)

        if not await self.repos.executions.cancel(execution_id):
            logger.info(f"Execution {execution_id} already {execution.status.value}; cancel ignored")
            return False

        skipped = await self.repos.tasks.skip_open_for_execution(execution_id)
        logger.info(f"Cancelled execution {execution_id} ({skipped} tasks skipped)")

        cancelled = await self.repos.executions.get(execution_id)
        if cancelled is not None:
            await self.aggregator.notify_terminal(cancelled)
        return True

    async def get_status(self, execution_id: str) -> Tuple[WorkflowExecution, List[NodeTask]]:
        """
        Execution with its node tasks.

        Raises:
            ExecutionNotFoundError: Unknown execution id
        """
        execution = await self.repos.executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        tasks = await self.repos.tasks.list_for_execution(execution_id)
        return execution, tasks

    async def list_executions(
        self,
        status: Optional[ExecutionStatus] = None,
        limit: int = 20,
    ) -> List[WorkflowExecution]:
        """Recent executions, optionally filtered by status."""
        if status is not None:
            return await self.repos.executions.list_by_status(status, limit=limit)
        return await self.repos.executions.list_recent(limit=limit)


__all__ = [
    "ExecutionService",
    "InvalidWorkflowError",
    "ExecutionNotFoundError",
]
