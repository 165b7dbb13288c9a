# ============================================================================
# SERVICES MODULE
# ============================================================================
# STATUS: Core - Business logic layer
# PURPOSE: Execution lifecycle, node task gating, status aggregation
# CREATED: 19 OCT 2026
# ============================================================================
"""
Services Module

Business logic for workflow execution.
Services coordinate between repositories; they never talk to providers.

Usage:
    from services import ExecutionAggregator, NodeTaskService, ExecutionService

    aggregator = ExecutionAggregator(repos.executions, repos.tasks)
    node_tasks = NodeTaskService(repos, aggregator)
    executions = ExecutionService(repos, node_tasks, aggregator)
    execution = await executions.start_execution("wf-1", graph, {})
"""

from .aggregator import ExecutionAggregator, compute_progress, derive_status
from .node_task_service import NodeTaskService
from .execution_service import (
    ExecutionService,
    ExecutionNotFoundError,
    InvalidWorkflowError,
)

__all__ = [
    "ExecutionAggregator",
    "compute_progress",
    "derive_status",
    "NodeTaskService",
    "ExecutionService",
    "ExecutionNotFoundError",
    "InvalidWorkflowError",
]
