# ============================================================================
# CORE MODULE
# ============================================================================
# STATUS: Core module initialization
# PURPOSE: Export core contracts and models
# CREATED: 19 OCT 2026
# ============================================================================

from core.contracts import (
    QueueJobStatus,
    ExecutionStatus,
    NodeTaskStatus,
    ExecutionMode,
    ExternalOutcome,
    TaskType,
)
from core.models import (
    WorkflowGraph,
    GraphNode,
    Connection,
    WorkflowExecution,
    NodeTask,
    QueueJob,
    WebhookEvent,
)

__all__ = [
    # Enums
    "QueueJobStatus",
    "ExecutionStatus",
    "NodeTaskStatus",
    "ExecutionMode",
    "ExternalOutcome",
    "TaskType",
    # Models
    "WorkflowGraph",
    "GraphNode",
    "Connection",
    "WorkflowExecution",
    "NodeTask",
    "QueueJob",
    "WebhookEvent",
]
