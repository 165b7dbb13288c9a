# ============================================================================
# BASE CONTRACTS & ENUMS
# ============================================================================
# STATUS: Foundation - Core enums shared by every layer
# PURPOSE: Status vocabularies for queue jobs, executions and node tasks
# CREATED: 19 OCT 2026
# EXPORTS: QueueJobStatus, ExecutionStatus, NodeTaskStatus, ExecutionMode,
#          ExternalOutcome, TaskType
# ============================================================================
"""
Base contracts for the workflow engine.

These enums cross every boundary:
- SQL (PostgreSQL columns are plain VARCHAR holding the enum value)
- HTTP (API responses)
- Python (internal processing)
"""

from enum import Enum


# ============================================================================
# STATUS ENUMS
# ============================================================================

class QueueJobStatus(str, Enum):
    """
    Queue job lifecycle states.

    State transitions:
        PENDING -> PROCESSING -> COMPLETED
                              -> FAILED
                              -> PENDING (retry while attempts remain)
    """
    PENDING = "pending"          # Waiting for a worker
    PROCESSING = "processing"    # Leased by a worker
    COMPLETED = "completed"      # Worker finished the job
    FAILED = "failed"            # Attempts exhausted or permanent error

    def is_terminal(self) -> bool:
        """Check if this is a terminal state."""
        return self in (QueueJobStatus.COMPLETED, QueueJobStatus.FAILED)


class ExecutionStatus(str, Enum):
    """
    Workflow execution lifecycle states.

    State transitions:
        PENDING -> RUNNING -> COMPLETED
                           -> FAILED
        PENDING/RUNNING -> CANCELLED (operator action)
    """
    PENDING = "pending"          # Created, nothing dispatched yet
    RUNNING = "running"          # At least one node dispatched
    COMPLETED = "completed"      # Every node terminal, no fatal failure
    FAILED = "failed"            # Every node terminal, a fatal failure exists
    CANCELLED = "cancelled"      # Cancelled by an operator

    def is_terminal(self) -> bool:
        """Check if this is a terminal state (no further transitions)."""
        return self in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )


class NodeTaskStatus(str, Enum):
    """
    Node task lifecycle states within an execution.

    State transitions:
        PENDING -> QUEUED -> PROCESSING -> COMPLETED
                                        -> FAILED
                                        -> QUEUED (transient retry)
        PENDING -> SKIPPED (upstream failed, or execution cancelled)
        QUEUED  -> SKIPPED (execution cancelled)
    """
    PENDING = "pending"          # Waiting for upstream nodes
    QUEUED = "queued"            # Queue job enqueued
    PROCESSING = "processing"    # Worker started it, or awaiting a provider
    COMPLETED = "completed"      # Finished successfully
    FAILED = "failed"            # Finished with error
    SKIPPED = "skipped"          # Bypassed

    def is_terminal(self) -> bool:
        """Check if this is a terminal state."""
        return self in (
            NodeTaskStatus.COMPLETED,
            NodeTaskStatus.FAILED,
            NodeTaskStatus.SKIPPED,
        )

    def is_successful(self) -> bool:
        """Check if downstream nodes may treat this as satisfied."""
        return self in (NodeTaskStatus.COMPLETED, NodeTaskStatus.SKIPPED)


class ExecutionMode(str, Enum):
    """How a node type does its work."""
    LOCAL = "local"              # Runs inside the worker
    EXTERNAL = "external"        # Submitted to a third-party provider


class ExternalOutcome(str, Enum):
    """Normalized provider status, closed over three values."""
    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"

    def is_terminal(self) -> bool:
        return self != ExternalOutcome.PENDING


class TaskType(str, Enum):
    """Queue job discriminators."""
    NODE_EXECUTION = "node_execution"


__all__ = [
    "QueueJobStatus",
    "ExecutionStatus",
    "NodeTaskStatus",
    "ExecutionMode",
    "ExternalOutcome",
    "TaskType",
]
