# ============================================================================
# NODE TASK MODEL
# ============================================================================
# STATUS: Core model - Node runtime state
# PURPOSE: Track execution of one graph node within one run
# CREATED: 19 OCT 2026
# EXPORTS: NodeTask
# DEPENDENCIES: pydantic
# ============================================================================
"""
Node Task Model

NodeTask tracks the runtime state of a single graph node within one
WorkflowExecution.

Key concept:
- WorkflowGraph.GraphNode = TEMPLATE (what to do)
- NodeTask = INSTANCE (runtime state for one execution)

Each execution creates N NodeTask records, one per graph node. The
stores only ever move a task with a compare-and-swap on its current
status; the transition table here documents and checks those moves.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, computed_field

from core.contracts import NodeTaskStatus


class NodeTask(BaseModel):
    """
    Runtime state of a node within an execution.

    Table: genflow.node_tasks
    Primary Key: id
    Unique: (execution_id, node_id)

    Lifecycle:
        1. Created PENDING when the execution starts
        2. QUEUED when every upstream is satisfied and a queue job exists
        3. PROCESSING when a worker starts it
        4. COMPLETED/FAILED exactly once (local result, reconciler, recovery)
        5. SKIPPED from PENDING when a fatal upstream failure dooms it
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex, max_length=64)
    execution_id: str = Field(..., max_length=64)
    node_id: str = Field(..., max_length=64, description="Graph-local identifier")
    node_type: str = Field(..., max_length=64)
    status: NodeTaskStatus = Field(default=NodeTaskStatus.PENDING)
    optional: bool = Field(default=False, description="Failure is not fatal to the execution")

    # External correlation
    external_task_id: Optional[str] = Field(
        default=None,
        max_length=255,
        description="Provider task id, set only while PROCESSING"
    )
    resolved_external_id: Optional[str] = Field(
        default=None,
        max_length=255,
        description="Provider task id kept after finalize for late callbacks"
    )
    provider: Optional[str] = Field(default=None, max_length=64)

    # Data
    input_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = Field(default=None, max_length=2000)

    attempts: int = Field(default=0, ge=0)

    # Timestamps
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    queued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @computed_field
    @property
    def is_terminal(self) -> bool:
        """Check if task is in a terminal state."""
        return self.status.is_terminal()

    @property
    def is_fatal_failure(self) -> bool:
        """A failed non-optional task fails its execution."""
        return self.status == NodeTaskStatus.FAILED and not self.optional

    @property
    def satisfies_dependents(self) -> bool:
        """Completed, skipped, or an optional failure (downstream gets None)."""
        if self.status.is_successful():
            return True
        return self.status == NodeTaskStatus.FAILED and self.optional

    def can_transition_to(self, new_status: NodeTaskStatus) -> bool:
        """
        Validate if a status transition is allowed.

        Valid transitions:
            PENDING -> QUEUED, SKIPPED
            QUEUED -> PROCESSING, SKIPPED (cancellation)
            PROCESSING -> COMPLETED, FAILED, QUEUED (transient retry),
                          PROCESSING (restart after lease expiry)
            COMPLETED, FAILED, SKIPPED -> (none, terminal)
        """
        allowed = {
            NodeTaskStatus.PENDING: {NodeTaskStatus.QUEUED, NodeTaskStatus.SKIPPED},
            NodeTaskStatus.QUEUED: {NodeTaskStatus.PROCESSING, NodeTaskStatus.SKIPPED},
            NodeTaskStatus.PROCESSING: {
                NodeTaskStatus.COMPLETED,
                NodeTaskStatus.FAILED,
                NodeTaskStatus.QUEUED,
                NodeTaskStatus.PROCESSING,
            },
            NodeTaskStatus.COMPLETED: set(),
            NodeTaskStatus.FAILED: set(),
            NodeTaskStatus.SKIPPED: set(),
        }
        return new_status in allowed.get(self.status, set())

    def mark_queued(self, now: Optional[datetime] = None) -> None:
        """Mark task queued (queue job enqueued)."""
        if not self.can_transition_to(NodeTaskStatus.QUEUED):
            raise ValueError(f"Cannot transition from {self.status} to QUEUED")
        now = now or datetime.now(timezone.utc)
        self.status = NodeTaskStatus.QUEUED
        self.queued_at = now
        self.updated_at = now

    def mark_processing(self, now: Optional[datetime] = None) -> None:
        """Mark task processing (worker picked it up)."""
        if not self.can_transition_to(NodeTaskStatus.PROCESSING):
            raise ValueError(f"Cannot transition from {self.status} to PROCESSING")
        now = now or datetime.now(timezone.utc)
        self.status = NodeTaskStatus.PROCESSING
        self.attempts += 1
        self.started_at = now
        self.updated_at = now

    def mark_finalized(
        self,
        status: NodeTaskStatus,
        output_data: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Mark task COMPLETED or FAILED and release the external id."""
        if status not in (NodeTaskStatus.COMPLETED, NodeTaskStatus.FAILED):
            raise ValueError(f"Finalize status must be completed or failed, got {status}")
        if not self.can_transition_to(status):
            raise ValueError(f"Cannot transition from {self.status} to {status.value.upper()}")
        now = now or datetime.now(timezone.utc)
        self.status = status
        self.output_data = output_data
        self.error_message = error_message[:2000] if error_message else None
        if self.external_task_id:
            self.resolved_external_id = self.external_task_id
        self.external_task_id = None
        self.completed_at = now
        self.updated_at = now

    def mark_skipped(self, now: Optional[datetime] = None) -> None:
        """Mark task skipped."""
        if not self.can_transition_to(NodeTaskStatus.SKIPPED):
            raise ValueError(f"Cannot transition from {self.status} to SKIPPED")
        now = now or datetime.now(timezone.utc)
        self.status = NodeTaskStatus.SKIPPED
        self.completed_at = now
        self.updated_at = now


__all__ = ["NodeTask"]
