# ============================================================================
# WORKFLOW EXECUTION MODEL
# ============================================================================
# STATUS: Core model - One run of a workflow graph
# PURPOSE: Run-level status and progress derived from node tasks
# CREATED: 19 OCT 2026
# EXPORTS: WorkflowExecution
# DEPENDENCIES: pydantic
# ============================================================================
"""
Workflow Execution Model

A WorkflowExecution owns its NodeTasks. Status and progress are
written only by the ExecutionAggregator (and cancellation), never by
the dispatcher or reconciler directly.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, computed_field

from core.contracts import ExecutionStatus
from core.models.graph import WorkflowGraph


class WorkflowExecution(BaseModel):
    """
    One run of a workflow graph.

    Table: genflow.workflow_executions
    Primary Key: id
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex, max_length=64)
    workflow_id: str = Field(..., max_length=64)
    status: ExecutionStatus = Field(default=ExecutionStatus.PENDING)
    progress: int = Field(default=0, ge=0, le=100)

    graph: WorkflowGraph = Field(..., description="Immutable snapshot taken at start")
    input_params: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = Field(
        default=None,
        max_length=2000,
        description="First fatal node error"
    )

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @computed_field
    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal()

    @computed_field
    @property
    def duration_seconds(self) -> Optional[float]:
        """Wall time from start to completion (or now)."""
        if not self.started_at:
            return None
        end_time = self.completed_at or datetime.now(timezone.utc)
        return (end_time - self.started_at).total_seconds()

    def can_transition_to(self, new_status: ExecutionStatus) -> bool:
        """
        Valid transitions:
            PENDING -> RUNNING, COMPLETED, FAILED, CANCELLED
            RUNNING -> COMPLETED, FAILED, CANCELLED
            COMPLETED, FAILED, CANCELLED -> (none, terminal)
        """
        if self.status == new_status:
            return True
        if self.status.is_terminal():
            return False
        if self.status == ExecutionStatus.RUNNING:
            return new_status != ExecutionStatus.PENDING
        return True


__all__ = ["WorkflowExecution"]
