# ============================================================================
# QUEUE JOB MODEL
# ============================================================================
# STATUS: Core model - Leasable unit of work
# PURPOSE: Row shape of the durable job queue
# CREATED: 19 OCT 2026
# EXPORTS: QueueJob
# DEPENDENCIES: pydantic
# ============================================================================
"""
Queue Job Model

A QueueJob is an atomic unit of dispatchable work. The queue knows
nothing about what the payload means; for node execution the payload
carries execution_id and node_task_id.

Lease:
    locked_by/locked_at hold the lease. A PROCESSING job whose
    locked_at + lease duration is in the past can be claimed again
    by any worker while attempts remain.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from core.contracts import QueueJobStatus


class QueueJob(BaseModel):
    """
    Durable queue entry.

    Table: genflow.job_queue
    Primary Key: id (BIGSERIAL, FIFO tie-break)
    """
    id: Optional[int] = Field(default=None, description="Assigned on enqueue")
    task_type: str = Field(..., max_length=64)
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: QueueJobStatus = Field(default=QueueJobStatus.PENDING)
    priority: int = Field(default=0, description="Higher is dequeued first")

    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)

    # Lease
    locked_by: Optional[str] = Field(default=None, max_length=128)
    locked_at: Optional[datetime] = None

    # Not claimable before this instant (retry backoff)
    available_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_error: Optional[str] = Field(default=None, max_length=2000)

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def has_attempts_left(self) -> bool:
        return self.attempts < self.max_attempts

    def lease_expired(self, lease_seconds: int, now: Optional[datetime] = None) -> bool:
        """
        Check if the lease has expired.

        Args:
            lease_seconds: Lease duration
            now: Current time (defaults to now, UTC)

        Returns:
            True if locked_at + lease_seconds < now
        """
        if self.locked_at is None:
            return True
        if now is None:
            now = datetime.now(timezone.utc)
        return self.locked_at + timedelta(seconds=lease_seconds) < now

    def is_claimable(self, lease_seconds: int, now: Optional[datetime] = None) -> bool:
        """Pending and available, or processing with an expired lease and attempts left."""
        if now is None:
            now = datetime.now(timezone.utc)
        if self.status == QueueJobStatus.PENDING:
            return self.available_at <= now
        if self.status == QueueJobStatus.PROCESSING:
            return self.has_attempts_left() and self.lease_expired(lease_seconds, now)
        return False


__all__ = ["QueueJob"]
