# ============================================================================
# RETENTION JOB
# ============================================================================
# STATUS: Core - Data lifecycle
# PURPOSE: Delete old terminal executions, queue jobs and webhook events
# CREATED: 19 OCT 2026
# EXPORTS: RetentionJob
# ============================================================================
"""
Retention Job

Deletes terminal data past its retention window:

    cancelled executions   7 days   (by completed_at)
    failed executions     14 days
    completed executions  30 days
    queue jobs             7 days   (completed/failed, by updated_at)
    webhook events         7 days   (processed)
                          30 days   (unprocessed, kept for diagnosis)

Executions take their node tasks with them; the repository deletes the
tasks first, then the executions, in one transaction.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from core.config import RetentionDefaults
from core.contracts import ExecutionStatus

logger = logging.getLogger(__name__)


class RetentionJob:
    """Purges old terminal data."""

    def __init__(self, repos: Any, defaults: Optional[RetentionDefaults] = None):
        self.repos = repos
        self.defaults = defaults or RetentionDefaults()

    def cutoffs(self, now: datetime) -> Dict[ExecutionStatus, datetime]:
        """Per-status deletion cutoff for executions."""
        return {
            ExecutionStatus.CANCELLED: now - timedelta(days=self.defaults.cancelled_days),
            ExecutionStatus.FAILED: now - timedelta(days=self.defaults.failed_days),
            ExecutionStatus.COMPLETED: now - timedelta(days=self.defaults.completed_days),
        }

    async def run(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        One retention pass.

        Returns:
            Counts of deleted rows per category
        """
        now = now or datetime.now(timezone.utc)
        deleted: Dict[str, int] = {"node_tasks": 0}

        for status, cutoff in self.cutoffs(now).items():
            executions, tasks = await self.repos.executions.purge(status, cutoff)
            deleted[f"executions_{status.value}"] = executions
            deleted["node_tasks"] += tasks

        deleted["queue_jobs"] = await self.repos.queue.purge(
            now - timedelta(days=self.defaults.queue_days)
        )
        deleted["webhook_events"] = await self.repos.webhooks.purge(
            now - timedelta(days=self.defaults.webhook_days)
        )
        deleted["webhook_events_unprocessed"] = await self.repos.webhooks.purge(
            now - timedelta(days=self.defaults.unprocessed_webhook_days), processed=False
        )

        if any(deleted.values()):
            logger.info(f"Retention purge: {deleted}")
        return deleted


__all__ = ["RetentionJob"]
