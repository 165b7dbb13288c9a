# ============================================================================
# POLLER
# ============================================================================
# STATUS: Core - Provider status polling
# PURPOSE: Resolve submitted tasks whose webhook never arrived
# CREATED: 19 OCT 2026
# EXPORTS: Poller, query_provider
# ============================================================================
"""
Poller

Each tick takes PROCESSING tasks that carry an external task id and
started more than min_age seconds ago, asks their adapter for the
current state and feeds terminal answers to the Reconciler.

Transient provider errors are logged and retried next tick; a
permanent error is reconciled as a failure. Anything unexpected from
an adapter is logged with its traceback and treated as transient, so
one broken adapter cannot stall the rest of the pass.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from core.config import PollerDefaults
from core.models import NodeTask
from handlers.registry import (
    DataIntegrityError,
    ExternalResult,
    NodeTypeRegistry,
    PermanentProviderError,
    TransientProviderError,
)
from .reconciler import Reconciler, ReconcileOutcome

logger = logging.getLogger(__name__)


async def query_provider(
    registry: NodeTypeRegistry,
    task: NodeTask,
    timeout_seconds: float,
) -> Optional[ExternalResult]:
    """
    Poll one task's provider.

    Returns:
        The provider's answer, a failure result for permanent errors,
        or None when the question should be asked again later
    """
    try:
        adapter = registry.get_external(task.node_type)
    except DataIntegrityError as e:
        logger.error(f"Cannot poll node {task.node_id}: {e}")
        return None

    try:
        return await asyncio.wait_for(adapter.poll(task.external_task_id), timeout=timeout_seconds)
    except PermanentProviderError as e:
        logger.warning(f"Provider rejected status query for {task.external_task_id}: {e}")
        return ExternalResult.failure(str(e))
    except (TransientProviderError, asyncio.TimeoutError) as e:
        logger.warning(f"Status query for {task.external_task_id} failed, will retry: {e or 'timeout'}")
        return None
    except Exception as e:
        logger.exception(f"Unexpected error polling {task.external_task_id} ({task.node_type}): {e}")
        return None


class Poller:
    """Periodic provider status checks."""

    def __init__(
        self,
        repos: Any,
        registry: NodeTypeRegistry,
        reconciler: Reconciler,
        defaults: Optional[PollerDefaults] = None,
        provider_timeout_seconds: float = 30.0,
    ):
        self.repos = repos
        self.registry = registry
        self.reconciler = reconciler
        self.defaults = defaults or PollerDefaults()
        self.provider_timeout_seconds = provider_timeout_seconds

    async def poll_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        One polling pass.

        Returns:
            Counts: polled, applied, pending, errors
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=self.defaults.min_age_seconds)
        tasks = await self.repos.tasks.list_processing(
            started_before=cutoff,
            external_only=True,
            limit=self.defaults.batch_size,
        )

        counts = {"polled": 0, "applied": 0, "pending": 0, "errors": 0}
        for task in tasks:
            counts["polled"] += 1
            result = await query_provider(self.registry, task, self.provider_timeout_seconds)
            if result is None:
                counts["errors"] += 1
                continue
            outcome = await self.reconciler.apply_to_task(task, result, now=now)
            if outcome in (ReconcileOutcome.APPLIED, ReconcileOutcome.SUPPRESSED):
                counts["applied"] += 1
            elif outcome == ReconcileOutcome.STILL_PENDING:
                counts["pending"] += 1

        if counts["polled"]:
            logger.info(
                f"Poll pass: {counts['polled']} polled, {counts['applied']} resolved, "
                f"{counts['pending']} pending, {counts['errors']} errors"
            )
        return counts


__all__ = ["Poller", "query_provider"]
