# ============================================================================
# QUEUE CONSUMER
# ============================================================================
# STATUS: Core - Job queue consumer
# PURPOSE: Lease node_execution jobs and hand them to the dispatcher
# CREATED: 19 OCT 2026
# ============================================================================
"""
Queue Consumer

Pulls jobs from the durable job queue and dispatches them.

Features:
- Lease-based claims (one holder per job, expired leases reclaimable)
- Configurable concurrency (independent claim slots)
- Idle back-off when the queue is empty
- Graceful shutdown with a drain timeout

A dispatch that raises leaves its job leased; the lease expires and
another worker reclaims it, the same as if this process had died.
"""

import asyncio
import logging
import signal
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.config import QueueDefaults, WorkerDefaults
from core.logging import log_context
from orchestrator.dispatcher import Dispatcher, DispatchOutcome

logger = logging.getLogger(__name__)


# ============================================================================
# CONSUMER
# ============================================================================

class QueueConsumer:
    """
    Consumes jobs from the job queue.

    Claims node_execution jobs under a lease and runs them through the
    Dispatcher.
    """

    def __init__(
        self,
        repos: Any,
        dispatcher: Dispatcher,
        queue_defaults: Optional[QueueDefaults] = None,
        worker_defaults: Optional[WorkerDefaults] = None,
    ):
        """
        Initialize consumer.

        Args:
            repos: Repositories bundle (uses repos.queue)
            dispatcher: Dispatcher for claimed jobs
            queue_defaults: Lease length
            worker_defaults: Worker id, concurrency, idle sleep
        """
        self.repos = repos
        self.dispatcher = dispatcher
        self.queue_defaults = queue_defaults or QueueDefaults()
        self.worker_defaults = worker_defaults or WorkerDefaults()

        # State
        self._running = False
        self._stop_event = asyncio.Event()
        self._slots: List[asyncio.Task] = []
        self._started_at: Optional[datetime] = None

        # Stats
        self._jobs_claimed = 0
        self._dispatch_errors = 0
        self._outcomes: Dict[str, int] = {outcome.value: 0 for outcome in DispatchOutcome}

    @property
    def worker_id(self) -> str:
        return self.worker_defaults.worker_id

    async def run_once(self, now: Optional[datetime] = None) -> Optional[DispatchOutcome]:
        """
        Claim and dispatch at most one job.

        Returns:
            DispatchOutcome, or None when nothing was claimable or the
            dispatch raised
        """
        job = await self.repos.queue.claim(
            self.worker_id,
            self.queue_defaults.lease_seconds,
            now=now,
        )
        if job is None:
            return None

        self._jobs_claimed += 1
        with log_context(queue_job_id=job.id, worker_id=self.worker_id):
            logger.debug(f"Claimed job {job.id} (attempt {job.attempts}/{job.max_attempts})")
            try:
                outcome = await self.dispatcher.dispatch(job, self.worker_id)
            except Exception as e:
                self._dispatch_errors += 1
                logger.exception(f"Dispatch of job {job.id} raised; lease left to expire: {e}")
                return None

        self._outcomes[outcome.value] += 1
        return outcome

    async def drain(self, max_jobs: int = 1000) -> int:
        """
        Dispatch until the queue has nothing claimable.

        Returns:
            Number of jobs dispatched
        """
        count = 0
        while count < max_jobs:
            if await self.run_once() is None:
                break
            count += 1
        return count

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        """Start the claim slots."""
        if self._running:
            logger.warning("Consumer already running")
            return

        logger.info(
            f"Starting consumer: worker_id={self.worker_id}, "
            f"concurrency={self.worker_defaults.concurrency}"
        )
        self._running = True
        self._started_at = datetime.now(timezone.utc)
        self._stop_event.clear()
        self._slots = [
            asyncio.create_task(self._slot_loop(i), name=f"consumer-slot-{i}")
            for i in range(max(1, self.worker_defaults.concurrency))
        ]

    async def stop(self) -> None:
        """Stop gracefully, letting in-flight dispatches finish."""
        if not self._running:
            return

        logger.info("Stopping consumer...")
        self._running = False
        self._stop_event.set()

        if self._slots:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*self._slots, return_exceptions=True),
                    timeout=self.worker_defaults.shutdown_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning("Shutdown timeout - cancelling remaining slots")
                for slot in self._slots:
                    slot.cancel()
                await asyncio.gather(*self._slots, return_exceptions=True)
        self._slots = []

        logger.info(
            f"Consumer stopped. Stats: claimed={self._jobs_claimed}, "
            f"outcomes={self._outcomes}, errors={self._dispatch_errors}"
        )

    async def run(self) -> None:
        """Run until stop() is called."""
        await self.start()
        try:
            await self._stop_event.wait()
        finally:
            await self.stop()

    async def _slot_loop(self, slot: int) -> None:
        while not self._stop_event.is_set():
            try:
                outcome = await self.run_once()
            except Exception as e:
                # Claim failed (database unavailable); back off like an idle queue
                logger.error(f"Slot {slot} claim error: {e}")
                outcome = None

            if outcome is not None:
                continue

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self.worker_defaults.idle_sleep_seconds,
                )
                break
            except asyncio.TimeoutError:
                pass

    # =========================================================================
    # STATS AND PROPERTIES
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stats(self) -> Dict[str, Any]:
        """Get consumer statistics."""
        uptime_seconds = None
        if self._started_at:
            uptime_seconds = (datetime.now(timezone.utc) - self._started_at).total_seconds()
        return {
            "running": self._running,
            "worker_id": self.worker_id,
            "concurrency": self.worker_defaults.concurrency,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "uptime_seconds": uptime_seconds,
            "jobs_claimed": self._jobs_claimed,
            "dispatch_errors": self._dispatch_errors,
            "outcomes": dict(self._outcomes),
        }


# ============================================================================
# CONVENIENCE FUNCTIONS
# ============================================================================

def install_signal_handlers(consumer: QueueConsumer) -> None:
    """Stop the consumer on SIGTERM / SIGINT."""
    loop = asyncio.get_running_loop()

    def shutdown_handler():
        logger.info("Shutdown signal received")
        asyncio.create_task(consumer.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, shutdown_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "QueueConsumer",
    "install_signal_handlers",
]
