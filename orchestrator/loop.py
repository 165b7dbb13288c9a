# ============================================================================
# BACKGROUND LOOPS
# ============================================================================
# STATUS: Core - Periodic engine maintenance
# PURPOSE: Run the poller, recovery sweep and retention job on fixed cadences
# CREATED: 19 OCT 2026
# EXPORTS: Scheduler, PeriodicTask
# ============================================================================
"""
Background Loops

Each periodic job gets its own asyncio task that runs, then waits on
the stop event for its interval. One failing pass is logged and the
loop carries on; stop() wakes every loop at once.

Runs as background tasks in the FastAPI application.

Usage:
    scheduler = Scheduler()
    scheduler.add("poller", engine.poller.poll_once, 10.0)
    await scheduler.start()
    ...
    await scheduler.stop()
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

PassFunc = Callable[[], Awaitable[Any]]


@dataclass
class PeriodicTask:
    """One named periodic pass and its counters."""
    name: str
    func: PassFunc
    interval_seconds: float
    runs: int = 0
    errors: int = 0
    last_run_at: Optional[datetime] = None
    last_result: Any = None
    last_error: Optional[str] = None
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        result = self.last_result
        if hasattr(result, "to_dict"):
            result = result.to_dict()
        return {
            "interval_seconds": self.interval_seconds,
            "runs": self.runs,
            "errors": self.errors,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_result": result,
            "last_error": self.last_error,
        }


class Scheduler:
    """Runs periodic engine passes until stopped."""

    def __init__(self):
        self._tasks: Dict[str, PeriodicTask] = {}
        self._running = False
        self._stop_event = asyncio.Event()
        self._started_at: Optional[datetime] = None

    def add(self, name: str, func: PassFunc, interval_seconds: float) -> None:
        """Register a pass; must be called before start()."""
        if name in self._tasks:
            raise ValueError(f"Periodic task already registered: {name}")
        self._tasks[name] = PeriodicTask(name=name, func=func, interval_seconds=interval_seconds)

    async def start(self) -> None:
        """Start one background loop per registered pass."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        self._running = True
        self._started_at = datetime.now(timezone.utc)
        self._stop_event.clear()
        for periodic in self._tasks.values():
            periodic.task = asyncio.create_task(self._loop(periodic), name=f"genflow-{periodic.name}")
        logger.info(f"Scheduler started: {self.names}")

    async def stop(self) -> None:
        """Signal every loop to stop and wait for them."""
        if not self._running:
            return

        self._running = False
        self._stop_event.set()
        for periodic in self._tasks.values():
            if periodic.task:
                periodic.task.cancel()
                try:
                    await periodic.task
                except asyncio.CancelledError:
                    pass
                periodic.task = None
        logger.info("Scheduler stopped")

    async def run_once(self, name: str) -> Any:
        """Run one pass immediately (admin trigger and tests)."""
        return await self._run(self._tasks[name])

    async def _run(self, periodic: PeriodicTask) -> Any:
        try:
            result = await periodic.func()
            periodic.last_result = result
            periodic.last_error = None
            return result
        except Exception as e:
            periodic.errors += 1
            periodic.last_error = str(e)
            logger.exception(f"{periodic.name} pass failed: {e}")
            return None
        finally:
            periodic.runs += 1
            periodic.last_run_at = datetime.now(timezone.utc)

    async def _loop(self, periodic: PeriodicTask) -> None:
        logger.info(f"Starting {periodic.name} loop (interval={periodic.interval_seconds}s)")
        while not self._stop_event.is_set():
            await self._run(periodic)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=periodic.interval_seconds)
                break
            except asyncio.TimeoutError:
                pass
        logger.info(f"{periodic.name} loop stopped")

    # =========================================================================
    # STATS AND PROPERTIES
    # =========================================================================

    @property
    def names(self) -> List[str]:
        return list(self._tasks)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stats(self) -> Dict[str, Any]:
        """Get scheduler statistics."""
        uptime_seconds = None
        if self._started_at:
            uptime_seconds = (datetime.now(timezone.utc) - self._started_at).total_seconds()
        return {
            "running": self._running,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "uptime_seconds": uptime_seconds,
            "loops": {name: periodic.to_dict() for name, periodic in self._tasks.items()},
        }


__all__ = ["Scheduler", "PeriodicTask"]
