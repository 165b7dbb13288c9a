# ============================================================================
# BACKGROUND LOOP TESTS
# ============================================================================
# STATUS: Tests - Scheduler, consumer and worker health server
# PURPOSE: Verify loop lifecycle, error isolation and stats
# CREATED: 19 OCT 2026
# ============================================================================
"""
Loop Lifecycle Tests

Run with:
    pytest tests/test_loops.py -v
"""

import asyncio
from dataclasses import replace
from unittest.mock import AsyncMock

import pytest
from aiohttp.test_utils import TestClient as AiohttpTestClient
from aiohttp.test_utils import TestServer

from core.contracts import ExecutionStatus, QueueJobStatus
from orchestrator import Scheduler
from worker import main as worker_main
from worker.consumer import QueueConsumer


async def _wait_for(predicate, timeout: float = 3.0):
    """Poll an async predicate until it holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        if await predicate():
            return True
        await asyncio.sleep(0.01)
    return False


class TestScheduler:

    def test_duplicate_name_rejected(self):
        async def noop():
            return None

        scheduler = Scheduler()
        scheduler.add("poller", noop, 1)
        with pytest.raises(ValueError):
            scheduler.add("poller", noop, 1)

    def test_failing_pass_is_counted_not_raised(self):
        async def broken():
            raise RuntimeError("database went away")

        scheduler = Scheduler()
        scheduler.add("broken", broken, 1)
        assert asyncio.run(scheduler.run_once("broken")) is None

        loop = scheduler.stats["loops"]["broken"]
        assert loop["runs"] == 1
        assert loop["errors"] == 1
        assert loop["last_error"] == "database went away"

    def test_engine_loops_start_and_stop(self, engine):
        async def scenario():
            scheduler = engine.build_scheduler()
            await scheduler.start()
            await asyncio.sleep(0.2)
            running = scheduler.stats
            await scheduler.stop()
            return running, scheduler.stats

        running, stopped = asyncio.run(scenario())
        assert running["running"] is True
        assert set(running["loops"]) == {"poller", "recovery", "retention"}
        for loop in running["loops"].values():
            assert loop["runs"] >= 1
            assert loop["errors"] == 0
        assert stopped["running"] is False


class TestQueueConsumer:

    def test_slots_process_queue(self, engine, defaults, make_graph):
        worker_defaults = replace(defaults.worker, concurrency=3)
        consumer = QueueConsumer(engine.repos, engine.dispatcher, defaults.queue, worker_defaults)

        async def scenario():
            graph = make_graph(
                {"a": "echo", "b": "echo", "c": "echo", "m": "flow-merge"},
                [("a", "m"), ("b", "m"), ("c", "m")],
            )
            execution = await engine.executions.start_execution("wf", graph, {})
            await consumer.start()

            async def finished():
                current = await engine.repos.executions.get(execution.id)
                return current.status.is_terminal()

            done = await _wait_for(finished)
            await consumer.stop()
            return done, await engine.repos.executions.get(execution.id)

        done, execution = asyncio.run(scenario())
        assert done
        assert execution.status == ExecutionStatus.COMPLETED
        stats = consumer.stats
        assert stats["running"] is False
        assert stats["concurrency"] == 3
        assert stats["jobs_claimed"] == 4
        assert stats["outcomes"]["completed"] == 4

    def test_dispatch_exception_leaves_lease(self, engine, consumer, make_graph, monkeypatch):
        explode = AsyncMock(side_effect=ConnectionError("lost database connection"))
        monkeypatch.setattr(engine.dispatcher, "dispatch", explode)

        async def scenario():
            await engine.executions.start_execution("wf", make_graph({"a": "echo"}), {})
            outcome = await consumer.run_once()
            jobs = await engine.repos.queue.list_recent()
            return outcome, jobs

        outcome, jobs = asyncio.run(scenario())
        assert outcome is None
        explode.assert_awaited_once()
        assert consumer.stats["dispatch_errors"] == 1
        assert jobs[0].status == QueueJobStatus.PROCESSING
        assert jobs[0].locked_by == "test-worker"

    def test_idle_queue(self, consumer):
        assert asyncio.run(consumer.drain()) == 0
        assert consumer.stats["jobs_claimed"] == 0


class TestWorkerHealthServer:

    def test_health_reports_consumer(self, consumer, monkeypatch):
        monkeypatch.setattr(worker_main, "_consumer", consumer)

        async def scenario():
            async with AiohttpTestClient(TestServer(worker_main.create_health_app())) as client:
                healthy = await client.get("/health")
                body = await healthy.json()
                monkeypatch.setattr(worker_main, "_worker_healthy", False)
                failing = await client.get("/readyz")
                return healthy.status, body, failing.status

        status, body, failing_status = asyncio.run(scenario())
        assert status == 200
        assert body["worker_id"] == "test-worker"
        assert body["consuming"] is False
        assert body["stats"]["jobs_claimed"] == 0
        assert failing_status == 503
