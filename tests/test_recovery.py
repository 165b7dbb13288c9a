# ============================================================================
# POLLER / RECOVERY / RETENTION TESTS
# ============================================================================
# STATUS: Tests - Background loops
# PURPOSE: Verify polling, stuck work resolution and data purging
# CREATED: 19 OCT 2026
# ============================================================================
"""
Background Loop Tests

Covers:
1. Poller: pending, success, transient, permanent and unexpected poll errors
2. Recovery: exhausted leases, stuck external and local tasks,
   forced completion, manual remediation
3. Retention: per-status windows, queue jobs, webhook windows

Time is moved forward by passing `now` rather than sleeping.

Run with:
    pytest tests/test_recovery.py -v
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from core.contracts import ExecutionStatus, NodeTaskStatus, QueueJobStatus
from handlers.registry import (
    ExternalNode,
    ExternalResult,
    NodeContext,
    PermanentProviderError,
    TransientProviderError,
)
from orchestrator import FORCED_NOTE


def _later(seconds: int) -> datetime:
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


async def _by_node(engine, execution_id):
    tasks = await engine.repos.tasks.list_for_execution(execution_id)
    return {t.node_id: t for t in tasks}


class BrokenAdapter(ExternalNode):
    """Submits fine, then fails every status query with an unclassified error."""
    provider = "broken"

    async def submit(self, ctx: NodeContext) -> str:
        return f"bad-{ctx.node_id}"

    async def poll(self, external_task_id: str) -> ExternalResult:
        raise KeyError("status")


async def _broken_then_healthy(engine, consumer, registry, make_graph):
    """Start a broken-adapter run, then a healthy one; the broken task is older."""
    registry.register_external("broken-gen", BrokenAdapter())
    broken = await engine.executions.start_execution("wf", make_graph({"g": "broken-gen"}), {})
    await consumer.drain()
    healthy = await engine.executions.start_execution("wf", make_graph({"g": "fake-gen"}), {})
    await consumer.drain()
    return broken, healthy


# ============================================================================
# POLLER
# ============================================================================

class TestPoller:

    def test_pending_answer_leaves_task(self, engine, consumer, provider, make_graph):
        async def scenario():
            execution = await engine.executions.start_execution("wf", make_graph({"g": "fake-gen"}), {})
            await consumer.drain()
            counts = await engine.poller.poll_once(now=_later(1))
            return counts, await _by_node(engine, execution.id)

        counts, tasks = asyncio.run(scenario())
        assert counts == {"polled": 1, "applied": 0, "pending": 1, "errors": 0}
        assert provider.polled == ["ext-1"]
        assert tasks["g"].status == NodeTaskStatus.PROCESSING

    def test_young_tasks_left_to_webhook(self, engine, consumer, provider, make_graph):
        async def scenario():
            engine.poller.defaults = replace(engine.poller.defaults, min_age_seconds=30)
            await engine.executions.start_execution("wf", make_graph({"g": "fake-gen"}), {})
            await consumer.drain()
            return await engine.poller.poll_once(now=_later(5))

        counts = asyncio.run(scenario())
        assert counts["polled"] == 0
        assert provider.polled == []

    def test_success_answer_completes_and_advances(self, engine, consumer, provider, make_graph):
        provider.answers["ext-1"] = ExternalResult.success({"result_url": "https://cdn/r.png"}, raw_status="done")

        async def scenario():
            graph = make_graph({"g": "fake-gen", "after": "echo"}, [("g", "after")])
            execution = await engine.executions.start_execution("wf", graph, {})
            await consumer.drain()
            counts = await engine.poller.poll_once(now=_later(1))
            await consumer.drain()
            return counts, await engine.executions.get_status(execution.id)

        counts, (execution, tasks) = asyncio.run(scenario())
        by_node = {t.node_id: t for t in tasks}
        assert counts["applied"] == 1
        assert by_node["g"].output_data == {"result_url": "https://cdn/r.png"}
        # The upstream result_url stands in for the missing "output" port
        assert by_node["after"].output_data["output"] == "https://cdn/r.png"
        assert execution.status == ExecutionStatus.COMPLETED

    def test_transient_poll_error_retried_later(self, engine, consumer, provider, make_graph):
        provider.poll_error = TransientProviderError("502 from provider")

        async def scenario():
            execution = await engine.executions.start_execution("wf", make_graph({"g": "fake-gen"}), {})
            await consumer.drain()
            counts = await engine.poller.poll_once(now=_later(1))
            return counts, await _by_node(engine, execution.id)

        counts, tasks = asyncio.run(scenario())
        assert counts["errors"] == 1
        assert tasks["g"].status == NodeTaskStatus.PROCESSING

    def test_permanent_poll_error_fails_task(self, engine, consumer, provider, make_graph):
        provider.poll_error = PermanentProviderError("task id unknown to provider")

        async def scenario():
            execution = await engine.executions.start_execution("wf", make_graph({"g": "fake-gen"}), {})
            await consumer.drain()
            await engine.poller.poll_once(now=_later(1))
            return await engine.executions.get_status(execution.id)

        execution, tasks = asyncio.run(scenario())
        assert tasks[0].status == NodeTaskStatus.FAILED
        assert tasks[0].error_message == "task id unknown to provider"
        assert execution.status == ExecutionStatus.FAILED

    def test_unexpected_poll_error_does_not_stall_pass(self, engine, consumer, registry, provider, make_graph):
        provider.answers["ext-1"] = ExternalResult.success({"result_url": "https://cdn/ok.png"}, raw_status="done")

        async def scenario():
            broken, healthy = await _broken_then_healthy(engine, consumer, registry, make_graph)
            counts = await engine.poller.poll_once(now=_later(1))
            return (
                counts,
                await _by_node(engine, broken.id),
                await engine.executions.get_status(healthy.id),
            )

        counts, broken_tasks, (healthy, healthy_tasks) = asyncio.run(scenario())
        assert counts == {"polled": 2, "applied": 1, "pending": 0, "errors": 1}
        assert broken_tasks["g"].status == NodeTaskStatus.PROCESSING
        assert healthy_tasks[0].status == NodeTaskStatus.COMPLETED
        assert healthy.status == ExecutionStatus.COMPLETED


# ============================================================================
# RECOVERY
# ============================================================================

class TestRecoverySweep:

    def test_exhausted_lease_fails_task(self, engine, make_graph):
        async def scenario():
            execution = await engine.executions.start_execution("wf", make_graph({"a": "echo"}), {})
            t0 = datetime.now(timezone.utc)
            # Three workers claim and die in turn
            for i in range(3):
                job = await engine.repos.queue.claim(f"dead-{i}", 60, now=t0 + timedelta(seconds=61 * i))
                assert job is not None
            report = await engine.recovery.sweep(now=t0 + timedelta(seconds=300))
            job = await engine.repos.queue.get(job.id)
            return report, job, await engine.executions.get_status(execution.id)

        report, job, (execution, tasks) = asyncio.run(scenario())
        assert report.expired_jobs == 1
        assert report.failed_tasks == 1
        assert job.status == QueueJobStatus.FAILED
        assert tasks[0].status == NodeTaskStatus.FAILED
        assert tasks[0].error_message == "Worker lease expired after 3 attempts"
        assert execution.status == ExecutionStatus.FAILED

    def test_stuck_external_reconciled_by_poll(self, engine, consumer, provider, make_graph):
        provider.answers["ext-1"] = ExternalResult.success({"result_url": "https://cdn/late.mp4"}, raw_status="done")

        async def scenario():
            execution = await engine.executions.start_execution("wf", make_graph({"g": "fake-gen"}), {})
            await consumer.drain()
            report = await engine.recovery.sweep(now=_later(700))
            return report, await engine.executions.get_status(execution.id)

        report, (execution, tasks) = asyncio.run(scenario())
        assert report.reconciled_tasks == 1
        assert report.forced_tasks == 0
        assert tasks[0].output_data == {"result_url": "https://cdn/late.mp4"}
        assert execution.status == ExecutionStatus.COMPLETED

    def test_stuck_external_below_ceiling_waits(self, engine, consumer, make_graph):
        async def scenario():
            execution = await engine.executions.start_execution("wf", make_graph({"g": "fake-gen"}), {})
            await consumer.drain()
            report = await engine.recovery.sweep(now=_later(700))
            return report, await _by_node(engine, execution.id)

        report, tasks = asyncio.run(scenario())
        assert report.reconciled_tasks == 0
        assert report.forced_tasks == 0
        assert tasks["g"].status == NodeTaskStatus.PROCESSING

    def test_unexpected_poll_error_does_not_stall_sweep(self, engine, consumer, registry, provider, make_graph):
        provider.answers["ext-1"] = ExternalResult.success({"result_url": "https://cdn/ok.png"}, raw_status="done")

        async def scenario():
            broken, healthy = await _broken_then_healthy(engine, consumer, registry, make_graph)
            report = await engine.recovery.sweep(now=_later(700))
            return (
                report,
                await _by_node(engine, broken.id),
                await engine.repos.executions.get(healthy.id),
            )

        report, broken_tasks, healthy = asyncio.run(scenario())
        assert report.reconciled_tasks == 1
        assert report.forced_tasks == 0
        # Below the ceiling the broken task keeps waiting for a later pass
        assert broken_tasks["g"].status == NodeTaskStatus.PROCESSING
        assert healthy.status == ExecutionStatus.COMPLETED

    def test_silent_provider_force_completed_past_ceiling(self, engine, consumer, make_graph):
        async def scenario():
            graph = make_graph({"g": "fake-gen", "after": "echo"}, [("g", "after")])
            execution = await engine.executions.start_execution("wf", graph, {})
            await consumer.drain()
            report = await engine.recovery.sweep(now=_later(3700))
            await consumer.drain()
            return report, await engine.executions.get_status(execution.id)

        report, (execution, tasks) = asyncio.run(scenario())
        by_node = {t.node_id: t for t in tasks}
        assert report.forced_tasks == 1
        assert by_node["g"].status == NodeTaskStatus.COMPLETED
        assert by_node["g"].output_data == {
            "note": FORCED_NOTE,
            "forced": True,
            "external_task_id": "ext-1",
            "result_url": None,
        }
        assert by_node["g"].resolved_external_id == "ext-1"
        assert by_node["after"].status == NodeTaskStatus.COMPLETED
        assert execution.status == ExecutionStatus.COMPLETED

    def test_stuck_local_task_failed_past_ceiling(self, engine, make_graph):
        async def scenario():
            execution = await engine.executions.start_execution("wf", make_graph({"a": "echo"}), {})
            t0 = datetime.now(timezone.utc)
            await engine.repos.queue.claim("hung-worker", 60, now=t0)
            task = (await engine.repos.tasks.list_for_execution(execution.id))[0]
            await engine.repos.tasks.mark_processing(task.id, now=t0)
            report = await engine.recovery.sweep(now=t0 + timedelta(seconds=3700))
            return report, await engine.executions.get_status(execution.id)

        report, (execution, tasks) = asyncio.run(scenario())
        assert report.failed_tasks == 1
        assert tasks[0].status == NodeTaskStatus.FAILED
        assert tasks[0].error_message == "Node did not finish within 3600s"
        assert execution.status == ExecutionStatus.FAILED

    def test_settles_running_execution(self, engine, make_graph):
        """A finished task whose recompute never ran is picked up."""
        async def scenario():
            execution = await engine.executions.start_execution("wf", make_graph({"a": "echo"}), {})
            task = (await engine.repos.tasks.list_for_execution(execution.id))[0]
            await engine.repos.tasks.mark_processing(task.id)
            # Finalize at the repository level, skipping the service's recompute
            await engine.repos.tasks.finalize(task.id, NodeTaskStatus.COMPLETED, output_data={"ok": True})
            before = await engine.repos.executions.get(execution.id)
            report = await engine.recovery.sweep()
            after = await engine.repos.executions.get(execution.id)
            return before, report, after

        before, report, after = asyncio.run(scenario())
        assert before.status == ExecutionStatus.RUNNING
        assert report.executions_checked == 1
        assert after.status == ExecutionStatus.COMPLETED
        assert after.progress == 100

    def test_force_complete_by_type(self, engine, consumer, make_graph):
        async def scenario():
            for _ in range(2):
                await engine.executions.start_execution("wf", make_graph({"g": "fake-gen"}), {})
            await engine.executions.start_execution("wf", make_graph({"a": "echo"}), {})
            await consumer.drain()
            first = await engine.recovery.force_complete_by_type("fake-gen")
            second = await engine.recovery.force_complete_by_type("fake-gen")
            running = await engine.repos.executions.list_by_status(ExecutionStatus.RUNNING)
            return first, second, running

        first, second, running = asyncio.run(scenario())
        assert len(first) == 2
        assert second == []
        assert running == []


# ============================================================================
# RETENTION
# ============================================================================

class TestRetention:

    def test_windows_per_status(self, engine, consumer, make_graph):
        async def scenario():
            await engine.executions.start_execution("wf", make_graph({"a": "echo"}), {})
            await engine.executions.start_execution("wf", make_graph({"a": "boom"}), {})
            cancelled = await engine.executions.start_execution("wf", make_graph({"a": "echo"}), {})
            await engine.executions.cancel_execution(cancelled.id)
            await consumer.drain()

            week = await engine.retention.run(now=_later(8 * 86400))
            fortnight = await engine.retention.run(now=_later(15 * 86400))
            month = await engine.retention.run(now=_later(31 * 86400))
            remaining = await engine.repos.executions.list_recent(limit=10)
            return week, fortnight, month, remaining

        week, fortnight, month, remaining = asyncio.run(scenario())
        assert week["executions_cancelled"] == 1
        assert week["executions_failed"] == 0
        assert week["executions_completed"] == 0
        assert week["node_tasks"] == 1
        assert week["queue_jobs"] == 3
        assert fortnight["executions_failed"] == 1
        assert fortnight["executions_completed"] == 0
        assert month["executions_completed"] == 1
        assert remaining == []

    def test_running_executions_kept(self, engine, consumer, make_graph):
        async def scenario():
            await engine.executions.start_execution("wf", make_graph({"g": "fake-gen"}), {})
            await consumer.drain()
            deleted = await engine.retention.run(now=_later(365 * 86400))
            return deleted, await engine.repos.executions.list_by_status(ExecutionStatus.RUNNING)

        deleted, running = asyncio.run(scenario())
        assert deleted["node_tasks"] == 0
        assert len(running) == 1

    def test_unprocessed_webhooks_outlive_processed(self, engine):
        async def scenario():
            kept = await engine.repos.webhooks.record("jcut", "{}")
            gone = await engine.repos.webhooks.record("jcut", "{}")
            await engine.repos.webhooks.mark_processed(gone.id)
            deleted = await engine.retention.run(now=_later(8 * 86400))
            return deleted, await engine.repos.webhooks.get(kept.id), await engine.repos.webhooks.get(gone.id)

        deleted, kept, gone = asyncio.run(scenario())
        assert deleted["webhook_events"] == 1
        assert deleted["webhook_events_unprocessed"] == 0
        assert kept is not None
        assert gone is None

    def test_unprocessed_webhooks_purged_after_longer_window(self, engine):
        async def scenario():
            stale = await engine.repos.webhooks.record("jcut", "{not json")
            settled = await engine.repos.webhooks.record("jcut", "{}")
            await engine.repos.webhooks.mark_processed(settled.id)
            deleted = await engine.retention.run(now=_later(31 * 86400))
            return deleted, await engine.repos.webhooks.get(stale.id), await engine.repos.webhooks.list_recent()

        deleted, stale, remaining = asyncio.run(scenario())
        assert deleted["webhook_events"] == 1
        assert deleted["webhook_events_unprocessed"] == 1
        assert stale is None
        assert remaining == []

    def test_unprocessed_window_configurable(self, engine):
        async def scenario():
            engine.retention.defaults = replace(engine.retention.defaults, unprocessed_webhook_days=90)
            event = await engine.repos.webhooks.record("kapi", "{}")
            deleted = await engine.retention.run(now=_later(31 * 86400))
            return deleted, await engine.repos.webhooks.get(event.id)

        deleted, event = asyncio.run(scenario())
        assert deleted["webhook_events_unprocessed"] == 0
        assert event is not None
