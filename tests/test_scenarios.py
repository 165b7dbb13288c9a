# ============================================================================
# END-TO-END SCENARIO TESTS
# ============================================================================
# STATUS: Tests - Whole-engine behavior
# PURPOSE: Run executions through dispatch, callbacks, polling and recovery
# CREATED: 19 OCT 2026
# ============================================================================
"""
End-to-End Scenarios

1. Mixed local/external chain finished by a webhook
2. Webhooks that never arrive: poller, then recovery sweep
3. Duplicate and unknown webhooks
4. Operator stop of processing, queued and pending nodes
5. Randomized DAGs: dependency gating and failure propagation

Run with:
    pytest tests/test_scenarios.py -v
"""

import asyncio
import json
import random
from datetime import datetime, timedelta, timezone

import pytest

from core.contracts import ExecutionStatus, NodeTaskStatus
from handlers.registry import ExternalResult
from orchestrator import ReconcileOutcome
from services.node_task_service import STOPPED_MESSAGE


def _later(seconds: int) -> datetime:
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


class TestWebhookDrivenChain:

    def test_local_external_local(self, engine, consumer, provider, make_graph):
        async def scenario():
            graph = make_graph(
                {"a": {"node_type": "echo", "data": {"text": "hi"}}, "g": "fake-gen", "c": "echo"},
                [("a", "g"), ("g", "c")],
            )
            execution = await engine.executions.start_execution("wf", graph, {})
            await consumer.drain()
            midway, _ = await engine.executions.get_status(execution.id)

            body = json.dumps({"task_id": "ext-1", "status": "completed", "output_url": "https://x/y.png"})
            receipt = await engine.receiver.receive("jcut", body)
            await consumer.drain()
            return midway, receipt, await engine.executions.get_status(execution.id)

        midway, receipt, (execution, tasks) = asyncio.run(scenario())
        by_node = {t.node_id: t for t in tasks}

        assert midway.status == ExecutionStatus.RUNNING
        assert 0 < midway.progress < 100
        assert provider.submitted[0].inputs["input"] == "hi"
        assert receipt.outcome == ReconcileOutcome.APPLIED.value
        assert by_node["c"].output_data["output"] == "https://x/y.png"
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.progress == 100
        assert execution.completed_at is not None


class TestMissingWebhooks:

    def test_poller_then_recovery(self, engine, consumer, provider, make_graph):
        async def scenario():
            graph = make_graph({"g1": "fake-gen", "g2": "fake-gen"}, [("g1", "g2")])
            execution = await engine.executions.start_execution("wf", graph, {})
            await consumer.drain()

            provider.answers["ext-1"] = ExternalResult.success({"result_url": "https://cdn/1.png"}, raw_status="done")
            polled = await engine.poller.poll_once(now=_later(15))
            await consumer.drain()

            provider.answers["ext-2"] = ExternalResult.success({"result_url": "https://cdn/2.png"}, raw_status="SUCCESS")
            report = await engine.recovery.sweep(now=_later(700))
            return polled, report, await engine.executions.get_status(execution.id)

        polled, report, (execution, tasks) = asyncio.run(scenario())
        by_node = {t.node_id: t for t in tasks}

        assert polled["applied"] == 1
        assert report.reconciled_tasks == 1
        assert provider.submitted[1].inputs["input"] == "https://cdn/1.png"
        assert by_node["g2"].output_data == {"result_url": "https://cdn/2.png"}
        assert execution.status == ExecutionStatus.COMPLETED


class TestDuplicateWebhooks:

    def test_redelivery_marks_processed_without_effect(self, engine, consumer, make_graph):
        async def scenario():
            graph = make_graph({"g": "fake-gen", "c": "echo"}, [("g", "c")])
            execution = await engine.executions.start_execution("wf", graph, {})
            await consumer.drain()

            body = json.dumps({"task_id": "ext-1", "status": "done", "output_url": "https://x/1.png"})
            first = await engine.receiver.receive("jcut", body)
            jobs_after_first = len(await engine.repos.queue.list_recent(limit=100))
            second = await engine.receiver.receive("jcut", body)
            jobs_after_second = len(await engine.repos.queue.list_recent(limit=100))
            unknown = await engine.receiver.receive("jcut", json.dumps({"task_id": "ext-9", "status": "done"}))

            events = {
                receipt.outcome: await engine.repos.webhooks.get(receipt.event_id)
                for receipt in (first, second, unknown)
            }
            await consumer.drain()
            return events, jobs_after_first, jobs_after_second, await engine.executions.get_status(execution.id)

        events, jobs_first, jobs_second, (execution, _) = asyncio.run(scenario())

        assert events["applied"].processed is True
        assert events["duplicate"].processed is True
        assert events["not_found"].processed is False
        assert jobs_first == jobs_second
        assert execution.status == ExecutionStatus.COMPLETED


# ============================================================================
# OPERATOR STOP
# ============================================================================

class TestStopNode:

    def test_stop_processing_external_node(self, engine, consumer, make_graph):
        async def scenario():
            graph = make_graph({"g": "fake-gen", "c": "echo"}, [("g", "c")])
            execution = await engine.executions.start_execution("wf", graph, {})
            await consumer.drain()
            g = (await engine.repos.tasks.list_for_execution(execution.id))[0]

            first = await engine.node_tasks.stop(g.id)
            second = await engine.node_tasks.stop(g.id)
            late = await engine.receiver.receive("jcut", json.dumps({"task_id": "ext-1", "status": "done"}))
            return first, second, late, await engine.executions.get_status(execution.id)

        first, second, late, (execution, tasks) = asyncio.run(scenario())
        by_node = {t.node_id: t for t in tasks}
        assert first is True
        assert second is False
        assert late.outcome == ReconcileOutcome.DUPLICATE.value
        assert by_node["g"].status == NodeTaskStatus.FAILED
        assert by_node["g"].error_message == STOPPED_MESSAGE
        assert by_node["g"].resolved_external_id == "ext-1"
        assert by_node["c"].status == NodeTaskStatus.SKIPPED
        assert execution.status == ExecutionStatus.FAILED

    def test_stop_queued_node_drops_its_job(self, engine, consumer, provider, make_graph):
        async def scenario():
            execution = await engine.executions.start_execution("wf", make_graph({"g": "fake-gen"}), {})
            task = (await engine.repos.tasks.list_for_execution(execution.id))[0]
            stopped = await engine.node_tasks.stop(task.id)
            await consumer.drain()
            return stopped, task, await engine.repos.queue.stats(), await engine.executions.get_status(execution.id)

        stopped, before, stats, (execution, tasks) = asyncio.run(scenario())
        assert before.status == NodeTaskStatus.QUEUED
        assert stopped is True
        assert provider.submitted == []
        assert stats["completed"] == 1
        assert tasks[0].status == NodeTaskStatus.FAILED
        assert execution.status == ExecutionStatus.FAILED

    def test_stop_pending_optional_node_lets_run_finish(self, engine, consumer, make_graph):
        async def scenario():
            graph = make_graph(
                {"a": "echo", "b": {"node_type": "echo", "optional": True}, "c": "echo"},
                [("a", "b"), ("b", "c")],
            )
            execution = await engine.executions.start_execution("wf", graph, {})
            b = {t.node_id: t for t in await engine.repos.tasks.list_for_execution(execution.id)}["b"]
            stopped = await engine.node_tasks.stop(b.id)
            await consumer.drain()
            return b, stopped, await engine.executions.get_status(execution.id)

        before, stopped, (execution, tasks) = asyncio.run(scenario())
        by_node = {t.node_id: t for t in tasks}
        assert before.status == NodeTaskStatus.PENDING
        assert stopped is True
        assert by_node["b"].status == NodeTaskStatus.FAILED
        assert by_node["b"].error_message == STOPPED_MESSAGE
        # An optional failure still lets downstream run, with None on its port
        assert by_node["c"].status == NodeTaskStatus.COMPLETED
        assert by_node["c"].output_data["output"] is None
        assert execution.status == ExecutionStatus.COMPLETED


# ============================================================================
# RANDOMIZED DAGS
# ============================================================================

def _random_dag(rng: random.Random, size: int, edge_chance: float):
    """Edges only run from lower to higher index, so the graph is acyclic."""
    nodes = [f"n{i}" for i in range(size)]
    edges = [
        (nodes[i], nodes[j])
        for i in range(size)
        for j in range(i + 1, size)
        if rng.random() < edge_chance
    ]
    return nodes, edges


def _descendants(edges, sources):
    children = {}
    for src, dst in edges:
        children.setdefault(src, []).append(dst)
    seen, stack = set(), list(sources)
    while stack:
        for child in children.get(stack.pop(), []):
            if child not in seen:
                seen.add(child)
                stack.append(child)
    return seen


class TestRandomDags:

    @pytest.mark.parametrize("seed", range(8))
    def test_nodes_start_after_their_upstreams(self, engine, consumer, make_graph, seed):
        rng = random.Random(seed)
        nodes, edges = _random_dag(rng, size=rng.randint(2, 9), edge_chance=0.35)

        async def scenario():
            graph = make_graph({n: "echo" for n in nodes}, edges)
            execution = await engine.executions.start_execution("wf", graph, {})
            await consumer.drain()
            return await engine.executions.get_status(execution.id)

        execution, tasks = asyncio.run(scenario())
        by_node = {t.node_id: t for t in tasks}

        assert execution.status == ExecutionStatus.COMPLETED
        for src, dst in edges:
            assert by_node[dst].started_at >= by_node[src].completed_at
            assert by_node[dst].queued_at >= by_node[src].completed_at

    @pytest.mark.parametrize("seed", range(8))
    def test_failure_skips_exactly_descendants(self, engine, consumer, make_graph, seed):
        rng = random.Random(1000 + seed)
        nodes, edges = _random_dag(rng, size=rng.randint(3, 9), edge_chance=0.3)
        broken = set(rng.sample(nodes, k=1))

        async def scenario():
            graph = make_graph({n: ("reject" if n in broken else "echo") for n in nodes}, edges)
            execution = await engine.executions.start_execution("wf", graph, {})
            await consumer.drain()
            return await engine.executions.get_status(execution.id)

        execution, tasks = asyncio.run(scenario())
        by_node = {t.node_id: t.status for t in tasks}
        doomed = _descendants(edges, broken)

        assert execution.status == ExecutionStatus.FAILED
        for node in nodes:
            if node in broken:
                assert by_node[node] == NodeTaskStatus.FAILED
            elif node in doomed:
                assert by_node[node] == NodeTaskStatus.SKIPPED
            else:
                assert by_node[node] == NodeTaskStatus.COMPLETED
