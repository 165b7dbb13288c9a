# ============================================================================
# NODE TASK STATE MACHINE TESTS
# ============================================================================
# STATUS: Tests - NodeTask transitions and compare-and-swap updates
# PURPOSE: Verify legal transitions and at-most-once finalization
# CREATED: 19 OCT 2026
# ============================================================================
"""
Node Task Tests

Covers:
1. Model transition table
2. Repository CAS: queue, process, finalize exactly once
3. External id bookkeeping (live and resolved)
4. Requeue after transient failure, skip, cancellation sweep

Run with:
    pytest tests/test_node_tasks.py -v
"""

import asyncio

import pytest

from core.contracts import NodeTaskStatus
from core.models import NodeTask
from repositories import create_memory_repositories


def _task(node_id: str = "n1", execution_id: str = "exec-1", **kwargs) -> NodeTask:
    return NodeTask(execution_id=execution_id, node_id=node_id, node_type="echo", **kwargs)


class TestTransitions:

    def test_happy_path(self):
        task = _task()
        task.mark_queued()
        task.mark_processing()
        task.mark_finalized(NodeTaskStatus.COMPLETED, output_data={"output": 1})
        assert task.status == NodeTaskStatus.COMPLETED
        assert task.attempts == 1
        assert task.completed_at is not None
        assert task.is_terminal

    def test_terminal_states_are_final(self):
        task = _task()
        task.mark_skipped()
        for status in NodeTaskStatus:
            assert not task.can_transition_to(status)
        with pytest.raises(ValueError):
            task.mark_queued()

    def test_pending_cannot_jump_to_processing(self):
        task = _task()
        with pytest.raises(ValueError):
            task.mark_processing()

    def test_finalize_moves_external_id_to_resolved(self):
        task = _task(status=NodeTaskStatus.PROCESSING, external_task_id="ext-1")
        task.mark_finalized(NodeTaskStatus.FAILED, error_message="x" * 3000)
        assert task.external_task_id is None
        assert task.resolved_external_id == "ext-1"
        assert len(task.error_message) == 2000

    def test_finalize_rejects_non_final_status(self):
        task = _task(status=NodeTaskStatus.PROCESSING)
        with pytest.raises(ValueError):
            task.mark_finalized(NodeTaskStatus.SKIPPED)

    def test_optional_failure_satisfies_dependents(self):
        optional = _task(status=NodeTaskStatus.FAILED, optional=True)
        required = _task(status=NodeTaskStatus.FAILED)
        assert optional.satisfies_dependents
        assert not optional.is_fatal_failure
        assert not required.satisfies_dependents
        assert required.is_fatal_failure


class TestRepositoryCas:

    def test_finalize_at_most_once_under_concurrency(self):
        async def scenario():
            repos = create_memory_repositories()
            task = _task()
            await repos.tasks.create_many([task])
            await repos.tasks.mark_queued(task.id)
            await repos.tasks.mark_processing(task.id)
            results = await asyncio.gather(*[
                repos.tasks.finalize(
                    task.id,
                    NodeTaskStatus.COMPLETED if i % 2 else NodeTaskStatus.FAILED,
                    output_data={"winner": i},
                    error_message=f"loser {i}",
                )
                for i in range(10)
            ])
            return results, await repos.tasks.get(task.id)

        results, stored = asyncio.run(scenario())
        assert results.count(True) == 1
        assert stored.status.is_terminal()

    def test_mark_queued_only_from_pending(self):
        async def scenario():
            repos = create_memory_repositories()
            task = _task()
            await repos.tasks.create_many([task])
            first = await repos.tasks.mark_queued(task.id)
            second = await repos.tasks.mark_queued(task.id)
            return first, second

        assert asyncio.run(scenario()) == (True, False)

    def test_mark_processing_restart_only_without_external_id(self):
        async def scenario():
            repos = create_memory_repositories()
            local, remote = _task("local"), _task("remote")
            await repos.tasks.create_many([local, remote])
            for task in (local, remote):
                await repos.tasks.mark_queued(task.id)
                await repos.tasks.mark_processing(task.id)
            await repos.tasks.set_external_id(remote.id, "ext-7", provider="fake")
            restarted = await repos.tasks.mark_processing(local.id)
            blocked = await repos.tasks.mark_processing(remote.id)
            return restarted, blocked

        restarted, blocked = asyncio.run(scenario())
        assert restarted.attempts == 2
        assert blocked is None

    def test_set_external_id_once(self):
        async def scenario():
            repos = create_memory_repositories()
            task = _task()
            await repos.tasks.create_many([task])
            not_yet = await repos.tasks.set_external_id(task.id, "ext-0")
            await repos.tasks.mark_queued(task.id)
            await repos.tasks.mark_processing(task.id)
            first = await repos.tasks.set_external_id(task.id, "ext-1", provider="fake")
            second = await repos.tasks.set_external_id(task.id, "ext-2", provider="fake")
            return not_yet, first, second, await repos.tasks.get(task.id)

        not_yet, first, second, stored = asyncio.run(scenario())
        assert (not_yet, first, second) == (False, True, False)
        assert stored.external_task_id == "ext-1"
        assert stored.provider == "fake"

    def test_find_by_external_id_live_then_resolved(self):
        async def scenario():
            repos = create_memory_repositories()
            task = _task()
            await repos.tasks.create_many([task])
            await repos.tasks.mark_queued(task.id)
            await repos.tasks.mark_processing(task.id)
            await repos.tasks.set_external_id(task.id, "ext-1")
            live = await repos.tasks.find_by_external_id("ext-1")
            await repos.tasks.finalize(task.id, NodeTaskStatus.COMPLETED, output_data={})
            resolved = await repos.tasks.find_by_external_id("ext-1")
            unknown = await repos.tasks.find_by_external_id("ext-404")
            return live, resolved, unknown

        live, resolved, unknown = asyncio.run(scenario())
        assert live.status == NodeTaskStatus.PROCESSING
        assert resolved.status == NodeTaskStatus.COMPLETED
        assert resolved.resolved_external_id == "ext-1"
        assert unknown is None

    def test_requeue_refused_once_submitted(self):
        async def scenario():
            repos = create_memory_repositories()
            task = _task()
            await repos.tasks.create_many([task])
            await repos.tasks.mark_queued(task.id)
            await repos.tasks.mark_processing(task.id)
            requeued = await repos.tasks.requeue(task.id)
            await repos.tasks.mark_processing(task.id)
            await repos.tasks.set_external_id(task.id, "ext-1")
            refused = await repos.tasks.requeue(task.id)
            return requeued, refused

        assert asyncio.run(scenario()) == (True, False)

    def test_skip_and_cancellation_sweep(self):
        async def scenario():
            repos = create_memory_repositories()
            pending, queued, running = _task("a"), _task("b"), _task("c")
            await repos.tasks.create_many([pending, queued, running])
            await repos.tasks.mark_queued(queued.id)
            await repos.tasks.mark_queued(running.id)
            await repos.tasks.mark_processing(running.id)
            plain_skip_queued = await repos.tasks.skip(queued.id)
            swept = await repos.tasks.skip_open_for_execution("exec-1")
            return plain_skip_queued, swept, await repos.tasks.list_for_execution("exec-1")

        plain_skip_queued, swept, tasks = asyncio.run(scenario())
        by_node = {t.node_id: t.status for t in tasks}
        assert plain_skip_queued is False
        assert swept == 2
        assert by_node == {
            "a": NodeTaskStatus.SKIPPED,
            "b": NodeTaskStatus.SKIPPED,
            "c": NodeTaskStatus.PROCESSING,
        }

    def test_duplicate_node_rejected(self):
        async def scenario():
            repos = create_memory_repositories()
            await repos.tasks.create_many([_task("a")])
            await repos.tasks.create_many([_task("a")])

        with pytest.raises(ValueError):
            asyncio.run(scenario())
