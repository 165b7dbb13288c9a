# ============================================================================
# TEST FIXTURES
# ============================================================================
# STATUS: Tests - Shared fixtures
# PURPOSE: In-memory engine, scripted provider and graph builders
# CREATED: 19 OCT 2026
# ============================================================================
"""
Shared fixtures.

Every test builds a fresh in-memory store, so tests never share state.
Async code is driven with asyncio.run inside plain test functions; keep
each test's async work inside one asyncio.run call.
"""

from typing import Any, Dict, List, Optional, Tuple, Union

import pytest

from core.config import (
    Defaults,
    PollerDefaults,
    QueueDefaults,
    RecoveryDefaults,
    RetentionDefaults,
    WorkerDefaults,
)
from core.models import Connection, GraphNode, WorkflowGraph
from handlers import build_registry
from handlers.registry import (
    ExternalNode,
    ExternalResult,
    NodeContext,
    NodeTypeRegistry,
    PermanentProviderError,
    TransientProviderError,
)
from orchestrator import build_engine
from repositories import create_memory_repositories
from worker.consumer import QueueConsumer


# ============================================================================
# SCRIPTED PROVIDER
# ============================================================================

class ScriptedProvider(ExternalNode):
    """
    ExternalNode whose answers are set by the test.

    submit() hands out ext-1, ext-2, ... unless next_ids is primed.
    poll() returns answers[ext_id], or pending.
    """
    provider = "fake"

    def __init__(self):
        self.submitted: List[NodeContext] = []
        self.polled: List[str] = []
        self.answers: Dict[str, ExternalResult] = {}
        self.next_ids: List[str] = []
        self.submit_errors: List[Exception] = []
        self.poll_error: Optional[Exception] = None
        self._counter = 0

    async def submit(self, ctx: NodeContext) -> str:
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        self.submitted.append(ctx)
        if self.next_ids:
            return self.next_ids.pop(0)
        self._counter += 1
        return f"ext-{self._counter}"

    async def poll(self, external_task_id: str) -> ExternalResult:
        self.polled.append(external_task_id)
        if self.poll_error is not None:
            raise self.poll_error
        return self.answers.get(external_task_id, ExternalResult.pending("running"))


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def registry(provider) -> NodeTypeRegistry:
    """Built-ins plus test node types."""
    registry = build_registry(load_providers=False, modules=[])
    registry.register_external("fake-gen", provider, description="Scripted provider")

    @registry.local("echo")
    async def echo(ctx: NodeContext) -> dict:
        return {"output": ctx.inputs.get("input", ctx.inputs.get("text")), "node": ctx.node_id}

    @registry.local("boom")
    async def boom(ctx: NodeContext) -> dict:
        raise RuntimeError("kaboom")

    @registry.local("reject")
    async def reject(ctx: NodeContext) -> dict:
        raise PermanentProviderError("input rejected")

    @registry.local("flaky")
    async def flaky(ctx: NodeContext) -> dict:
        if ctx.attempt < 2:
            raise TransientProviderError("try again")
        return {"output": f"ok on attempt {ctx.attempt}"}

    return registry


@pytest.fixture
def defaults() -> Defaults:
    """Fast settings: no backoff, no poll age, tiny idle sleep."""
    return Defaults(
        queue=QueueDefaults(lease_seconds=60, max_attempts=3, retry_backoff_seconds=0),
        worker=WorkerDefaults(
            worker_id="test-worker",
            idle_sleep_seconds=0.01,
            local_timeout_seconds=5,
            provider_timeout_seconds=5,
        ),
        poller=PollerDefaults(interval_seconds=0.05, min_age_seconds=0),
        recovery=RecoveryDefaults(
            interval_seconds=0.05,
            stuck_threshold_seconds=600,
            hard_ceiling_seconds=3600,
        ),
        retention=RetentionDefaults(interval_seconds=0.05),
    )


@pytest.fixture
def repos():
    return create_memory_repositories()


@pytest.fixture
def engine(repos, registry, defaults):
    return build_engine(repos, registry, defaults)


@pytest.fixture
def consumer(engine, defaults) -> QueueConsumer:
    return QueueConsumer(engine.repos, engine.dispatcher, defaults.queue, defaults.worker)


EdgeSpec = Union[Tuple[str, str], Tuple[str, str, str, str]]


@pytest.fixture
def make_graph():
    """
    Build a WorkflowGraph.

    nodes: node_id -> node_type, or node_id -> GraphNode kwargs
    edges: (from, to) using output/input ports, or (from, from_port, to, to_port)
    """
    def _make(nodes: Dict[str, Any], edges: Optional[List[EdgeSpec]] = None) -> WorkflowGraph:
        graph_nodes = {}
        for node_id, spec in nodes.items():
            if isinstance(spec, str):
                graph_nodes[node_id] = GraphNode(node_type=spec)
            else:
                graph_nodes[node_id] = GraphNode(**spec)
        connections = []
        for edge in edges or []:
            if len(edge) == 2:
                connections.append(Connection(from_node=edge[0], to_node=edge[1]))
            else:
                connections.append(Connection(
                    from_node=edge[0], from_port=edge[1], to_node=edge[2], to_port=edge[3],
                ))
        return WorkflowGraph(nodes=graph_nodes, connections=connections)
    return _make
