# ============================================================================
# ENGINE ASSEMBLY
# ============================================================================
# STATUS: Core - Component wiring
# PURPOSE: Build every engine component against one repositories bundle
# CREATED: 19 OCT 2026
# EXPORTS: WorkflowEngine, build_engine
# ============================================================================
"""
Engine Assembly

The API process, the worker process and the tests all need the same
object graph: aggregator -> node task service -> execution service,
dispatcher, reconciler, receiver, poller, recovery, retention. This
module builds it once.

Usage:
    from orchestrator import build_engine

    engine = build_engine(repos, registry, get_defaults())
    execution = await engine.executions.start_execution("wf", graph, {})
"""

from dataclasses import dataclass
from typing import Any, Optional

from core.config import Defaults
from handlers.registry import NodeTypeRegistry
from services import ExecutionAggregator, ExecutionService, NodeTaskService
from .dispatcher import Dispatcher
from .loop import Scheduler
from .poller import Poller
from .receiver import WebhookReceiver
from .reconciler import Reconciler
from .recovery import RecoverySweep
from .retention import RetentionJob


@dataclass
class WorkflowEngine:
    """All engine components sharing one set of repositories."""
    repos: Any
    registry: NodeTypeRegistry
    defaults: Defaults
    aggregator: ExecutionAggregator
    node_tasks: NodeTaskService
    executions: ExecutionService
    dispatcher: Dispatcher
    reconciler: Reconciler
    receiver: WebhookReceiver
    poller: Poller
    recovery: RecoverySweep
    retention: RetentionJob

    def build_scheduler(self) -> Scheduler:
        """Scheduler with the poller, recovery and retention loops."""
        scheduler = Scheduler()
        scheduler.add("poller", self.poller.poll_once, self.defaults.poller.interval_seconds)
        scheduler.add("recovery", self.recovery.sweep, self.defaults.recovery.interval_seconds)
        scheduler.add("retention", self.retention.run, self.defaults.retention.interval_seconds)
        return scheduler


def build_engine(
    repos: Any,
    registry: NodeTypeRegistry,
    defaults: Optional[Defaults] = None,
) -> WorkflowEngine:
    """Wire every engine component."""
    defaults = defaults or Defaults()
    provider_timeout = defaults.worker.provider_timeout_seconds

    aggregator = ExecutionAggregator(repos.executions, repos.tasks)
    node_tasks = NodeTaskService(repos, aggregator, defaults.queue)
    executions = ExecutionService(repos, node_tasks, aggregator, registry=registry)
    reconciler = Reconciler(repos, node_tasks)

    return WorkflowEngine(
        repos=repos,
        registry=registry,
        defaults=defaults,
        aggregator=aggregator,
        node_tasks=node_tasks,
        executions=executions,
        dispatcher=Dispatcher(repos, registry, node_tasks, defaults.queue, defaults.worker),
        reconciler=reconciler,
        receiver=WebhookReceiver(repos, reconciler),
        poller=Poller(repos, registry, reconciler, defaults.poller, provider_timeout),
        recovery=RecoverySweep(
            repos,
            registry,
            reconciler,
            node_tasks,
            queue_defaults=defaults.queue,
            defaults=defaults.recovery,
            provider_timeout_seconds=provider_timeout,
        ),
        retention=RetentionJob(repos, defaults.retention),
    )


__all__ = ["WorkflowEngine", "build_engine"]
