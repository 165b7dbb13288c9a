# ============================================================================
# ORCHESTRATOR MODULE
# ============================================================================
# STATUS: Core - Dispatch, reconciliation and background passes
# PURPOSE: Drive node tasks from queue job to final result
# CREATED: 19 OCT 2026
# ============================================================================
"""
Orchestrator Module

Dispatcher (queue job -> node run / provider submit), Reconciler
(provider result -> node task), WebhookReceiver, Poller, RecoverySweep,
RetentionJob and the Scheduler that runs the periodic ones.

Usage:
    from orchestrator import build_engine

    engine = build_engine(repos, registry)
    scheduler = engine.build_scheduler()
    await scheduler.start()
"""

from .dispatcher import Dispatcher, DispatchOutcome
from .reconciler import Reconciler, ReconcileOutcome
from .receiver import WebhookReceiver, WebhookReceipt
from .poller import Poller, query_provider
from .recovery import RecoverySweep, RecoveryReport, FORCED_NOTE
from .retention import RetentionJob
from .loop import Scheduler, PeriodicTask
from .engine import WorkflowEngine, build_engine

__all__ = [
    "Dispatcher",
    "DispatchOutcome",
    "Reconciler",
    "ReconcileOutcome",
    "WebhookReceiver",
    "WebhookReceipt",
    "Poller",
    "query_provider",
    "RecoverySweep",
    "RecoveryReport",
    "FORCED_NOTE",
    "RetentionJob",
    "Scheduler",
    "PeriodicTask",
    "WorkflowEngine",
    "build_engine",
]
