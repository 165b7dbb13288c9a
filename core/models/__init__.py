# ============================================================================
# MODELS MODULE
# ============================================================================
# STATUS: Model exports
# PURPOSE: Central export point for all Pydantic models
# CREATED: 19 OCT 2026
# ============================================================================
"""
Models Module - Central Export Point

All Pydantic models for the workflow engine.
"""

from core.models.graph import WorkflowGraph, GraphNode, Connection
from core.models.execution import WorkflowExecution
from core.models.node_task import NodeTask
from core.models.queue_job import QueueJob
from core.models.webhook_event import WebhookEvent

__all__ = [
    # Graph
    "WorkflowGraph",
    "GraphNode",
    "Connection",
    # Execution
    "WorkflowExecution",
    "NodeTask",
    # Queue
    "QueueJob",
    # Webhooks
    "WebhookEvent",
]
