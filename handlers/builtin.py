# ============================================================================
# BUILT-IN NODES
# ============================================================================
# STATUS: Core - Utility node implementations
# PURPOSE: Flow control nodes that run inside the worker
# CREATED: 19 OCT 2026
# ============================================================================
"""
Built-in Nodes

Local nodes every deployment has:

    start-flow / manual-trigger  entry points; emit node data + run params
    flow-merge                   pass inputs through unchanged
    condition                    route input to the "true" or "false" port
    delay                        sleep (capped at 60s), then pass through
"""

import asyncio
import logging
from typing import Any, Dict

from handlers.registry import NodeContext, NodeTypeRegistry

logger = logging.getLogger(__name__)

MAX_DELAY_SECONDS = 60


def evaluate_condition(value: Any, condition: str, expected: Any) -> bool:
    """
    Evaluate a condition node's test.

    exists (default) / empty / contains / equals
    """
    if condition == "empty":
        return not value
    if condition == "contains":
        return isinstance(value, str) and str(expected) in value
    if condition == "equals":
        return value == expected or (value is not None and str(value) == str(expected))
    return bool(value)


def register_builtin_nodes(registry: NodeTypeRegistry) -> NodeTypeRegistry:
    """Register the built-in local node types on a registry."""

    @registry.local("start-flow", description="Workflow entry point")
    async def start_flow(ctx: NodeContext) -> Dict[str, Any]:
        return {**ctx.input_params, **ctx.inputs}

    @registry.local("manual-trigger", description="Manually triggered entry point")
    async def manual_trigger(ctx: NodeContext) -> Dict[str, Any]:
        return {**ctx.input_params, **ctx.inputs}

    @registry.local("flow-merge", description="Pass every input through")
    async def flow_merge(ctx: NodeContext) -> Dict[str, Any]:
        return dict(ctx.inputs)

    @registry.local("condition", description="Route input to the true or false port")
    async def condition(ctx: NodeContext) -> Dict[str, Any]:
        value = ctx.inputs.get("input")
        result = evaluate_condition(
            value,
            ctx.inputs.get("condition") or "exists",
            ctx.inputs.get("value", ""),
        )
        return {
            "true": value if result else None,
            "false": None if result else value,
            "result": result,
        }

    @registry.local("delay", description="Wait, then pass inputs through")
    async def delay(ctx: NodeContext) -> Dict[str, Any]:
        duration = min(int(ctx.inputs.get("duration", 5)), MAX_DELAY_SECONDS)
        if duration > 0:
            logger.debug(f"Delay node {ctx.node_id} sleeping {duration}s")
            await asyncio.sleep(duration)
        return dict(ctx.inputs)

    return registry


__all__ = ["register_builtin_nodes", "evaluate_condition", "MAX_DELAY_SECONDS"]
