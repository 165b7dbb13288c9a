# ============================================================================
# NODE TYPE REGISTRY
# ============================================================================
# STATUS: Core - Node type registration and lookup
# PURPOSE: Map node_type to a local runner or an external provider adapter
# CREATED: 19 OCT 2026
# ============================================================================
"""
Node Type Registry

Central registry for node types. The dispatcher looks up the node_type
of a task here and either runs it in-process (LocalNode) or submits it
to a third-party service (ExternalNode) and leaves it PROCESSING until
the poller or a webhook resolves it.

Design:
- Registry instances are passed explicitly (no import-time globals)
- Fail-fast on duplicate registration
- Local nodes may be plain functions, sync or async, via @registry.local()
- Error taxonomy lives here because adapters and the dispatcher share it
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from core.contracts import ExecutionMode, ExternalOutcome

logger = logging.getLogger(__name__)


# ============================================================================
# NODE TYPES
# ============================================================================

@dataclass
class NodeContext:
    """
    Context passed to node implementations.

    Contains everything needed to run or submit one node task.
    """
    execution_id: str
    node_task_id: str
    node_id: str
    node_type: str
    inputs: Dict[str, Any]
    input_params: Dict[str, Any] = field(default_factory=dict)
    attempt: int = 1
    worker_id: Optional[str] = None


@dataclass
class ExternalResult:
    """
    Normalized answer from a provider (poll or webhook).

    output holds the provider's result (result_url and friends) when
    the outcome is SUCCESS.
    """
    outcome: ExternalOutcome
    output: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    raw_status: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.outcome.is_terminal()

    @classmethod
    def success(cls, output: Optional[Dict[str, Any]] = None, **kwargs) -> "ExternalResult":
        return cls(outcome=ExternalOutcome.SUCCESS, output=output or {}, **kwargs)

    @classmethod
    def failure(cls, error_message: str, **kwargs) -> "ExternalResult":
        return cls(outcome=ExternalOutcome.FAILURE, error_message=error_message, **kwargs)

    @classmethod
    def pending(cls, raw_status: Optional[str] = None) -> "ExternalResult":
        return cls(outcome=ExternalOutcome.PENDING, raw_status=raw_status)


class LocalNode:
    """Node that runs to completion inside the worker."""

    async def run(self, ctx: NodeContext) -> Dict[str, Any]:
        """Return the node's output_data; raise to fail."""
        raise NotImplementedError


class ExternalNode:
    """
    Adapter for an asynchronous third-party service.

    submit() returns quickly with the provider's task id; the result
    arrives later through poll() or a webhook.
    """
    provider: str = "external"

    async def submit(self, ctx: NodeContext) -> str:
        """Start remote work and return its external task id."""
        raise NotImplementedError

    async def poll(self, external_task_id: str) -> ExternalResult:
        """Ask the provider for the current state of a task."""
        raise NotImplementedError


LocalFunc = Callable[[NodeContext], Union[Dict[str, Any], Awaitable[Dict[str, Any]]]]


class FunctionNode(LocalNode):
    """LocalNode wrapping a plain function (sync functions run in a thread)."""

    def __init__(self, func: LocalFunc):
        self.func = func

    async def run(self, ctx: NodeContext) -> Dict[str, Any]:
        if asyncio.iscoroutinefunction(self.func):
            return await self.func(ctx)
        return await asyncio.to_thread(self.func, ctx)


# ============================================================================
# EXCEPTIONS
# ============================================================================

class ProviderError(Exception):
    """Base exception for node/provider failures."""
    pass


class TransientProviderError(ProviderError):
    """Timeouts, connection errors, throttling, 5xx: worth retrying."""
    pass


class PermanentProviderError(ProviderError):
    """Rejected input or a definitive provider failure: never retried."""
    pass


class DataIntegrityError(Exception):
    """Engine state is inconsistent (unknown node type, missing task, bad payload)."""
    pass


class NodeTypeNotFoundError(DataIntegrityError):
    """Raised when a node type is not registered."""
    def __init__(self, node_type: str):
        self.node_type = node_type
        super().__init__(f"Node type not registered: {node_type}")


class DuplicateNodeTypeError(ValueError):
    """Raised when a node type is already registered."""
    def __init__(self, node_type: str):
        self.node_type = node_type
        super().__init__(f"Node type already registered: {node_type}")


# ============================================================================
# REGISTRY
# ============================================================================

class NodeTypeRegistry:
    """node_type -> LocalNode | ExternalNode, with metadata."""

    def __init__(self):
        self._nodes: Dict[str, Union[LocalNode, ExternalNode]] = {}
        self._metadata: Dict[str, Dict[str, Any]] = {}

    def _register(
        self,
        node_type: str,
        node: Union[LocalNode, ExternalNode],
        mode: ExecutionMode,
        description: str,
    ) -> None:
        if node_type in self._nodes:
            raise DuplicateNodeTypeError(node_type)
        self._nodes[node_type] = node
        self._metadata[node_type] = {
            "node_type": node_type,
            "mode": mode.value,
            "description": description,
            "implementation": type(node).__name__,
            "provider": getattr(node, "provider", None) if mode == ExecutionMode.EXTERNAL else None,
            "registered_at": datetime.now(timezone.utc).isoformat(),
        }
        logger.debug(f"Registered {mode.value} node type: {node_type}")

    def register_local(self, node_type: str, node: LocalNode, description: str = "") -> None:
        """Register an in-process node."""
        self._register(node_type, node, ExecutionMode.LOCAL, description)

    def register_external(self, node_type: str, adapter: ExternalNode, description: str = "") -> None:
        """Register a provider-backed node."""
        self._register(node_type, adapter, ExecutionMode.EXTERNAL, description)

    def local(self, node_type: str, *, description: str = "") -> Callable[[LocalFunc], LocalFunc]:
        """
        Decorator to register a function as a local node.

        Example:
            @registry.local("flow-merge")
            async def merge(ctx: NodeContext) -> dict:
                return dict(ctx.inputs)
        """
        def decorator(func: LocalFunc) -> LocalFunc:
            self.register_local(node_type, FunctionNode(func), description or (func.__doc__ or "").strip())
            return func
        return decorator

    def get(self, node_type: str) -> Union[LocalNode, ExternalNode]:
        """
        Look up a node type.

        Raises:
            NodeTypeNotFoundError if not registered
        """
        node = self._nodes.get(node_type)
        if node is None:
            raise NodeTypeNotFoundError(node_type)
        return node

    def get_external(self, node_type: str) -> ExternalNode:
        """Look up a provider-backed node type."""
        node = self.get(node_type)
        if not isinstance(node, ExternalNode):
            raise DataIntegrityError(f"Node type {node_type} is not external")
        return node

    def execution_mode(self, node_type: str) -> ExecutionMode:
        node = self.get(node_type)
        return ExecutionMode.EXTERNAL if isinstance(node, ExternalNode) else ExecutionMode.LOCAL

    def list_types(self) -> List[Dict[str, Any]]:
        """All registered node types with metadata."""
        return list(self._metadata.values())

    def __contains__(self, node_type: str) -> bool:
        return node_type in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "NodeContext",
    "ExternalResult",
    "LocalNode",
    "ExternalNode",
    "FunctionNode",
    "NodeTypeRegistry",
    "ProviderError",
    "TransientProviderError",
    "PermanentProviderError",
    "DataIntegrityError",
    "NodeTypeNotFoundError",
    "DuplicateNodeTypeError",
]
