# ============================================================================
# NODE TYPES MODULE
# ============================================================================
# STATUS: Core - Node type registration and lookup
# PURPOSE: Registry, built-in nodes, HTTP providers, webhook parsing
# CREATED: 19 OCT 2026
# ============================================================================
"""
Node Types

Usage:
    from handlers import build_registry

    registry = build_registry()          # built-ins + providers/*.yaml
    node = registry.get("flow-merge")

    @registry.local("uppercase")
    async def uppercase(ctx: NodeContext) -> dict:
        return {"output": ctx.inputs["input"].upper()}
"""

import importlib
import logging
import os
from typing import List, Optional

from handlers.registry import (
    NodeContext,
    ExternalResult,
    LocalNode,
    ExternalNode,
    FunctionNode,
    NodeTypeRegistry,
    ProviderError,
    TransientProviderError,
    PermanentProviderError,
    DataIntegrityError,
    NodeTypeNotFoundError,
    DuplicateNodeTypeError,
)
from handlers.builtin import register_builtin_nodes
from handlers.providers import HttpProviderAdapter, normalize_status
from handlers.webhooks import ParsedWebhook, parse_webhook, sanitize_error_message
from handlers.catalog import load_catalog

logger = logging.getLogger(__name__)


def load_handler_modules(registry: NodeTypeRegistry, modules: Optional[List[str]] = None) -> int:
    """
    Import extra node type modules and let each register itself.

    Each module must expose register(registry). Defaults to the
    comma-separated HANDLER_MODULES environment variable.

    Returns:
        Number of modules loaded
    """
    if modules is None:
        extra = os.getenv("HANDLER_MODULES", "")
        modules = [m.strip() for m in extra.split(",") if m.strip()]

    loaded = 0
    for module_name in modules:
        try:
            module = importlib.import_module(module_name)
        except ImportError as e:
            logger.warning(f"Failed to load handler module {module_name}: {e}")
            continue
        register = getattr(module, "register", None)
        if register is None:
            logger.warning(f"Handler module {module_name} has no register(registry)")
            continue
        register(registry)
        logger.info(f"Loaded handler module: {module_name}")
        loaded += 1
    return loaded


def build_registry(
    providers_dir: Optional[str] = None,
    load_providers: bool = True,
    modules: Optional[List[str]] = None,
) -> NodeTypeRegistry:
    """Registry with the built-in nodes, the provider catalog and HANDLER_MODULES."""
    registry = NodeTypeRegistry()
    register_builtin_nodes(registry)
    if load_providers:
        load_catalog(registry, providers_dir)
    load_handler_modules(registry, modules)
    logger.info(f"Registered {len(registry)} node types: {[t['node_type'] for t in registry.list_types()]}")
    return registry


__all__ = [
    "build_registry",
    "load_handler_modules",
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
    "register_builtin_nodes",
    "HttpProviderAdapter",
    "normalize_status",
    "ParsedWebhook",
    "parse_webhook",
    "sanitize_error_message",
    "load_catalog",
]
