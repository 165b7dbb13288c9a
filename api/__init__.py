# ============================================================================
# API MODULE
# ============================================================================
# STATUS: Core - FastAPI routes
# PURPOSE: HTTP API for executions, webhooks and admin views
# CREATED: 19 OCT 2026
# ============================================================================
"""
API Module

FastAPI routes for the workflow engine.
"""

from .routes import router, health_router, set_services
from .schemas import (
    ExecutionCreate,
    ExecutionResponse,
    ExecutionDetailResponse,
    NodeTaskResponse,
)

__all__ = [
    "router",
    "health_router",
    "set_services",
    "ExecutionCreate",
    "ExecutionResponse",
    "ExecutionDetailResponse",
    "NodeTaskResponse",
]
