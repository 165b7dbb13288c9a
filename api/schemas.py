# ============================================================================
# API SCHEMAS
# ============================================================================
# STATUS: Core - Request/Response schemas
# PURPOSE: Pydantic models for API validation
# CREATED: 19 OCT 2026
# ============================================================================
"""
API Schemas

Request and response models for the API.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from core.contracts import ExecutionStatus, NodeTaskStatus, QueueJobStatus
from core.models import WorkflowGraph


# ============================================================================
# REQUEST SCHEMAS
# ============================================================================

class ExecutionCreate(BaseModel):
    """Request to start a workflow execution."""
    workflow_id: str = Field(..., max_length=64, description="Saved workflow this run belongs to")
    graph: WorkflowGraph = Field(..., description="Graph snapshot to execute")
    input_params: Dict[str, Any] = Field(
        default_factory=dict,
        description="Run-level inputs, visible to every node"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "workflow_id": "wf-upscale",
                    "graph": {
                        "nodes": {
                            "start": {"node_type": "start-flow"},
                            "upscale": {"node_type": "image-upscale", "data": {"scale": 2}},
                        },
                        "connections": [
                            {"from_node": "start", "from_port": "image_url",
                             "to_node": "upscale", "to_port": "image_url"}
                        ],
                    },
                    "input_params": {"image_url": "https://example.com/cat.png"},
                }
            ]
        }
    }


# ============================================================================
# RESPONSE SCHEMAS
# ============================================================================

class NodeTaskResponse(BaseModel):
    """Node task state response."""
    id: str
    execution_id: str
    node_id: str
    node_type: str
    status: NodeTaskStatus
    optional: bool = False
    external_task_id: Optional[str] = None
    resolved_external_id: Optional[str] = None
    provider: Optional[str] = None
    output_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    attempts: int = 0
    created_at: datetime
    queued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ExecutionResponse(BaseModel):
    """Execution response."""
    id: str
    workflow_id: str
    status: ExecutionStatus
    progress: int
    input_params: Dict[str, Any] = {}
    error_message: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ExecutionDetailResponse(BaseModel):
    """Execution with its node tasks."""
    execution: ExecutionResponse
    tasks: List[NodeTaskResponse]
    task_summary: Dict[str, int] = {}


class ExecutionListResponse(BaseModel):
    """List of executions response."""
    executions: List[ExecutionResponse]
    total: int


class QueueJobResponse(BaseModel):
    """Queue job response."""
    id: int
    task_type: str
    payload: Dict[str, Any] = {}
    status: QueueJobStatus
    priority: int
    attempts: int
    max_attempts: int
    locked_by: Optional[str] = None
    locked_at: Optional[datetime] = None
    available_at: datetime
    last_error: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class QueueStatsResponse(BaseModel):
    """Queue depth by status plus the newest jobs."""
    counts: Dict[str, int]
    total: int
    recent: List[QueueJobResponse]


class WebhookEventResponse(BaseModel):
    """Stored webhook event with a parsed summary."""
    id: int
    source: str
    external_id: Optional[str] = None
    processed: bool
    created_at: datetime
    summary: Dict[str, Any] = {}


class WebhookListResponse(BaseModel):
    """List of webhook events response."""
    events: List[WebhookEventResponse]
    total: int


class RemediationResponse(BaseModel):
    """Result of a manual force-complete."""
    node_type: str
    fixed: int
    node_task_ids: List[str]


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    storage_backend: str
    scheduler: Dict[str, Any] = {}
    consumer: Optional[Dict[str, Any]] = None


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    detail: Optional[Any] = None
