# ============================================================================
# WEBHOOK EVENT MODEL
# ============================================================================
# STATUS: Core model - Inbound provider callback
# PURPOSE: Write-ahead audit record of every webhook delivery
# CREATED: 19 OCT 2026
# EXPORTS: WebhookEvent
# DEPENDENCIES: pydantic
# ============================================================================
"""
Webhook Event Model

Every inbound webhook is stored before it is parsed. processed flips to
true once the event settles its node task (applied, suppressed or a
duplicate). Unmatched events and progress pings stay processed=false
for diagnosis.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field


class WebhookEvent(BaseModel):
    """
    Inbound provider callback.

    Table: genflow.webhook_events
    Primary Key: id (BIGSERIAL)
    """
    id: Optional[int] = None
    source: str = Field(..., max_length=64, description="Provider name from the URL")
    external_id: Optional[str] = Field(default=None, max_length=255)
    payload: str = Field(default="", description="Raw request body")
    processed: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


__all__ = ["WebhookEvent"]
