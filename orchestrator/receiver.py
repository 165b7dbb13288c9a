# ============================================================================
# WEBHOOK RECEIVER
# ============================================================================
# STATUS: Core - Inbound provider callbacks
# PURPOSE: Store, parse and reconcile webhook payloads
# CREATED: 19 OCT 2026
# EXPORTS: WebhookReceiver, WebhookReceipt
# ============================================================================
"""
Webhook Receiver

Write-ahead handling of provider callbacks:

1. Store the raw body as a WebhookEvent (processed=false) before
   anything can fail
2. Decode JSON (invalid -> 400, event kept for diagnosis)
3. Parse with the source's parser and normalize the status
4. Hand the result to the Reconciler
5. processed=true once the task has its final answer (applied,
   suppressed, or a duplicate of an already finished task); progress
   pings and unknown ids stay unprocessed

Callers answer 200 for everything except invalid JSON so providers do
not retry events the engine cannot use.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from core.logging import log_checkpoint
from handlers.webhooks import parse_webhook
from .reconciler import ReconcileOutcome, Reconciler

logger = logging.getLogger(__name__)


@dataclass
class WebhookReceipt:
    """What happened to one inbound callback."""
    event_id: int
    status_code: int
    outcome: str
    external_id: Optional[str] = None
    message: str = ""

    def to_dict(self) -> dict:
        return {
            "success": self.status_code < 400,
            "event_id": self.event_id,
            "outcome": self.outcome,
            "external_id": self.external_id,
            "message": self.message,
        }


class WebhookReceiver:
    """Turns raw callback bodies into reconciled task results."""

    def __init__(self, repos: Any, reconciler: Reconciler):
        self.repos = repos
        self.reconciler = reconciler

    async def receive(self, source: str, body: str) -> WebhookReceipt:
        """
        Handle one callback.

        Args:
            source: Provider name from the URL
            body: Raw request body

        Returns:
            WebhookReceipt (status_code 400 only for undecodable bodies)
        """
        event = await self.repos.webhooks.record(source, body)

        try:
            payload = json.loads(body) if body else None
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            logger.warning(f"Webhook {event.id} from {source}: invalid JSON")
            return WebhookReceipt(event.id, 400, "invalid_json", message="Invalid JSON")

        try:
            parsed = parse_webhook(source, payload)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Webhook {event.id} from {source}: unparseable payload: {e}")
            return WebhookReceipt(event.id, 200, "unparsed", message="Payload not understood")

        if not parsed.external_id:
            logger.info(f"Webhook {event.id} from {source} carries no task id")
            return WebhookReceipt(event.id, 200, "ignored", message="No task id in payload")

        await self.repos.webhooks.attach_external_id(event.id, parsed.external_id)
        outcome = await self.reconciler.apply(parsed.external_id, parsed.to_result(source))

        if outcome.settled:
            await self.repos.webhooks.mark_processed(event.id)
        elif outcome == ReconcileOutcome.NOT_FOUND:
            log_checkpoint(
                "webhook_unmatched",
                {"event_id": event.id, "source": source, "external_id": parsed.external_id},
                logger=logger,
            )

        messages = {
            ReconcileOutcome.APPLIED: "Result applied",
            ReconcileOutcome.DUPLICATE: "Already processed",
            ReconcileOutcome.STILL_PENDING: "Task still running",
            ReconcileOutcome.NOT_FOUND: "Unknown task",
            ReconcileOutcome.SUPPRESSED: "Execution cancelled",
        }
        return WebhookReceipt(
            event.id,
            200,
            outcome.value,
            external_id=parsed.external_id,
            message=messages[outcome],
        )


__all__ = ["WebhookReceiver", "WebhookReceipt"]
