# ============================================================================
# WEBHOOK EVENT REPOSITORY
# ============================================================================
# STATUS: Core - Webhook audit log persistence
# PURPOSE: Database access for webhook_events
# CREATED: 19 OCT 2026
# ============================================================================
"""
Webhook Event Repository

Write-ahead store for inbound provider callbacks. record() runs before
the payload is even parsed; mark_processed() flips the flag once.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from core.models import WebhookEvent
from .database import TABLE_WEBHOOK_EVENTS

logger = logging.getLogger(__name__)


class WebhookEventRepository:
    """Repository for WebhookEvent entities."""

    def __init__(self, pool: AsyncConnectionPool):
        self.pool = pool

    async def record(
        self,
        source: str,
        payload: str,
        external_id: Optional[str] = None,
    ) -> WebhookEvent:
        """
        Persist an inbound payload with processed=false.

        Args:
            source: Provider name from the URL
            payload: Raw request body
            external_id: Provider task id if already known

        Returns:
            Stored event with its id
        """
        now = datetime.now(timezone.utc)
        async with self.pool.connection() as conn:
            conn.row_factory = dict_row
            result = await conn.execute(
                sql.SQL("""
                INSERT INTO {} (source, external_id, payload, processed, created_at)
                VALUES (%s, %s, %s, false, %s)
                RETURNING *
                """).format(TABLE_WEBHOOK_EVENTS),
                (source, external_id, payload, now),
            )
            row = await result.fetchone()
            return self._row_to_event(row)

    async def attach_external_id(self, event_id: int, external_id: str) -> None:
        """Store the provider task id parsed out of the payload."""
        async with self.pool.connection() as conn:
            await conn.execute(
                sql.SQL("UPDATE {} SET external_id = %s WHERE id = %s").format(TABLE_WEBHOOK_EVENTS),
                (external_id, event_id),
            )

    async def mark_processed(self, event_id: int) -> bool:
        """
        processed false -> true, exactly once.

        Returns:
            True if this call flipped the flag
        """
        async with self.pool.connection() as conn:
            result = await conn.execute(
                sql.SQL("""
                UPDATE {} SET processed = true
                WHERE id = %s AND processed = false
                """).format(TABLE_WEBHOOK_EVENTS),
                (event_id,),
            )
            return result.rowcount > 0

    async def get(self, event_id: int) -> Optional[WebhookEvent]:
        """Get an event by id."""
        async with self.pool.connection() as conn:
            conn.row_factory = dict_row
            result = await conn.execute(
                sql.SQL("SELECT * FROM {} WHERE id = %s").format(TABLE_WEBHOOK_EVENTS),
                (event_id,),
            )
            row = await result.fetchone()
            return self._row_to_event(row) if row else None

    async def list_recent(
        self,
        limit: int = 20,
        processed: Optional[bool] = None,
    ) -> List[WebhookEvent]:
        """
        Most recent events first.

        Args:
            limit: Maximum number of events
            processed: Optional filter on the processed flag
        """
        async with self.pool.connection() as conn:
            conn.row_factory = dict_row
            if processed is None:
                result = await conn.execute(
                    sql.SQL("SELECT * FROM {} ORDER BY id DESC LIMIT %s").format(TABLE_WEBHOOK_EVENTS),
                    (limit,),
                )
            else:
                result = await conn.execute(
                    sql.SQL("""
                    SELECT * FROM {} WHERE processed = %s ORDER BY id DESC LIMIT %s
                    """).format(TABLE_WEBHOOK_EVENTS),
                    (processed, limit),
                )
            rows = await result.fetchall()
            return [self._row_to_event(row) for row in rows]

    async def purge(self, older_than: datetime, processed: bool = True) -> int:
        """
        Delete events received before older_than.

        Processed and unprocessed events are purged separately so the
        caller can keep unsettled events longer for diagnosis.
        """
        async with self.pool.connection() as conn:
            result = await conn.execute(
                sql.SQL("""
                DELETE FROM {} WHERE processed = %s AND created_at < %s
                """).format(TABLE_WEBHOOK_EVENTS),
                (processed, older_than),
            )
            return result.rowcount

    def _row_to_event(self, row: Dict[str, Any]) -> WebhookEvent:
        """Convert database row to WebhookEvent model."""
        return WebhookEvent(
            id=row["id"],
            source=row["source"],
            external_id=row.get("external_id"),
            payload=row.get("payload") or "",
            processed=row["processed"],
            created_at=row["created_at"],
        )


__all__ = ["WebhookEventRepository"]
