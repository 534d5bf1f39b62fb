from datetime import datetime
from typing import Any, cast

from sqlalchemy import CursorResult, text
from sqlalchemy.ext.asyncio import AsyncSession

from commission_service.domain.models import WebhookEvent, WebhookEventStatus


class WebhookEventRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(self, event: WebhookEvent) -> bool:
        """Insert the event unless its external id has been seen before.

        The unique index on ``external_event_id`` is the deduplication point:
        concurrent deliveries of the same event block on it and the loser
        inserts nothing.

        Returns:
            True on first sight, False for a duplicate delivery.
        """
        result = cast(
            "CursorResult[Any]",
            await self._session.execute(
                text("""
                    INSERT INTO webhook_events
                        (external_event_id, type, status, received_at, processed_at)
                    VALUES
                        (:external_event_id, :type, :status, :received_at, :processed_at)
                    ON CONFLICT (external_event_id) DO NOTHING
                """),
                {
                    "external_event_id": event.external_event_id,
                    "type": event.type,
                    "status": event.status.value,
                    "received_at": event.received_at,
                    "processed_at": event.processed_at,
                },
            ),
        )
        return (result.rowcount or 0) == 1

    async def get(self, external_event_id: str) -> WebhookEvent | None:
        result = await self._session.execute(
            text("""
                SELECT external_event_id, type, status, received_at, processed_at
                FROM webhook_events
                WHERE external_event_id = :external_event_id
            """),
            {"external_event_id": external_event_id},
        )
        row = result.fetchone()
        if not row:
            return None
        return WebhookEvent(
            external_event_id=row.external_event_id,
            type=row.type,
            status=WebhookEventStatus(row.status),
            received_at=row.received_at,
            processed_at=row.processed_at,
        )

    async def mark_processed(self, external_event_id: str, processed_at: datetime) -> None:
        await self._session.execute(
            text("""
                UPDATE webhook_events
                SET processed_at = :processed_at
                WHERE external_event_id = :external_event_id
            """),
            {"external_event_id": external_event_id, "processed_at": processed_at},
        )
