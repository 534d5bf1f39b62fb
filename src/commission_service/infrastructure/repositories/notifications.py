import json
from datetime import datetime
from typing import Any, cast

from sqlalchemy import CursorResult, text
from sqlalchemy.ext.asyncio import AsyncSession

from commission_service.domain.notifications import (
    NotificationType,
    SellerNotification,
    parse_notification_data,
)


class NotificationRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, notification: SellerNotification) -> None:
        await self._session.execute(
            text("""
                INSERT INTO seller_notifications
                    (id, seller_id, type, title, message, data, read, created_at, expires_at)
                VALUES
                    (:id, :seller_id, :type, :title, :message, :data, :read, :created_at, :expires_at)
                ON CONFLICT (id) DO NOTHING
            """),
            {
                "id": notification.id,
                "seller_id": notification.seller_id,
                "type": notification.type.value,
                "title": notification.title,
                "message": notification.message,
                "data": json.dumps(notification.data.model_dump(mode="json")),
                "read": notification.read,
                "created_at": notification.created_at,
                "expires_at": notification.expires_at,
            },
        )

    async def list_for_seller(
        self,
        seller_id: str,
        now: datetime,
        unread_only: bool = False,
        limit: int = 20,
        offset: int = 0,
    ) -> list[SellerNotification]:
        result = await self._session.execute(
            text("""
                SELECT id, seller_id, type, title, message, data, read, created_at, expires_at
                FROM seller_notifications
                WHERE seller_id = :seller_id
                  AND expires_at > :now
                  AND (:unread_only = FALSE OR read = FALSE)
                ORDER BY created_at DESC
                LIMIT :limit OFFSET :offset
            """),
            {
                "seller_id": seller_id,
                "now": now,
                "unread_only": unread_only,
                "limit": limit,
                "offset": offset,
            },
        )
        return [
            SellerNotification(
                id=row.id,
                seller_id=row.seller_id,
                type=NotificationType(row.type),
                title=row.title,
                message=row.message,
                data=parse_notification_data(row.data),
                read=row.read,
                created_at=row.created_at,
                expires_at=row.expires_at,
            )
            for row in result.fetchall()
        ]

    async def unread_count(self, seller_id: str, now: datetime) -> int:
        result = await self._session.execute(
            text("""
                SELECT COUNT(*) AS unread
                FROM seller_notifications
                WHERE seller_id = :seller_id AND read = FALSE AND expires_at > :now
            """),
            {"seller_id": seller_id, "now": now},
        )
        return int(result.scalar_one())

    async def set_read(self, notification_id: str, read: bool) -> bool:
        result = cast(
            "CursorResult[Any]",
            await self._session.execute(
                text("""
                    UPDATE seller_notifications
                    SET read = :read
                    WHERE id = :id
                """),
                {"id": notification_id, "read": read},
            ),
        )
        return (result.rowcount or 0) == 1

    async def delete_expired(self, now: datetime) -> int:
        result = cast(
            "CursorResult[Any]",
            await self._session.execute(
                text("""
                    DELETE FROM seller_notifications
                    WHERE expires_at <= :now
                """),
                {"now": now},
            ),
        )
        return result.rowcount or 0
