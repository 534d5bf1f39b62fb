from datetime import UTC, datetime

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from commission_service.domain.models import PayoutDestination


class PayoutDestinationRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, seller_id: str) -> PayoutDestination | None:
        result = await self._session.execute(
            text("""
                SELECT seller_id, recipient_code, currency
                FROM payout_destinations
                WHERE seller_id = :seller_id AND active
            """),
            {"seller_id": seller_id},
        )
        row = result.fetchone()
        if not row:
            return None
        return PayoutDestination(
            seller_id=row.seller_id,
            recipient_code=row.recipient_code,
            currency=row.currency,
        )

    async def upsert(self, destination: PayoutDestination) -> None:
        await self._session.execute(
            text("""
                INSERT INTO payout_destinations (seller_id, recipient_code, currency, active, updated_at)
                VALUES (:seller_id, :recipient_code, :currency, TRUE, :updated_at)
                ON CONFLICT (seller_id) DO UPDATE
                SET recipient_code = EXCLUDED.recipient_code,
                    currency = EXCLUDED.currency,
                    active = TRUE,
                    updated_at = EXCLUDED.updated_at
            """),
            {
                "seller_id": destination.seller_id,
                "recipient_code": destination.recipient_code,
                "currency": destination.currency,
                "updated_at": datetime.now(UTC),
            },
        )
