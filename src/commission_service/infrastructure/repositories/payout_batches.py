import json
from collections.abc import Iterable
from datetime import datetime
from typing import Any, cast

from sqlalchemy import CursorResult, Row, text
from sqlalchemy.ext.asyncio import AsyncSession

from commission_service.domain.models import BatchStatus, PayoutBatch


_COLUMNS = """
    id, seller_id, entry_ids, total_amount, currency, status, attempt,
    last_error, transfer_ref, held, created_at, updated_at
"""


def _to_batch(row: Row[Any]) -> PayoutBatch:
    return PayoutBatch(
        id=row.id,
        seller_id=row.seller_id,
        entry_ids=list(row.entry_ids),
        total_amount=row.total_amount,
        currency=row.currency,
        status=BatchStatus(row.status),
        attempt=row.attempt,
        last_error=row.last_error,
        transfer_ref=row.transfer_ref,
        held=row.held,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class PayoutBatchRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, batch: PayoutBatch) -> None:
        await self._session.execute(
            text(f"""
                INSERT INTO payout_batches ({_COLUMNS}, reference)
                VALUES
                    (:id, :seller_id, :entry_ids, :total_amount, :currency, :status, :attempt,
                     :last_error, :transfer_ref, :held, :created_at, :updated_at, :reference)
            """),
            {
                "id": batch.id,
                "seller_id": batch.seller_id,
                "entry_ids": json.dumps(batch.entry_ids),
                "total_amount": batch.total_amount,
                "currency": batch.currency,
                "status": batch.status.value,
                "attempt": batch.attempt,
                "last_error": batch.last_error,
                "transfer_ref": batch.transfer_ref,
                "held": batch.held,
                "created_at": batch.created_at,
                "updated_at": batch.updated_at,
                "reference": batch.reference,
            },
        )

    async def get(self, batch_id: str) -> PayoutBatch | None:
        result = await self._session.execute(
            text(f"SELECT {_COLUMNS} FROM payout_batches WHERE id = :id"),
            {"id": batch_id},
        )
        row = result.fetchone()
        return _to_batch(row) if row else None

    async def get_by_reference(self, reference: str) -> PayoutBatch | None:
        result = await self._session.execute(
            text(f"SELECT {_COLUMNS} FROM payout_batches WHERE reference = :reference"),
            {"reference": reference},
        )
        row = result.fetchone()
        return _to_batch(row) if row else None

    async def get_by_transfer_ref(self, transfer_ref: str) -> PayoutBatch | None:
        result = await self._session.execute(
            text(f"SELECT {_COLUMNS} FROM payout_batches WHERE transfer_ref = :transfer_ref"),
            {"transfer_ref": transfer_ref},
        )
        row = result.fetchone()
        return _to_batch(row) if row else None

    async def record_attempt(
        self,
        batch_id: str,
        attempt: int,
        last_error: str | None,
        now: datetime,
    ) -> bool:
        result = cast(
            "CursorResult[Any]",
            await self._session.execute(
                text("""
                    UPDATE payout_batches
                    SET attempt = :attempt, last_error = :last_error, updated_at = :now
                    WHERE id = :id AND status = 'created'
                """),
                {"id": batch_id, "attempt": attempt, "last_error": last_error, "now": now},
            ),
        )
        return (result.rowcount or 0) == 1

    async def transition(
        self,
        batch_id: str,
        expected: Iterable[BatchStatus],
        new_status: BatchStatus,
        now: datetime,
        *,
        attempt: int | None = None,
        last_error: str | None = None,
        transfer_ref: str | None = None,
        held: bool | None = None,
    ) -> bool:
        """Compare-and-swap the batch status; unset keyword fields keep their value."""
        result = cast(
            "CursorResult[Any]",
            await self._session.execute(
                text("""
                    UPDATE payout_batches
                    SET status = :new_status,
                        attempt = COALESCE(:attempt, attempt),
                        last_error = COALESCE(:last_error, last_error),
                        transfer_ref = COALESCE(:transfer_ref, transfer_ref),
                        held = COALESCE(:held, held),
                        updated_at = :now
                    WHERE id = :id AND status = ANY(:expected)
                """),
                {
                    "id": batch_id,
                    "expected": [status.value for status in expected],
                    "new_status": new_status.value,
                    "attempt": attempt,
                    "last_error": last_error,
                    "transfer_ref": transfer_ref,
                    "held": held,
                    "now": now,
                },
            ),
        )
        return (result.rowcount or 0) == 1

    async def set_held(self, batch_id: str, held: bool, now: datetime) -> bool:
        result = cast(
            "CursorResult[Any]",
            await self._session.execute(
                text("""
                    UPDATE payout_batches
                    SET held = :held, updated_at = :now
                    WHERE id = :id AND status = 'failed' AND held = NOT :held
                """),
                {"id": batch_id, "held": held, "now": now},
            ),
        )
        return (result.rowcount or 0) == 1

    async def find_stale_created(self, cutoff: datetime) -> list[PayoutBatch]:
        result = await self._session.execute(
            text(f"""
                SELECT {_COLUMNS}
                FROM payout_batches
                WHERE status = 'created' AND updated_at < :cutoff
                ORDER BY created_at, id
            """),
            {"cutoff": cutoff},
        )
        return [_to_batch(row) for row in result.fetchall()]

    async def list_held(self) -> list[PayoutBatch]:
        result = await self._session.execute(
            text(f"""
                SELECT {_COLUMNS}
                FROM payout_batches
                WHERE status = 'failed' AND held
                ORDER BY created_at, id
            """),
        )
        return [_to_batch(row) for row in result.fetchall()]
