from datetime import datetime
from typing import Any, cast

from sqlalchemy import CursorResult, Row, text
from sqlalchemy.ext.asyncio import AsyncSession

from commission_service.domain.models import LedgerEntry, LedgerState


_COLUMNS = """
    id, order_id, seller_id, gross_amount, commission_amount, net_amount,
    currency, state, escrow_release_at, charge_reference, payout_batch_id,
    created_at, updated_at
"""


def _to_entry(row: Row[Any]) -> LedgerEntry:
    return LedgerEntry(
        id=row.id,
        order_id=row.order_id,
        seller_id=row.seller_id,
        gross_amount=row.gross_amount,
        commission_amount=row.commission_amount,
        net_amount=row.net_amount,
        currency=row.currency,
        state=LedgerState(row.state),
        escrow_release_at=row.escrow_release_at,
        charge_reference=row.charge_reference,
        payout_batch_id=row.payout_batch_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class LedgerRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, entry: LedgerEntry) -> bool:
        """Insert an entry unless one already exists for the order.

        Returns:
            True if the row was inserted.
        """
        result = cast(
            "CursorResult[Any]",
            await self._session.execute(
                text(f"""
                    INSERT INTO ledger_entries ({_COLUMNS})
                    VALUES
                        (:id, :order_id, :seller_id, :gross_amount, :commission_amount, :net_amount,
                         :currency, :state, :escrow_release_at, :charge_reference, :payout_batch_id,
                         :created_at, :updated_at)
                    ON CONFLICT (order_id) DO NOTHING
                """),
                {
                    "id": entry.id,
                    "order_id": entry.order_id,
                    "seller_id": entry.seller_id,
                    "gross_amount": entry.gross_amount,
                    "commission_amount": entry.commission_amount,
                    "net_amount": entry.net_amount,
                    "currency": entry.currency,
                    "state": entry.state.value,
                    "escrow_release_at": entry.escrow_release_at,
                    "charge_reference": entry.charge_reference,
                    "payout_batch_id": entry.payout_batch_id,
                    "created_at": entry.created_at,
                    "updated_at": entry.updated_at,
                },
            ),
        )
        return (result.rowcount or 0) == 1

    async def get(self, entry_id: str) -> LedgerEntry | None:
        result = await self._session.execute(
            text(f"SELECT {_COLUMNS} FROM ledger_entries WHERE id = :id"),
            {"id": entry_id},
        )
        row = result.fetchone()
        return _to_entry(row) if row else None

    async def get_by_order_id(self, order_id: str) -> LedgerEntry | None:
        result = await self._session.execute(
            text(f"SELECT {_COLUMNS} FROM ledger_entries WHERE order_id = :order_id"),
            {"order_id": order_id},
        )
        row = result.fetchone()
        return _to_entry(row) if row else None

    async def compare_and_set_state(
        self,
        entry_id: str,
        expected: LedgerState,
        new_state: LedgerState,
        now: datetime,
    ) -> bool:
        """Move an entry to ``new_state`` only if it is still in ``expected``.

        Returning to escrow detaches the entry from its payout batch.
        """
        result = cast(
            "CursorResult[Any]",
            await self._session.execute(
                text("""
                    UPDATE ledger_entries
                    SET state = :new_state,
                        payout_batch_id = CASE WHEN :detach THEN NULL ELSE payout_batch_id END,
                        updated_at = :now
                    WHERE id = :id AND state = :expected
                """),
                {
                    "id": entry_id,
                    "expected": expected.value,
                    "new_state": new_state.value,
                    "detach": new_state == LedgerState.ESCROWED,
                    "now": now,
                },
            ),
        )
        return (result.rowcount or 0) == 1

    async def attach_to_batch(self, entry_ids: list[str], batch_id: str, now: datetime) -> int:
        if not entry_ids:
            return 0
        result = cast(
            "CursorResult[Any]",
            await self._session.execute(
                text("""
                    UPDATE ledger_entries
                    SET payout_batch_id = :batch_id, updated_at = :now
                    WHERE id = ANY(:ids) AND state = 'batching' AND payout_batch_id IS NULL
                """),
                {"ids": entry_ids, "batch_id": batch_id, "now": now},
            ),
        )
        return result.rowcount or 0

    async def find_releasable(self, now: datetime) -> list[LedgerEntry]:
        result = await self._session.execute(
            text(f"""
                SELECT {_COLUMNS}
                FROM ledger_entries
                WHERE state = 'escrowed' AND escrow_release_at <= :now
                ORDER BY seller_id, created_at, id
            """),
            {"now": now},
        )
        return [_to_entry(row) for row in result.fetchall()]

    async def list_by_batch(self, batch_id: str) -> list[LedgerEntry]:
        result = await self._session.execute(
            text(f"""
                SELECT {_COLUMNS}
                FROM ledger_entries
                WHERE payout_batch_id = :batch_id
                ORDER BY created_at, id
            """),
            {"batch_id": batch_id},
        )
        return [_to_entry(row) for row in result.fetchall()]

    async def list_by_ids(self, entry_ids: list[str]) -> list[LedgerEntry]:
        if not entry_ids:
            return []
        result = await self._session.execute(
            text(f"""
                SELECT {_COLUMNS}
                FROM ledger_entries
                WHERE id = ANY(:ids)
                ORDER BY created_at, id
            """),
            {"ids": entry_ids},
        )
        return [_to_entry(row) for row in result.fetchall()]

    async def find_stale_claims(self, cutoff: datetime) -> list[LedgerEntry]:
        """Entries claimed by a sweep that never got attached to a batch."""
        result = await self._session.execute(
            text(f"""
                SELECT {_COLUMNS}
                FROM ledger_entries
                WHERE state = 'batching' AND payout_batch_id IS NULL AND updated_at < :cutoff
                ORDER BY updated_at, id
            """),
            {"cutoff": cutoff},
        )
        return [_to_entry(row) for row in result.fetchall()]
