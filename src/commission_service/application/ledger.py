from datetime import datetime

import structlog

from commission_service.application.unit_of_work import UnitOfWork
from commission_service.config import Settings
from commission_service.domain.models import (
    ChargedOrder,
    LedgerEntry,
    LedgerState,
    TransitionResult,
    assert_transition,
)
from commission_service.infrastructure.metrics import LEDGER_CAS_CONFLICTS, LEDGER_ENTRIES_CREATED


logger = structlog.get_logger()


class LedgerService:
    """Ledger Store operations bound to the caller's unit of work.

    Nothing here commits: the caller decides the transaction boundary, so a
    webhook can record its dedupe row and the ledger change atomically.
    """

    def __init__(self, uow: UnitOfWork, settings: Settings) -> None:
        self.uow = uow
        self._settings = settings

    async def create_entry(self, order: ChargedOrder, processed_at: datetime) -> LedgerEntry:
        entry = LedgerEntry.create(
            order=order,
            commission_rate=self._settings.commission_rate,
            escrow_period=self._settings.escrow_period,
            processed_at=processed_at,
        )
        log = logger.bind(order_id=order.order_id, seller_id=order.seller_id)

        inserted = await self.uow.ledger.add(entry)
        if not inserted:
            existing = await self.uow.ledger.get_by_order_id(order.order_id)
            if existing is None:
                raise RuntimeError(f"Ledger insert for order {order.order_id} conflicted but no row exists")
            log.info("ledger_entry_exists", entry_id=existing.id, state=existing.state.value)
            return existing

        LEDGER_ENTRIES_CREATED.labels(currency=entry.currency).inc()
        log.info(
            "ledger_entry_created",
            entry_id=entry.id,
            gross=entry.gross_amount,
            commission=entry.commission_amount,
            net=entry.net_amount,
            currency=entry.currency,
            escrow_release_at=entry.escrow_release_at.isoformat(),
        )
        return entry

    async def transition(
        self,
        entry_id: str,
        from_state: LedgerState,
        to_state: LedgerState,
        now: datetime,
    ) -> TransitionResult:
        assert_transition(from_state, to_state)
        swapped = await self.uow.ledger.compare_and_set_state(entry_id, from_state, to_state, now)
        if not swapped:
            LEDGER_CAS_CONFLICTS.labels(from_state=from_state.value, to_state=to_state.value).inc()
            logger.debug(
                "ledger_transition_conflict",
                entry_id=entry_id,
                from_state=from_state.value,
                to_state=to_state.value,
            )
            return TransitionResult.CONFLICT
        return TransitionResult.OK

    async def transition_any(
        self,
        entry_id: str,
        from_states: tuple[LedgerState, ...],
        to_state: LedgerState,
        now: datetime,
    ) -> TransitionResult:
        """Try each expected source state in order until one swap succeeds."""
        for from_state in from_states:
            if await self.transition(entry_id, from_state, to_state, now) == TransitionResult.OK:
                return TransitionResult.OK
        return TransitionResult.CONFLICT

    async def settle_after_failure(self, entry_id: str, now: datetime) -> TransitionResult:
        """Mark an escrowed entry paid after the gateway confirmed a batch we had given up on.

        This is the only path that skips the batching states. Entries already
        re-claimed by a newer batch are left alone.
        """
        swapped = await self.uow.ledger.compare_and_set_state(entry_id, LedgerState.ESCROWED, LedgerState.PAID, now)
        if not swapped:
            LEDGER_CAS_CONFLICTS.labels(from_state=LedgerState.ESCROWED.value, to_state=LedgerState.PAID.value).inc()
            return TransitionResult.CONFLICT
        return TransitionResult.OK

    async def releasable(self, now: datetime) -> list[LedgerEntry]:
        return await self.uow.ledger.find_releasable(now)
