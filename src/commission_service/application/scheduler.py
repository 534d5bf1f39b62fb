import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from itertools import groupby

import structlog

from commission_service.application.ledger import LedgerService
from commission_service.application.payouts import PayoutBatcher
from commission_service.application.unit_of_work import UnitOfWorkFactory
from commission_service.config import Settings
from commission_service.domain.models import LedgerEntry, LedgerState, TransitionResult
from commission_service.infrastructure.metrics import (
    ENTRIES_CLAIMED_TOTAL,
    ESCROW_SWEEP_DURATION,
    ESCROW_SWEEPS_TOTAL,
    STALE_CLAIMS_RECOVERED,
    track_duration,
)
from commission_service.infrastructure.sweep_lock import SweepLock


logger = structlog.get_logger()


def utcnow() -> datetime:
    return datetime.now(UTC)


def payout_group(entry: LedgerEntry) -> tuple[str, str]:
    return entry.seller_id, entry.currency


@dataclass
class SweepResult:
    skipped: bool = False
    groups_considered: int = 0
    entries_claimed: int = 0
    batches_created: int = 0
    groups_below_minimum: int = 0
    groups_rolled_back: int = 0
    batch_ids: list[str] = field(default_factory=list)


@dataclass
class RecoveryResult:
    entries_reset: int = 0
    batches_requeued: int = 0


class EscrowScheduler:
    """
    Periodically moves matured escrow into payout batches.

    Each tick:
    1. Take the sweep lock, or skip the tick if someone else holds it
    2. Recover stale claims left by a crashed or stopped process
    3. Group releasable entries by seller and currency
    4. Claim each entry of a group above the payout minimum with a CAS
    5. Hand the claimed entries to the payout batcher, undoing the claim if that fails
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        batcher: PayoutBatcher,
        lock: SweepLock,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._batcher = batcher
        self._lock = lock
        self._settings = settings
        self._clock = clock
        self._interval = settings.sweep_interval.total_seconds()
        self._running = False
        self._stopped = asyncio.Event()

    async def start(self) -> None:
        """Run recovery once, then sweep every interval until stopped."""
        self._running = True
        self._stopped.clear()
        logger.info("escrow_scheduler_started", interval_seconds=self._interval)
        try:
            await self.recover_stale_claims(self._clock())
        except Exception as e:
            logger.error("stale_claim_recovery_failed", error=str(e), exc_info=True)

        while self._running:
            try:
                await self.sweep(self._clock())
            except Exception as e:
                ESCROW_SWEEPS_TOTAL.labels(outcome="error").inc()
                logger.error("escrow_sweep_failed", error=str(e), exc_info=True)
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self._interval)
            except TimeoutError:
                pass
        logger.info("escrow_scheduler_stopped")

    async def stop(self) -> None:
        """Stop ticking and wait for an in-flight sweep to finish claiming."""
        self._running = False
        self._stopped.set()
        await self._lock.wait_idle()

    @track_duration(ESCROW_SWEEP_DURATION)
    async def sweep(self, now: datetime) -> SweepResult:
        async with self._lock.acquire() as acquired:
            if not acquired:
                ESCROW_SWEEPS_TOTAL.labels(outcome="skipped").inc()
                logger.info("escrow_sweep_skipped", reason="lock_held")
                return SweepResult(skipped=True)

            await self.recover_stale_claims(now)

            async with self._uow_factory() as uow:
                entries = await LedgerService(uow, self._settings).releasable(now)

            result = SweepResult()
            # releasable() orders by seller then age; currencies can interleave.
            for (seller_id, currency), group in groupby(sorted(entries, key=payout_group), key=payout_group):
                await self._sweep_group(seller_id, currency, list(group), now, result)

        ESCROW_SWEEPS_TOTAL.labels(outcome="completed").inc()
        logger.info(
            "escrow_sweep_completed",
            releasable=len(entries),
            groups=result.groups_considered,
            claimed=result.entries_claimed,
            batches=result.batches_created,
            below_minimum=result.groups_below_minimum,
            rolled_back=result.groups_rolled_back,
        )
        return result

    async def _sweep_group(
        self,
        seller_id: str,
        currency: str,
        group: list[LedgerEntry],
        now: datetime,
        result: SweepResult,
    ) -> None:
        result.groups_considered += 1
        log = logger.bind(seller_id=seller_id, currency=currency)

        total = sum(entry.net_amount for entry in group)
        if total < self._settings.minimum_payout:
            result.groups_below_minimum += 1
            log.debug("escrow_group_below_minimum", total=total, minimum=self._settings.minimum_payout)
            return

        claimed = await self._claim(group, now)
        if not claimed:
            return

        try:
            batches = await self._batcher.submit(seller_id, claimed)
        except Exception as e:
            result.groups_rolled_back += 1
            log.warning("payout_submit_failed", entries=len(claimed), error=str(e), error_type=type(e).__name__)
            await self._unclaim(claimed, now)
            return

        ENTRIES_CLAIMED_TOTAL.inc(len(claimed))
        result.entries_claimed += len(claimed)
        result.batches_created += len(batches)
        result.batch_ids.extend(batch.id for batch in batches)

    async def _claim(self, group: list[LedgerEntry], now: datetime) -> list[LedgerEntry]:
        claimed: list[LedgerEntry] = []
        async with self._uow_factory() as uow:
            ledger = LedgerService(uow, self._settings)
            for entry in group:
                result = await ledger.transition(entry.id, LedgerState.ESCROWED, LedgerState.BATCHING, now)
                if result == TransitionResult.OK:
                    entry.state = LedgerState.BATCHING
                    claimed.append(entry)
            await uow.commit()
        return claimed

    async def _unclaim(self, entries: list[LedgerEntry], now: datetime) -> None:
        async with self._uow_factory() as uow:
            ledger = LedgerService(uow, self._settings)
            for entry in entries:
                if await ledger.transition(entry.id, LedgerState.BATCHING, LedgerState.ESCROWED, now) == TransitionResult.OK:
                    entry.state = LedgerState.ESCROWED
            await uow.commit()

    async def recover_stale_claims(self, now: datetime) -> RecoveryResult:
        """Undo claims and re-queue batches abandoned for longer than the stale threshold.

        Claimed entries that never made it into a batch return to escrow. Batches
        still in ``created`` are re-queued; the batcher retries them with their
        original idempotency reference.
        """
        cutoff = now - self._settings.stale_claim_threshold
        result = RecoveryResult()

        async with self._uow_factory() as uow:
            ledger = LedgerService(uow, self._settings)
            for entry in await uow.ledger.find_stale_claims(cutoff):
                if await ledger.transition(entry.id, LedgerState.BATCHING, LedgerState.ESCROWED, now) == TransitionResult.OK:
                    result.entries_reset += 1
            stale_batches = await uow.batches.find_stale_created(cutoff)
            await uow.commit()

        for batch in stale_batches:
            self._batcher.enqueue(batch.id)
            result.batches_requeued += 1

        if result.entries_reset:
            STALE_CLAIMS_RECOVERED.labels(kind="entry").inc(result.entries_reset)
        if result.batches_requeued:
            STALE_CLAIMS_RECOVERED.labels(kind="batch").inc(result.batches_requeued)
        if result.entries_reset or result.batches_requeued:
            logger.warning(
                "stale_claims_recovered",
                entries_reset=result.entries_reset,
                batches_requeued=result.batches_requeued,
                cutoff=cutoff.isoformat(),
            )
        return result
