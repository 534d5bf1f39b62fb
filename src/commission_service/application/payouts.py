import asyncio
import contextlib
import random
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime
from typing import Protocol

import structlog

from commission_service.application.ledger import LedgerService
from commission_service.application.notifications import NotificationDispatcher
from commission_service.application.unit_of_work import UnitOfWorkFactory
from commission_service.config import Settings
from commission_service.domain.exceptions import (
    MissingPayoutDestinationError,
    NonRetriablePayoutError,
    PersistenceConflictError,
    TransientGatewayError,
)
from commission_service.domain.models import (
    BatchStatus,
    LedgerEntry,
    LedgerState,
    PayoutBatch,
    PayoutDestination,
    TransitionResult,
)
from commission_service.domain.notifications import NotificationType, SystemData
from commission_service.infrastructure.alerts import OpsAlerter
from commission_service.infrastructure.metrics import (
    PAYOUT_ATTEMPTS_TOTAL,
    PAYOUT_BATCHES_TOTAL,
    PAYOUT_QUEUE_DEPTH,
)


logger = structlog.get_logger()


def utcnow() -> datetime:
    return datetime.now(UTC)


class PayoutClient(Protocol):
    async def create_transfer(
        self,
        destination: PayoutDestination,
        amount: int,
        currency: str,
        reference: str,
    ) -> str:
        """Start a transfer and return the gateway's transfer reference.

        Raises:
            TransientGatewayError: the call may succeed if retried.
            NonRetriablePayoutError: the gateway rejected the transfer.
        """
        ...


class DestinationResolver(Protocol):
    async def get_destination(self, seller_id: str) -> PayoutDestination | None: ...


class TableDestinationResolver:
    """Looks payout destinations up in the ``payout_destinations`` table."""

    def __init__(self, uow_factory: UnitOfWorkFactory) -> None:
        self._uow_factory = uow_factory

    async def get_destination(self, seller_id: str) -> PayoutDestination | None:
        async with self._uow_factory() as uow:
            return await uow.destinations.get(seller_id)


class PayoutBatcher:
    """
    Turns claimed ledger entries into payout batches and submits them.

    - ``submit`` persists the batches and returns without waiting for transfers
    - A fixed pool of workers calls the gateway, one batch at a time each
    - Transient failures are retried with exponential backoff up to the retry limit
    - Permanent rejections put the batch on hold for an operator
    - Every attempt for a batch reuses the same idempotency reference
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        client: PayoutClient,
        destinations: DestinationResolver,
        notifier: NotificationDispatcher,
        alerter: OpsAlerter,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._uow_factory = uow_factory
        self._client = client
        self._destinations = destinations
        self._notifier = notifier
        self._alerter = alerter
        self._settings = settings
        self._batch_size = settings.payout_batch_size
        self._retry_limit = settings.payout_retry_attempts
        self._pool_size = settings.payout_worker_pool_size
        self._base_delay = settings.payout_base_delay_seconds
        self._max_delay = settings.payout_max_delay_seconds
        self._clock = clock
        self._sleep = sleep
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._pending: set[str] = set()
        self._workers: list[asyncio.Task[None]] = []

    async def submit(self, seller_id: str, entries: Sequence[LedgerEntry]) -> list[PayoutBatch]:
        """Create batches for claimed entries and queue them for transfer.

        Raises:
            MissingPayoutDestinationError: the seller has nowhere to be paid.
            PersistenceConflictError: an entry was no longer claimable.
        """
        if not entries:
            return []

        destination = await self._destinations.get_destination(seller_id)
        if destination is None:
            raise MissingPayoutDestinationError(seller_id)

        now = self._clock()
        batches: list[PayoutBatch] = []
        async with self._uow_factory() as uow:
            for start in range(0, len(entries), self._batch_size):
                chunk = list(entries[start : start + self._batch_size])
                batch = PayoutBatch.create(seller_id, chunk, now)
                await uow.batches.add(batch)
                attached = await uow.ledger.attach_to_batch(batch.entry_ids, batch.id, now)
                if attached != len(chunk):
                    raise PersistenceConflictError("payout_batch", batch.id, LedgerState.BATCHING.value)
                batches.append(batch)
            await uow.commit()

        for batch in batches:
            PAYOUT_BATCHES_TOTAL.labels(status=BatchStatus.CREATED.value).inc()
            logger.info(
                "payout_batch_created",
                batch_id=batch.id,
                seller_id=seller_id,
                entry_count=len(batch.entry_ids),
                total_amount=batch.total_amount,
                currency=batch.currency,
            )
            self.enqueue(batch.id)
        return batches

    def enqueue(self, batch_id: str) -> bool:
        """Queue a batch for transfer. Returns False if it is already queued or in progress."""
        if batch_id in self._pending:
            return False
        self._pending.add(batch_id)
        self._queue.put_nowait(batch_id)
        PAYOUT_QUEUE_DEPTH.set(self._queue.qsize())
        return True

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(), name=f"payout-worker-{index}") for index in range(self._pool_size)
        ]
        logger.info("payout_workers_started", pool_size=self._pool_size)

    async def stop(self) -> None:
        """Cancel the workers. Batches left in ``created`` are picked up by stale-claim recovery."""
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._workers = []
        logger.info("payout_workers_stopped", pending=self._queue.qsize())

    async def join(self) -> None:
        """Wait until every queued batch has been processed."""
        await self._queue.join()

    async def _worker(self) -> None:
        while True:
            batch_id = await self._queue.get()
            PAYOUT_QUEUE_DEPTH.set(self._queue.qsize())
            try:
                await self.process(batch_id)
            except Exception as e:
                logger.error("payout_worker_error", batch_id=batch_id, error=str(e), exc_info=True)
            finally:
                self._pending.discard(batch_id)
                self._queue.task_done()

    async def process(self, batch_id: str) -> None:
        """Drive one batch through the gateway until it is submitted, failed or held."""
        async with self._uow_factory() as uow:
            batch = await uow.batches.get(batch_id)

        log = logger.bind(batch_id=batch_id)
        if batch is None:
            log.warning("payout_batch_missing")
            return
        if batch.status != BatchStatus.CREATED:
            log.info("payout_batch_skipped", status=batch.status.value)
            return

        log = log.bind(seller_id=batch.seller_id, reference=batch.reference)
        destination = await self._destinations.get_destination(batch.seller_id)
        if destination is None:
            await self._hold(batch, batch.attempt, f"no payout destination for seller {batch.seller_id}")
            return

        attempt = batch.attempt
        while True:
            attempt += 1
            try:
                transfer_ref = await self._client.create_transfer(
                    destination,
                    batch.total_amount,
                    batch.currency,
                    batch.reference,
                )
            except TransientGatewayError as e:
                PAYOUT_ATTEMPTS_TOTAL.labels(outcome="transient_error").inc()
                if attempt >= self._retry_limit:
                    await self._fail(batch, attempt, str(e))
                    return

                async with self._uow_factory() as uow:
                    recorded = await uow.batches.record_attempt(batch.id, attempt, str(e), self._clock())
                    await uow.commit()
                if not recorded:
                    log.info("payout_batch_resolved_during_retry", attempt=attempt)
                    return

                delay = self._calculate_backoff_delay(attempt)
                log.warning(
                    "payout_retry_scheduled",
                    attempt=attempt,
                    retry_limit=self._retry_limit,
                    next_delay_seconds=delay,
                    error=str(e),
                )
                await self._sleep(delay)
                continue
            except NonRetriablePayoutError as e:
                PAYOUT_ATTEMPTS_TOTAL.labels(outcome="rejected").inc()
                await self._hold(batch, attempt, str(e))
                return

            PAYOUT_ATTEMPTS_TOTAL.labels(outcome="accepted").inc()
            await self._mark_submitted(batch, attempt, transfer_ref)
            return

    def _calculate_backoff_delay(self, attempt: int) -> float:
        """Calculate exponential backoff delay with jitter."""
        delay: float = min(
            self._base_delay * (2 ** (attempt - 1)),
            self._max_delay,
        )
        jitter: float = random.uniform(0, delay * 0.1)
        return delay + jitter

    async def _mark_submitted(self, batch: PayoutBatch, attempt: int, transfer_ref: str) -> None:
        now = self._clock()
        async with self._uow_factory() as uow:
            moved = await uow.batches.transition(
                batch.id,
                [BatchStatus.CREATED],
                BatchStatus.SUBMITTED,
                now,
                attempt=attempt,
                transfer_ref=transfer_ref,
            )
            if moved:
                ledger = LedgerService(uow, self._settings)
                for entry_id in batch.entry_ids:
                    await ledger.transition(entry_id, LedgerState.BATCHING, LedgerState.RELEASED, now)
            await uow.commit()

        if not moved:
            logger.info("payout_batch_resolved_before_submit", batch_id=batch.id, transfer_ref=transfer_ref)
            return
        PAYOUT_BATCHES_TOTAL.labels(status=BatchStatus.SUBMITTED.value).inc()
        logger.info(
            "payout_batch_submitted",
            batch_id=batch.id,
            seller_id=batch.seller_id,
            transfer_ref=transfer_ref,
            attempt=attempt,
        )

    async def _fail(self, batch: PayoutBatch, attempt: int, error: str) -> None:
        now = self._clock()
        async with self._uow_factory() as uow:
            moved = await uow.batches.transition(
                batch.id,
                [BatchStatus.CREATED],
                BatchStatus.FAILED,
                now,
                attempt=attempt,
                last_error=error,
            )
            if moved:
                ledger = LedgerService(uow, self._settings)
                for entry_id in batch.entry_ids:
                    await ledger.transition(entry_id, LedgerState.BATCHING, LedgerState.ESCROWED, now)
            await uow.commit()

        if not moved:
            logger.info("payout_batch_resolved_before_fail", batch_id=batch.id)
            return

        PAYOUT_BATCHES_TOTAL.labels(status=BatchStatus.FAILED.value).inc()
        logger.error(
            "payout_batch_failed",
            batch_id=batch.id,
            seller_id=batch.seller_id,
            attempts=attempt,
            error=error,
        )
        await self._alerter.alert(
            "payout_retries_exhausted",
            f"Payout batch {batch.id} failed after {attempt} attempts",
            batch_id=batch.id,
            seller_id=batch.seller_id,
            total_amount=batch.total_amount,
            currency=batch.currency,
            last_error=error,
        )
        self._notifier.notify(
            batch.seller_id,
            NotificationType.SYSTEM,
            "Payout delayed",
            "We could not complete your payout. The funds are back in escrow and will be "
            "included in the next payout run.",
            SystemData(code="payout_retry", batch_id=batch.id, detail=error[:200]),
        )

    async def _hold(self, batch: PayoutBatch, attempt: int, error: str) -> None:
        now = self._clock()
        async with self._uow_factory() as uow:
            moved = await uow.batches.transition(
                batch.id,
                [BatchStatus.CREATED],
                BatchStatus.FAILED,
                now,
                attempt=attempt,
                last_error=error,
                held=True,
            )
            await uow.commit()

        if not moved:
            logger.info("payout_batch_resolved_before_hold", batch_id=batch.id)
            return

        PAYOUT_BATCHES_TOTAL.labels(status="held").inc()
        logger.error("payout_batch_held", batch_id=batch.id, seller_id=batch.seller_id, error=error)
        await self._alerter.alert(
            "payout_rejected",
            f"Payout batch {batch.id} was rejected and is held for review",
            batch_id=batch.id,
            seller_id=batch.seller_id,
            total_amount=batch.total_amount,
            currency=batch.currency,
            last_error=error,
        )
        self._notifier.notify(
            batch.seller_id,
            NotificationType.SYSTEM,
            "Payout on hold",
            "Your payout could not be sent to your payout account. Please check your "
            "payout details; our team has been notified.",
            SystemData(code="payout_held", batch_id=batch.id, detail=error[:200]),
        )

    async def release_held_batch(self, batch_id: str) -> int:
        """Return a held batch's entries to escrow so the next sweep pays them again.

        Returns:
            Number of entries returned to escrow.
        """
        return await self._resolve_held(batch_id, LedgerState.ESCROWED)

    async def write_off_held_batch(self, batch_id: str) -> int:
        """Mark a held batch's entries as permanently failed.

        Returns:
            Number of entries written off.
        """
        return await self._resolve_held(batch_id, LedgerState.FAILED)

    async def _resolve_held(self, batch_id: str, target: LedgerState) -> int:
        now = self._clock()
        async with self._uow_factory() as uow:
            batch = await uow.batches.get(batch_id)
            if batch is None or not batch.held:
                raise PersistenceConflictError("payout_batch", batch_id, "held")
            if not await uow.batches.set_held(batch_id, False, now):
                raise PersistenceConflictError("payout_batch", batch_id, "held")

            ledger = LedgerService(uow, self._settings)
            resolved = 0
            for entry_id in batch.entry_ids:
                result = await ledger.transition(entry_id, LedgerState.BATCHING, target, now)
                if result == TransitionResult.OK:
                    resolved += 1
            await uow.commit()

        logger.warning(
            "held_batch_resolved",
            batch_id=batch_id,
            seller_id=batch.seller_id,
            entries=resolved,
            outcome=target.value,
        )
        return resolved
