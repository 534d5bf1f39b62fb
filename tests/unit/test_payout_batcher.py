"""Unit tests for PayoutBatcher submission, retries and held batches."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from commission_service.application.payouts import PayoutBatcher
from commission_service.config import Settings
from commission_service.domain.exceptions import (
    MissingPayoutDestinationError,
    PersistenceConflictError,
    TransientGatewayError,
)
from commission_service.domain.models import BatchStatus, LedgerEntry, LedgerState, PayoutBatch
from commission_service.domain.notifications import NotificationType
from tests.conftest import create_entry
from tests.fakes import FakeClock, FakeStore, ScriptedPayoutClient, StaticDestinations, no_sleep


def claimed_entries(store: FakeStore, count: int = 4, seller_id: str = "seller-001") -> list[LedgerEntry]:
    entries = [
        create_entry(f"e{index:03d}", seller_id=seller_id, state=LedgerState.BATCHING) for index in range(count)
    ]
    for entry in entries:
        store.entries[entry.id] = entry
    return entries


def make_batcher(
    uow_factory,
    settings: Settings,
    client,
    destinations: StaticDestinations,
    notifier: MagicMock,
    alerter: AsyncMock,
    clock: FakeClock,
) -> PayoutBatcher:
    return PayoutBatcher(
        uow_factory,
        client=client,
        destinations=destinations,
        notifier=notifier,
        alerter=alerter,
        settings=settings,
        clock=clock,
        sleep=no_sleep,
    )


@pytest.fixture
def seller_destination(destinations: StaticDestinations) -> StaticDestinations:
    destinations.add("seller-001")
    return destinations


class TestSubmit:
    """Tests for PayoutBatcher.submit."""

    @pytest.mark.asyncio
    async def test_missing_destination_raises(
        self,
        uow_factory,
        settings: Settings,
        destinations: StaticDestinations,
        mock_notifier: MagicMock,
        mock_alerter: AsyncMock,
        clock: FakeClock,
        store: FakeStore,
    ) -> None:
        batcher = make_batcher(
            uow_factory, settings, ScriptedPayoutClient(), destinations, mock_notifier, mock_alerter, clock
        )

        with pytest.raises(MissingPayoutDestinationError) as exc_info:
            await batcher.submit("seller-001", claimed_entries(store))

        assert exc_info.value.seller_id == "seller-001"
        assert store.batches == {}

    @pytest.mark.asyncio
    async def test_persists_batch_and_attaches_entries(
        self,
        uow_factory,
        settings: Settings,
        seller_destination: StaticDestinations,
        mock_notifier: MagicMock,
        mock_alerter: AsyncMock,
        clock: FakeClock,
        store: FakeStore,
    ) -> None:
        batcher = make_batcher(
            uow_factory, settings, ScriptedPayoutClient(), seller_destination, mock_notifier, mock_alerter, clock
        )

        (batch,) = await batcher.submit("seller-001", claimed_entries(store))

        assert store.batches[batch.id].total_amount == 1800
        assert all(entry.payout_batch_id == batch.id for entry in store.entries.values())

    @pytest.mark.asyncio
    async def test_entry_no_longer_claimed_aborts_whole_submit(
        self,
        uow_factory,
        settings: Settings,
        seller_destination: StaticDestinations,
        mock_notifier: MagicMock,
        mock_alerter: AsyncMock,
        clock: FakeClock,
        store: FakeStore,
    ) -> None:
        entries = claimed_entries(store)
        store.entries["e002"].state = LedgerState.ESCROWED
        batcher = make_batcher(
            uow_factory, settings, ScriptedPayoutClient(), seller_destination, mock_notifier, mock_alerter, clock
        )

        with pytest.raises(PersistenceConflictError):
            await batcher.submit("seller-001", entries)

        assert store.batches == {}
        assert all(entry.payout_batch_id is None for entry in store.entries.values())


class TestProcess:
    """Tests for the transfer worker logic."""

    async def submit_and_process(self, batcher: PayoutBatcher, store: FakeStore) -> PayoutBatch:
        (batch,) = await batcher.submit("seller-001", claimed_entries(store))
        await batcher.process(batch.id)
        return store.batches[batch.id]

    @pytest.mark.asyncio
    async def test_success_marks_submitted_and_released(
        self,
        uow_factory,
        settings: Settings,
        seller_destination: StaticDestinations,
        mock_notifier: MagicMock,
        mock_alerter: AsyncMock,
        clock: FakeClock,
        store: FakeStore,
    ) -> None:
        client = ScriptedPayoutClient()
        batcher = make_batcher(uow_factory, settings, client, seller_destination, mock_notifier, mock_alerter, clock)

        batch = await self.submit_and_process(batcher, store)

        assert batch.status == BatchStatus.SUBMITTED
        assert batch.attempt == 1
        assert batch.transfer_ref == "TRF_0001"
        assert all(entry.state == LedgerState.RELEASED for entry in store.entries.values())
        assert client.calls == [
            {"recipient": "RCP_seller-001", "amount": 1800, "currency": "NGN", "reference": batch.reference}
        ]

    @pytest.mark.asyncio
    async def test_transient_failure_retried_with_same_reference(
        self,
        uow_factory,
        settings: Settings,
        seller_destination: StaticDestinations,
        mock_notifier: MagicMock,
        mock_alerter: AsyncMock,
        clock: FakeClock,
        store: FakeStore,
    ) -> None:
        client = ScriptedPayoutClient(["transient"])
        batcher = make_batcher(uow_factory, settings, client, seller_destination, mock_notifier, mock_alerter, clock)

        batch = await self.submit_and_process(batcher, store)

        assert batch.status == BatchStatus.SUBMITTED
        assert batch.attempt == 2
        assert [call["reference"] for call in client.calls] == [batch.reference, batch.reference]

    @pytest.mark.asyncio
    async def test_retry_limit_fails_batch_and_returns_entries(
        self,
        uow_factory,
        settings: Settings,
        seller_destination: StaticDestinations,
        mock_notifier: MagicMock,
        mock_alerter: AsyncMock,
        clock: FakeClock,
        store: FakeStore,
    ) -> None:
        client = ScriptedPayoutClient(always="transient")
        batcher = make_batcher(uow_factory, settings, client, seller_destination, mock_notifier, mock_alerter, clock)

        batch = await self.submit_and_process(batcher, store)

        assert len(client.calls) == settings.payout_retry_attempts == 3
        assert batch.status == BatchStatus.FAILED
        assert batch.attempt == 3
        assert not batch.held
        assert "gateway timeout" in (batch.last_error or "")
        for entry in store.entries.values():
            assert entry.state == LedgerState.ESCROWED
            assert entry.payout_batch_id is None
        mock_alerter.alert.assert_called_once()
        assert mock_alerter.alert.call_args.args[0] == "payout_retries_exhausted"
        assert mock_notifier.notify.call_args.args[1] == NotificationType.SYSTEM

    @pytest.mark.asyncio
    async def test_rejection_holds_batch(
        self,
        uow_factory,
        settings: Settings,
        seller_destination: StaticDestinations,
        mock_notifier: MagicMock,
        mock_alerter: AsyncMock,
        clock: FakeClock,
        store: FakeStore,
    ) -> None:
        client = ScriptedPayoutClient(["reject"])
        batcher = make_batcher(uow_factory, settings, client, seller_destination, mock_notifier, mock_alerter, clock)

        batch = await self.submit_and_process(batcher, store)

        assert len(client.calls) == 1
        assert batch.status == BatchStatus.FAILED
        assert batch.held
        assert all(entry.state == LedgerState.BATCHING for entry in store.entries.values())
        assert mock_alerter.alert.call_args.args[0] == "payout_rejected"

    @pytest.mark.asyncio
    async def test_retry_stops_when_webhook_resolved_batch(
        self,
        uow_factory,
        settings: Settings,
        seller_destination: StaticDestinations,
        mock_notifier: MagicMock,
        mock_alerter: AsyncMock,
        clock: FakeClock,
        store: FakeStore,
    ) -> None:
        class ResolvedMidCall(ScriptedPayoutClient):
            async def create_transfer(self, destination, amount, currency, reference):
                self.calls.append({"reference": reference})
                batch_id = reference.removeprefix("payout_")
                store.batches[batch_id].status = BatchStatus.SUCCEEDED
                raise TransientGatewayError("read timeout")

        client = ResolvedMidCall()
        batcher = make_batcher(uow_factory, settings, client, seller_destination, mock_notifier, mock_alerter, clock)

        batch = await self.submit_and_process(batcher, store)

        assert len(client.calls) == 1
        assert batch.status == BatchStatus.SUCCEEDED
        mock_alerter.alert.assert_not_called()

    @pytest.mark.asyncio
    async def test_non_created_batch_skipped(
        self,
        uow_factory,
        settings: Settings,
        seller_destination: StaticDestinations,
        mock_notifier: MagicMock,
        mock_alerter: AsyncMock,
        clock: FakeClock,
        store: FakeStore,
    ) -> None:
        client = ScriptedPayoutClient()
        batcher = make_batcher(uow_factory, settings, client, seller_destination, mock_notifier, mock_alerter, clock)
        (batch,) = await batcher.submit("seller-001", claimed_entries(store))
        store.batches[batch.id].status = BatchStatus.SUBMITTED

        await batcher.process(batch.id)

        assert client.calls == []


class TestWorkerPool:
    """Tests for start/stop/join and queue de-duplication."""

    @pytest.mark.asyncio
    async def test_workers_drain_queue(
        self,
        uow_factory,
        settings: Settings,
        seller_destination: StaticDestinations,
        mock_notifier: MagicMock,
        mock_alerter: AsyncMock,
        clock: FakeClock,
        store: FakeStore,
    ) -> None:
        client = ScriptedPayoutClient()
        batcher = make_batcher(uow_factory, settings, client, seller_destination, mock_notifier, mock_alerter, clock)
        batcher.start()

        (batch,) = await batcher.submit("seller-001", claimed_entries(store))
        await batcher.join()
        await batcher.stop()

        assert store.batches[batch.id].status == BatchStatus.SUBMITTED

    @pytest.mark.asyncio
    async def test_enqueue_ignores_already_queued_batch(
        self,
        uow_factory,
        settings: Settings,
        seller_destination: StaticDestinations,
        mock_notifier: MagicMock,
        mock_alerter: AsyncMock,
        clock: FakeClock,
    ) -> None:
        batcher = make_batcher(
            uow_factory, settings, ScriptedPayoutClient(), seller_destination, mock_notifier, mock_alerter, clock
        )

        assert batcher.enqueue("b1")
        assert not batcher.enqueue("b1")


class TestBackoff:
    """Tests for exponential backoff delay calculation."""

    @pytest.fixture
    def batcher(self, uow_factory, settings: Settings, mock_notifier, mock_alerter) -> PayoutBatcher:
        tuned = settings.model_copy(update={"payout_base_delay_seconds": 1.0, "payout_max_delay_seconds": 60.0})
        return PayoutBatcher(
            uow_factory,
            client=ScriptedPayoutClient(),
            destinations=StaticDestinations(),
            notifier=mock_notifier,
            alerter=mock_alerter,
            settings=tuned,
        )

    @pytest.mark.parametrize(("attempt", "base"), [(1, 1.0), (2, 2.0), (3, 4.0), (10, 60.0)])
    def test_delay_doubles_until_capped(self, batcher: PayoutBatcher, attempt: int, base: float) -> None:
        delay = batcher._calculate_backoff_delay(attempt)
        assert base <= delay <= base * 1.1


class TestHeldBatches:
    """Tests for operator release and write-off of held batches."""

    async def held_batch(self, batcher: PayoutBatcher, store: FakeStore) -> str:
        (batch,) = await batcher.submit("seller-001", claimed_entries(store))
        await batcher.process(batch.id)
        assert store.batches[batch.id].held
        return batch.id

    @pytest.mark.asyncio
    async def test_release_returns_entries_to_escrow(
        self,
        uow_factory,
        settings: Settings,
        seller_destination: StaticDestinations,
        mock_notifier: MagicMock,
        mock_alerter: AsyncMock,
        clock: FakeClock,
        store: FakeStore,
    ) -> None:
        client = ScriptedPayoutClient(["reject"])
        batcher = make_batcher(uow_factory, settings, client, seller_destination, mock_notifier, mock_alerter, clock)
        batch_id = await self.held_batch(batcher, store)

        released = await batcher.release_held_batch(batch_id)

        assert released == 4
        assert not store.batches[batch_id].held
        assert all(entry.state == LedgerState.ESCROWED for entry in store.entries.values())
        assert all(entry.payout_batch_id is None for entry in store.entries.values())

    @pytest.mark.asyncio
    async def test_write_off_fails_entries(
        self,
        uow_factory,
        settings: Settings,
        seller_destination: StaticDestinations,
        mock_notifier: MagicMock,
        mock_alerter: AsyncMock,
        clock: FakeClock,
        store: FakeStore,
    ) -> None:
        client = ScriptedPayoutClient(["reject"])
        batcher = make_batcher(uow_factory, settings, client, seller_destination, mock_notifier, mock_alerter, clock)
        batch_id = await self.held_batch(batcher, store)

        written_off = await batcher.write_off_held_batch(batch_id)

        assert written_off == 4
        assert all(entry.state == LedgerState.FAILED for entry in store.entries.values())

    @pytest.mark.asyncio
    async def test_release_of_unheld_batch_refused(
        self,
        uow_factory,
        settings: Settings,
        seller_destination: StaticDestinations,
        mock_notifier: MagicMock,
        mock_alerter: AsyncMock,
        clock: FakeClock,
        store: FakeStore,
    ) -> None:
        batcher = make_batcher(
            uow_factory, settings, ScriptedPayoutClient(), seller_destination, mock_notifier, mock_alerter, clock
        )
        (batch,) = await batcher.submit("seller-001", claimed_entries(store))

        with pytest.raises(PersistenceConflictError):
            await batcher.release_held_batch(batch.id)
