"""Unit tests for the payout operator script."""

from collections.abc import Iterator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from commission_service.domain.models import BatchStatus, LedgerState, PayoutDestination
from scripts.payout_admin import build_parser, list_held, main, set_destination
from tests.conftest import create_batch, create_entry
from tests.fakes import FakeStore


class TestParser:
    """Tests for the command line parser."""

    def test_release_takes_batch_id(self) -> None:
        args = build_parser().parse_args(["release", "b1"])

        assert args.command == "release"
        assert args.batch_id == "b1"

    def test_set_destination_arguments(self) -> None:
        args = build_parser().parse_args(["set-destination", "seller-001", "RCP_1", "ngn"])

        assert (args.seller_id, args.recipient_code, args.currency) == ("seller-001", "RCP_1", "ngn")

    def test_command_required(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestCommands:
    """Tests for the command helpers over the in-memory store."""

    @pytest.mark.asyncio
    async def test_list_held_prints_held_batches_only(
        self, store: FakeStore, uow_factory, capsys: pytest.CaptureFixture[str]
    ) -> None:
        store.batches["b1"] = create_batch("b1", ["e1"], status=BatchStatus.FAILED, held=True)
        store.batches["b2"] = create_batch("b2", ["e2"], status=BatchStatus.FAILED)

        await list_held(uow_factory)

        out = capsys.readouterr().out
        assert "b1" in out
        assert "b2" not in out

    @pytest.mark.asyncio
    async def test_list_held_empty(self, uow_factory, capsys: pytest.CaptureFixture[str]) -> None:
        await list_held(uow_factory)

        assert "No held batches" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_set_destination_uppercases_currency(self, store: FakeStore, uow_factory) -> None:
        await set_destination(uow_factory, "seller-001", "RCP_1", "ngn")

        assert store.destinations["seller-001"] == PayoutDestination("seller-001", "RCP_1", "NGN")


class TestMain:
    """Tests for main() with the database and gateway replaced."""

    @pytest.fixture(autouse=True)
    def wiring(self, uow_factory) -> Iterator[None]:
        database = MagicMock()
        database.close = AsyncMock()
        paystack = MagicMock()
        paystack.close = AsyncMock()
        with (
            patch("scripts.payout_admin.configure_logging"),
            patch("scripts.payout_admin.Database", return_value=database),
            patch("scripts.payout_admin.PaystackClient", return_value=paystack),
            patch("scripts.payout_admin.unit_of_work_factory", return_value=uow_factory),
        ):
            yield

    @pytest.mark.asyncio
    async def test_release_held_batch(self, store: FakeStore) -> None:
        store.batches["b1"] = create_batch("b1", ["e1"], status=BatchStatus.FAILED, held=True)
        store.entries["e1"] = create_entry("e1", state=LedgerState.BATCHING, payout_batch_id="b1")

        assert await main(["release", "b1"]) == 0

        assert store.entries["e1"].state == LedgerState.ESCROWED
        assert not store.batches["b1"].held

    @pytest.mark.asyncio
    async def test_release_of_unheld_batch_exits_with_error(
        self, store: FakeStore, capsys: pytest.CaptureFixture[str]
    ) -> None:
        store.batches["b1"] = create_batch("b1", ["e1"], status=BatchStatus.FAILED)

        assert await main(["release", "b1"]) == 1

        assert "error" in capsys.readouterr().err
