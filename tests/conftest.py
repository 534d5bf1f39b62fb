"""Shared pytest fixtures for commission service tests."""

import json
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from commission_service.application.unit_of_work import UnitOfWork
from commission_service.config import Settings
from commission_service.domain.models import (
    BatchStatus,
    LedgerEntry,
    LedgerState,
    PayoutBatch,
)
from commission_service.infrastructure.paystack import compute_signature
from tests.fakes import FakeClock, FakeStore, StaticDestinations, fake_uow_factory


WEBHOOK_SECRET = "whsec_test_secret"
T0 = datetime(2026, 1, 5, 12, 0, tzinfo=UTC)


@pytest.fixture
def settings() -> Settings:
    """Settings with no backoff delays so retry loops run instantly."""
    return Settings(
        _env_file=None,
        webhook_secret=WEBHOOK_SECRET,
        commission_rate=Decimal("0.10"),
        minimum_payout=1000,
        payout_batch_size=50,
        payout_retry_attempts=3,
        payout_worker_pool_size=2,
        payout_base_delay_seconds=0,
        payout_max_delay_seconds=0,
        notification_retry_delay_seconds=0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(T0)


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def uow_factory(store: FakeStore):
    return fake_uow_factory(store)


@pytest.fixture
def destinations() -> StaticDestinations:
    return StaticDestinations()


@pytest.fixture
def mock_notifier() -> MagicMock:
    """NotificationDispatcher stand-in; notify is synchronous."""
    notifier = MagicMock()
    notifier.notify = MagicMock(return_value=None)
    return notifier


@pytest.fixture
def mock_alerter() -> AsyncMock:
    alerter = AsyncMock()
    alerter.alert = AsyncMock(return_value=None)
    return alerter


@pytest.fixture
def mock_ledger_repository() -> AsyncMock:
    """Create mock LedgerRepository."""
    repo = AsyncMock()
    repo.add = AsyncMock(return_value=True)
    repo.get = AsyncMock(return_value=None)
    repo.get_by_order_id = AsyncMock(return_value=None)
    repo.compare_and_set_state = AsyncMock(return_value=True)
    repo.attach_to_batch = AsyncMock(return_value=0)
    repo.find_releasable = AsyncMock(return_value=[])
    repo.list_by_ids = AsyncMock(return_value=[])
    repo.find_stale_claims = AsyncMock(return_value=[])
    return repo


@pytest.fixture
def mock_webhook_event_repository() -> AsyncMock:
    """Create mock WebhookEventRepository."""
    repo = AsyncMock()
    repo.record = AsyncMock(return_value=True)
    repo.get = AsyncMock(return_value=None)
    repo.mark_processed = AsyncMock(return_value=None)
    return repo


@pytest.fixture
def mock_batch_repository() -> AsyncMock:
    """Create mock PayoutBatchRepository."""
    repo = AsyncMock()
    repo.add = AsyncMock(return_value=None)
    repo.get = AsyncMock(return_value=None)
    repo.get_by_transfer_ref = AsyncMock(return_value=None)
    repo.record_attempt = AsyncMock(return_value=True)
    repo.transition = AsyncMock(return_value=True)
    repo.set_held = AsyncMock(return_value=True)
    repo.find_stale_created = AsyncMock(return_value=[])
    return repo


@pytest.fixture
def mock_uow(
    mock_ledger_repository: AsyncMock,
    mock_webhook_event_repository: AsyncMock,
    mock_batch_repository: AsyncMock,
) -> AsyncMock:
    """Create mock Unit of Work with all repositories."""
    uow = AsyncMock(spec=UnitOfWork)
    uow.ledger = mock_ledger_repository
    uow.webhook_events = mock_webhook_event_repository
    uow.batches = mock_batch_repository
    uow.destinations = AsyncMock()
    uow.notifications = AsyncMock()
    uow.commit = AsyncMock(return_value=None)
    uow.rollback = AsyncMock(return_value=None)

    # Configure async context manager
    uow.__aenter__ = AsyncMock(return_value=uow)
    uow.__aexit__ = AsyncMock(return_value=None)

    return uow


def signed(payload: dict[str, Any], secret: str = WEBHOOK_SECRET) -> tuple[bytes, str]:
    """Serialize a webhook body and sign it the way the gateway does."""
    body = json.dumps(payload).encode("utf-8")
    return body, compute_signature(body, secret)


def charge_success_payload(
    order_id: str = "order-001",
    seller_id: str = "seller-001",
    amount: int = 500,
    currency: str = "NGN",
    event_id: str | None = None,
    charge_id: int = 302961,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "event": "charge.success",
        "data": {
            "id": charge_id,
            "reference": f"chg_{order_id}",
            "amount": amount,
            "currency": currency,
            "status": "success",
            "paid_at": "2026-01-05T12:00:00.000Z",
            "metadata": {"order_id": order_id, "seller_id": seller_id, "customer_id": "cust-9"},
        },
    }
    if event_id is not None:
        payload["id"] = event_id
    return payload


def transfer_payload(
    event: str,
    reference: str,
    transfer_code: str = "TRF_0001",
    reason: str | None = None,
) -> dict[str, Any]:
    data: dict[str, Any] = {
        "reference": reference,
        "transfer_code": transfer_code,
        "amount": 90000,
        "currency": "NGN",
        "status": event.split(".", 1)[1],
    }
    if reason is not None:
        data["reason"] = reason
    return {"event": event, "data": data}


def create_entry(
    entry_id: str,
    seller_id: str = "seller-001",
    net_amount: int = 450,
    state: LedgerState = LedgerState.ESCROWED,
    currency: str = "NGN",
    created_at: datetime = T0,
    escrow_period: timedelta = timedelta(days=7),
    payout_batch_id: str | None = None,
) -> LedgerEntry:
    """Helper to create LedgerEntry with custom values."""
    commission = net_amount // 9
    return LedgerEntry(
        id=entry_id,
        order_id=f"order-{entry_id}",
        seller_id=seller_id,
        gross_amount=net_amount + commission,
        commission_amount=commission,
        net_amount=net_amount,
        currency=currency,
        state=state,
        escrow_release_at=created_at + escrow_period,
        payout_batch_id=payout_batch_id,
        created_at=created_at,
        updated_at=created_at,
    )


def create_batch(
    batch_id: str,
    entry_ids: list[str],
    seller_id: str = "seller-001",
    total_amount: int = 1800,
    status: BatchStatus = BatchStatus.CREATED,
    attempt: int = 0,
    held: bool = False,
    updated_at: datetime = T0,
) -> PayoutBatch:
    """Helper to create PayoutBatch with custom values."""
    return PayoutBatch(
        id=batch_id,
        seller_id=seller_id,
        entry_ids=entry_ids,
        total_amount=total_amount,
        currency="NGN",
        status=status,
        attempt=attempt,
        held=held,
        created_at=updated_at,
        updated_at=updated_at,
    )
