from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from ulid import ULID

from commission_service.domain.exceptions import InvalidStateTransitionError


class LedgerState(Enum):
    PENDING = "pending"
    ESCROWED = "escrowed"
    BATCHING = "batching"
    RELEASED = "released"
    PAID = "paid"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[LedgerState, frozenset[LedgerState]] = {
    LedgerState.PENDING: frozenset({LedgerState.ESCROWED}),
    LedgerState.ESCROWED: frozenset({LedgerState.BATCHING}),
    LedgerState.BATCHING: frozenset(
        {LedgerState.ESCROWED, LedgerState.RELEASED, LedgerState.PAID, LedgerState.FAILED}
    ),
    LedgerState.RELEASED: frozenset({LedgerState.PAID, LedgerState.ESCROWED}),
    LedgerState.PAID: frozenset(),
    LedgerState.FAILED: frozenset(),
}


def assert_transition(from_state: LedgerState, to_state: LedgerState) -> None:
    if to_state not in ALLOWED_TRANSITIONS[from_state]:
        raise InvalidStateTransitionError(from_state.value, to_state.value)


class TransitionResult(Enum):
    OK = "ok"
    CONFLICT = "conflict"


class WebhookEventStatus(Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


class BatchStatus(Enum):
    CREATED = "created"
    SUBMITTED = "submitted"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


ACTIVE_BATCH_STATUSES = frozenset({BatchStatus.CREATED, BatchStatus.SUBMITTED})


def calculate_commission(gross_amount: int, rate: Decimal) -> tuple[int, int]:
    """Split a gross amount into (commission, net) in minor units.

    Commission is rounded half-up to the nearest minor unit, so 1005 at 10%
    yields a commission of 101 and a net of 904.
    """
    if gross_amount < 0:
        raise ValueError("Gross amount cannot be negative")
    commission = int((Decimal(gross_amount) * rate).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    return commission, gross_amount - commission


@dataclass(frozen=True)
class ChargedOrder:
    order_id: str
    seller_id: str
    gross_amount: int
    currency: str
    charge_reference: str
    paid_at: datetime

    def __post_init__(self) -> None:
        if self.gross_amount < 0:
            raise ValueError("Amount cannot be negative")
        if len(self.currency) != 3:
            raise ValueError("Currency must be ISO 4217 code (3 characters)")


@dataclass(frozen=True)
class PayoutDestination:
    seller_id: str
    recipient_code: str
    currency: str


@dataclass
class LedgerEntry:
    id: str
    order_id: str
    seller_id: str
    gross_amount: int
    commission_amount: int
    net_amount: int
    currency: str
    state: LedgerState
    escrow_release_at: datetime
    charge_reference: str | None = None
    payout_batch_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def create(
        cls,
        order: ChargedOrder,
        commission_rate: Decimal,
        escrow_period: timedelta,
        processed_at: datetime,
    ) -> "LedgerEntry":
        commission, net = calculate_commission(order.gross_amount, commission_rate)
        return cls(
            id=str(ULID()),
            order_id=order.order_id,
            seller_id=order.seller_id,
            gross_amount=order.gross_amount,
            commission_amount=commission,
            net_amount=net,
            currency=order.currency,
            state=LedgerState.ESCROWED,
            escrow_release_at=processed_at + escrow_period,
            charge_reference=order.charge_reference,
            created_at=processed_at,
            updated_at=processed_at,
        )

    def is_releasable(self, now: datetime) -> bool:
        return self.state == LedgerState.ESCROWED and self.escrow_release_at <= now


@dataclass
class WebhookEvent:
    external_event_id: str
    type: str
    received_at: datetime
    status: WebhookEventStatus = WebhookEventStatus.ACCEPTED
    processed_at: datetime | None = None


@dataclass
class PayoutBatch:
    id: str
    seller_id: str
    entry_ids: list[str]
    total_amount: int
    currency: str
    status: BatchStatus = BatchStatus.CREATED
    attempt: int = 0
    last_error: str | None = None
    transfer_ref: str | None = None
    held: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def create(cls, seller_id: str, entries: list[LedgerEntry], now: datetime) -> "PayoutBatch":
        if not entries:
            raise ValueError("A payout batch needs at least one entry")
        currencies = {entry.currency for entry in entries}
        if len(currencies) != 1:
            raise ValueError(f"A payout batch must be single-currency, got {sorted(currencies)}")
        return cls(
            id=str(ULID()),
            seller_id=seller_id,
            entry_ids=[entry.id for entry in entries],
            total_amount=sum(entry.net_amount for entry in entries),
            currency=entries[0].currency,
            created_at=now,
            updated_at=now,
        )

    @property
    def reference(self) -> str:
        """Idempotency reference sent with every transfer attempt for this batch."""
        return f"payout_{self.id}"

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_BATCH_STATUSES


def batch_id_from_reference(reference: str) -> str | None:
    prefix = "payout_"
    if not reference.startswith(prefix) or len(reference) == len(prefix):
        return None
    return reference[len(prefix) :]
