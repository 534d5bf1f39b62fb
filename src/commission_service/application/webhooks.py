from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

import structlog

from commission_service.application.ledger import LedgerService
from commission_service.application.notifications import NotificationDispatcher
from commission_service.application.unit_of_work import UnitOfWork, UnitOfWorkFactory
from commission_service.config import Settings
from commission_service.domain.events import (
    EventKind,
    GatewayEvent,
    TransferData,
    parse_charge_data,
    parse_gateway_event,
    parse_transfer_data,
)
from commission_service.domain.exceptions import (
    DuplicateEventError,
    InvalidSignatureError,
    NotificationValidationError,
    UnrecognizedEventTypeError,
    WebhookValidationError,
)
from commission_service.domain.models import (
    BatchStatus,
    ChargedOrder,
    LedgerState,
    PayoutBatch,
    TransitionResult,
    WebhookEvent,
    WebhookEventStatus,
    batch_id_from_reference,
)
from commission_service.domain.notifications import (
    NotificationData,
    NotificationType,
    OrderUpdateData,
    PaymentReceivedData,
    SystemData,
)
from commission_service.infrastructure.alerts import OpsAlerter
from commission_service.infrastructure.metrics import (
    NOTIFICATIONS_TOTAL,
    PAYOUT_BATCHES_TOTAL,
    WEBHOOK_EVENTS_TOTAL,
)
from commission_service.infrastructure.paystack import verify_signature


logger = structlog.get_logger()


def utcnow() -> datetime:
    return datetime.now(UTC)


class SubscriptionForwarder(Protocol):
    async def notify_subscription_event(self, event: GatewayEvent) -> None: ...


@dataclass(frozen=True)
class IngestResult:
    status: WebhookEventStatus
    external_event_id: str | None = None
    event_type: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class _Notice:
    seller_id: str
    type: NotificationType
    title: str
    message: str
    data: NotificationData


class WebhookIngressService:
    """
    Verifies, deduplicates and applies payment-gateway webhooks.

    The dedupe row and every ledger and batch change for one event commit in a
    single transaction, so a crash mid-event leaves nothing behind and the
    gateway's redelivery is processed from scratch. Seller notifications are
    dispatched only after that commit.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        settings: Settings,
        notifier: NotificationDispatcher,
        alerter: OpsAlerter,
        forwarder: SubscriptionForwarder,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._settings = settings
        self._notifier = notifier
        self._alerter = alerter
        self._forwarder = forwarder
        self._clock = clock

    async def ingest(self, raw_payload: bytes, signature: str | None) -> IngestResult:
        """Process one webhook delivery.

        Returns:
            ``accepted`` for a first-seen event, ``duplicate`` for a redelivery,
            ``rejected`` for a bad signature or malformed body.

        Raises:
            SubscriptionForwardingError: a subscription event could not be handed off.
            Any persistence error; nothing is committed and the gateway should retry.
        """
        try:
            event = self._verify_and_parse(raw_payload, signature)
        except InvalidSignatureError as e:
            WEBHOOK_EVENTS_TOTAL.labels(event_type="unverified", status="rejected").inc()
            logger.warning(
                "security_event",
                reason="invalid_webhook_signature",
                detail=e.reason,
                signature=signature,
                payload_size=len(raw_payload),
            )
            return IngestResult(WebhookEventStatus.REJECTED, reason=e.reason)
        except WebhookValidationError as e:
            WEBHOOK_EVENTS_TOTAL.labels(event_type="malformed", status="rejected").inc()
            logger.warning("webhook_rejected", reason=e.reason, event_type=e.event_type)
            return IngestResult(WebhookEventStatus.REJECTED, event_type=e.event_type, reason=e.reason)

        external_event_id = event.external_event_id
        log = logger.bind(external_event_id=external_event_id, event_type=event.event)
        kind_label = event.kind.value
        received_at = self._clock()

        try:
            async with self._uow_factory() as uow:
                await self._record(uow, event, received_at)
                notices = await self._dispatch(uow, event, received_at)
                await uow.webhook_events.mark_processed(external_event_id, self._clock())
                await uow.commit()
        except DuplicateEventError:
            WEBHOOK_EVENTS_TOTAL.labels(event_type=kind_label, status="duplicate").inc()
            log.info("webhook_duplicate")
            return IngestResult(WebhookEventStatus.DUPLICATE, external_event_id, event.event)
        except WebhookValidationError as e:
            WEBHOOK_EVENTS_TOTAL.labels(event_type=kind_label, status="rejected").inc()
            log.warning("webhook_rejected", reason=e.reason)
            return IngestResult(WebhookEventStatus.REJECTED, external_event_id, event.event, e.reason)

        WEBHOOK_EVENTS_TOTAL.labels(event_type=kind_label, status="accepted").inc()
        log.info("webhook_accepted")

        for notice in notices:
            self._send(notice, log)
        return IngestResult(WebhookEventStatus.ACCEPTED, external_event_id, event.event)

    def _send(self, notice: _Notice, log: structlog.stdlib.BoundLogger) -> None:
        # The event is already committed; notification errors stop here.
        try:
            self._notifier.notify(notice.seller_id, notice.type, notice.title, notice.message, notice.data)
        except NotificationValidationError as e:
            NOTIFICATIONS_TOTAL.labels(type=notice.type.value, outcome="invalid").inc()
            log.error(
                "notification_invalid",
                seller_id=notice.seller_id,
                notification_type=notice.type.value,
                field=e.field,
                reason=e.reason,
            )

    def _verify_and_parse(self, raw_payload: bytes, signature: str | None) -> GatewayEvent:
        if not signature:
            raise InvalidSignatureError("missing signature header")
        if not verify_signature(raw_payload, signature, self._settings.webhook_secret):
            raise InvalidSignatureError()
        return parse_gateway_event(raw_payload)

    async def _record(self, uow: UnitOfWork, event: GatewayEvent, received_at: datetime) -> None:
        first_sight = await uow.webhook_events.record(
            WebhookEvent(
                external_event_id=event.external_event_id,
                type=event.event,
                received_at=received_at,
            )
        )
        if not first_sight:
            raise DuplicateEventError(event.external_event_id)

    async def _dispatch(self, uow: UnitOfWork, event: GatewayEvent, now: datetime) -> list[_Notice]:
        try:
            match event.kind:
                case EventKind.CHARGE_SUCCESS:
                    return await self._on_charge_success(uow, event, now)
                case EventKind.TRANSFER_SUCCESS:
                    return await self._on_transfer_success(uow, event, now)
                case EventKind.TRANSFER_FAILED:
                    return await self._on_transfer_failed(uow, event, now)
                case EventKind.SUBSCRIPTION:
                    await self._forwarder.notify_subscription_event(event)
                    return []
                case _:
                    raise UnrecognizedEventTypeError(event.event)
        except UnrecognizedEventTypeError as e:
            logger.info("webhook_event_ignored", event_type=e.event_type)
            return []

    async def _on_charge_success(self, uow: UnitOfWork, event: GatewayEvent, now: datetime) -> list[_Notice]:
        data = parse_charge_data(event)
        order = ChargedOrder(
            order_id=data.metadata.order_id,
            seller_id=data.metadata.seller_id,
            gross_amount=data.amount,
            currency=data.currency.upper(),
            charge_reference=data.reference,
            paid_at=data.paid_at or now,
        )
        entry = await LedgerService(uow, self._settings).create_entry(order, processed_at=now)

        release_date = entry.escrow_release_at.strftime("%Y-%m-%d")
        return [
            _Notice(
                seller_id=entry.seller_id,
                type=NotificationType.ORDER_UPDATE,
                title="Payment held in escrow",
                message=(
                    f"{entry.net_amount} {entry.currency} from order {entry.order_id} "
                    f"is held in escrow until {release_date}."
                ),
                data=OrderUpdateData(
                    order_id=entry.order_id,
                    status=entry.state.value,
                    net_amount=entry.net_amount,
                    currency=entry.currency,
                    escrow_release_at=entry.escrow_release_at,
                ),
            )
        ]

    async def _find_batch(self, uow: UnitOfWork, data: TransferData) -> PayoutBatch | None:
        batch_id = batch_id_from_reference(data.reference)
        if batch_id is not None:
            batch = await uow.batches.get(batch_id)
            if batch is not None:
                return batch
        if data.transfer_code:
            return await uow.batches.get_by_transfer_ref(data.transfer_code)
        return None

    async def _on_transfer_success(self, uow: UnitOfWork, event: GatewayEvent, now: datetime) -> list[_Notice]:
        data = parse_transfer_data(event)
        batch = await self._find_batch(uow, data)
        log = logger.bind(reference=data.reference, transfer_code=data.transfer_code)
        if batch is None:
            log.warning("transfer_for_unknown_batch")
            return []

        log = log.bind(batch_id=batch.id, seller_id=batch.seller_id)
        ledger = LedgerService(uow, self._settings)
        moved = await uow.batches.transition(
            batch.id,
            [BatchStatus.CREATED, BatchStatus.SUBMITTED],
            BatchStatus.SUCCEEDED,
            now,
            transfer_ref=data.transfer_code,
        )
        if moved:
            paid = 0
            for entry_id in batch.entry_ids:
                result = await ledger.transition_any(
                    entry_id,
                    (LedgerState.RELEASED, LedgerState.BATCHING),
                    LedgerState.PAID,
                    now,
                )
                if result == TransitionResult.OK:
                    paid += 1
            PAYOUT_BATCHES_TOTAL.labels(status=BatchStatus.SUCCEEDED.value).inc()
            log.info("payout_batch_succeeded", entries_paid=paid)
        elif batch.status == BatchStatus.FAILED:
            paid = await self._settle_failed_batch(uow, ledger, batch, now, data.transfer_code)
            log.warning("payout_succeeded_after_failure", entries_paid=paid, held=batch.held)
            await self._alerter.alert(
                "payout_succeeded_after_failure",
                f"Gateway confirmed payout batch {batch.id} after it was marked failed",
                batch_id=batch.id,
                seller_id=batch.seller_id,
                entries_paid=paid,
                entries_total=len(batch.entry_ids),
            )
        else:
            log.info("transfer_success_already_applied", status=batch.status.value)
            return []

        return [
            _Notice(
                seller_id=batch.seller_id,
                type=NotificationType.PAYMENT_RECEIVED,
                title="Payout sent",
                message=f"A payout of {batch.total_amount} {batch.currency} has been sent to your account.",
                data=PaymentReceivedData(
                    batch_id=batch.id,
                    amount=batch.total_amount,
                    currency=batch.currency,
                    entry_count=len(batch.entry_ids),
                    transfer_ref=data.transfer_code,
                ),
            )
        ]

    async def _settle_failed_batch(
        self,
        uow: UnitOfWork,
        ledger: LedgerService,
        batch: PayoutBatch,
        now: datetime,
        transfer_ref: str | None,
    ) -> int:
        await uow.batches.transition(
            batch.id,
            [BatchStatus.FAILED],
            BatchStatus.SUCCEEDED,
            now,
            transfer_ref=transfer_ref,
            held=False,
        )
        paid = 0
        for entry in await uow.ledger.list_by_ids(batch.entry_ids):
            if entry.state == LedgerState.BATCHING and entry.payout_batch_id == batch.id:
                result = await ledger.transition(entry.id, LedgerState.BATCHING, LedgerState.PAID, now)
            elif entry.state == LedgerState.ESCROWED and entry.payout_batch_id is None:
                result = await ledger.settle_after_failure(entry.id, now)
            else:
                continue
            if result == TransitionResult.OK:
                paid += 1
        return paid

    async def _on_transfer_failed(self, uow: UnitOfWork, event: GatewayEvent, now: datetime) -> list[_Notice]:
        data = parse_transfer_data(event)
        batch = await self._find_batch(uow, data)
        log = logger.bind(reference=data.reference, transfer_code=data.transfer_code, event_type=event.event)
        if batch is None:
            log.warning("transfer_for_unknown_batch")
            return []

        log = log.bind(batch_id=batch.id, seller_id=batch.seller_id)
        reason = data.reason or event.event
        moved = await uow.batches.transition(
            batch.id,
            [BatchStatus.CREATED, BatchStatus.SUBMITTED],
            BatchStatus.FAILED,
            now,
            last_error=reason,
            transfer_ref=data.transfer_code,
        )
        if not moved:
            if event.event == "transfer.reversed" and batch.status == BatchStatus.SUCCEEDED:
                await self._alerter.alert(
                    "payout_reversed",
                    f"Gateway reversed payout batch {batch.id} after it succeeded",
                    batch_id=batch.id,
                    seller_id=batch.seller_id,
                    total_amount=batch.total_amount,
                    currency=batch.currency,
                )
            log.info("transfer_failure_ignored", status=batch.status.value)
            return []

        ledger = LedgerService(uow, self._settings)
        returned = 0
        for entry_id in batch.entry_ids:
            result = await ledger.transition_any(
                entry_id,
                (LedgerState.RELEASED, LedgerState.BATCHING),
                LedgerState.ESCROWED,
                now,
            )
            if result == TransitionResult.OK:
                returned += 1
        PAYOUT_BATCHES_TOTAL.labels(status=BatchStatus.FAILED.value).inc()
        log.warning("payout_batch_failed_by_gateway", entries_returned=returned, reason=reason)

        return [
            _Notice(
                seller_id=batch.seller_id,
                type=NotificationType.SYSTEM,
                title="Payout failed",
                message=(
                    f"Your payout of {batch.total_amount} {batch.currency} could not be completed. "
                    "The funds are back in escrow and will be retried in the next payout run."
                ),
                data=SystemData(code="payout_failed", batch_id=batch.id, detail=reason[:200]),
            )
        ]
