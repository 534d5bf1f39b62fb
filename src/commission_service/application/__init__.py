"""Application layer - ledger, webhook, escrow, payout and notification use cases."""

from commission_service.application.ledger import LedgerService
from commission_service.application.notifications import (
    NotificationDispatcher,
    NotificationReaper,
    SellerInbox,
)
from commission_service.application.payouts import PayoutBatcher, TableDestinationResolver
from commission_service.application.scheduler import EscrowScheduler, RecoveryResult, SweepResult
from commission_service.application.unit_of_work import UnitOfWork, unit_of_work_factory
from commission_service.application.webhooks import IngestResult, WebhookIngressService


__all__ = [
    "EscrowScheduler",
    "IngestResult",
    "LedgerService",
    "NotificationDispatcher",
    "NotificationReaper",
    "PayoutBatcher",
    "RecoveryResult",
    "SellerInbox",
    "SweepResult",
    "TableDestinationResolver",
    "UnitOfWork",
    "WebhookIngressService",
    "unit_of_work_factory",
]
