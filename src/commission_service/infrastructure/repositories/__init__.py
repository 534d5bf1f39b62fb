"""Repository implementations."""

from commission_service.infrastructure.repositories.ledger import LedgerRepository
from commission_service.infrastructure.repositories.notifications import NotificationRepository
from commission_service.infrastructure.repositories.payout_batches import PayoutBatchRepository
from commission_service.infrastructure.repositories.payout_destinations import PayoutDestinationRepository
from commission_service.infrastructure.repositories.webhook_events import WebhookEventRepository


__all__ = [
    "LedgerRepository",
    "NotificationRepository",
    "PayoutBatchRepository",
    "PayoutDestinationRepository",
    "WebhookEventRepository",
]
