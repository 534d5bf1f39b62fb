"""Domain layer - ledger entities, payout batches, notifications and gateway events."""

from commission_service.domain.events import (
    EventKind,
    GatewayEvent,
    classify_event,
    parse_gateway_event,
)
from commission_service.domain.exceptions import (
    DomainError,
    DuplicateEventError,
    InvalidSignatureError,
    InvalidStateTransitionError,
    MissingPayoutDestinationError,
    NonRetriablePayoutError,
    NotificationValidationError,
    PersistenceConflictError,
    SubscriptionForwardingError,
    TransientGatewayError,
    UnrecognizedEventTypeError,
    WebhookValidationError,
)
from commission_service.domain.models import (
    BatchStatus,
    ChargedOrder,
    LedgerEntry,
    LedgerState,
    PayoutBatch,
    PayoutDestination,
    TransitionResult,
    WebhookEvent,
    WebhookEventStatus,
    calculate_commission,
)
from commission_service.domain.notifications import (
    NotificationType,
    SellerNotification,
)


__all__ = [
    "BatchStatus",
    "ChargedOrder",
    "DomainError",
    "DuplicateEventError",
    "EventKind",
    "GatewayEvent",
    "InvalidSignatureError",
    "InvalidStateTransitionError",
    "LedgerEntry",
    "LedgerState",
    "MissingPayoutDestinationError",
    "NonRetriablePayoutError",
    "NotificationType",
    "NotificationValidationError",
    "PayoutBatch",
    "PayoutDestination",
    "PersistenceConflictError",
    "SellerNotification",
    "SubscriptionForwardingError",
    "TransientGatewayError",
    "TransitionResult",
    "UnrecognizedEventTypeError",
    "WebhookEvent",
    "WebhookEventStatus",
    "WebhookValidationError",
    "calculate_commission",
    "classify_event",
    "parse_gateway_event",
]
