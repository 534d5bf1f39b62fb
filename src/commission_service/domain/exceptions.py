class DomainError(Exception):
    """Base exception for domain errors."""


class InvalidSignatureError(DomainError):
    """Raised when a webhook signature does not match the payload."""

    def __init__(self, reason: str = "signature mismatch") -> None:
        self.reason = reason
        super().__init__(f"Invalid webhook signature: {reason}")


class WebhookValidationError(DomainError):
    """Raised when a webhook body is malformed or fails its schema."""

    def __init__(self, reason: str, event_type: str | None = None) -> None:
        self.reason = reason
        self.event_type = event_type
        prefix = f"Invalid {event_type} payload" if event_type else "Malformed webhook payload"
        super().__init__(f"{prefix}: {reason}")


class DuplicateEventError(DomainError):
    """Raised when a webhook event has already been recorded."""

    def __init__(self, external_event_id: str) -> None:
        self.external_event_id = external_event_id
        super().__init__(f"Webhook event {external_event_id} already processed")


class UnrecognizedEventTypeError(DomainError):
    """Raised when a webhook event type has no handler."""

    def __init__(self, event_type: str) -> None:
        self.event_type = event_type
        super().__init__(f"Unrecognized webhook event type: {event_type}")


class TransientGatewayError(DomainError):
    """Raised when the payment gateway fails in a way that may succeed on retry."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(f"Transient gateway error: {message}")


class NonRetriablePayoutError(DomainError):
    """Raised when the gateway rejects a transfer permanently."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(f"Payout rejected: {message}")


class MissingPayoutDestinationError(DomainError):
    """Raised when a seller has no payout destination on file."""

    def __init__(self, seller_id: str) -> None:
        self.seller_id = seller_id
        super().__init__(f"No payout destination on file for seller {seller_id}")


class PersistenceConflictError(DomainError):
    """Raised when a compare-and-swap update matched no row."""

    def __init__(self, entity: str, entity_id: str, expected: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.expected = expected
        super().__init__(f"Conflict updating {entity} {entity_id}: expected state {expected}")


class InvalidStateTransitionError(DomainError):
    """Raised when code asks for a transition the state machine does not allow."""

    def __init__(self, from_state: str, to_state: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Illegal ledger transition: {from_state} -> {to_state}")


class NotificationValidationError(DomainError):
    """Raised when a seller notification violates its bounds."""

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid notification {field}: {reason}")


class SubscriptionForwardingError(DomainError):
    """Raised when a subscription event cannot be handed to its collaborator."""

    def __init__(self, external_event_id: str, reason: str) -> None:
        self.external_event_id = external_event_id
        self.reason = reason
        super().__init__(f"Could not forward subscription event {external_event_id}: {reason}")
