"""Seller notifications and their typed payloads.

Each notification type carries its own payload model; the ``type`` field of the
payload must match the notification's type, so a ``payment_received`` notification
can only ever hold a :class:`PaymentReceivedData`.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from ulid import ULID

from commission_service.domain.exceptions import NotificationValidationError


TITLE_MAX_LENGTH = 100
MESSAGE_MAX_LENGTH = 500


class NotificationType(Enum):
    NEW_ORDER = "new_order"
    ORDER_UPDATE = "order_update"
    CUSTOMER_MESSAGE = "customer_message"
    SYSTEM = "system"
    PAYMENT_RECEIVED = "payment_received"
    REVIEW_RECEIVED = "review_received"


class _NotificationData(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class NewOrderData(_NotificationData):
    type: Literal["new_order"] = "new_order"
    order_id: str
    amount: int = Field(ge=0)
    currency: str = Field(min_length=3, max_length=3)


class OrderUpdateData(_NotificationData):
    type: Literal["order_update"] = "order_update"
    order_id: str
    status: str
    net_amount: int | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    escrow_release_at: datetime | None = None


class CustomerMessageData(_NotificationData):
    type: Literal["customer_message"] = "customer_message"
    customer_id: str
    conversation_id: str
    preview: str = Field(default="", max_length=140)


class SystemData(_NotificationData):
    type: Literal["system"] = "system"
    code: str
    batch_id: str | None = None
    detail: str | None = None


class PaymentReceivedData(_NotificationData):
    type: Literal["payment_received"] = "payment_received"
    batch_id: str
    amount: int = Field(ge=0)
    currency: str = Field(min_length=3, max_length=3)
    entry_count: int = Field(ge=1)
    transfer_ref: str | None = None


class ReviewReceivedData(_NotificationData):
    type: Literal["review_received"] = "review_received"
    review_id: str
    product_id: str
    rating: int = Field(ge=1, le=5)


NotificationData = Annotated[
    NewOrderData
    | OrderUpdateData
    | CustomerMessageData
    | SystemData
    | PaymentReceivedData
    | ReviewReceivedData,
    Field(discriminator="type"),
]

_notification_data_adapter: TypeAdapter[NotificationData] = TypeAdapter(NotificationData)


def parse_notification_data(raw: dict[str, Any]) -> NotificationData:
    """Rebuild a typed payload from its stored JSON form."""
    try:
        return _notification_data_adapter.validate_python(raw)
    except PydanticValidationError as e:
        raise NotificationValidationError("data", str(e)) from e


def validate_notification_content(
    notification_type: NotificationType,
    title: str,
    message: str,
    data: NotificationData,
) -> None:
    if not title:
        raise NotificationValidationError("title", "must not be empty")
    if len(title) > TITLE_MAX_LENGTH:
        raise NotificationValidationError("title", f"length {len(title)} exceeds {TITLE_MAX_LENGTH}")
    if not message:
        raise NotificationValidationError("message", "must not be empty")
    if len(message) > MESSAGE_MAX_LENGTH:
        raise NotificationValidationError("message", f"length {len(message)} exceeds {MESSAGE_MAX_LENGTH}")
    if data.type != notification_type.value:
        raise NotificationValidationError(
            "data",
            f"payload of type {data.type} does not match notification type {notification_type.value}",
        )


@dataclass
class SellerNotification:
    id: str
    seller_id: str
    type: NotificationType
    title: str
    message: str
    data: NotificationData
    read: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    expires_at: datetime = field(default_factory=lambda: datetime.now(UTC) + timedelta(days=90))

    @classmethod
    def create(
        cls,
        seller_id: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        data: NotificationData,
        now: datetime,
        ttl: timedelta,
    ) -> "SellerNotification":
        validate_notification_content(notification_type, title, message, data)
        return cls(
            id=str(ULID()),
            seller_id=seller_id,
            type=notification_type,
            title=title,
            message=message,
            data=data,
            created_at=now,
            expires_at=now + ttl,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now
