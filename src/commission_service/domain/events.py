"""Inbound payment-gateway webhook payloads.

The envelope is validated for every event; the ``data`` object is validated
against a per-type model only for the event types this service acts on.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from commission_service.domain.exceptions import WebhookValidationError


class EventKind(Enum):
    CHARGE_SUCCESS = "charge_success"
    TRANSFER_SUCCESS = "transfer_success"
    TRANSFER_FAILED = "transfer_failed"
    SUBSCRIPTION = "subscription"
    UNKNOWN = "unknown"


_KIND_BY_TYPE = {
    "charge.success": EventKind.CHARGE_SUCCESS,
    "transfer.success": EventKind.TRANSFER_SUCCESS,
    "transfer.failed": EventKind.TRANSFER_FAILED,
    "transfer.reversed": EventKind.TRANSFER_FAILED,
}

_SUBSCRIPTION_PREFIXES = ("subscription.", "invoice.")


def classify_event(event_type: str) -> EventKind:
    if event_type in _KIND_BY_TYPE:
        return _KIND_BY_TYPE[event_type]
    if event_type.startswith(_SUBSCRIPTION_PREFIXES):
        return EventKind.SUBSCRIPTION
    return EventKind.UNKNOWN


class _GatewayModel(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)


class GatewayEvent(_GatewayModel):
    event: str = Field(min_length=1)
    data: dict[str, Any]
    id: str | None = None

    @property
    def kind(self) -> EventKind:
        return classify_event(self.event)

    @property
    def external_event_id(self) -> str:
        if self.id:
            return self.id
        for key in ("id", "reference", "transfer_code"):
            value = self.data.get(key)
            if value not in (None, ""):
                return f"{self.event}:{value}"
        raise WebhookValidationError("no event identifier in payload", self.event)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"event": self.event, "data": self.data}
        if self.id is not None:
            body["id"] = self.id
        return body


class ChargeMetadata(_GatewayModel):
    order_id: str = Field(min_length=1, max_length=255)
    seller_id: str = Field(min_length=1, max_length=255)
    customer_id: str | None = None


class ChargeSuccessData(_GatewayModel):
    id: str
    reference: str = Field(min_length=1, max_length=255)
    amount: int = Field(ge=0)
    currency: str = Field(min_length=3, max_length=3)
    paid_at: datetime | None = None
    metadata: ChargeMetadata


class TransferData(_GatewayModel):
    reference: str = Field(min_length=1)
    transfer_code: str | None = None
    amount: int | None = Field(default=None, ge=0)
    currency: str | None = None
    reason: str | None = None
    failures: Any = None


def parse_gateway_event(raw_payload: bytes) -> GatewayEvent:
    try:
        body = json.loads(raw_payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise WebhookValidationError(f"body is not valid JSON: {e}") from e
    if not isinstance(body, dict):
        raise WebhookValidationError("body must be a JSON object")
    try:
        event = GatewayEvent.model_validate(body)
    except PydanticValidationError as e:
        raise WebhookValidationError(_summarize(e)) from e
    # Forces identifier derivation so malformed events are rejected before any write.
    _ = event.external_event_id
    return event


def parse_charge_data(event: GatewayEvent) -> ChargeSuccessData:
    try:
        return ChargeSuccessData.model_validate(event.data)
    except PydanticValidationError as e:
        raise WebhookValidationError(_summarize(e), event.event) from e


def parse_transfer_data(event: GatewayEvent) -> TransferData:
    try:
        return TransferData.model_validate(event.data)
    except PydanticValidationError as e:
        raise WebhookValidationError(_summarize(e), event.event) from e


def _summarize(error: PydanticValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in item['loc']) or 'body'}: {item['msg']}" for item in error.errors()
    )
