"""Paystack adapter: webhook signatures, transfers and subscriptions.

Transport failures, timeouts, 429 and 5xx responses map to
:class:`TransientGatewayError`; any other non-2xx response, or a 2xx response
with ``status: false``, maps to :class:`NonRetriablePayoutError`.
"""

import hashlib
import hmac
from typing import Any

import httpx
import structlog

from commission_service.domain.exceptions import NonRetriablePayoutError, TransientGatewayError
from commission_service.domain.models import PayoutDestination


logger = structlog.get_logger()

SIGNATURE_HEADER = "x-paystack-signature"


def compute_signature(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha512).hexdigest()


def verify_signature(payload: bytes, signature: str | None, secret: str) -> bool:
    """Constant-time check of an HMAC-SHA512 hex signature over the raw body."""
    if not signature or not secret:
        return False
    return hmac.compare_digest(compute_signature(payload, secret), signature.strip().lower())


class PaystackClient:
    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        timeout: float = 10.0,
        reason: str = "Marketplace commission payout",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._reason = reason
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {secret_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def create_transfer(
        self,
        destination: PayoutDestination,
        amount: int,
        currency: str,
        reference: str,
    ) -> str:
        """Start a transfer from the balance to the seller's recipient.

        Paystack deduplicates transfers by ``reference``, so resending the same
        reference after a timeout cannot pay twice.
        """
        body = await self._post(
            "/transfer",
            {
                "source": "balance",
                "amount": amount,
                "currency": currency,
                "recipient": destination.recipient_code,
                "reference": reference,
                "reason": self._reason,
            },
        )
        data = body.get("data") or {}
        transfer_ref = data.get("transfer_code") or data.get("reference") or reference
        logger.info(
            "paystack_transfer_created",
            reference=reference,
            transfer_ref=transfer_ref,
            transfer_status=data.get("status"),
        )
        return str(transfer_ref)

    async def create_subscription(
        self,
        customer: str,
        plan: str,
        authorization: str | None = None,
        start_date: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"customer": customer, "plan": plan}
        if authorization:
            payload["authorization"] = authorization
        if start_date:
            payload["start_date"] = start_date
        body = await self._post("/subscription", payload)
        data: dict[str, Any] = body.get("data") or {}
        logger.info("paystack_subscription_created", subscription_code=data.get("subscription_code"))
        return data

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(path, json=payload)
        except httpx.TimeoutException as e:
            raise TransientGatewayError(f"timeout calling {path}: {e}") from e
        except httpx.TransportError as e:
            raise TransientGatewayError(f"transport error calling {path}: {e}") from e

        status_code = response.status_code
        if status_code == 429 or status_code >= 500:
            raise TransientGatewayError(f"{path} returned {status_code}", status_code)

        try:
            body: dict[str, Any] = response.json()
        except ValueError as e:
            if response.is_success:
                raise TransientGatewayError(f"{path} returned a non-JSON body", status_code) from e
            raise NonRetriablePayoutError(f"{path} returned {status_code}", status_code) from e

        if not response.is_success or body.get("status") is False:
            message = body.get("message") or f"{path} returned {status_code}"
            raise NonRetriablePayoutError(str(message), status_code)
        return body
