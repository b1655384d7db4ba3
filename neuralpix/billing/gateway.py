"""
PayOS payment gateway adapter.

Thin translation layer between the billing engine and the PayOS merchant API:

- ``create_checkout`` / ``get_payment_info`` / ``cancel_checkout`` /
  ``confirm_webhook_endpoint`` wrap the REST endpoints.
- ``verify_webhook`` authenticates an inbound webhook body and normalizes it.

Every HTTP call runs through one ``httpx.Client`` with a bounded timeout. Any
transport error, timeout, non-2xx response or non-"00" PayOS result code is
raised as GatewayError, so callers only ever handle one failure type.

Signatures are HMAC-SHA256 (hex) keyed with the checksum key. Webhook data is
signed over its fields sorted by key and joined as ``k1=v1&k2=v2``; checkout
requests are signed over ``amount``, ``cancelUrl``, ``description``,
``orderCode`` and ``returnUrl`` in that order.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from datetime import datetime
from decimal import ROUND_HALF_UP
from decimal import Decimal

import httpx
from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.validators import URLValidator
from django.core.validators import validate_email
from django.utils import timezone
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import ValidationError as PydanticValidationError

from neuralpix.billing.constants import MAX_CHECKOUT_AMOUNT
from neuralpix.billing.constants import MAX_CHECKOUT_DESCRIPTION_LENGTH
from neuralpix.billing.constants import MIN_CHECKOUT_AMOUNT
from neuralpix.billing.constants import PaymentMethod
from neuralpix.billing.constants import PaymentStatus
from neuralpix.billing.exceptions import BillingValidationError
from neuralpix.billing.exceptions import GatewayError
from neuralpix.billing.exceptions import SignatureError

logger = logging.getLogger(__name__)

PAYOS_SUCCESS_CODE = "00"

# The one mapping from PayOS result codes and status names to the normalized
# payment vocabulary. Anything not listed resolves to FAILED.
PAYMENT_STATUS_MAP = {
    "00": PaymentStatus.PAID,
    "01": PaymentStatus.CANCELLED,
    "02": PaymentStatus.FAILED,
    "03": PaymentStatus.PENDING,
    "PAID": PaymentStatus.PAID,
    "CANCELLED": PaymentStatus.CANCELLED,
    "FAILED": PaymentStatus.FAILED,
    "PENDING": PaymentStatus.PENDING,
    "PROCESSING": PaymentStatus.PENDING,
    "EXPIRED": PaymentStatus.CANCELLED,
}


def normalize_payment_status(code) -> PaymentStatus:
    """Map a PayOS code or status name onto PaymentStatus, failing closed."""
    key = str(code).strip().upper() if code is not None else ""
    status = PAYMENT_STATUS_MAP.get(key)
    if status is None:
        logger.warning("Unmapped PayOS status code %r, treating as failed", code)
        return PaymentStatus.FAILED
    return status


def _signature_value(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, dict)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    text = str(value)
    return "" if text in ("null", "undefined") else text


def canonical_signature_payload(data: dict) -> str:
    return "&".join(f"{key}={_signature_value(data[key])}" for key in sorted(data))


def sign(message: str, key: str) -> str:
    return hmac.new(
        key=key.encode(),
        msg=message.encode(),
        digestmod=hashlib.sha256,
    ).hexdigest()


# ----------------------------------------------------------------------
# Wire models
# ----------------------------------------------------------------------


class PayOSModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class WebhookData(PayOSModel):
    order_code: int = Field(alias="orderCode")
    amount: int | None = None
    description: str = ""
    reference: str = ""
    transaction_date_time: str = Field("", alias="transactionDateTime")
    currency: str = "VND"
    payment_link_id: str = Field("", alias="paymentLinkId")
    code: str = ""
    desc: str = ""


class WebhookPayload(PayOSModel):
    code: str = ""
    desc: str = ""
    success: bool = False
    data: dict
    signature: str = ""


class CheckoutLink(PayOSModel):
    order_code: int = Field(alias="orderCode")
    amount: int
    checkout_url: str = Field(alias="checkoutUrl")
    payment_link_id: str = Field("", alias="paymentLinkId")
    qr_code: str = Field("", alias="qrCode")
    status: str = "PENDING"


class PaymentStatusSnapshot(PayOSModel):
    order_code: int = Field(alias="orderCode")
    amount: int = 0
    amount_paid: int = Field(0, alias="amountPaid")
    amount_remaining: int = Field(0, alias="amountRemaining")
    raw_status: str = Field("", alias="status")
    cancellation_reason: str | None = Field(None, alias="cancellationReason")
    created_at: str | None = Field(None, alias="createdAt")
    canceled_at: str | None = Field(None, alias="canceledAt")

    @property
    def status(self) -> PaymentStatus:
        return normalize_payment_status(self.raw_status)


class VerifiedWebhookData(PayOSModel):
    """Authenticated, normalized webhook event."""

    order_code: int
    status: PaymentStatus
    amount: int | None = None
    reference: str = ""
    description: str = ""
    raw_code: str = ""
    payment_method: str = PaymentMethod.BANK_TRANSFER
    occurred_at: datetime


# ----------------------------------------------------------------------
# Adapter
# ----------------------------------------------------------------------


class PayOSGateway:
    """
    PayOS merchant API client.

    Credentials and URLs default to the PAYOS_* settings; tests inject an
    ``httpx.MockTransport`` through ``transport``.
    """

    def __init__(
        self,
        *,
        client_id: str | None = None,
        api_key: str | None = None,
        checksum_key: str | None = None,
        base_url: str | None = None,
        return_url: str | None = None,
        cancel_url: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.client_id = client_id if client_id is not None else settings.PAYOS_CLIENT_ID
        self.api_key = api_key if api_key is not None else settings.PAYOS_API_KEY
        self.checksum_key = (
            checksum_key if checksum_key is not None else settings.PAYOS_CHECKSUM_KEY
        )
        self.base_url = (base_url or settings.PAYOS_API_BASE_URL).rstrip("/")
        self.return_url = return_url or settings.PAYOS_RETURN_URL
        self.cancel_url = cancel_url or settings.PAYOS_CANCEL_URL
        self.timeout_seconds = timeout_seconds or settings.PAYOS_TIMEOUT_SECONDS
        self.transport = transport

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _request(self, method: str, path: str, payload: dict | None = None) -> dict:
        headers = {
            "x-client-id": self.client_id,
            "x-api-key": self.api_key,
            "Content-Type": "application/json",
        }
        try:
            with httpx.Client(
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                headers=headers,
                transport=self.transport,
            ) as client:
                response = client.request(method, path, json=payload)
                response.raise_for_status()
        except httpx.TimeoutException as exc:
            logger.warning("PayOS %s %s timed out", method, path)
            raise GatewayError(
                f"Payment gateway timed out on {path}.",
                code="gateway_timeout",
            ) from exc
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "PayOS %s %s returned HTTP %s",
                method,
                path,
                exc.response.status_code,
            )
            raise GatewayError(
                f"Payment gateway returned HTTP {exc.response.status_code}.",
                code="gateway_http_error",
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("PayOS %s %s failed: %s", method, path, exc)
            raise GatewayError(f"Payment gateway request failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise GatewayError("Payment gateway returned a non-JSON body.") from exc

        code = str(body.get("code", ""))
        if code != PAYOS_SUCCESS_CODE:
            desc = body.get("desc") or "unknown error"
            logger.warning("PayOS %s %s rejected: code=%s desc=%s", method, path, code, desc)
            raise GatewayError(
                f"Payment gateway rejected the request: {desc}",
                code="gateway_rejected",
            )
        return body.get("data") or {}

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def create_checkout(
        self,
        order_code: int,
        amount: Decimal,
        description: str,
        buyer_email: str | None = None,
        buyer_name: str | None = None,
    ) -> CheckoutLink:
        """
        Create a hosted checkout link.

        Raises:
            BillingValidationError: amount, description or email out of bounds.
            GatewayError: the gateway failed or returned no checkout URL.
        """
        amount_vnd = self._validate_checkout(amount, description, buyer_email)
        description = description.strip()
        signed_fields = {
            "amount": amount_vnd,
            "cancelUrl": self.cancel_url,
            "description": description,
            "orderCode": order_code,
            "returnUrl": self.return_url,
        }
        payload = {
            **signed_fields,
            "items": [{"name": description, "quantity": 1, "price": amount_vnd}],
            "signature": sign(canonical_signature_payload(signed_fields), self.checksum_key),
        }
        if buyer_email:
            payload["buyerEmail"] = buyer_email
        if buyer_name:
            payload["buyerName"] = buyer_name

        data = self._request("POST", "/v2/payment-requests", payload)
        if not data.get("checkoutUrl"):
            raise GatewayError(
                f"Payment gateway returned no checkout for order {order_code}.",
                code="gateway_no_checkout",
            )
        data.setdefault("orderCode", order_code)
        data.setdefault("amount", amount_vnd)
        try:
            link = CheckoutLink.model_validate(data)
        except PydanticValidationError as exc:
            raise GatewayError("Payment gateway returned a malformed checkout.") from exc

        logger.info("Created PayOS checkout for order_code=%s", order_code)
        return link

    def get_payment_info(self, order_code: int) -> PaymentStatusSnapshot:
        data = self._request("GET", f"/v2/payment-requests/{order_code}")
        return self._snapshot(order_code, data)

    def cancel_checkout(self, order_code: int, reason: str = "") -> PaymentStatusSnapshot:
        payload = {"cancellationReason": reason} if reason else None
        data = self._request("POST", f"/v2/payment-requests/{order_code}/cancel", payload)
        logger.info("Cancelled PayOS checkout for order_code=%s", order_code)
        return self._snapshot(order_code, data)

    def confirm_webhook_endpoint(self, url: str) -> dict:
        """Register ``url`` as the webhook target for this merchant."""
        if not url or not url.strip():
            raise BillingValidationError("Webhook URL cannot be empty.")
        try:
            URLValidator(schemes=["https"])(url)
        except DjangoValidationError as exc:
            raise BillingValidationError(f"Invalid webhook URL: {url}") from exc
        data = self._request("POST", "/confirm-webhook", {"webhookUrl": url})
        logger.info("Confirmed PayOS webhook URL %s", url)
        return data

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook(
        self,
        raw_payload: bytes | str | dict,
        signature: str | None = None,
    ) -> VerifiedWebhookData:
        """
        Authenticate and normalize a webhook delivery.

        ``signature`` defaults to the one embedded in the body.

        Raises:
            SignatureError: missing secret, missing or mismatched signature.
            BillingValidationError: body is not a well-formed webhook.
        """
        payload = self._parse_webhook(raw_payload)

        if not self.checksum_key:
            raise SignatureError("Webhook signing secret is not configured.")
        provided = signature or payload.signature
        if not provided:
            raise SignatureError("Webhook signature is missing.")
        expected = sign(canonical_signature_payload(payload.data), self.checksum_key)
        if not hmac.compare_digest(expected, provided.lower()):
            logger.warning(
                "Rejected webhook with bad signature for orderCode=%s",
                payload.data.get("orderCode"),
            )
            raise SignatureError

        try:
            data = WebhookData.model_validate(payload.data)
        except PydanticValidationError as exc:
            raise BillingValidationError(
                "Webhook data is missing an order code.",
                code="invalid_webhook",
            ) from exc

        raw_code = data.code or payload.code
        return VerifiedWebhookData(
            order_code=data.order_code,
            status=normalize_payment_status(raw_code),
            amount=data.amount,
            reference=data.reference,
            description=data.desc or data.description or payload.desc,
            raw_code=raw_code,
            occurred_at=self._parse_timestamp(data.transaction_date_time),
        )

    @staticmethod
    def _parse_webhook(raw_payload) -> WebhookPayload:
        if isinstance(raw_payload, (bytes, bytearray)):
            raw_payload = raw_payload.decode("utf-8", errors="replace")
        if isinstance(raw_payload, str):
            try:
                raw_payload = json.loads(raw_payload)
            except ValueError as exc:
                raise BillingValidationError(
                    "Webhook body is not valid JSON.",
                    code="invalid_webhook",
                ) from exc
        if not isinstance(raw_payload, dict):
            raise BillingValidationError("Webhook body must be an object.", code="invalid_webhook")
        try:
            return WebhookPayload.model_validate(raw_payload)
        except PydanticValidationError as exc:
            raise BillingValidationError(
                "Webhook body has no data section.",
                code="invalid_webhook",
            ) from exc

    @staticmethod
    def _parse_timestamp(value: str) -> datetime:
        # PayOS sends local Vietnam time as "YYYY-MM-DD HH:MM:SS".
        if value:
            try:
                parsed = datetime.fromisoformat(value.replace(" ", "T"))
            except ValueError:
                logger.warning("Could not parse webhook timestamp %r, using now", value)
            else:
                if timezone.is_naive(parsed):
                    parsed = timezone.make_aware(parsed)
                return parsed
        return timezone.now()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_checkout(amount, description: str, buyer_email: str | None) -> int:
        amount = Decimal(str(amount))
        if amount < MIN_CHECKOUT_AMOUNT or amount > MAX_CHECKOUT_AMOUNT:
            raise BillingValidationError(
                (
                    f"Checkout amount must be between {MIN_CHECKOUT_AMOUNT} and "
                    f"{MAX_CHECKOUT_AMOUNT} VND."
                ),
                code="invalid_amount",
            )
        if not description or not description.strip():
            raise BillingValidationError("Description cannot be empty.")
        if len(description) > MAX_CHECKOUT_DESCRIPTION_LENGTH:
            raise BillingValidationError(
                f"Description cannot exceed {MAX_CHECKOUT_DESCRIPTION_LENGTH} characters.",
            )
        if buyer_email:
            try:
                validate_email(buyer_email)
            except DjangoValidationError as exc:
                raise BillingValidationError(f"Invalid buyer email: {buyer_email}") from exc
        return int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))

    @staticmethod
    def _snapshot(order_code: int, data: dict) -> PaymentStatusSnapshot:
        data = dict(data)
        data.setdefault("orderCode", order_code)
        try:
            return PaymentStatusSnapshot.model_validate(data)
        except PydanticValidationError as exc:
            raise GatewayError("Payment gateway returned malformed payment info.") from exc
