"""Shared helpers for billing tests: fixed clocks, checkout stubs, signed webhooks."""

from datetime import UTC
from datetime import datetime
from unittest.mock import MagicMock

from django.conf import settings

from neuralpix.billing.gateway import CheckoutLink
from neuralpix.billing.gateway import PayOSGateway
from neuralpix.billing.gateway import canonical_signature_payload
from neuralpix.billing.gateway import sign


class FrozenClock:
    """Callable clock that tests can move forward."""

    def __init__(self, moment: datetime):
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment

    def advance(self, delta) -> None:
        self.moment = self.moment + delta


def at(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)


def checkout_link(order_code: int, amount: int = 240000) -> CheckoutLink:
    return CheckoutLink(
        order_code=order_code,
        amount=amount,
        checkout_url=f"https://pay.payos.vn/web/{order_code}",
        payment_link_id=f"link-{order_code}",
    )


def mock_gateway() -> MagicMock:
    """
    A PayOSGateway stand-in whose create_checkout echoes the order code.
    """
    gateway = MagicMock(spec=PayOSGateway)
    gateway.create_checkout.side_effect = lambda order_code, amount, **kwargs: checkout_link(
        order_code,
        int(amount),
    )
    return gateway


def webhook_body(
    order_code: int,
    amount: int,
    code: str = "00",
    key: str | None = None,
    **overrides,
) -> dict:
    """Build a PayOS webhook body signed with ``key`` (the test checksum key)."""
    data = {
        "orderCode": order_code,
        "amount": amount,
        "description": "NeuralPix payment",
        "accountNumber": "12345678",
        "reference": f"FT{order_code}",
        "transactionDateTime": "2024-03-01 10:00:00",
        "currency": "VND",
        "paymentLinkId": f"link-{order_code}",
        "code": code,
        "desc": "success" if code == "00" else "failed",
    }
    data.update(overrides)
    signature = sign(
        canonical_signature_payload(data),
        key if key is not None else settings.PAYOS_CHECKSUM_KEY,
    )
    return {
        "code": code,
        "desc": data["desc"],
        "success": code == "00",
        "data": data,
        "signature": signature,
    }
