"""
Tests for the PayOS gateway adapter.

HTTP calls go through an ``httpx.MockTransport`` so the request the adapter
builds can be inspected without any network access.
"""

import json

import httpx
from django.test import SimpleTestCase

from neuralpix.billing.constants import PaymentStatus
from neuralpix.billing.exceptions import BillingValidationError
from neuralpix.billing.exceptions import GatewayError
from neuralpix.billing.exceptions import SignatureError
from neuralpix.billing.gateway import PayOSGateway
from neuralpix.billing.gateway import canonical_signature_payload
from neuralpix.billing.gateway import normalize_payment_status
from neuralpix.billing.gateway import sign
from neuralpix.billing.tests.helpers import webhook_body

CHECKSUM_KEY = "test-checksum-key"


def make_gateway(handler, **kwargs) -> PayOSGateway:
    return PayOSGateway(
        client_id="client-1",
        api_key="api-1",
        checksum_key=CHECKSUM_KEY,
        base_url="https://payos.test",
        return_url="https://neuralpix.test/ok",
        cancel_url="https://neuralpix.test/cancel",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def ok(data: dict) -> httpx.Response:
    return httpx.Response(200, json={"code": "00", "desc": "success", "data": data})


class CreateCheckoutTests(SimpleTestCase):
    def test_sends_signed_request_and_returns_link(self):
        captured = {}

        def handler(request):
            captured["request"] = request
            return ok(
                {
                    "orderCode": 42,
                    "amount": 240000,
                    "checkoutUrl": "https://pay.payos.vn/web/abc",
                    "paymentLinkId": "abc",
                    "qrCode": "000201...",
                    "status": "PENDING",
                },
            )

        link = make_gateway(handler).create_checkout(
            order_code=42,
            amount=240000,
            description="NeuralPix Basic - Monthly",
            buyer_email="buyer@example.com",
            buyer_name="Buyer",
        )

        self.assertEqual(link.checkout_url, "https://pay.payos.vn/web/abc")
        self.assertEqual(link.payment_link_id, "abc")

        request = captured["request"]
        self.assertEqual(request.method, "POST")
        self.assertEqual(request.url.path, "/v2/payment-requests")
        self.assertEqual(request.headers["x-client-id"], "client-1")
        self.assertEqual(request.headers["x-api-key"], "api-1")
        body = json.loads(request.content)
        expected_signature = sign(
            "amount=240000&cancelUrl=https://neuralpix.test/cancel"
            "&description=NeuralPix Basic - Monthly&orderCode=42"
            "&returnUrl=https://neuralpix.test/ok",
            CHECKSUM_KEY,
        )
        self.assertEqual(body["signature"], expected_signature)
        self.assertEqual(body["buyerEmail"], "buyer@example.com")
        self.assertEqual(body["items"][0]["price"], 240000)

    def test_rejected_result_code_raises(self):
        gateway = make_gateway(
            lambda request: httpx.Response(200, json={"code": "231", "desc": "Order exists"}),
        )

        with self.assertRaises(GatewayError) as ctx:
            gateway.create_checkout(order_code=1, amount=5000, description="Test")

        self.assertEqual(ctx.exception.code, "gateway_rejected")
        self.assertIn("Order exists", ctx.exception.detail)

    def test_http_error_raises(self):
        gateway = make_gateway(lambda request: httpx.Response(500, text="boom"))

        with self.assertRaises(GatewayError) as ctx:
            gateway.create_checkout(order_code=1, amount=5000, description="Test")

        self.assertEqual(ctx.exception.code, "gateway_http_error")

    def test_timeout_raises(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with self.assertRaises(GatewayError) as ctx:
            make_gateway(handler).create_checkout(order_code=1, amount=5000, description="Test")

        self.assertEqual(ctx.exception.code, "gateway_timeout")

    def test_missing_checkout_url_raises(self):
        gateway = make_gateway(lambda request: ok({"orderCode": 1, "amount": 5000}))

        with self.assertRaises(GatewayError) as ctx:
            gateway.create_checkout(order_code=1, amount=5000, description="Test")

        self.assertEqual(ctx.exception.code, "gateway_no_checkout")

    def test_input_is_validated_before_any_request(self):
        calls = []

        def handler(request):
            calls.append(request)
            return ok({})

        gateway = make_gateway(handler)
        cases = [
            {"amount": 999, "description": "Too cheap"},
            {"amount": 500_000_001, "description": "Too expensive"},
            {"amount": 5000, "description": "   "},
            {"amount": 5000, "description": "x" * 256},
            {"amount": 5000, "description": "Bad email", "buyer_email": "not-an-email"},
        ]
        for kwargs in cases:
            with self.subTest(kwargs=kwargs), self.assertRaises(BillingValidationError):
                gateway.create_checkout(order_code=1, **kwargs)
        self.assertEqual(calls, [])


class PaymentRequestTests(SimpleTestCase):
    def test_get_payment_info_normalizes_status(self):
        def handler(request):
            self.assertEqual(request.method, "GET")
            self.assertEqual(request.url.path, "/v2/payment-requests/77")
            return ok({"orderCode": 77, "amount": 5000, "amountPaid": 5000, "status": "PAID"})

        snapshot = make_gateway(handler).get_payment_info(77)

        self.assertEqual(snapshot.status, PaymentStatus.PAID)
        self.assertEqual(snapshot.raw_status, "PAID")
        self.assertEqual(snapshot.amount_paid, 5000)

    def test_cancel_checkout_sends_reason(self):
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            captured["path"] = request.url.path
            return ok({"orderCode": 77, "status": "CANCELLED"})

        snapshot = make_gateway(handler).cancel_checkout(77, "Changed my mind")

        self.assertEqual(captured["path"], "/v2/payment-requests/77/cancel")
        self.assertEqual(captured["body"], {"cancellationReason": "Changed my mind"})
        self.assertEqual(snapshot.status, PaymentStatus.CANCELLED)

    def test_confirm_webhook_endpoint_requires_https(self):
        gateway = make_gateway(lambda request: ok({}))

        for url in ["", "http://neuralpix.test/hook", "not a url"]:
            with self.subTest(url=url), self.assertRaises(BillingValidationError):
                gateway.confirm_webhook_endpoint(url)

    def test_confirm_webhook_endpoint_posts_url(self):
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            return ok({"webhookUrl": "https://neuralpix.test/hook"})

        make_gateway(handler).confirm_webhook_endpoint("https://neuralpix.test/hook")

        self.assertEqual(captured["body"], {"webhookUrl": "https://neuralpix.test/hook"})


class VerifyWebhookTests(SimpleTestCase):
    def setUp(self):
        self.gateway = make_gateway(lambda request: ok({}))

    def test_valid_paid_webhook(self):
        body = webhook_body(123, 240000, key=CHECKSUM_KEY)

        event = self.gateway.verify_webhook(json.dumps(body).encode())

        self.assertEqual(event.order_code, 123)
        self.assertEqual(event.status, PaymentStatus.PAID)
        self.assertEqual(event.amount, 240000)
        self.assertEqual(event.reference, "FT123")
        self.assertEqual(event.occurred_at.year, 2024)

    def test_signature_is_computed_over_sorted_fields(self):
        data = {"orderCode": 1, "amount": 1000, "description": "a", "code": "00"}
        self.assertEqual(
            canonical_signature_payload(data),
            "amount=1000&code=00&description=a&orderCode=1",
        )

    def test_tampered_body_is_rejected(self):
        body = webhook_body(123, 240000, key=CHECKSUM_KEY)
        body["data"]["amount"] = 1000

        with self.assertRaises(SignatureError):
            self.gateway.verify_webhook(body)

    def test_missing_signature_is_rejected(self):
        body = webhook_body(123, 240000, key=CHECKSUM_KEY)
        body["signature"] = ""

        with self.assertRaises(SignatureError):
            self.gateway.verify_webhook(body)

    def test_header_signature_is_accepted(self):
        body = webhook_body(123, 240000, key=CHECKSUM_KEY)
        signature = body.pop("signature")

        event = self.gateway.verify_webhook(body, signature=signature)

        self.assertEqual(event.order_code, 123)

    def test_missing_secret_rejects_everything(self):
        gateway = make_gateway(lambda request: ok({}))
        gateway.checksum_key = ""

        with self.assertRaises(SignatureError):
            gateway.verify_webhook(webhook_body(123, 240000, key=CHECKSUM_KEY))

    def test_malformed_body_is_a_validation_error(self):
        for raw in [b"not json", b"[1, 2]", b'{"code": "00"}']:
            with self.subTest(raw=raw), self.assertRaises(BillingValidationError):
                self.gateway.verify_webhook(raw)

    def test_cancelled_and_unknown_codes(self):
        cancelled = self.gateway.verify_webhook(
            webhook_body(5, 1000, code="01", key=CHECKSUM_KEY),
        )
        unknown = self.gateway.verify_webhook(
            webhook_body(6, 1000, code="99", key=CHECKSUM_KEY),
        )

        self.assertEqual(cancelled.status, PaymentStatus.CANCELLED)
        self.assertEqual(unknown.status, PaymentStatus.FAILED)


class NormalizePaymentStatusTests(SimpleTestCase):
    def test_mapping(self):
        self.assertEqual(normalize_payment_status("00"), PaymentStatus.PAID)
        self.assertEqual(normalize_payment_status("paid"), PaymentStatus.PAID)
        self.assertEqual(normalize_payment_status("PROCESSING"), PaymentStatus.PENDING)
        self.assertEqual(normalize_payment_status("EXPIRED"), PaymentStatus.CANCELLED)

    def test_unknown_code_fails_closed(self):
        with self.assertLogs("neuralpix.billing.gateway", level="WARNING"):
            self.assertEqual(normalize_payment_status("XYZ"), PaymentStatus.FAILED)
        self.assertEqual(normalize_payment_status(None), PaymentStatus.FAILED)
