"""
Tests for the billing REST API.
"""

import json
from unittest.mock import patch

from django.db import OperationalError
from django.test import TestCase
from django.urls import reverse
from rest_framework.test import APIClient

from neuralpix.billing.constants import HistoryAction
from neuralpix.billing.constants import SubscriptionStatus
from neuralpix.billing.constants import SubscriptionTier
from neuralpix.billing.constants import TransactionStatus
from neuralpix.billing.constants import UsageType
from neuralpix.billing.exceptions import GatewayError
from neuralpix.billing.gateway import PayOSGateway
from neuralpix.billing.gateway import PaymentStatusSnapshot
from neuralpix.billing.models import Subscription
from neuralpix.billing.models import Transaction
from neuralpix.billing.tests.factories import SubscriptionFactory
from neuralpix.billing.tests.factories import TransactionFactory
from neuralpix.billing.tests.factories import UsageTrackingFactory
from neuralpix.billing.tests.factories import UserFactory
from neuralpix.billing.tests.helpers import checkout_link
from neuralpix.billing.tests.helpers import webhook_body


def echo_checkout(order_code, amount, **kwargs):
    return checkout_link(order_code, int(amount))


class BillingAPITestCase(TestCase):
    @classmethod
    def setUpTestData(cls):
        cls.user = UserFactory(username="api-user")
        cls.other = UserFactory(username="api-other")

    def setUp(self):
        self.client = APIClient()
        self.client.force_authenticate(self.user)


class PayOSWebhookViewTests(TestCase):
    def post(self, body):
        url = reverse("billing:payos-webhook")
        return APIClient().post(url, data=json.dumps(body), content_type="application/json")

    def test_paid_webhook_activates_subscription(self):
        txn = TransactionFactory(order_code=920001)

        response = self.post(webhook_body(920001, 240000))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "success", "message": "Webhook processed."})
        self.assertTrue(Subscription.objects.filter(user=txn.user).exists())

    def test_bad_signature_is_still_acknowledged(self):
        TransactionFactory(order_code=920002)

        response = self.post(webhook_body(920002, 240000, key="forged"))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "error")
        self.assertEqual(
            Transaction.objects.get(order_code=920002).status,
            TransactionStatus.PENDING,
        )

    def test_database_outage_asks_for_retry(self):
        with patch(
            "neuralpix.billing.webhooks.PaymentWebhookProcessor.process",
            side_effect=OperationalError("gone"),
        ):
            response = self.post(webhook_body(920003, 240000))

        self.assertEqual(response.status_code, 503)


class UsageViewTests(BillingAPITestCase):
    def test_requires_authentication(self):
        response = APIClient().get(reverse("billing:usage"))

        self.assertIn(response.status_code, (401, 403))

    def test_summary(self):
        response = self.client.get(reverse("billing:usage"))

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["tier"], SubscriptionTier.FREE)
        self.assertEqual(body["daily"]["limit"], 5)

    def test_check_does_not_record(self):
        response = self.client.get(reverse("billing:usage-check"))

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["allowed"])
        self.assertEqual(response.json()["usage_type"], UsageType.DAILY_GENERATION)
        self.assertEqual(self.client.get(reverse("billing:usage")).json()["daily"]["used"], 0)

    def test_record_then_quota_exhausted(self):
        UsageTrackingFactory(
            user=self.user,
            usage_type=UsageType.DAILY_GENERATION,
            usage_count=4,
        )

        first = self.client.post(reverse("billing:usage-record"), {}, format="json")
        second = self.client.post(reverse("billing:usage-record"), {}, format="json")

        self.assertEqual(first.status_code, 200)
        self.assertEqual(second.status_code, 429)
        self.assertEqual(second.json()["message"], "Daily limit exceeded")

    def test_unknown_usage_type(self):
        response = self.client.post(
            reverse("billing:usage-record"),
            {"usage_type": "video"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)


@patch.object(PayOSGateway, "create_checkout", side_effect=echo_checkout)
class CheckoutViewTests(BillingAPITestCase):
    def test_paid_plan_returns_checkout_url(self, mock_create):
        response = self.client.post(
            reverse("billing:checkout"),
            {"tier": "basic", "billing_cycle": "monthly"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        body = response.json()
        txn = Transaction.objects.get(user=self.user)
        self.assertEqual(body["order_code"], txn.order_code)
        self.assertEqual(body["checkout_url"], f"https://pay.payos.vn/web/{txn.order_code}")
        self.assertIsNone(body["subscription"])

    def test_free_plan_is_active_immediately(self, mock_create):
        response = self.client.post(reverse("billing:checkout"), {"tier": "free"}, format="json")

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["subscription"]["status"], SubscriptionStatus.ACTIVE)
        mock_create.assert_not_called()

    def test_existing_subscription_is_rejected(self, mock_create):
        SubscriptionFactory(user=self.user)

        response = self.client.post(reverse("billing:checkout"), {"tier": "premium"}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "subscription_exists")

    def test_gateway_failure_is_bad_gateway(self, mock_create):
        mock_create.side_effect = GatewayError("down", code="gateway_timeout")

        response = self.client.post(reverse("billing:checkout"), {"tier": "basic"}, format="json")

        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.json(), {"detail": "down", "code": "gateway_timeout"})

    def test_invalid_tier(self, mock_create):
        response = self.client.post(reverse("billing:checkout"), {"tier": "gold"}, format="json")

        self.assertEqual(response.status_code, 400)


class SubscriptionViewTests(BillingAPITestCase):
    def test_current_subscription(self):
        subscription = SubscriptionFactory(user=self.user)

        response = self.client.get(reverse("billing:subscription-current"))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["id"], subscription.pk)

    def test_no_current_subscription(self):
        response = self.client.get(reverse("billing:subscription-current"))

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")

    def test_cancel_at_period_end(self):
        subscription = SubscriptionFactory(user=self.user)

        response = self.client.post(
            reverse("billing:subscription-cancel", args=[subscription.pk]),
            {"reason": "Not using it"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["auto_renew"])
        self.assertEqual(response.json()["status"], SubscriptionStatus.ACTIVE)

    def test_cannot_touch_another_users_subscription(self):
        subscription = SubscriptionFactory(user=self.other)

        response = self.client.post(
            reverse("billing:subscription-cancel", args=[subscription.pk]),
            {"immediately": True},
            format="json",
        )

        self.assertEqual(response.status_code, 404)
        subscription.refresh_from_db()
        self.assertEqual(subscription.status, SubscriptionStatus.ACTIVE)

    def test_downgrade(self):
        subscription = SubscriptionFactory(user=self.user, tier=SubscriptionTier.PREMIUM)

        response = self.client.post(
            reverse("billing:subscription-change-plan", args=[subscription.pk]),
            {"tier": "basic"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["direction"], "downgrade")
        self.assertTrue(response.json()["applied"])
        self.assertIsNone(response.json()["checkout_url"])

    @patch.object(PayOSGateway, "create_checkout", side_effect=echo_checkout)
    def test_retry_payment(self, mock_create):
        subscription = SubscriptionFactory(user=self.user, status=SubscriptionStatus.PAST_DUE)

        response = self.client.post(
            reverse("billing:subscription-retry-payment", args=[subscription.pk]),
        )

        self.assertEqual(response.status_code, 201)
        self.assertTrue(response.json()["checkout_url"])

    def test_history(self):
        subscription = SubscriptionFactory(user=self.user)
        self.client.post(
            reverse("billing:subscription-cancel", args=[subscription.pk]),
            {"immediately": True},
            format="json",
        )

        response = self.client.get(reverse("billing:subscription-history", args=[subscription.pk]))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.json()), 1)
        self.assertEqual(response.json()[0]["action_type"], HistoryAction.CANCELLED)
        self.assertIsNone(response.json()[0]["order_code"])


class TransactionViewTests(BillingAPITestCase):
    def test_list_is_scoped_and_paginated(self):
        for _ in range(3):
            TransactionFactory(user=self.user)
        TransactionFactory(user=self.other)

        response = self.client.get(reverse("billing:transactions"), {"page_size": 2})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["count"], 3)
        self.assertEqual(body["num_pages"], 2)
        self.assertEqual(len(body["results"]), 2)

    def test_list_filters_by_status(self):
        TransactionFactory(user=self.user)
        TransactionFactory(user=self.user, status=TransactionStatus.PAID)

        response = self.client.get(reverse("billing:transactions"), {"status": "paid"})

        self.assertEqual(response.json()["count"], 1)

    def test_detail_of_another_user_is_not_found(self):
        txn = TransactionFactory(user=self.other)

        response = self.client.get(reverse("billing:transaction-detail", args=[txn.order_code]))

        self.assertEqual(response.status_code, 404)

    @patch.object(PayOSGateway, "get_payment_info")
    def test_payment_info(self, mock_info):
        txn = TransactionFactory(user=self.user)
        mock_info.return_value = PaymentStatusSnapshot(
            order_code=txn.order_code,
            amount=240000,
            amount_paid=0,
            amount_remaining=240000,
            raw_status="PENDING",
        )

        response = self.client.get(
            reverse("billing:transaction-payment-info", args=[txn.order_code]),
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "pending")
        self.assertEqual(response.json()["ledger_status"], TransactionStatus.PENDING)

    @patch.object(PayOSGateway, "cancel_checkout")
    def test_cancel_checkout(self, mock_cancel):
        txn = TransactionFactory(user=self.user)

        response = self.client.post(
            reverse("billing:transaction-cancel", args=[txn.order_code]),
            {"reason": "Wrong plan"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], TransactionStatus.CANCELLED)
        mock_cancel.assert_called_once_with(txn.order_code, "Wrong plan")

    def test_stats_are_staff_only(self):
        response = self.client.get(reverse("billing:transaction-stats"))
        self.assertEqual(response.status_code, 403)

        staff = UserFactory(username="staff", is_staff=True)
        self.client.force_authenticate(staff)
        response = self.client.get(reverse("billing:transaction-stats"))

        self.assertEqual(response.status_code, 200)
        self.assertIn("monthly_revenue", response.json())
