"""
REST API for billing.

Routes (mounted under /api/v1/billing/):
- webhooks/payos/                          - PayOS payment webhook (public)
- usage/                                   - Usage summary for the caller
- usage/can-generate/                      - Read-only quota check
- usage/record/                            - Record one unit of usage
- checkout/                                - Start a subscription checkout
- subscriptions/current/                   - Caller's current subscription
- subscriptions/<id>/cancel/               - Cancel (now or at period end)
- subscriptions/<id>/change-plan/          - Upgrade or downgrade
- subscriptions/<id>/retry-payment/        - New checkout for a past-due renewal
- subscriptions/<id>/history/              - Subscription audit trail
- transactions/                            - Caller's transactions (paged)
- transactions/<order_code>/               - One transaction
- transactions/<order_code>/payment-info/  - Live status from PayOS
- transactions/<order_code>/cancel/        - Cancel an open checkout
- transactions/stats/                      - Revenue figures (staff only)

Domain errors are mapped to HTTP statuses in ``BillingAPIView``; views only
validate input and call the billing services.
"""

import logging

from django.db import InterfaceError
from django.db import OperationalError
from rest_framework import permissions
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from neuralpix.billing.exceptions import BillingError
from neuralpix.billing.exceptions import BillingValidationError
from neuralpix.billing.exceptions import ConfigurationError
from neuralpix.billing.exceptions import ConflictingTransitionError
from neuralpix.billing.exceptions import DuplicateOrderCodeError
from neuralpix.billing.exceptions import GatewayError
from neuralpix.billing.exceptions import NotFoundError
from neuralpix.billing.exceptions import SignatureError
from neuralpix.billing.gateway import PayOSGateway
from neuralpix.billing.ledger import TransactionLedger
from neuralpix.billing.lifecycle import SubscriptionStateMachine
from neuralpix.billing.metering import UsageQuotaTracker
from neuralpix.billing.models import Subscription
from neuralpix.billing.models import UserSubscriptionHistory
from neuralpix.billing.serializers import CancelCheckoutSerializer
from neuralpix.billing.serializers import CancelSubscriptionSerializer
from neuralpix.billing.serializers import ChangePlanSerializer
from neuralpix.billing.serializers import CheckoutRequestSerializer
from neuralpix.billing.serializers import SubscriptionHistorySerializer
from neuralpix.billing.serializers import SubscriptionSerializer
from neuralpix.billing.serializers import TransactionFilterSerializer
from neuralpix.billing.serializers import TransactionSerializer
from neuralpix.billing.serializers import UsageRequestSerializer
from neuralpix.billing.webhooks import PaymentWebhookProcessor

logger = logging.getLogger(__name__)

# Checked in order, so subclasses come before their bases.
ERROR_STATUS_CODES = (
    (BillingValidationError, status.HTTP_400_BAD_REQUEST),
    (SignatureError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (DuplicateOrderCodeError, status.HTTP_409_CONFLICT),
    (ConflictingTransitionError, status.HTTP_409_CONFLICT),
    (GatewayError, status.HTTP_502_BAD_GATEWAY),
    (ConfigurationError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


class BillingAPIView(APIView):
    """Base view that turns BillingError into a JSON error response."""

    permission_classes = [permissions.IsAuthenticated]

    def handle_exception(self, exc):
        if isinstance(exc, BillingError):
            for error_class, status_code in ERROR_STATUS_CODES:
                if isinstance(exc, error_class):
                    break
            else:
                status_code = status.HTTP_400_BAD_REQUEST
            return Response({"detail": exc.detail, "code": exc.code}, status=status_code)
        return super().handle_exception(exc)

    def get_state_machine(self) -> SubscriptionStateMachine:
        return SubscriptionStateMachine()

    def get_owned_subscription(self, subscription_id: int) -> Subscription:
        subscription = Subscription.objects.filter(
            pk=subscription_id,
            user=self.request.user,
            archived_at__isnull=True,
        ).first()
        if subscription is None:
            raise NotFoundError(f"Subscription {subscription_id} not found.")
        return subscription

    def get_owned_transaction(self, order_code: int):
        txn = TransactionLedger().get_by_order_code(order_code)
        if txn.user_id != self.request.user.pk and not self.request.user.is_staff:
            raise NotFoundError(f"Transaction with order code {order_code} not found.")
        return txn


# ----------------------------------------------------------------------
# Webhook
# ----------------------------------------------------------------------


class PayOSWebhookView(APIView):
    """
    Receive PayOS payment webhooks.

    Authentication is the HMAC signature inside the body, so DRF auth is
    disabled. Every delivery is acknowledged with 200 so PayOS stops
    retrying, except when the database is unavailable (503, retried later).

    URL: POST /api/v1/billing/webhooks/payos/
    """

    authentication_classes = []
    permission_classes = []

    def post(self, request):
        signature = request.headers.get("x-payos-signature")
        try:
            ack = PaymentWebhookProcessor().process(request.body, signature=signature)
        except (OperationalError, InterfaceError):
            return Response(
                {"status": "error", "message": "Temporarily unavailable."},
                status=status.HTTP_503_SERVICE_UNAVAILABLE,
            )
        return Response(ack.to_dict(), status=status.HTTP_200_OK)


# ----------------------------------------------------------------------
# Usage
# ----------------------------------------------------------------------


class UsageSummaryView(BillingAPIView):
    def get(self, request):
        return Response(UsageQuotaTracker().usage_summary(request.user))


class UsageCheckView(BillingAPIView):
    """Read-only quota check. Never records usage."""

    def get(self, request):
        serializer = UsageRequestSerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)
        decision = UsageQuotaTracker().check(
            request.user,
            serializer.validated_data["usage_type"],
        )
        return Response(decision.to_dict())


class UsageRecordView(BillingAPIView):
    """
    Record one unit of usage.

    Answers 429 when the quota is exhausted; nothing is recorded then.
    """

    def post(self, request):
        serializer = UsageRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        decision = UsageQuotaTracker().record_consumption(
            request.user,
            serializer.validated_data["usage_type"],
        )
        response_status = (
            status.HTTP_200_OK if decision.allowed else status.HTTP_429_TOO_MANY_REQUESTS
        )
        return Response(decision.to_dict(), status=response_status)


# ----------------------------------------------------------------------
# Subscriptions
# ----------------------------------------------------------------------


class CheckoutView(BillingAPIView):
    """
    Start a subscription for the caller.

    Paid plans answer 201 with the PayOS checkout URL; the subscription is
    created by the paid webhook. Free plans are active straight away.
    """

    def post(self, request):
        serializer = CheckoutRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = self.get_state_machine().start_checkout(
            request.user,
            serializer.validated_data["tier"],
            serializer.validated_data["billing_cycle"],
            auto_renew=serializer.validated_data["auto_renew"],
        )
        if result.subscription is not None:
            return Response(
                {
                    "order_code": None,
                    "checkout_url": None,
                    "subscription": SubscriptionSerializer(result.subscription).data,
                },
                status=status.HTTP_201_CREATED,
            )
        return Response(
            {
                "order_code": result.transaction.order_code,
                "checkout_url": result.checkout_url,
                "amount": result.transaction.amount,
                "subscription": None,
            },
            status=status.HTTP_201_CREATED,
        )


class CurrentSubscriptionView(BillingAPIView):
    def get(self, request):
        subscription = Subscription.objects.current_for(request.user)
        if subscription is None:
            raise NotFoundError("No current subscription.")
        return Response(SubscriptionSerializer(subscription).data)


class SubscriptionCancelView(BillingAPIView):
    def post(self, request, subscription_id: int):
        self.get_owned_subscription(subscription_id)
        serializer = CancelSubscriptionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        subscription = self.get_state_machine().cancel(
            subscription_id,
            reason=serializer.validated_data["reason"],
            immediately=serializer.validated_data["immediately"],
        )
        return Response(SubscriptionSerializer(subscription).data)


class SubscriptionChangePlanView(BillingAPIView):
    def post(self, request, subscription_id: int):
        self.get_owned_subscription(subscription_id)
        serializer = ChangePlanSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = self.get_state_machine().start_plan_change(
            subscription_id,
            serializer.validated_data["tier"],
        )
        payload = {
            "direction": result.direction,
            "applied": result.applied,
            "subscription": SubscriptionSerializer(result.subscription).data,
            "order_code": result.transaction.order_code if result.transaction else None,
            "checkout_url": result.checkout.checkout_url if result.checkout else None,
        }
        return Response(payload)


class SubscriptionRetryPaymentView(BillingAPIView):
    def post(self, request, subscription_id: int):
        self.get_owned_subscription(subscription_id)
        result = self.get_state_machine().retry_payment(subscription_id)
        return Response(
            {
                "order_code": result.transaction.order_code,
                "checkout_url": result.checkout_url,
                "amount": result.transaction.amount,
            },
            status=status.HTTP_201_CREATED,
        )


class SubscriptionHistoryView(BillingAPIView):
    def get(self, request, subscription_id: int):
        subscription = self.get_owned_subscription(subscription_id)
        entries = (
            UserSubscriptionHistory.objects.filter(subscription=subscription)
            .select_related("transaction")
            .order_by("-created", "-id")
        )
        return Response(SubscriptionHistorySerializer(entries, many=True).data)


# ----------------------------------------------------------------------
# Transactions
# ----------------------------------------------------------------------


class TransactionListView(BillingAPIView):
    def get(self, request):
        serializer = TransactionFilterSerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)
        params = serializer.validated_data
        page = TransactionLedger().for_user(
            request.user,
            page=params["page"],
            page_size=params["page_size"],
            status=params.get("status"),
            transaction_type=params.get("type"),
            subscription_id=params.get("subscription"),
            start=params.get("start"),
            end=params.get("end"),
        )
        return Response(
            {
                "count": page.paginator.count,
                "page": page.number,
                "num_pages": page.paginator.num_pages,
                "results": TransactionSerializer(page.object_list, many=True).data,
            },
        )


class TransactionDetailView(BillingAPIView):
    def get(self, request, order_code: int):
        return Response(TransactionSerializer(self.get_owned_transaction(order_code)).data)


class PaymentInfoView(BillingAPIView):
    """Live payment status from PayOS for one of the caller's transactions."""

    def get(self, request, order_code: int):
        txn = self.get_owned_transaction(order_code)
        snapshot = PayOSGateway().get_payment_info(txn.order_code)
        return Response(
            {
                "order_code": snapshot.order_code,
                "status": snapshot.status,
                "gateway_status": snapshot.raw_status,
                "amount": snapshot.amount,
                "amount_paid": snapshot.amount_paid,
                "amount_remaining": snapshot.amount_remaining,
                "ledger_status": txn.status,
            },
        )


class CancelCheckoutView(BillingAPIView):
    def post(self, request, order_code: int):
        serializer = CancelCheckoutSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        txn = self.get_state_machine().cancel_checkout(
            order_code,
            serializer.validated_data["reason"],
            user=request.user,
        )
        return Response(TransactionSerializer(txn).data)


class TransactionStatsView(BillingAPIView):
    """Revenue and status counts across all users."""

    permission_classes = [permissions.IsAdminUser]

    def get(self, request):
        ledger = TransactionLedger()
        return Response(
            {
                "total_revenue": ledger.total_revenue(),
                "revenue_by_status": ledger.revenue_by_status(),
                "count_by_status": ledger.count_by_status(),
                "monthly_revenue": ledger.monthly_revenue(),
            },
        )
