"""
URL configuration for the billing API.

Mounted at /api/v1/billing/ (see config/urls.py). The route list is
documented in neuralpix/billing/views.py.
"""

from django.urls import path

from neuralpix.billing.views import CancelCheckoutView
from neuralpix.billing.views import CheckoutView
from neuralpix.billing.views import CurrentSubscriptionView
from neuralpix.billing.views import PaymentInfoView
from neuralpix.billing.views import PayOSWebhookView
from neuralpix.billing.views import SubscriptionCancelView
from neuralpix.billing.views import SubscriptionChangePlanView
from neuralpix.billing.views import SubscriptionHistoryView
from neuralpix.billing.views import SubscriptionRetryPaymentView
from neuralpix.billing.views import TransactionDetailView
from neuralpix.billing.views import TransactionListView
from neuralpix.billing.views import TransactionStatsView
from neuralpix.billing.views import UsageCheckView
from neuralpix.billing.views import UsageRecordView
from neuralpix.billing.views import UsageSummaryView

app_name = "billing"

urlpatterns = [
    path(
        "webhooks/payos/",
        PayOSWebhookView.as_view(),
        name="payos-webhook",
    ),
    path(
        "usage/",
        UsageSummaryView.as_view(),
        name="usage",
    ),
    path(
        "usage/can-generate/",
        UsageCheckView.as_view(),
        name="usage-check",
    ),
    path(
        "usage/record/",
        UsageRecordView.as_view(),
        name="usage-record",
    ),
    path(
        "checkout/",
        CheckoutView.as_view(),
        name="checkout",
    ),
    path(
        "subscriptions/current/",
        CurrentSubscriptionView.as_view(),
        name="subscription-current",
    ),
    path(
        "subscriptions/<int:subscription_id>/cancel/",
        SubscriptionCancelView.as_view(),
        name="subscription-cancel",
    ),
    path(
        "subscriptions/<int:subscription_id>/change-plan/",
        SubscriptionChangePlanView.as_view(),
        name="subscription-change-plan",
    ),
    path(
        "subscriptions/<int:subscription_id>/retry-payment/",
        SubscriptionRetryPaymentView.as_view(),
        name="subscription-retry-payment",
    ),
    path(
        "subscriptions/<int:subscription_id>/history/",
        SubscriptionHistoryView.as_view(),
        name="subscription-history",
    ),
    path(
        "transactions/",
        TransactionListView.as_view(),
        name="transactions",
    ),
    path(
        "transactions/stats/",
        TransactionStatsView.as_view(),
        name="transaction-stats",
    ),
    path(
        "transactions/<int:order_code>/",
        TransactionDetailView.as_view(),
        name="transaction-detail",
    ),
    path(
        "transactions/<int:order_code>/payment-info/",
        PaymentInfoView.as_view(),
        name="transaction-payment-info",
    ),
    path(
        "transactions/<int:order_code>/cancel/",
        CancelCheckoutView.as_view(),
        name="transaction-cancel",
    ),
]
