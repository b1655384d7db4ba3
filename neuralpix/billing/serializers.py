from rest_framework import serializers

from neuralpix.billing.constants import BillingCycle
from neuralpix.billing.constants import SubscriptionTier
from neuralpix.billing.constants import TransactionStatus
from neuralpix.billing.constants import TransactionType
from neuralpix.billing.constants import UsageType
from neuralpix.billing.ledger import DEFAULT_PAGE_SIZE
from neuralpix.billing.ledger import MAX_PAGE_SIZE
from neuralpix.billing.models import Subscription
from neuralpix.billing.models import Transaction
from neuralpix.billing.models import UserSubscriptionHistory


class SubscriptionSerializer(serializers.ModelSerializer):
    class Meta:
        model = Subscription
        fields = [
            "id",
            "tier",
            "status",
            "billing_cycle",
            "price",
            "currency",
            "auto_renew",
            "start_date",
            "end_date",
            "next_billing_date",
            "cancelled_at",
            "cancellation_reason",
        ]
        read_only_fields = fields


class TransactionSerializer(serializers.ModelSerializer):
    class Meta:
        model = Transaction
        fields = [
            "id",
            "order_code",
            "subscription",
            "amount",
            "currency",
            "status",
            "transaction_type",
            "payment_provider",
            "payment_method",
            "description",
            "checkout_url",
            "failure_reason",
            "paid_at",
            "created",
            "modified",
        ]
        read_only_fields = fields


class SubscriptionHistorySerializer(serializers.ModelSerializer):
    order_code = serializers.IntegerField(
        source="transaction.order_code",
        read_only=True,
        default=None,
    )

    class Meta:
        model = UserSubscriptionHistory
        fields = [
            "id",
            "action_type",
            "old_tier",
            "new_tier",
            "amount_charged",
            "proration_amount",
            "notes",
            "order_code",
            "created",
        ]
        read_only_fields = fields


class CheckoutRequestSerializer(serializers.Serializer):
    tier = serializers.ChoiceField(choices=SubscriptionTier.choices)
    billing_cycle = serializers.ChoiceField(
        choices=BillingCycle.choices,
        default=BillingCycle.MONTHLY,
    )
    auto_renew = serializers.BooleanField(default=True)


class CancelSubscriptionSerializer(serializers.Serializer):
    immediately = serializers.BooleanField(default=False)
    reason = serializers.CharField(
        required=False,
        allow_blank=True,
        max_length=500,
        default="",
    )


class ChangePlanSerializer(serializers.Serializer):
    tier = serializers.ChoiceField(choices=SubscriptionTier.choices)


class CancelCheckoutSerializer(serializers.Serializer):
    reason = serializers.CharField(
        required=False,
        allow_blank=True,
        max_length=255,
        default="",
    )


class UsageRequestSerializer(serializers.Serializer):
    usage_type = serializers.ChoiceField(
        choices=UsageType.choices,
        default=UsageType.DAILY_GENERATION,
    )


class TransactionFilterSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=TransactionStatus.choices, required=False)
    type = serializers.ChoiceField(choices=TransactionType.choices, required=False)
    subscription = serializers.IntegerField(required=False, min_value=1)
    start = serializers.DateTimeField(required=False)
    end = serializers.DateTimeField(required=False)
    page = serializers.IntegerField(required=False, min_value=1, default=1)
    page_size = serializers.IntegerField(
        required=False,
        min_value=1,
        max_value=MAX_PAGE_SIZE,
        default=DEFAULT_PAGE_SIZE,
    )
