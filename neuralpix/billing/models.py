"""
Billing models for the NeuralPix subscription and metering engine.

Key design decisions:
- Plans are static configuration (see plans.py), so Subscription stores the
  tier value rather than a foreign key.
- Subscription rows are mutated only by the state machine in lifecycle.py.
- Transaction is keyed by a unique, immutable ``order_code`` shared with the
  payment gateway.
- UsageTracking has one row per (user, usage_date, usage_type). A new period
  is a new row; rows are never zeroed.
- UserSubscriptionHistory is append-only. Saving an existing row or deleting
  one raises.
- Relations to billing records use PROTECT: nothing disappears through an
  implicit cascade.

Relationship: User ──1:N── Subscription ──1:N── Transaction
                                    └──1:N── UserSubscriptionHistory
"""

from django.conf import settings
from django.db import models
from model_utils.models import TimeStampedModel

from neuralpix.billing.constants import DEFAULT_CURRENCY
from neuralpix.billing.constants import PAYMENT_PROVIDER_PAYOS
from neuralpix.billing.constants import TERMINAL_SUBSCRIPTION_STATUSES
from neuralpix.billing.constants import TERMINAL_TRANSACTION_STATUSES
from neuralpix.billing.constants import BillingCycle
from neuralpix.billing.constants import HistoryAction
from neuralpix.billing.constants import PaymentMethod
from neuralpix.billing.constants import SubscriptionStatus
from neuralpix.billing.constants import SubscriptionTier
from neuralpix.billing.constants import TransactionStatus
from neuralpix.billing.constants import TransactionType
from neuralpix.billing.constants import UsageType
from neuralpix.billing.constants import coerce_choice

# Statuses in which a subscription still belongs to its user.
CURRENT_SUBSCRIPTION_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
)


class SubscriptionQuerySet(models.QuerySet):
    def active(self):
        return self.filter(status=SubscriptionStatus.ACTIVE, archived_at__isnull=True)

    def current(self):
        return self.filter(
            status__in=CURRENT_SUBSCRIPTION_STATUSES,
            archived_at__isnull=True,
        )

    def current_for(self, user):
        """Most recent ACTIVE or PAST_DUE subscription for ``user``, or None."""
        return self.current().filter(user=user).order_by("-created", "-id").first()

    def due_for_renewal(self, now):
        return self.active().filter(next_billing_date__lte=now)


class Subscription(TimeStampedModel):
    """
    A user's paid (or free) service level over a billing period.

    At most one ACTIVE or PAST_DUE subscription per user is expected; this is
    enforced by the state machine, not by the database.

    Usage:
        sub = Subscription.objects.current_for(user)
        sub.is_active
    """

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="subscriptions",
    )
    tier = models.CharField(
        max_length=20,
        choices=SubscriptionTier.choices,
        default=SubscriptionTier.FREE,
    )
    status = models.CharField(
        max_length=20,
        choices=SubscriptionStatus.choices,
        default=SubscriptionStatus.ACTIVE,
        db_index=True,
    )
    billing_cycle = models.CharField(
        max_length=20,
        choices=BillingCycle.choices,
        default=BillingCycle.MONTHLY,
    )
    price = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    currency = models.CharField(max_length=3, default=DEFAULT_CURRENCY)
    payment_provider = models.CharField(
        max_length=20,
        default=PAYMENT_PROVIDER_PAYOS,
    )
    external_subscription_id = models.CharField(
        max_length=100,
        blank=True,
        help_text="Gateway-side correlation key (order code of the signup payment).",
    )
    auto_renew = models.BooleanField(default=True)

    start_date = models.DateTimeField()
    end_date = models.DateTimeField()
    next_billing_date = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="Due date of the next renewal. Only acted on while ACTIVE.",
    )

    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.CharField(max_length=500, blank=True)
    archived_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Set when the subscription is archived instead of deleted.",
    )

    objects = SubscriptionQuerySet.as_manager()

    class Meta:
        ordering = ["-created"]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(end_date__gte=models.F("start_date")),
                name="billing_subscription_end_after_start",
            ),
        ]
        indexes = [
            models.Index(fields=["user", "status"], name="billing_sub_user_id_8c2f4e_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.user_id}:{self.tier}:{self.status}"

    @property
    def status_enum(self) -> SubscriptionStatus:
        return coerce_choice(
            SubscriptionStatus,
            self.status,
            default=SubscriptionStatus.PAST_DUE,
        )

    @property
    def tier_enum(self) -> SubscriptionTier:
        return coerce_choice(SubscriptionTier, self.tier, default=SubscriptionTier.FREE)

    @property
    def billing_cycle_enum(self) -> BillingCycle:
        return coerce_choice(
            BillingCycle,
            self.billing_cycle,
            default=BillingCycle.MONTHLY,
        )

    @property
    def is_active(self) -> bool:
        return self.status_enum == SubscriptionStatus.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.status_enum in TERMINAL_SUBSCRIPTION_STATUSES


class Transaction(TimeStampedModel):
    """
    One monetary intent and its outcome.

    Created PENDING when a checkout link is requested and moved exactly once
    into a terminal status by the ledger (see ledger.py). ``order_code`` is
    the natural key shared with the gateway.
    """

    order_code = models.BigIntegerField(unique=True)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="billing_transactions",
    )
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="transactions",
    )
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3, default=DEFAULT_CURRENCY)
    status = models.CharField(
        max_length=20,
        choices=TransactionStatus.choices,
        default=TransactionStatus.PENDING,
        db_index=True,
    )
    transaction_type = models.CharField(
        max_length=30,
        choices=TransactionType.choices,
    )
    payment_provider = models.CharField(
        max_length=20,
        default=PAYMENT_PROVIDER_PAYOS,
    )
    payment_method = models.CharField(
        max_length=20,
        choices=PaymentMethod.choices,
        blank=True,
    )
    description = models.CharField(max_length=500, blank=True)
    buyer_email = models.EmailField(max_length=254, blank=True)

    checkout_url = models.URLField(max_length=500, blank=True)
    payment_link_id = models.CharField(max_length=100, blank=True)
    gateway_reference = models.CharField(max_length=100, blank=True)
    failure_reason = models.CharField(max_length=500, blank=True)

    billing_period_start = models.DateTimeField(
        null=True,
        blank=True,
        help_text="For renewals: the due date this payment renews from.",
    )
    paid_at = models.DateTimeField(null=True, blank=True)
    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Checkout context such as requested tier and billing cycle.",
    )

    class Meta:
        ordering = ["-created"]
        indexes = [
            models.Index(fields=["user", "-created"], name="billing_tra_user_id_3b7d1a_idx"),
            models.Index(fields=["status", "created"], name="billing_tra_status_5e9c2b_idx"),
            models.Index(
                fields=["subscription", "transaction_type"],
                name="billing_tra_subscri_7a4f0d_idx",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.order_code}:{self.status}"

    @property
    def status_enum(self) -> TransactionStatus:
        return coerce_choice(
            TransactionStatus,
            self.status,
            default=TransactionStatus.FAILED,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status_enum in TERMINAL_TRANSACTION_STATUSES


class UsageTracking(TimeStampedModel):
    """
    Consumption counter for one user, one period key and one usage type.

    Daily counters are keyed by the calendar day; monthly counters by the
    first day of the month. ``usage_count`` only ever increases.
    """

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="usage_records",
    )
    usage_date = models.DateField()
    usage_type = models.CharField(max_length=30, choices=UsageType.choices)
    usage_count = models.PositiveIntegerField(default=0)
    reset_at = models.DateTimeField(
        help_text="When this period ends and a fresh row takes over.",
    )

    class Meta:
        ordering = ["-usage_date"]
        constraints = [
            models.UniqueConstraint(
                fields=["user", "usage_date", "usage_type"],
                name="billing_usage_unique_user_date_type",
            ),
        ]
        indexes = [
            models.Index(fields=["usage_date"], name="billing_usa_usage_d_1f6e3c_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.user_id}:{self.usage_type}:{self.usage_date}={self.usage_count}"


class AppendOnlyError(Exception):
    """Raised when code tries to rewrite or remove an audit row."""


class UserSubscriptionHistory(models.Model):
    """
    Append-only audit trail, one row per state-machine transition.
    """

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="subscription_history",
    )
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.PROTECT,
        related_name="history",
    )
    transaction = models.ForeignKey(
        Transaction,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="history",
    )
    action_type = models.CharField(max_length=20, choices=HistoryAction.choices)
    old_tier = models.CharField(
        max_length=20,
        choices=SubscriptionTier.choices,
        blank=True,
    )
    new_tier = models.CharField(
        max_length=20,
        choices=SubscriptionTier.choices,
        blank=True,
    )
    amount_charged = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        null=True,
        blank=True,
    )
    proration_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        null=True,
        blank=True,
    )
    notes = models.TextField(blank=True)
    created = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        ordering = ["-created", "-id"]
        verbose_name_plural = "user subscription history"

    def __str__(self) -> str:
        return f"{self.subscription_id}:{self.action_type}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise AppendOnlyError("Subscription history entries cannot be modified.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise AppendOnlyError("Subscription history entries cannot be deleted.")
