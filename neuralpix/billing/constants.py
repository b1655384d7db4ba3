"""
Billing constants for the subscription and usage-metering engine.

Every enum below is persisted as its lowercase value. Rows written by older
deployments sometimes carry upper-case or retired values, so stored strings
are never trusted directly: ``coerce_choice`` is the single place where a raw
value is turned back into an enum member, and it applies one fallback rule
for values it does not recognise (see its docstring).
"""

from __future__ import annotations

import logging
from decimal import Decimal

from django.conf import settings
from django.db import models
from django.utils.translation import gettext_lazy as _

logger = logging.getLogger(__name__)


class SubscriptionTier(models.TextChoices):
    """
    Named service levels. Limits and prices live in the plan catalog
    (``settings.BILLING_PLANS``), not here.
    """

    FREE = "free", _("Free")
    BASIC = "basic", _("Basic")
    PREMIUM = "premium", _("Premium")


# Used to decide whether a plan change is an upgrade or a downgrade.
TIER_RANK = {
    SubscriptionTier.FREE: 0,
    SubscriptionTier.BASIC: 1,
    SubscriptionTier.PREMIUM: 2,
}


class SubscriptionStatus(models.TextChoices):
    """
    Subscription lifecycle states.

    Flow:
        ACTIVE → ACTIVE (renewal paid, dates extended one cycle)
        ACTIVE → PAST_DUE (renewal checkout failed or payment failed)
        PAST_DUE → ACTIVE (late payment arrives)
        ACTIVE → EXPIRED (renewal due with auto-renew off)
        ACTIVE | PAST_DUE → CANCELLED (user cancels immediately)

    CANCELLED and EXPIRED are terminal. A returning user gets a new record.
    """

    ACTIVE = "active", _("Active")
    PAST_DUE = "past_due", _("Past Due")
    CANCELLED = "cancelled", _("Cancelled")
    EXPIRED = "expired", _("Expired")


TERMINAL_SUBSCRIPTION_STATUSES = frozenset(
    {SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED},
)


class BillingCycle(models.TextChoices):
    MONTHLY = "monthly", _("Monthly")
    YEARLY = "yearly", _("Yearly")


class TransactionStatus(models.TextChoices):
    """
    Ledger status of a single monetary intent.

    A transaction is created PENDING (or PROCESSING while the gateway is
    still settling) and moves exactly once into one of the terminal states.
    """

    PENDING = "pending", _("Pending")
    PROCESSING = "processing", _("Processing")
    PAID = "paid", _("Paid")
    CANCELLED = "cancelled", _("Cancelled")
    FAILED = "failed", _("Failed")
    EXPIRED = "expired", _("Expired")
    REFUNDED = "refunded", _("Refunded")


OPEN_TRANSACTION_STATUSES = frozenset(
    {TransactionStatus.PENDING, TransactionStatus.PROCESSING},
)

TERMINAL_TRANSACTION_STATUSES = frozenset(
    {
        TransactionStatus.PAID,
        TransactionStatus.CANCELLED,
        TransactionStatus.FAILED,
        TransactionStatus.EXPIRED,
        TransactionStatus.REFUNDED,
    },
)


class TransactionType(models.TextChoices):
    SUBSCRIPTION_PAYMENT = "subscription_payment", _("Subscription Payment")
    SUBSCRIPTION_RENEWAL = "subscription_renewal", _("Subscription Renewal")
    SUBSCRIPTION_UPGRADE = "subscription_upgrade", _("Subscription Upgrade")
    SUBSCRIPTION_DOWNGRADE = "subscription_downgrade", _("Subscription Downgrade")
    ONE_TIME_PAYMENT = "one_time_payment", _("One-time Payment")
    REFUND = "refund", _("Refund")


class PaymentMethod(models.TextChoices):
    BANK_TRANSFER = "bank_transfer", _("Bank Transfer")
    CREDIT_CARD = "credit_card", _("Credit Card")
    WALLET = "wallet", _("Wallet")


class UsageType(models.TextChoices):
    """
    Counter types stored in UsageTracking.

    A generation is metered on two axes at once: a DAILY_GENERATION row keyed
    by the calendar day and a MONTHLY_GENERATION row keyed by the first day of
    the month. API_REQUEST is a single daily axis.
    """

    DAILY_GENERATION = "daily_generation", _("Daily Generation")
    MONTHLY_GENERATION = "monthly_generation", _("Monthly Generation")
    API_REQUEST = "api_request", _("API Request")


class HistoryAction(models.TextChoices):
    CREATED = "created", _("Created")
    UPGRADED = "upgraded", _("Upgraded")
    DOWNGRADED = "downgraded", _("Downgraded")
    RENEWED = "renewed", _("Renewed")
    CANCELLED = "cancelled", _("Cancelled")
    REACTIVATED = "reactivated", _("Reactivated")
    EXPIRED = "expired", _("Expired")
    PAST_DUE = "past_due", _("Past Due")


class PaymentStatus(models.TextChoices):
    """Normalized gateway payment vocabulary."""

    PAID = "paid", _("Paid")
    CANCELLED = "cancelled", _("Cancelled")
    FAILED = "failed", _("Failed")
    PENDING = "pending", _("Pending")


PAYMENT_PROVIDER_PAYOS = "payos"
DEFAULT_CURRENCY = "VND"

# Plan limit value meaning "no limit on this axis".
UNLIMITED = -1

# Gateway bounds for a single checkout, in VND.
MIN_CHECKOUT_AMOUNT = Decimal(1_000)
MAX_CHECKOUT_AMOUNT = Decimal(500_000_000)
MAX_CHECKOUT_DESCRIPTION_LENGTH = 255


def coerce_choice(choices, value, *, default=None, strict=None):
    """
    Deserialize a stored value into a member of ``choices``.

    Matching is case-insensitive on the stored value, so legacy rows written
    as ``"ACTIVE"`` resolve to ``SubscriptionStatus.ACTIVE``.

    Fallback rule for anything that still does not match: when strict
    (``settings.BILLING_STRICT_ENUMS``, on in tests) raise ``ValueError``;
    otherwise log a warning and return ``default``. Without a default the
    value is always rejected.
    """
    if isinstance(value, choices):
        return value

    normalized = str(value).strip().lower() if value is not None else ""
    for member in choices:
        if member.value == normalized:
            return member

    if strict is None:
        strict = getattr(settings, "BILLING_STRICT_ENUMS", False)
    if strict or default is None:
        raise ValueError(f"{value!r} is not a valid {choices.__name__}")

    logger.warning(
        "Unknown %s value %r, falling back to %s",
        choices.__name__,
        value,
        default,
    )
    return default
