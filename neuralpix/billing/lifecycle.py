"""
Subscription state machine.

This is the only code that mutates Subscription rows. Every transition runs
in a short database transaction with the subscription row locked, appends a
UserSubscriptionHistory entry, and schedules a notification for after the
commit.

States: ACTIVE, PAST_DUE, CANCELLED, EXPIRED (the last two terminal).

Renewal is split around the gateway call so no row lock is held while
talking to PayOS:

    1. lock, check the subscription is due, record a PENDING renewal
       transaction for that due date, commit
    2. ask the gateway for a checkout link (no lock)
    3. success: attach the link, the subscription stays ACTIVE
       failure or timeout: mark the transaction failed, move to PAST_DUE

The paid webhook for the renewal transaction then extends ``end_date`` and
``next_billing_date`` by one billing cycle. Both the scheduler and the
webhook compare the transaction's ``billing_period_start`` with the
subscription's current ``next_billing_date``; a mismatch means the cycle was
already renewed and the call is a no-op.

Usage:
    machine = SubscriptionStateMachine()
    result = machine.start_checkout(user, SubscriptionTier.BASIC)
    redirect(result.checkout.checkout_url)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP
from decimal import Decimal
from enum import Enum
from functools import partial
from typing import TYPE_CHECKING

from django.contrib.auth import get_user_model
from django.db import transaction as db_transaction
from django.utils import timezone

from neuralpix.billing.constants import MIN_CHECKOUT_AMOUNT
from neuralpix.billing.constants import TIER_RANK
from neuralpix.billing.constants import BillingCycle
from neuralpix.billing.constants import HistoryAction
from neuralpix.billing.constants import SubscriptionStatus
from neuralpix.billing.constants import SubscriptionTier
from neuralpix.billing.constants import TransactionStatus
from neuralpix.billing.constants import TransactionType
from neuralpix.billing.constants import coerce_choice
from neuralpix.billing.exceptions import BillingValidationError
from neuralpix.billing.exceptions import ConfigurationError
from neuralpix.billing.exceptions import GatewayError
from neuralpix.billing.exceptions import NotFoundError
from neuralpix.billing.gateway import PayOSGateway
from neuralpix.billing.ledger import TransactionLedger
from neuralpix.billing.models import CURRENT_SUBSCRIPTION_STATUSES
from neuralpix.billing.models import Subscription
from neuralpix.billing.models import Transaction
from neuralpix.billing.models import UserSubscriptionHistory
from neuralpix.billing.notifications import NotificationDispatcher
from neuralpix.billing.periods import CYCLE_DURATIONS
from neuralpix.billing.periods import add_billing_cycle
from neuralpix.billing.plans import PlanCatalog

if TYPE_CHECKING:
    from collections.abc import Callable

    from neuralpix.billing.gateway import CheckoutLink
    from neuralpix.billing.plans import PlanLimits

logger = logging.getLogger(__name__)
anomaly_logger = logging.getLogger("neuralpix.billing.anomalies")


class RenewalOutcome(str, Enum):
    CHECKOUT_CREATED = "checkout_created"
    RENEWED = "renewed"
    EXPIRED = "expired"
    PAST_DUE = "past_due"
    SKIPPED = "skipped"


@dataclass
class CheckoutResult:
    """
    Result of starting a payment.

    ``subscription`` is set when no payment was needed (free plans) and the
    subscription was activated straight away.
    """

    transaction: Transaction | None = None
    checkout: CheckoutLink | None = None
    subscription: Subscription | None = None

    @property
    def checkout_url(self) -> str:
        if self.checkout:
            return self.checkout.checkout_url
        return self.transaction.checkout_url if self.transaction else ""


@dataclass
class PlanChangeResult:
    subscription: Subscription
    direction: str
    applied: bool
    transaction: Transaction | None = None
    checkout: CheckoutLink | None = None


class SubscriptionStateMachine:
    """
    Owns subscription status and billing dates.

    Collaborators are constructor arguments so tests can pass a mocked
    gateway and a fixed clock.
    """

    def __init__(
        self,
        ledger: TransactionLedger | None = None,
        gateway: PayOSGateway | None = None,
        notifier: NotificationDispatcher | None = None,
        catalog: PlanCatalog | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.clock = clock or timezone.now
        self.ledger = ledger or TransactionLedger(clock=self.clock)
        self.gateway = gateway or PayOSGateway()
        self.notifier = notifier or NotificationDispatcher()
        self.catalog = catalog or PlanCatalog()

    # ------------------------------------------------------------------
    # Signup and reactivation
    # ------------------------------------------------------------------

    def start_checkout(
        self,
        user,
        tier: str,
        billing_cycle: str = BillingCycle.MONTHLY,
        *,
        auto_renew: bool = True,
    ) -> CheckoutResult:
        """
        Begin a signup (or reactivation) for ``user``.

        Paid plans get a PENDING SUBSCRIPTION_PAYMENT transaction and a
        gateway checkout; the subscription itself is created by the paid
        webhook. Free plans are activated immediately.

        Raises:
            BillingValidationError: bad tier/cycle or a current subscription.
            ConfigurationError: tier missing from the plan table.
            GatewayError: checkout could not be created.
        """
        tier = self._coerce(SubscriptionTier, tier, "tier")
        cycle = self._coerce(BillingCycle, billing_cycle, "billing cycle")
        plan = self.catalog.get(tier)

        if Subscription.objects.current_for(user) is not None:
            raise BillingValidationError(
                "You already have a subscription. Change plan instead.",
                code="subscription_exists",
            )

        price = plan.price_for(cycle)
        if price <= 0:
            with db_transaction.atomic():
                self._lock_user(user.pk)
                if Subscription.objects.current_for(user) is not None:
                    raise BillingValidationError(
                        "You already have a subscription.",
                        code="subscription_exists",
                    )
                subscription = self._activate(
                    user,
                    tier=tier,
                    billing_cycle=cycle,
                    price=price,
                    auto_renew=auto_renew,
                )
            return CheckoutResult(subscription=subscription)

        txn = self.ledger.create_with_new_order_code(
            user=user,
            amount=price,
            transaction_type=TransactionType.SUBSCRIPTION_PAYMENT,
            description=f"NeuralPix {tier.label} - {cycle.label}",
            buyer_email=user.email,
            metadata={
                "tier": tier.value,
                "billing_cycle": cycle.value,
                "auto_renew": auto_renew,
            },
        )
        checkout = self._request_checkout(txn, user)
        return CheckoutResult(transaction=txn, checkout=checkout)

    def _activate(
        self,
        user,
        *,
        tier: str,
        billing_cycle: str,
        price: Decimal,
        auto_renew: bool,
        txn: Transaction | None = None,
    ) -> Subscription:
        now = self.clock()
        end = add_billing_cycle(now, billing_cycle)
        returning = Subscription.objects.filter(user=user).exists()
        subscription = Subscription.objects.create(
            user=user,
            tier=tier,
            status=SubscriptionStatus.ACTIVE,
            billing_cycle=billing_cycle,
            price=price,
            currency=self.ledger.currency,
            auto_renew=auto_renew,
            start_date=now,
            end_date=end,
            next_billing_date=end,
            external_subscription_id=str(txn.order_code) if txn else "",
        )
        if txn is not None:
            Transaction.objects.filter(pk=txn.pk).update(subscription=subscription)
            txn.subscription = subscription

        action = HistoryAction.REACTIVATED if returning else HistoryAction.CREATED
        self._record(
            subscription,
            action,
            new_tier=tier,
            amount_charged=price,
            transaction=txn,
        )
        self._notify(self.notifier.subscription_confirmed, subscription, action)
        logger.info(
            "Subscription=%s %s for user=%s tier=%s",
            subscription.pk,
            action,
            user.pk,
            tier,
        )
        return subscription

    # ------------------------------------------------------------------
    # Ledger outcomes
    # ------------------------------------------------------------------

    @db_transaction.atomic
    def apply_transaction(self, txn: Transaction) -> Subscription | None:
        """
        Apply a transaction that just reached a terminal status.

        Called by the webhook pipeline once per ledger transition. Each branch
        re-checks the subscription so a replay changes nothing.
        """
        status = txn.status_enum
        txn_type = coerce_choice(
            TransactionType,
            txn.transaction_type,
            default=TransactionType.ONE_TIME_PAYMENT,
        )
        if status == TransactionStatus.PAID:
            if txn_type == TransactionType.SUBSCRIPTION_PAYMENT:
                return self._apply_signup(txn)
            if txn_type == TransactionType.SUBSCRIPTION_RENEWAL:
                return self._apply_renewal_paid(txn)
            if txn_type in (
                TransactionType.SUBSCRIPTION_UPGRADE,
                TransactionType.SUBSCRIPTION_DOWNGRADE,
            ):
                return self._apply_plan_change(txn)
            return None

        if (
            status in (TransactionStatus.CANCELLED, TransactionStatus.FAILED)
            and txn_type == TransactionType.SUBSCRIPTION_RENEWAL
        ):
            return self._apply_renewal_failed(txn)
        return None

    def _apply_signup(self, txn: Transaction) -> Subscription | None:
        if txn.subscription_id:
            return txn.subscription

        user = self._lock_user(txn.user_id)
        existing = Subscription.objects.current_for(user)
        if existing is not None:
            anomaly_logger.error(
                "Paid signup order_code=%s for user=%s who already has subscription=%s",
                txn.order_code,
                user.pk,
                existing.pk,
            )
            return existing

        metadata = txn.metadata or {}
        try:
            tier = coerce_choice(SubscriptionTier, metadata.get("tier"), strict=True)
            cycle = coerce_choice(
                BillingCycle,
                metadata.get("billing_cycle", BillingCycle.MONTHLY),
                strict=True,
            )
        except ValueError as exc:
            raise ConfigurationError(
                f"Transaction {txn.order_code} has no valid plan metadata.",
            ) from exc

        return self._activate(
            user,
            tier=tier,
            billing_cycle=cycle,
            price=txn.amount,
            auto_renew=bool(metadata.get("auto_renew", True)),
            txn=txn,
        )

    def _apply_renewal_paid(self, txn: Transaction) -> Subscription:
        subscription = self._lock(txn.subscription_id)
        if (
            subscription.status not in CURRENT_SUBSCRIPTION_STATUSES
            or subscription.archived_at
        ):
            anomaly_logger.error(
                "Renewal order_code=%s paid for closed subscription=%s (%s)",
                txn.order_code,
                subscription.pk,
                subscription.status,
            )
            return subscription

        if subscription.next_billing_date != txn.billing_period_start:
            logger.info(
                "Subscription=%s already renewed past %s, ignoring order_code=%s",
                subscription.pk,
                txn.billing_period_start,
                txn.order_code,
            )
            return subscription

        was_past_due = subscription.status == SubscriptionStatus.PAST_DUE
        self._extend(subscription, price=txn.amount)
        self._record(
            subscription,
            HistoryAction.RENEWED,
            old_tier=subscription.tier,
            new_tier=subscription.tier,
            amount_charged=txn.amount,
            transaction=txn,
            notes="Recovered from past due." if was_past_due else "",
        )
        self._notify(
            self.notifier.subscription_confirmed,
            subscription,
            HistoryAction.RENEWED,
        )
        return subscription

    def _apply_renewal_failed(self, txn: Transaction) -> Subscription:
        subscription = self._lock(txn.subscription_id)
        if subscription.status != SubscriptionStatus.ACTIVE:
            return subscription
        if subscription.next_billing_date != txn.billing_period_start:
            return subscription
        self._mark_past_due(
            subscription,
            reason=txn.failure_reason or f"Renewal payment {txn.status}",
            txn=txn,
        )
        return subscription

    def _apply_plan_change(self, txn: Transaction) -> Subscription:
        subscription = self._lock(txn.subscription_id)
        metadata = txn.metadata or {}
        new_tier = metadata.get("new_tier", "")
        if subscription.tier == new_tier:
            return subscription
        if subscription.status != SubscriptionStatus.ACTIVE:
            anomaly_logger.error(
                "Plan change order_code=%s paid for inactive subscription=%s",
                txn.order_code,
                subscription.pk,
            )
            return subscription
        plan = self.catalog.get(new_tier)
        self._change_tier(
            subscription,
            plan,
            amount_charged=txn.amount,
            proration=Decimal(str(metadata.get("proration_amount", txn.amount))),
            txn=txn,
        )
        return subscription

    # ------------------------------------------------------------------
    # Renewal
    # ------------------------------------------------------------------

    def renew(self, subscription_id: int) -> RenewalOutcome:
        """
        Run the renewal transition for one subscription if it is due.

        Safe to call repeatedly for the same due date.
        """
        now = self.clock()
        with db_transaction.atomic():
            subscription = self._lock(subscription_id)
            due = subscription.next_billing_date
            if (
                subscription.status != SubscriptionStatus.ACTIVE
                or subscription.archived_at
                or due is None
                or due > now
            ):
                return RenewalOutcome.SKIPPED

            if not subscription.auto_renew:
                self._expire(subscription)
                return RenewalOutcome.EXPIRED

            if self.ledger.pending_renewal(subscription, due):
                logger.info(
                    "Renewal checkout already open for subscription=%s due=%s",
                    subscription.pk,
                    due,
                )
                return RenewalOutcome.SKIPPED

            user = (
                get_user_model()
                .objects.filter(pk=subscription.user_id, is_active=True)
                .first()
            )
            if user is None:
                self._mark_past_due(subscription, reason="User account not found.")
                return RenewalOutcome.PAST_DUE

            try:
                plan = self.catalog.get(subscription.tier)
            except ConfigurationError as exc:
                logger.error(
                    "Cannot renew subscription=%s: %s",
                    subscription.pk,
                    exc.detail,
                )
                self._mark_past_due(subscription, reason=exc.detail)
                return RenewalOutcome.PAST_DUE

            amount = plan.price_for(subscription.billing_cycle)
            if amount <= 0:
                self._extend(subscription, price=amount)
                self._record(
                    subscription,
                    HistoryAction.RENEWED,
                    old_tier=subscription.tier,
                    new_tier=subscription.tier,
                    amount_charged=amount,
                )
                return RenewalOutcome.RENEWED

            txn = self.ledger.create_with_new_order_code(
                user=user,
                subscription=subscription,
                amount=amount,
                transaction_type=TransactionType.SUBSCRIPTION_RENEWAL,
                description=(
                    f"Renewal for {subscription.tier_enum.label} subscription - "
                    f"{subscription.billing_cycle_enum.label}"
                ),
                buyer_email=user.email,
                billing_period_start=due,
                metadata={
                    "tier": subscription.tier,
                    "billing_cycle": subscription.billing_cycle,
                },
            )

        # No lock is held across the gateway call.
        try:
            checkout = self.gateway.create_checkout(
                order_code=txn.order_code,
                amount=txn.amount,
                description=txn.description,
                buyer_email=txn.buyer_email or None,
                buyer_name=user.get_full_name() or None,
            )
        except (GatewayError, BillingValidationError) as exc:
            logger.warning(
                "Renewal checkout failed for subscription=%s order_code=%s: %s",
                subscription_id,
                txn.order_code,
                exc.detail,
            )
            with db_transaction.atomic():
                self.ledger.mark_failed(txn.order_code, reason=exc.detail)
                subscription = self._lock(subscription_id)
                if (
                    subscription.status == SubscriptionStatus.ACTIVE
                    and subscription.next_billing_date == due
                ):
                    self._mark_past_due(subscription, reason=exc.detail, txn=txn)
            return RenewalOutcome.PAST_DUE

        self.ledger.attach_checkout(
            txn.order_code,
            checkout.checkout_url,
            checkout.payment_link_id,
        )
        logger.info(
            "Renewal checkout created for subscription=%s order_code=%s",
            subscription_id,
            txn.order_code,
        )
        return RenewalOutcome.CHECKOUT_CREATED

    def retry_payment(self, subscription_id: int) -> CheckoutResult:
        """
        Give a PAST_DUE subscription a fresh renewal checkout.

        Returns the open checkout if one already exists for the due date.
        """
        with db_transaction.atomic():
            subscription = self._lock(subscription_id)
            if subscription.status != SubscriptionStatus.PAST_DUE:
                raise BillingValidationError(
                    "Only past-due subscriptions can retry payment.",
                    code="not_past_due",
                )
            due = subscription.next_billing_date
            pending = self.ledger.pending_renewal(subscription, due)
            if pending is not None and pending.checkout_url:
                return CheckoutResult(transaction=pending)

            plan = self.catalog.get(subscription.tier)
            txn = self.ledger.create_with_new_order_code(
                user=subscription.user,
                subscription=subscription,
                amount=plan.price_for(subscription.billing_cycle),
                transaction_type=TransactionType.SUBSCRIPTION_RENEWAL,
                description=(
                    f"Renewal for {subscription.tier_enum.label} subscription - "
                    f"{subscription.billing_cycle_enum.label}"
                ),
                buyer_email=subscription.user.email,
                billing_period_start=due,
                metadata={
                    "tier": subscription.tier,
                    "billing_cycle": subscription.billing_cycle,
                },
            )
        checkout = self._request_checkout(txn, subscription.user)
        return CheckoutResult(transaction=txn, checkout=checkout)

    def mark_past_due(self, subscription_id: int, reason: str) -> Subscription:
        """Move an ACTIVE subscription to PAST_DUE. No-op in any other state."""
        with db_transaction.atomic():
            subscription = self._lock(subscription_id)
            if subscription.status == SubscriptionStatus.ACTIVE:
                self._mark_past_due(subscription, reason=reason)
            return subscription

    def _extend(self, subscription: Subscription, price: Decimal) -> None:
        now = self.clock()
        base = subscription.next_billing_date or subscription.end_date
        new_end = add_billing_cycle(base, subscription.billing_cycle)
        if new_end <= now:
            # Paid long after the due date: the new period starts today.
            new_end = add_billing_cycle(now, subscription.billing_cycle)
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.end_date = new_end
        subscription.next_billing_date = new_end
        subscription.price = price
        subscription.save(
            update_fields=[
                "status",
                "end_date",
                "next_billing_date",
                "price",
                "modified",
            ],
        )
        logger.info(
            "Subscription=%s renewed until %s",
            subscription.pk,
            new_end,
        )

    def _expire(self, subscription: Subscription) -> None:
        subscription.status = SubscriptionStatus.EXPIRED
        subscription.next_billing_date = None
        subscription.save(update_fields=["status", "next_billing_date", "modified"])
        self._record(
            subscription,
            HistoryAction.EXPIRED,
            old_tier=subscription.tier,
            notes="Auto-renew disabled; expired at period end.",
        )
        self._notify(self.notifier.subscription_expired, subscription)
        logger.info("Subscription=%s expired", subscription.pk)

    def _mark_past_due(
        self,
        subscription: Subscription,
        reason: str,
        txn: Transaction | None = None,
    ) -> None:
        subscription.status = SubscriptionStatus.PAST_DUE
        subscription.save(update_fields=["status", "modified"])
        self._record(
            subscription,
            HistoryAction.PAST_DUE,
            old_tier=subscription.tier,
            new_tier=subscription.tier,
            transaction=txn,
            notes=reason,
        )
        self._notify(self.notifier.payment_failed, subscription, reason)
        logger.warning("Subscription=%s is past due: %s", subscription.pk, reason)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(
        self,
        subscription_id: int,
        *,
        reason: str = "",
        immediately: bool = False,
    ) -> Subscription:
        """
        User-initiated cancellation.

        Immediate cancellation ends the subscription now. Otherwise auto-renew
        is switched off and the renewal rule expires the subscription when
        its period ends. PAST_DUE subscriptions are always cancelled
        immediately.
        """
        with db_transaction.atomic():
            subscription = self._lock(subscription_id)
            self._cancel_locked(subscription, reason=reason, immediately=immediately)
            return subscription

    def _cancel_locked(
        self,
        subscription: Subscription,
        *,
        reason: str,
        immediately: bool,
    ) -> None:
        if subscription.is_terminal:
            raise BillingValidationError(
                "Subscription is already cancelled or expired.",
                code="subscription_closed",
            )
        now = self.clock()
        immediately = immediately or subscription.status == SubscriptionStatus.PAST_DUE

        if not immediately and not subscription.auto_renew and subscription.cancelled_at:
            return

        subscription.auto_renew = False
        subscription.cancelled_at = now
        subscription.cancellation_reason = reason[:500]
        update_fields = ["auto_renew", "cancelled_at", "cancellation_reason", "modified"]
        if immediately:
            subscription.status = SubscriptionStatus.CANCELLED
            subscription.end_date = max(now, subscription.start_date)
            subscription.next_billing_date = None
            update_fields += ["status", "end_date", "next_billing_date"]
            notes = "Cancelled immediately."
        else:
            notes = f"Cancellation scheduled for {subscription.end_date:%Y-%m-%d}."
        subscription.save(update_fields=update_fields)

        if reason:
            notes = f"{notes} Reason: {reason}"
        self._record(
            subscription,
            HistoryAction.CANCELLED,
            old_tier=subscription.tier,
            notes=notes,
        )
        self._notify(self.notifier.subscription_cancelled, subscription)
        logger.info("Subscription=%s cancelled (%s)", subscription.pk, notes)

    def archive(self, subscription_id: int, reason: str = "") -> Subscription:
        """
        Remove a subscription from the user's account while keeping its
        transactions and history for audit. Current subscriptions are
        cancelled first.
        """
        with db_transaction.atomic():
            subscription = self._lock(subscription_id)
            if subscription.archived_at:
                return subscription
            if not subscription.is_terminal:
                self._cancel_locked(
                    subscription,
                    reason=reason or "Archived",
                    immediately=True,
                )
            subscription.archived_at = self.clock()
            subscription.save(update_fields=["archived_at", "modified"])
            logger.info("Subscription=%s archived", subscription.pk)
            return subscription

    # ------------------------------------------------------------------
    # Plan changes
    # ------------------------------------------------------------------

    def start_plan_change(self, subscription_id: int, new_tier: str) -> PlanChangeResult:
        """
        Upgrade or downgrade an ACTIVE subscription.

        Upgrades charge the prorated price difference for the rest of the
        current period through a checkout and are applied by the paid
        webhook. Downgrades (and upgrades with nothing left to charge) are
        applied at once; the price change reaches the next renewal.
        """
        new_tier = self._coerce(SubscriptionTier, new_tier, "tier")
        new_plan = self.catalog.get(new_tier)

        with db_transaction.atomic():
            subscription = self._lock(subscription_id)
            if subscription.status != SubscriptionStatus.ACTIVE:
                raise BillingValidationError(
                    "Only active subscriptions can change plan.",
                    code="subscription_inactive",
                )
            if subscription.tier == new_tier:
                raise BillingValidationError(
                    "Subscription is already on this plan.",
                    code="same_plan",
                )
            old_plan = self.catalog.get(subscription.tier)
            upgrade = TIER_RANK[new_tier] > TIER_RANK[subscription.tier_enum]
            direction = "upgrade" if upgrade else "downgrade"
            proration = self._proration(subscription, old_plan, new_plan)

            if not upgrade or proration <= 0:
                self._change_tier(
                    subscription,
                    new_plan,
                    amount_charged=Decimal(0),
                    proration=proration,
                )
                return PlanChangeResult(
                    subscription=subscription,
                    direction=direction,
                    applied=True,
                )

            txn = self.ledger.create_with_new_order_code(
                user=subscription.user,
                subscription=subscription,
                amount=max(proration, MIN_CHECKOUT_AMOUNT),
                transaction_type=TransactionType.SUBSCRIPTION_UPGRADE,
                description=f"Upgrade to {new_tier.label} subscription",
                buyer_email=subscription.user.email,
                metadata={
                    "old_tier": subscription.tier,
                    "new_tier": new_tier.value,
                    "proration_amount": str(proration),
                },
            )

        checkout = self._request_checkout(txn, subscription.user)
        return PlanChangeResult(
            subscription=subscription,
            direction=direction,
            applied=False,
            transaction=txn,
            checkout=checkout,
        )

    def _proration(
        self,
        subscription: Subscription,
        old_plan: PlanLimits,
        new_plan: PlanLimits,
    ) -> Decimal:
        """Price difference scaled by the unused share of the current period."""
        now = self.clock()
        cycle = subscription.billing_cycle_enum
        period_start = max(
            subscription.end_date - CYCLE_DURATIONS[cycle],
            subscription.start_date,
        )
        total = (subscription.end_date - period_start).total_seconds()
        remaining = (subscription.end_date - now).total_seconds()
        fraction = min(max(remaining / total, 0.0), 1.0) if total > 0 else 0.0
        difference = new_plan.price_for(cycle) - old_plan.price_for(cycle)
        return (difference * Decimal(str(round(fraction, 6)))).quantize(
            Decimal(1),
            rounding=ROUND_HALF_UP,
        )

    def _change_tier(
        self,
        subscription: Subscription,
        plan: PlanLimits,
        *,
        amount_charged: Decimal,
        proration: Decimal,
        txn: Transaction | None = None,
    ) -> None:
        old_tier = subscription.tier
        upgrade = TIER_RANK[plan.tier] > TIER_RANK[subscription.tier_enum]
        subscription.tier = plan.tier
        subscription.price = plan.price_for(subscription.billing_cycle)
        subscription.save(update_fields=["tier", "price", "modified"])
        self._record(
            subscription,
            HistoryAction.UPGRADED if upgrade else HistoryAction.DOWNGRADED,
            old_tier=old_tier,
            new_tier=plan.tier,
            amount_charged=amount_charged,
            proration_amount=proration,
            transaction=txn,
        )
        self._notify(self.notifier.plan_changed, subscription, old_tier)
        logger.info(
            "Subscription=%s changed tier %s -> %s",
            subscription.pk,
            old_tier,
            plan.tier,
        )

    # ------------------------------------------------------------------
    # Checkout cancellation
    # ------------------------------------------------------------------

    def cancel_checkout(self, order_code: int, reason: str = "", user=None) -> Transaction:
        """
        Cancel an open checkout at the gateway and in the ledger.

        ``user`` restricts the lookup to that user's transactions.
        """
        txn = self.ledger.get_by_order_code(order_code)
        if user is not None and txn.user_id != user.pk:
            raise NotFoundError(f"Transaction with order code {order_code} not found.")
        if txn.is_terminal:
            raise BillingValidationError(
                f"Transaction {order_code} is already {txn.status}.",
                code="transaction_closed",
            )

        self.gateway.cancel_checkout(order_code, reason)
        with db_transaction.atomic():
            result = self.ledger.mark_cancelled(order_code, reason)
            if result.applied:
                self.apply_transaction(result.transaction)
        return result.transaction

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _request_checkout(self, txn: Transaction, user) -> CheckoutLink:
        try:
            checkout = self.gateway.create_checkout(
                order_code=txn.order_code,
                amount=txn.amount,
                description=txn.description,
                buyer_email=txn.buyer_email or None,
                buyer_name=user.get_full_name() or None,
            )
        except (GatewayError, BillingValidationError) as exc:
            self.ledger.mark_failed(txn.order_code, reason=exc.detail)
            raise
        self.ledger.attach_checkout(
            txn.order_code,
            checkout.checkout_url,
            checkout.payment_link_id,
        )
        txn.checkout_url = checkout.checkout_url
        txn.payment_link_id = checkout.payment_link_id
        return checkout

    @staticmethod
    def _lock(subscription_id: int) -> Subscription:
        try:
            return Subscription.objects.select_for_update().get(pk=subscription_id)
        except Subscription.DoesNotExist as exc:
            raise NotFoundError(f"Subscription {subscription_id} not found.") from exc

    @staticmethod
    def _lock_user(user_id: int):
        # Serializes concurrent signups for the same user.
        return get_user_model().objects.select_for_update().get(pk=user_id)

    @staticmethod
    def _coerce(choices, value, label: str):
        try:
            return coerce_choice(choices, value, strict=True)
        except ValueError as exc:
            raise BillingValidationError(f"Unknown {label} {value!r}.") from exc

    @staticmethod
    def _record(
        subscription: Subscription,
        action: str,
        *,
        old_tier: str = "",
        new_tier: str = "",
        amount_charged: Decimal | None = None,
        proration_amount: Decimal | None = None,
        transaction: Transaction | None = None,
        notes: str = "",
    ) -> UserSubscriptionHistory:
        return UserSubscriptionHistory.objects.create(
            user_id=subscription.user_id,
            subscription=subscription,
            transaction=transaction,
            action_type=action,
            old_tier=old_tier,
            new_tier=new_tier,
            amount_charged=amount_charged,
            proration_amount=proration_amount,
            notes=notes,
        )

    @staticmethod
    def _notify(callback, *args) -> None:
        db_transaction.on_commit(partial(callback, *args))
