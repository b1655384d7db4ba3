"""
Transaction ledger.

The ledger owns every Transaction row. Rows are created PENDING and moved
into a terminal status with a compare-and-set UPDATE keyed on the order code
and the expected open status, which gives webhook replays their idempotency:

    ledger = TransactionLedger()
    result = ledger.mark_paid(order_code, PaymentMethod.BANK_TRANSFER)
    result.applied   # True the first time, False on an identical replay

A request to move a transaction that already sits in a *different* terminal
status raises ConflictingTransitionError and is logged on the
``neuralpix.billing.anomalies`` logger for an operator to resolve.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from django.conf import settings
from django.core.paginator import Paginator
from django.db import IntegrityError
from django.db import transaction as db_transaction
from django.db.models import Count
from django.db.models import Sum
from django.db.models.functions import TruncMonth
from django.utils import timezone

from neuralpix.billing.constants import DEFAULT_CURRENCY
from neuralpix.billing.constants import OPEN_TRANSACTION_STATUSES
from neuralpix.billing.constants import PAYMENT_PROVIDER_PAYOS
from neuralpix.billing.constants import PaymentMethod
from neuralpix.billing.constants import TransactionStatus
from neuralpix.billing.constants import TransactionType
from neuralpix.billing.constants import coerce_choice
from neuralpix.billing.exceptions import BillingError
from neuralpix.billing.exceptions import BillingValidationError
from neuralpix.billing.exceptions import ConflictingTransitionError
from neuralpix.billing.exceptions import DuplicateOrderCodeError
from neuralpix.billing.exceptions import NotFoundError
from neuralpix.billing.models import Transaction

if TYPE_CHECKING:
    from collections.abc import Callable

    from django.core.paginator import Page

    from neuralpix.billing.models import Subscription

logger = logging.getLogger(__name__)
anomaly_logger = logging.getLogger("neuralpix.billing.anomalies")

DEFAULT_CANCEL_REASON = "Payment cancelled by user"
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
ORDER_CODE_MINT_ATTEMPTS = 5


@dataclass
class LedgerTransition:
    """Outcome of a mark_* call. ``applied`` is False for idempotent replays."""

    transaction: Transaction
    applied: bool


class TransactionLedger:
    """Append-mostly record of monetary intents and their outcomes."""

    def __init__(
        self,
        currency: str | None = None,
        payment_provider: str = PAYMENT_PROVIDER_PAYOS,
        clock: Callable[[], datetime] | None = None,
    ):
        self.currency = currency or getattr(
            settings,
            "BILLING_CURRENCY",
            DEFAULT_CURRENCY,
        )
        self.payment_provider = payment_provider
        self.clock = clock or timezone.now

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def mint_order_code(self) -> int:
        """
        Return an order code not yet present in the ledger.

        Codes are millisecond timestamps with three random digits appended,
        which keeps them positive, roughly ordered, and inside the gateway's
        53-bit integer range.
        """
        for _attempt in range(ORDER_CODE_MINT_ATTEMPTS):
            millis = int(self.clock().timestamp() * 1000)
            candidate = millis * 1000 + secrets.randbelow(1000)
            if not Transaction.objects.filter(order_code=candidate).exists():
                return candidate
        raise DuplicateOrderCodeError(candidate)

    def create_transaction(
        self,
        *,
        order_code: int,
        user,
        amount: Decimal,
        transaction_type: str,
        description: str = "",
        buyer_email: str = "",
        subscription: Subscription | None = None,
        billing_period_start: datetime | None = None,
        metadata: dict | None = None,
    ) -> Transaction:
        """
        Record a new PENDING transaction.

        Raises:
            BillingValidationError: for a bad order code, amount or type.
            DuplicateOrderCodeError: if the order code is already used.
        """
        if not isinstance(order_code, int) or order_code <= 0:
            raise BillingValidationError("Order code must be a positive integer.")
        amount = Decimal(str(amount))
        if amount < 0:
            raise BillingValidationError("Amount cannot be negative.")
        try:
            transaction_type = coerce_choice(TransactionType, transaction_type, strict=True)
        except ValueError as exc:
            raise BillingValidationError(str(exc)) from exc

        if Transaction.objects.filter(order_code=order_code).exists():
            raise DuplicateOrderCodeError(order_code)

        now = self.clock()
        try:
            with db_transaction.atomic():
                txn = Transaction.objects.create(
                    created=now,
                    modified=now,
                    order_code=order_code,
                    user=user,
                    subscription=subscription,
                    amount=amount,
                    currency=self.currency,
                    status=TransactionStatus.PENDING,
                    transaction_type=transaction_type,
                    payment_provider=self.payment_provider,
                    description=description[:500],
                    buyer_email=buyer_email or "",
                    billing_period_start=billing_period_start,
                    metadata=metadata or {},
                )
        except IntegrityError as exc:
            # Lost a race against a concurrent insert of the same code.
            raise DuplicateOrderCodeError(order_code) from exc

        logger.info(
            "Created %s transaction order_code=%s user=%s amount=%s",
            transaction_type,
            order_code,
            user.pk,
            amount,
        )
        return txn

    def create_with_new_order_code(self, **fields) -> Transaction:
        """
        Mint an order code and record a PENDING transaction under it.

        A code claimed by a concurrent insert between minting and inserting
        is re-minted once; a second collision raises DuplicateOrderCodeError.
        """
        order_code = self.mint_order_code()
        try:
            return self.create_transaction(order_code=order_code, **fields)
        except DuplicateOrderCodeError:
            logger.warning("Order code %s was taken concurrently, minting another", order_code)
        return self.create_transaction(order_code=self.mint_order_code(), **fields)

    def attach_checkout(
        self,
        order_code: int,
        checkout_url: str,
        payment_link_id: str = "",
    ) -> None:
        Transaction.objects.filter(order_code=order_code).update(
            checkout_url=checkout_url,
            payment_link_id=payment_link_id,
            modified=self.clock(),
        )

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def mark_paid(
        self,
        order_code: int,
        payment_method: str = PaymentMethod.BANK_TRANSFER,
        reference: str = "",
    ) -> LedgerTransition:
        now = self.clock()
        return self._transition(
            order_code,
            TransactionStatus.PAID,
            payment_method=payment_method or "",
            gateway_reference=reference[:100],
            paid_at=now,
        )

    def mark_cancelled(self, order_code: int, reason: str = "") -> LedgerTransition:
        return self._transition(
            order_code,
            TransactionStatus.CANCELLED,
            failure_reason=(reason or DEFAULT_CANCEL_REASON)[:500],
        )

    def mark_failed(self, order_code: int, reason: str = "") -> LedgerTransition:
        return self._transition(
            order_code,
            TransactionStatus.FAILED,
            failure_reason=(reason or "Payment failed")[:500],
        )

    def _transition(self, order_code: int, target: str, **fields) -> LedgerTransition:
        """
        Compare-and-set ``order_code`` from an open status into ``target``.

        Raises:
            NotFoundError: unknown order code.
            ConflictingTransitionError: already in a different terminal status.
        """
        updated = Transaction.objects.filter(
            order_code=order_code,
            status__in=OPEN_TRANSACTION_STATUSES,
        ).update(status=target, modified=self.clock(), **fields)

        try:
            txn = Transaction.objects.get(order_code=order_code)
        except Transaction.DoesNotExist as exc:
            raise NotFoundError(
                f"Transaction with order code {order_code} not found.",
            ) from exc

        if updated:
            logger.info("Transaction order_code=%s marked %s", order_code, target)
            return LedgerTransition(transaction=txn, applied=True)

        if txn.status == target:
            logger.info(
                "Transaction order_code=%s already %s, ignoring replay",
                order_code,
                target,
            )
            return LedgerTransition(transaction=txn, applied=False)

        anomaly_logger.error(
            "Conflicting transition for order_code=%s: current=%s requested=%s",
            order_code,
            txn.status,
            target,
        )
        raise ConflictingTransitionError(order_code, txn.status, target)

    def expire_pending_older_than(
        self,
        duration: timedelta,
        on_expired: Callable[[Transaction], object] | None = None,
    ) -> int:
        """
        Cancel PENDING transactions created before ``now - duration``.

        Each row gets its own compare-and-set UPDATE, so a row paid while the
        run is in progress is left alone. ``on_expired`` receives every
        transaction this run cancelled, inside the same database transaction
        as the UPDATE. If it raises a BillingError the row stays PENDING and
        is picked up again by the next run.

        Returns:
            Number of transactions cancelled.
        """
        cutoff = self.clock() - duration
        hours = int(duration.total_seconds() // 3600)
        reason = f"Expired - automatically cancelled after {hours} hours"
        order_codes = list(
            Transaction.objects.filter(
                status=TransactionStatus.PENDING,
                created__lt=cutoff,
            )
            .order_by("created", "id")
            .values_list("order_code", flat=True),
        )

        count = 0
        for order_code in order_codes:
            try:
                with db_transaction.atomic():
                    updated = Transaction.objects.filter(
                        order_code=order_code,
                        status=TransactionStatus.PENDING,
                    ).update(
                        status=TransactionStatus.CANCELLED,
                        failure_reason=reason,
                        modified=self.clock(),
                    )
                    if updated and on_expired is not None:
                        on_expired(Transaction.objects.get(order_code=order_code))
            except BillingError as exc:
                anomaly_logger.error(
                    "Expired order_code=%s could not be applied: %s",
                    order_code,
                    exc.detail,
                )
                continue
            count += updated

        logger.info("Cancelled %d pending transactions older than %s", count, cutoff)
        return count

    def count_expirable(self, duration: timedelta) -> int:
        return Transaction.objects.filter(
            status=TransactionStatus.PENDING,
            created__lt=self.clock() - duration,
        ).count()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, transaction_id: int) -> Transaction:
        try:
            return Transaction.objects.get(pk=transaction_id)
        except Transaction.DoesNotExist as exc:
            raise NotFoundError(f"Transaction {transaction_id} not found.") from exc

    def get_by_order_code(self, order_code: int) -> Transaction:
        try:
            return Transaction.objects.get(order_code=order_code)
        except Transaction.DoesNotExist as exc:
            raise NotFoundError(
                f"Transaction with order code {order_code} not found.",
            ) from exc

    def for_user(
        self,
        user,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        **filters,
    ) -> Page:
        page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        queryset = self.filter(user=user, **filters)
        return Paginator(queryset, page_size).get_page(page)

    def for_subscription(self, subscription: Subscription):
        return Transaction.objects.filter(subscription=subscription).order_by("-created")

    def filter(
        self,
        *,
        user=None,
        status: str | None = None,
        transaction_type: str | None = None,
        subscription_id: int | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ):
        queryset = Transaction.objects.all()
        if user is not None:
            queryset = queryset.filter(user=user)
        if status:
            queryset = queryset.filter(status=status)
        if transaction_type:
            queryset = queryset.filter(transaction_type=transaction_type)
        if subscription_id:
            queryset = queryset.filter(subscription_id=subscription_id)
        if start:
            queryset = queryset.filter(created__gte=start)
        if end:
            queryset = queryset.filter(created__lt=end)
        return queryset.order_by("-created", "-id")

    def between(self, start: datetime, end: datetime):
        return self.filter(start=start, end=end)

    def latest_for_user(self, user, transaction_type: str) -> Transaction | None:
        return self.filter(user=user, transaction_type=transaction_type).first()

    def pending_renewal(self, subscription: Subscription, period_start: datetime):
        return Transaction.objects.filter(
            subscription=subscription,
            transaction_type=TransactionType.SUBSCRIPTION_RENEWAL,
            billing_period_start=period_start,
            status__in=OPEN_TRANSACTION_STATUSES,
        ).first()

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def revenue_by_status(self) -> dict[str, Decimal]:
        rows = Transaction.objects.values("status").annotate(total=Sum("amount"))
        return {row["status"]: row["total"] or Decimal(0) for row in rows}

    def total_revenue(self, status: str = TransactionStatus.PAID) -> Decimal:
        total = Transaction.objects.filter(status=status).aggregate(total=Sum("amount"))
        return total["total"] or Decimal(0)

    def count_by_status(self) -> dict[str, int]:
        rows = Transaction.objects.values("status").annotate(count=Count("id"))
        return {row["status"]: row["count"] for row in rows}

    def monthly_revenue(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[dict]:
        """Paid revenue grouped by calendar month of payment, oldest first."""
        queryset = Transaction.objects.filter(
            status=TransactionStatus.PAID,
            paid_at__isnull=False,
        )
        if start:
            queryset = queryset.filter(paid_at__gte=start)
        if end:
            queryset = queryset.filter(paid_at__lt=end)
        rows = (
            queryset.annotate(month=TruncMonth("paid_at"))
            .values("month")
            .annotate(total=Sum("amount"), count=Count("id"))
            .order_by("month")
        )
        return [
            {
                "month": row["month"].date().replace(day=1)
                if isinstance(row["month"], datetime)
                else row["month"],
                "total": row["total"] or Decimal(0),
                "count": row["count"],
            }
            for row in rows
        ]
