"""
Renewal and cleanup scheduler.

``BillingScheduler`` holds the three time-driven billing jobs. It takes a
clock so tests can run a "tick" at any moment without patching time, and it
only talks to the state machine, ledger and quota tracker through their
public methods.

The jobs are triggered by Celery beat (see tasks.py and schedules.py) via
management commands, and each one is safe to re-run:

- ``run_renewals``: daily, renews every ACTIVE subscription that is due
- ``expire_pending_transactions``: hourly, cancels stale PENDING transactions
  and moves subscriptions with an expired renewal checkout to PAST_DUE
- ``purge_usage_records``: weekly, deletes usage rows past retention
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.utils import timezone

from neuralpix.billing.ledger import TransactionLedger
from neuralpix.billing.lifecycle import RenewalOutcome
from neuralpix.billing.lifecycle import SubscriptionStateMachine
from neuralpix.billing.metering import UsageQuotaTracker
from neuralpix.billing.models import Subscription
from neuralpix.billing.periods import subtract_months

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


@dataclass
class RenewalRunResult:
    due: int = 0
    outcomes: Counter = field(default_factory=Counter)
    errors: list[tuple[int, str]] = field(default_factory=list)

    def count(self, outcome: RenewalOutcome) -> int:
        return self.outcomes[outcome]

    def summary(self) -> str:
        parts = [f"{outcome.value}={self.outcomes[outcome]}" for outcome in RenewalOutcome]
        parts.append(f"errors={len(self.errors)}")
        return f"due={self.due} " + " ".join(parts)


class BillingScheduler:
    def __init__(
        self,
        state_machine: SubscriptionStateMachine | None = None,
        ledger: TransactionLedger | None = None,
        quota_tracker: UsageQuotaTracker | None = None,
        clock: Callable[[], datetime] | None = None,
        pending_ttl: timedelta | None = None,
        usage_retention_months: int | None = None,
    ):
        self.clock = clock or timezone.now
        self.ledger = ledger or TransactionLedger(clock=self.clock)
        self.state_machine = state_machine or SubscriptionStateMachine(
            ledger=self.ledger,
            clock=self.clock,
        )
        self.quota_tracker = quota_tracker or UsageQuotaTracker(clock=self.clock)
        self.pending_ttl = pending_ttl or timedelta(
            hours=settings.BILLING_PENDING_TRANSACTION_TTL_HOURS,
        )
        self.usage_retention_months = (
            usage_retention_months
            if usage_retention_months is not None
            else settings.BILLING_USAGE_RETENTION_MONTHS
        )

    def due_subscription_ids(self) -> list[int]:
        return list(
            Subscription.objects.due_for_renewal(self.clock())
            .order_by("next_billing_date", "id")
            .values_list("id", flat=True),
        )

    def run_renewals(self) -> RenewalRunResult:
        """
        Renew every due subscription, one transition each.

        A failure for one subscription is logged, the subscription is moved
        to PAST_DUE where possible, and the run carries on with the rest.
        """
        result = RenewalRunResult()
        subscription_ids = self.due_subscription_ids()
        result.due = len(subscription_ids)

        for subscription_id in subscription_ids:
            try:
                outcome = self.state_machine.renew(subscription_id)
            except Exception as exc:
                logger.exception("Renewal failed for subscription=%s", subscription_id)
                result.errors.append((subscription_id, str(exc)))
                self._park_past_due(subscription_id, str(exc))
                continue
            result.outcomes[outcome] += 1

        logger.info("Renewal run finished: %s", result.summary())
        return result

    def _park_past_due(self, subscription_id: int, reason: str) -> None:
        try:
            self.state_machine.mark_past_due(subscription_id, f"Renewal error: {reason}")
        except Exception:
            logger.exception(
                "Could not move subscription=%s to past due after renewal error",
                subscription_id,
            )

    def expire_pending_transactions(self) -> int:
        """
        Cancel stale PENDING transactions and apply each cancellation.

        An expired renewal checkout counts as an unpaid renewal, so its
        subscription moves to PAST_DUE in the same database transaction.
        """
        return self.ledger.expire_pending_older_than(
            self.pending_ttl,
            on_expired=self.state_machine.apply_transaction,
        )

    def count_expirable_transactions(self) -> int:
        return self.ledger.count_expirable(self.pending_ttl)

    def usage_cutoff(self):
        today = timezone.localdate(self.clock())
        return subtract_months(today, self.usage_retention_months)

    def purge_usage_records(self) -> int:
        return self.quota_tracker.purge_records_before(self.usage_cutoff())
