from datetime import date
from datetime import timedelta

from django.test import TestCase

from neuralpix.billing.constants import HistoryAction
from neuralpix.billing.constants import SubscriptionStatus
from neuralpix.billing.constants import SubscriptionTier
from neuralpix.billing.constants import TransactionStatus
from neuralpix.billing.lifecycle import RenewalOutcome
from neuralpix.billing.lifecycle import SubscriptionStateMachine
from neuralpix.billing.metering import UsageQuotaTracker
from neuralpix.billing.models import Subscription
from neuralpix.billing.models import Transaction
from neuralpix.billing.models import UsageTracking
from neuralpix.billing.scheduler import BillingScheduler
from neuralpix.billing.tests.factories import SubscriptionFactory
from neuralpix.billing.tests.factories import TransactionFactory
from neuralpix.billing.tests.factories import UsageTrackingFactory
from neuralpix.billing.tests.helpers import FrozenClock
from neuralpix.billing.tests.helpers import at
from neuralpix.billing.tests.helpers import mock_gateway


class RenewalRunTests(TestCase):
    def setUp(self):
        self.clock = FrozenClock(at(2024, 3, 1, 1))
        self.gateway = mock_gateway()
        self.machine = SubscriptionStateMachine(gateway=self.gateway, clock=self.clock)
        self.scheduler = BillingScheduler(state_machine=self.machine, clock=self.clock)

    def make_due(self, **kwargs):
        return SubscriptionFactory(
            start_date=at(2024, 2, 1),
            end_date=at(2024, 3, 1),
            next_billing_date=at(2024, 3, 1),
            **kwargs,
        )

    def test_only_active_due_subscriptions_are_selected(self):
        due = self.make_due()
        self.make_due(status=SubscriptionStatus.PAST_DUE)
        SubscriptionFactory(
            start_date=at(2024, 2, 20),
            end_date=at(2024, 3, 20),
            next_billing_date=at(2024, 3, 20),
        )

        self.assertEqual(self.scheduler.due_subscription_ids(), [due.pk])

    def test_one_failure_does_not_stop_the_run(self):
        broken = self.make_due()
        healthy = self.make_due()
        real_renew = self.machine.renew

        def renew(subscription_id):
            if subscription_id == broken.pk:
                raise RuntimeError("boom")
            return real_renew(subscription_id)

        self.machine.renew = renew

        with self.assertLogs("neuralpix.billing.scheduler", level="ERROR"):
            result = self.scheduler.run_renewals()

        self.assertEqual(result.due, 2)
        self.assertEqual(result.errors, [(broken.pk, "boom")])
        self.assertEqual(result.count(RenewalOutcome.CHECKOUT_CREATED), 1)
        self.assertEqual(
            result.summary(),
            "due=2 checkout_created=1 renewed=0 expired=0 past_due=0 skipped=0 errors=1",
        )
        broken.refresh_from_db()
        healthy.refresh_from_db()
        self.assertEqual(broken.status, SubscriptionStatus.PAST_DUE)
        self.assertEqual(broken.history.get().notes, "Renewal error: boom")
        self.assertEqual(healthy.status, SubscriptionStatus.ACTIVE)
        self.assertTrue(Transaction.objects.filter(subscription=healthy).exists())

    def test_rerun_creates_no_duplicate_checkouts(self):
        self.make_due()

        self.scheduler.run_renewals()
        second = self.scheduler.run_renewals()

        self.assertEqual(second.count(RenewalOutcome.SKIPPED), 1)
        self.assertEqual(Transaction.objects.count(), 1)

    def test_unpaid_renewal_checkout_expires_into_past_due(self):
        subscription = self.make_due()
        self.scheduler.run_renewals()

        self.clock.advance(timedelta(hours=25))
        self.assertEqual(self.scheduler.expire_pending_transactions(), 1)

        subscription.refresh_from_db()
        self.assertEqual(subscription.status, SubscriptionStatus.PAST_DUE)
        self.assertEqual(subscription.next_billing_date, at(2024, 3, 1))
        entry = subscription.history.get()
        self.assertEqual(entry.action_type, HistoryAction.PAST_DUE)
        self.assertEqual(entry.notes, "Expired - automatically cancelled after 24 hours")
        self.assertEqual(entry.transaction, Transaction.objects.get())

        plan = UsageQuotaTracker(clock=self.clock).resolve_plan(subscription.user)
        self.assertEqual(plan.tier, SubscriptionTier.FREE)

        # Later daily runs leave the past-due subscription alone.
        for _ in range(3):
            self.clock.advance(timedelta(days=1))
            self.assertEqual(self.scheduler.run_renewals().due, 0)
        self.assertEqual(Transaction.objects.count(), 1)
        self.gateway.create_checkout.assert_called_once()

    def test_expiry_leaves_a_renewed_subscription_active(self):
        subscription = self.make_due()
        self.scheduler.run_renewals()
        Subscription.objects.filter(pk=subscription.pk).update(
            next_billing_date=at(2024, 4, 1),
            end_date=at(2024, 4, 1),
        )

        self.clock.advance(timedelta(hours=25))
        self.assertEqual(self.scheduler.expire_pending_transactions(), 1)

        subscription.refresh_from_db()
        self.assertEqual(subscription.status, SubscriptionStatus.ACTIVE)
        self.assertFalse(subscription.history.exists())


class CleanupJobTests(TestCase):
    def test_expire_pending_transactions_uses_ttl(self):
        now = at(2024, 3, 2, 12)
        scheduler = BillingScheduler(clock=FrozenClock(now), pending_ttl=timedelta(hours=6))
        old = TransactionFactory()
        recent = TransactionFactory()
        Transaction.objects.filter(pk=old.pk).update(created=now - timedelta(hours=7))
        Transaction.objects.filter(pk=recent.pk).update(created=now - timedelta(hours=5))

        self.assertEqual(scheduler.count_expirable_transactions(), 1)
        self.assertEqual(scheduler.expire_pending_transactions(), 1)

        old.refresh_from_db()
        recent.refresh_from_db()
        self.assertEqual(old.status, TransactionStatus.CANCELLED)
        self.assertEqual(recent.status, TransactionStatus.PENDING)

    def test_usage_cutoff_and_purge(self):
        # 2024-03-10 12:00 local time.
        scheduler = BillingScheduler(clock=FrozenClock(at(2024, 3, 10, 5)))
        UsageTrackingFactory(usage_date=date(2023, 12, 9))
        kept = UsageTrackingFactory(usage_date=date(2023, 12, 10))

        self.assertEqual(scheduler.usage_cutoff(), date(2023, 12, 10))
        self.assertEqual(scheduler.purge_usage_records(), 1)
        self.assertEqual(list(UsageTracking.objects.all()), [kept])

    def test_retention_override(self):
        scheduler = BillingScheduler(
            clock=FrozenClock(at(2024, 3, 10, 5)),
            usage_retention_months=1,
        )

        self.assertEqual(scheduler.usage_cutoff(), date(2024, 2, 10))
