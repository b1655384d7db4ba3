"""
Tests for usage quota tracking.

Covers the two generation axes (daily and monthly), the API request axis,
the default tier for users without a subscription, fail-closed behaviour on
plan configuration errors, and parallel recording against one counter.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from datetime import timedelta

from django.db import connection
from django.test import TestCase
from django.test import TransactionTestCase
from django.test import skipUnlessDBFeature

from neuralpix.billing.constants import SubscriptionStatus
from neuralpix.billing.constants import SubscriptionTier
from neuralpix.billing.constants import UsageType
from neuralpix.billing.exceptions import BillingValidationError
from neuralpix.billing.metering import REASON_ALLOWED
from neuralpix.billing.metering import REASON_API_EXCEEDED
from neuralpix.billing.metering import REASON_BOTH_EXCEEDED
from neuralpix.billing.metering import REASON_CONFIGURATION
from neuralpix.billing.metering import REASON_DAILY_EXCEEDED
from neuralpix.billing.metering import REASON_MONTHLY_EXCEEDED
from neuralpix.billing.metering import REASON_NO_SUBSCRIPTION
from neuralpix.billing.metering import UsageQuotaTracker
from neuralpix.billing.models import UsageTracking
from neuralpix.billing.plans import PlanCatalog
from neuralpix.billing.tests.factories import SubscriptionFactory
from neuralpix.billing.tests.factories import UsageTrackingFactory
from neuralpix.billing.tests.factories import UserFactory
from neuralpix.billing.tests.helpers import FrozenClock
from neuralpix.billing.tests.helpers import at

# 2024-03-10 12:00 in Asia/Ho_Chi_Minh.
NOW = at(2024, 3, 10, 5, 0)
TODAY = date(2024, 3, 10)
MONTH = date(2024, 3, 1)


class UsageQuotaTrackerTests(TestCase):
    @classmethod
    def setUpTestData(cls):
        cls.user = UserFactory(username="metered")

    def setUp(self):
        self.clock = FrozenClock(NOW)
        self.tracker = UsageQuotaTracker(clock=self.clock)

    def _count(self, usage_type, usage_date, user=None):
        row = UsageTracking.objects.filter(
            user=user or self.user,
            usage_type=usage_type,
            usage_date=usage_date,
        ).first()
        return row.usage_count if row else 0

    def test_user_without_subscription_is_metered_on_free_tier(self):
        decision = self.tracker.check(self.user, UsageType.DAILY_GENERATION)

        self.assertTrue(decision.allowed)
        self.assertEqual(decision.reason, REASON_ALLOWED)
        self.assertEqual(decision.message, "Generation allowed")
        self.assertEqual(self.tracker.resolve_plan(self.user).tier, SubscriptionTier.FREE)

    def test_record_consumption_increments_both_generation_axes(self):
        for _ in range(3):
            self.assertTrue(
                self.tracker.record_consumption(self.user, UsageType.DAILY_GENERATION).allowed,
            )

        self.assertEqual(self._count(UsageType.DAILY_GENERATION, TODAY), 3)
        self.assertEqual(self._count(UsageType.MONTHLY_GENERATION, MONTH), 3)

    def test_monthly_generation_type_checks_the_same_axes(self):
        self.tracker.record_consumption(self.user, UsageType.MONTHLY_GENERATION)

        self.assertEqual(self._count(UsageType.DAILY_GENERATION, TODAY), 1)
        self.assertEqual(self._count(UsageType.MONTHLY_GENERATION, MONTH), 1)

    def test_daily_limit_denies_and_records_nothing(self):
        # Free tier: 5 per day.
        for _ in range(5):
            self.tracker.record_consumption(self.user, UsageType.DAILY_GENERATION)

        decision = self.tracker.record_consumption(self.user, UsageType.DAILY_GENERATION)

        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reason, REASON_DAILY_EXCEEDED)
        self.assertEqual(decision.message, "Daily limit exceeded")
        self.assertEqual(self._count(UsageType.DAILY_GENERATION, TODAY), 5)
        self.assertEqual(self._count(UsageType.MONTHLY_GENERATION, MONTH), 5)
        self.assertFalse(self.tracker.can_consume(self.user, UsageType.DAILY_GENERATION))

    def test_monthly_limit_denies_and_rolls_back_daily_increment(self):
        UsageTrackingFactory(
            user=self.user,
            usage_type=UsageType.MONTHLY_GENERATION,
            usage_date=MONTH,
            usage_count=50,
        )

        decision = self.tracker.record_consumption(self.user, UsageType.DAILY_GENERATION)

        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reason, REASON_MONTHLY_EXCEEDED)
        self.assertEqual(self._count(UsageType.DAILY_GENERATION, TODAY), 0)
        self.assertEqual(self._count(UsageType.MONTHLY_GENERATION, MONTH), 50)

    def test_check_reports_both_axes_exceeded(self):
        UsageTrackingFactory(
            user=self.user,
            usage_type=UsageType.DAILY_GENERATION,
            usage_date=TODAY,
            usage_count=5,
        )
        UsageTrackingFactory(
            user=self.user,
            usage_type=UsageType.MONTHLY_GENERATION,
            usage_date=MONTH,
            usage_count=50,
        )

        decision = self.tracker.check(self.user, UsageType.DAILY_GENERATION)

        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reason, REASON_BOTH_EXCEEDED)
        self.assertEqual(
            decision.exceeded,
            [UsageType.DAILY_GENERATION, UsageType.MONTHLY_GENERATION],
        )

    def test_counts_never_pass_the_limit(self):
        results = [
            self.tracker.record_consumption(self.user, UsageType.DAILY_GENERATION).allowed
            for _ in range(8)
        ]

        self.assertEqual(results.count(True), 5)
        self.assertEqual(self._count(UsageType.DAILY_GENERATION, TODAY), 5)

    def test_new_day_starts_a_fresh_daily_count(self):
        for _ in range(5):
            self.tracker.record_consumption(self.user, UsageType.DAILY_GENERATION)
        self.assertFalse(self.tracker.can_consume(self.user, UsageType.DAILY_GENERATION))

        self.clock.advance(timedelta(days=1))

        self.assertTrue(self.tracker.can_consume(self.user, UsageType.DAILY_GENERATION))
        self.tracker.record_consumption(self.user, UsageType.DAILY_GENERATION)
        self.assertEqual(self._count(UsageType.DAILY_GENERATION, date(2024, 3, 11)), 1)
        self.assertEqual(self._count(UsageType.MONTHLY_GENERATION, MONTH), 6)

    def test_active_subscription_tier_is_used(self):
        user = UserFactory(username="premium-user")
        SubscriptionFactory(user=user, tier=SubscriptionTier.PREMIUM)
        UsageTrackingFactory(
            user=user,
            usage_type=UsageType.MONTHLY_GENERATION,
            usage_date=MONTH,
            usage_count=100_000,
        )

        # Premium has an unlimited monthly axis.
        decision = self.tracker.record_consumption(user, UsageType.DAILY_GENERATION)

        self.assertTrue(decision.allowed)
        self.assertEqual(self._count(UsageType.MONTHLY_GENERATION, MONTH, user), 100_001)

    def test_past_due_subscription_falls_back_to_default_tier(self):
        user = UserFactory(username="past-due-user")
        SubscriptionFactory(
            user=user,
            tier=SubscriptionTier.PREMIUM,
            status=SubscriptionStatus.PAST_DUE,
        )

        self.assertEqual(self.tracker.resolve_plan(user).tier, SubscriptionTier.FREE)

    def test_no_default_tier_denies_users_without_subscription(self):
        tracker = UsageQuotaTracker(clock=self.clock, default_tier="")

        decision = tracker.record_consumption(self.user, UsageType.DAILY_GENERATION)

        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reason, REASON_NO_SUBSCRIPTION)
        self.assertEqual(decision.message, "No active subscription")
        self.assertFalse(UsageTracking.objects.filter(user=self.user).exists())

    def test_unconfigured_tier_fails_closed(self):
        user = UserFactory(username="misconfigured")
        SubscriptionFactory(user=user, tier=SubscriptionTier.BASIC)
        tracker = UsageQuotaTracker(
            catalog=PlanCatalog(
                {"free": {"daily_generation_limit": 5, "monthly_generation_limit": 50}},
            ),
            clock=self.clock,
        )

        with self.assertLogs("neuralpix.billing.metering", level="ERROR"):
            decision = tracker.record_consumption(user, UsageType.DAILY_GENERATION)

        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reason, REASON_CONFIGURATION)
        self.assertFalse(UsageTracking.objects.filter(user=user).exists())

    def test_api_requests_denied_without_api_access(self):
        decision = self.tracker.check(self.user, UsageType.API_REQUEST)

        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reason, REASON_API_EXCEEDED)

    def test_api_requests_counted_for_premium(self):
        user = UserFactory(username="api-user")
        SubscriptionFactory(user=user, tier=SubscriptionTier.PREMIUM)

        decision = self.tracker.record_consumption(user, UsageType.API_REQUEST)

        self.assertTrue(decision.allowed)
        self.assertEqual(self._count(UsageType.API_REQUEST, TODAY, user), 1)
        self.assertEqual(self._count(UsageType.DAILY_GENERATION, TODAY, user), 0)

    def test_unknown_usage_type_is_a_validation_error(self):
        with self.assertRaises(BillingValidationError):
            self.tracker.check(self.user, "video_generation")

    def test_usage_summary(self):
        for _ in range(2):
            self.tracker.record_consumption(self.user, UsageType.DAILY_GENERATION)

        summary = self.tracker.usage_summary(self.user)

        self.assertEqual(summary["tier"], SubscriptionTier.FREE)
        self.assertTrue(summary["can_generate"])
        self.assertEqual(summary["daily"]["used"], 2)
        self.assertEqual(summary["daily"]["limit"], 5)
        self.assertEqual(summary["daily"]["remaining"], 3)
        self.assertEqual(summary["monthly"]["remaining"], 48)
        self.assertFalse(summary["monthly"]["unlimited"])
        self.assertEqual(summary["api_requests"]["limit"], 0)
        self.assertEqual(summary["daily"]["resets_at"].date(), date(2024, 3, 11))

    def test_usage_summary_without_plan(self):
        tracker = UsageQuotaTracker(clock=self.clock, default_tier="")

        summary = tracker.usage_summary(self.user)

        self.assertIsNone(summary["tier"])
        self.assertFalse(summary["can_generate"])
        self.assertEqual(summary["message"], "No active subscription")

    def test_purge_records_before_cutoff(self):
        UsageTrackingFactory(user=self.user, usage_date=date(2023, 11, 30), usage_count=3)
        UsageTrackingFactory(
            user=self.user,
            usage_type=UsageType.MONTHLY_GENERATION,
            usage_date=date(2023, 11, 1),
            usage_count=9,
        )
        kept = UsageTrackingFactory(user=self.user, usage_date=date(2023, 12, 1))

        deleted = self.tracker.purge_records_before(date(2023, 12, 1))

        self.assertEqual(deleted, 2)
        self.assertEqual(list(UsageTracking.objects.all()), [kept])


@skipUnlessDBFeature("has_select_for_update")
class ConcurrentConsumptionTests(TransactionTestCase):
    """
    Parallel record_consumption calls for one user and day.

    Needs a database with row-level locking; SQLite test databases lock whole
    tables and fail under this kind of contention.
    """

    WORKERS = 12

    def test_parallel_calls_never_pass_the_daily_limit(self):
        user = UserFactory(username="burst")
        tracker = UsageQuotaTracker(clock=FrozenClock(NOW))
        barrier = threading.Barrier(self.WORKERS)

        def consume(_):
            try:
                barrier.wait(timeout=10)
                return tracker.record_consumption(user, UsageType.DAILY_GENERATION).allowed
            finally:
                connection.close()

        with ThreadPoolExecutor(max_workers=self.WORKERS) as pool:
            results = list(pool.map(consume, range(self.WORKERS)))

        daily_limit = PlanCatalog().get(SubscriptionTier.FREE).limit_for(
            UsageType.DAILY_GENERATION,
        )
        admitted = min(self.WORKERS, daily_limit)
        self.assertEqual(results.count(True), admitted)
        self.assertEqual(
            UsageTracking.objects.get(
                user=user,
                usage_type=UsageType.DAILY_GENERATION,
                usage_date=TODAY,
            ).usage_count,
            admitted,
        )
        self.assertEqual(
            UsageTracking.objects.get(
                user=user,
                usage_type=UsageType.MONTHLY_GENERATION,
                usage_date=MONTH,
            ).usage_count,
            admitted,
        )
