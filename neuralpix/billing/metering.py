"""
Usage quota tracking and enforcement.

The tracker is called on both sides of the (out-of-scope) image generation
collaborator: ``can_consume`` before the work is started and
``record_consumption`` once it has happened. A generation is checked against
two axes, the daily and the monthly limit of the user's effective plan; an
API request is checked against the plan's daily API limit.

Usage:
    tracker = UsageQuotaTracker()

    if not tracker.can_consume(user, UsageType.DAILY_GENERATION):
        return deny()

    generate_image(...)

    decision = tracker.record_consumption(user, UsageType.DAILY_GENERATION)
    if not decision.allowed:
        # Lost a race for the last unit of quota.
        ...

``record_consumption`` is atomic: for every axis it performs a conditional
``UPDATE ... SET usage_count = usage_count + 1 WHERE usage_count < limit``
inside one database transaction. If any axis is exhausted the whole
consumption is rolled back and reported as denied, so concurrent callers can
never push a counter past its limit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field
from datetime import date
from datetime import datetime
from typing import TYPE_CHECKING

from django.conf import settings
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from neuralpix.billing.constants import UsageType
from neuralpix.billing.constants import coerce_choice
from neuralpix.billing.exceptions import BillingValidationError
from neuralpix.billing.exceptions import ConfigurationError
from neuralpix.billing.models import Subscription
from neuralpix.billing.models import UsageTracking
from neuralpix.billing.periods import month_start
from neuralpix.billing.periods import next_day_start
from neuralpix.billing.periods import next_month_start
from neuralpix.billing.plans import PlanCatalog
from neuralpix.billing.plans import PlanLimits

if TYPE_CHECKING:
    from collections.abc import Callable

    from django.contrib.auth.models import AbstractBaseUser

logger = logging.getLogger(__name__)

GENERATION_USAGE_TYPES = (
    UsageType.DAILY_GENERATION,
    UsageType.MONTHLY_GENERATION,
)

REASON_ALLOWED = "allowed"
REASON_DAILY_EXCEEDED = "daily_limit_exceeded"
REASON_MONTHLY_EXCEEDED = "monthly_limit_exceeded"
REASON_BOTH_EXCEEDED = "daily_and_monthly_limits_exceeded"
REASON_API_EXCEEDED = "api_limit_exceeded"
REASON_NO_SUBSCRIPTION = "no_active_subscription"
REASON_CONFIGURATION = "configuration_error"

MESSAGES = {
    REASON_ALLOWED: "Generation allowed",
    REASON_DAILY_EXCEEDED: "Daily limit exceeded",
    REASON_MONTHLY_EXCEEDED: "Monthly limit exceeded",
    REASON_BOTH_EXCEEDED: "Both daily and monthly limits exceeded",
    REASON_API_EXCEEDED: "API request limit exceeded",
    REASON_NO_SUBSCRIPTION: "No active subscription",
    REASON_CONFIGURATION: "Plan configuration error",
}


@dataclass(frozen=True)
class QuotaAxis:
    """One independent limit: a counter row key plus the limit it is held to."""

    usage_type: str
    usage_date: date
    limit: int
    reset_at: datetime

    @property
    def unlimited(self) -> bool:
        return PlanLimits.is_unlimited(self.limit)


@dataclass
class QuotaDecision:
    allowed: bool
    usage_type: str
    reason: str = REASON_ALLOWED
    exceeded: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return MESSAGES.get(self.reason, self.reason)

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "usage_type": str(self.usage_type),
            "reason": self.reason,
            "message": self.message,
        }


class _AxisExhaustedError(Exception):
    def __init__(self, axis: QuotaAxis):
        self.axis = axis
        super().__init__(axis.usage_type)


def _reason_for(exceeded: list[str]) -> str:
    exceeded_set = set(exceeded)
    if exceeded_set >= set(GENERATION_USAGE_TYPES):
        return REASON_BOTH_EXCEEDED
    if UsageType.DAILY_GENERATION in exceeded_set:
        return REASON_DAILY_EXCEEDED
    if UsageType.MONTHLY_GENERATION in exceeded_set:
        return REASON_MONTHLY_EXCEEDED
    return REASON_API_EXCEEDED


class UsageQuotaTracker:
    """
    Per-user daily/monthly counters held against plan limits.

    Users without an ACTIVE subscription are metered against
    ``default_tier`` (settings.BILLING_DEFAULT_TIER). When that is empty they
    are denied outright. A tier the catalog does not know fails closed.
    """

    def __init__(
        self,
        catalog: PlanCatalog | None = None,
        clock: Callable[[], datetime] | None = None,
        default_tier: str | None = None,
    ):
        self.catalog = catalog or PlanCatalog()
        self.clock = clock or timezone.now
        if default_tier is None:
            default_tier = getattr(settings, "BILLING_DEFAULT_TIER", "")
        self.default_tier = default_tier

    # ------------------------------------------------------------------
    # Plan resolution
    # ------------------------------------------------------------------

    def resolve_plan(self, user: AbstractBaseUser) -> PlanLimits | None:
        """
        Effective plan for ``user``, or None when the user has no plan.

        Raises:
            ConfigurationError: if the subscription's tier is not configured.
        """
        subscription = (
            Subscription.objects.active()
            .filter(user=user)
            .order_by("-created", "-id")
            .first()
        )
        tier = subscription.tier if subscription else self.default_tier
        if not tier:
            return None
        return self.catalog.get(tier)

    def axes_for(self, plan: PlanLimits, usage_type: str) -> list[QuotaAxis]:
        today = timezone.localdate(self.clock())
        if usage_type in GENERATION_USAGE_TYPES:
            return [
                QuotaAxis(
                    usage_type=UsageType.DAILY_GENERATION,
                    usage_date=today,
                    limit=plan.limit_for(UsageType.DAILY_GENERATION),
                    reset_at=next_day_start(today),
                ),
                QuotaAxis(
                    usage_type=UsageType.MONTHLY_GENERATION,
                    usage_date=month_start(today),
                    limit=plan.limit_for(UsageType.MONTHLY_GENERATION),
                    reset_at=next_month_start(today),
                ),
            ]
        return [
            QuotaAxis(
                usage_type=UsageType.API_REQUEST,
                usage_date=today,
                limit=plan.limit_for(UsageType.API_REQUEST),
                reset_at=next_day_start(today),
            ),
        ]

    # ------------------------------------------------------------------
    # Gate and record
    # ------------------------------------------------------------------

    def check(self, user: AbstractBaseUser, usage_type: str) -> QuotaDecision:
        """Read-only quota check. Returns a decision describing why."""
        usage_type = self._coerce_usage_type(usage_type)
        axes, denial = self._resolve_axes(user, usage_type)
        if denial:
            return denial

        counts = self._counts(user, axes)
        exceeded = [
            axis.usage_type
            for axis in axes
            if not axis.unlimited and counts.get(axis.usage_type, 0) >= axis.limit
        ]
        if exceeded:
            return QuotaDecision(
                allowed=False,
                usage_type=usage_type,
                reason=_reason_for(exceeded),
                exceeded=exceeded,
            )
        return QuotaDecision(allowed=True, usage_type=usage_type)

    def can_consume(self, user: AbstractBaseUser, usage_type: str) -> bool:
        return self.check(user, usage_type).allowed

    def record_consumption(
        self,
        user: AbstractBaseUser,
        usage_type: str,
    ) -> QuotaDecision:
        """
        Atomically count one unit of usage on every axis.

        Nothing is recorded when any axis is already at its limit; the
        returned decision is then a denial.
        """
        usage_type = self._coerce_usage_type(usage_type)
        axes, denial = self._resolve_axes(user, usage_type)
        if denial:
            return denial

        now = self.clock()
        try:
            with transaction.atomic():
                for axis in axes:
                    self._increment(user, axis, now)
        except _AxisExhaustedError as exc:
            logger.info(
                "Usage denied for user=%s type=%s: %s limit %s reached",
                user.pk,
                usage_type,
                exc.axis.usage_type,
                exc.axis.limit,
            )
            return QuotaDecision(
                allowed=False,
                usage_type=usage_type,
                reason=_reason_for([exc.axis.usage_type]),
                exceeded=[exc.axis.usage_type],
            )

        logger.debug("Recorded %s usage for user=%s", usage_type, user.pk)
        return QuotaDecision(allowed=True, usage_type=usage_type)

    def _increment(self, user, axis: QuotaAxis, now: datetime) -> None:
        row, _created = UsageTracking.objects.get_or_create(
            user=user,
            usage_date=axis.usage_date,
            usage_type=axis.usage_type,
            defaults={"usage_count": 0, "reset_at": axis.reset_at},
        )
        rows = UsageTracking.objects.filter(pk=row.pk)
        if not axis.unlimited:
            rows = rows.filter(usage_count__lt=axis.limit)
        # Single conditional UPDATE: the limit check and the increment are
        # one statement, so concurrent callers cannot both take the last unit.
        if rows.update(usage_count=F("usage_count") + 1, modified=now) == 0:
            raise _AxisExhaustedError(axis)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def usage_summary(self, user: AbstractBaseUser) -> dict:
        """
        Comprehensive usage snapshot for dashboards and the usage endpoint.

        Returns:
            dict with 'tier', 'can_generate', 'message', and one entry per
            axis ('daily', 'monthly', 'api_requests') holding 'used', 'limit',
            'remaining', 'unlimited', 'exceeded' and 'resets_at'.
        """
        summary = {
            "tier": None,
            "can_generate": False,
            "message": MESSAGES[REASON_NO_SUBSCRIPTION],
            "daily": None,
            "monthly": None,
            "api_requests": None,
        }
        try:
            plan = self.resolve_plan(user)
        except ConfigurationError as exc:
            logger.error("Usage summary unavailable for user=%s: %s", user.pk, exc.detail)
            summary["message"] = MESSAGES[REASON_CONFIGURATION]
            return summary
        if plan is None:
            return summary

        axes = self.axes_for(plan, UsageType.DAILY_GENERATION) + self.axes_for(
            plan,
            UsageType.API_REQUEST,
        )
        counts = self._counts(user, axes)
        keys = {
            UsageType.DAILY_GENERATION: "daily",
            UsageType.MONTHLY_GENERATION: "monthly",
            UsageType.API_REQUEST: "api_requests",
        }
        exceeded = []
        for axis in axes:
            used = counts.get(axis.usage_type, 0)
            is_exceeded = not axis.unlimited and used >= axis.limit
            summary[keys[axis.usage_type]] = {
                "used": used,
                "limit": axis.limit,
                "remaining": None if axis.unlimited else max(axis.limit - used, 0),
                "unlimited": axis.unlimited,
                "exceeded": is_exceeded,
                "resets_at": axis.reset_at,
            }
            if is_exceeded and axis.usage_type in GENERATION_USAGE_TYPES:
                exceeded.append(axis.usage_type)

        summary["tier"] = plan.tier
        summary["can_generate"] = not exceeded
        summary["message"] = MESSAGES[_reason_for(exceeded) if exceeded else REASON_ALLOWED]
        return summary

    # ------------------------------------------------------------------
    # Storage hygiene
    # ------------------------------------------------------------------

    def purge_records_before(self, cutoff: date) -> int:
        """Delete usage rows whose period started before ``cutoff``."""
        deleted, _details = UsageTracking.objects.filter(usage_date__lt=cutoff).delete()
        logger.info("Purged %d usage rows older than %s", deleted, cutoff)
        return deleted

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _resolve_axes(self, user, usage_type):
        try:
            plan = self.resolve_plan(user)
            if plan is None:
                return [], QuotaDecision(
                    allowed=False,
                    usage_type=usage_type,
                    reason=REASON_NO_SUBSCRIPTION,
                )
            return self.axes_for(plan, usage_type), None
        except ConfigurationError as exc:
            logger.error(
                "Quota check failed closed for user=%s type=%s: %s",
                user.pk,
                usage_type,
                exc.detail,
            )
            return [], QuotaDecision(
                allowed=False,
                usage_type=usage_type,
                reason=REASON_CONFIGURATION,
            )

    @staticmethod
    def _counts(user, axes: list[QuotaAxis]) -> dict[str, int]:
        counts = {}
        for axis in axes:
            row = UsageTracking.objects.filter(
                user=user,
                usage_date=axis.usage_date,
                usage_type=axis.usage_type,
            ).first()
            counts[axis.usage_type] = row.usage_count if row else 0
        return counts

    @staticmethod
    def _coerce_usage_type(usage_type) -> UsageType:
        try:
            return coerce_choice(UsageType, usage_type, strict=True)
        except ValueError as exc:
            raise BillingValidationError(
                f"Unknown usage type {usage_type!r}.",
                code="invalid_usage_type",
            ) from exc
