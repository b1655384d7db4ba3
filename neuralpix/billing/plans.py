"""
Static plan catalog.

Plans are configuration, not database rows. ``settings.BILLING_PLANS`` maps a
tier value to its limits, prices and feature flags; ``PlanCatalog`` turns that
mapping into immutable ``PlanLimits`` objects once, at construction time.

Usage:
    catalog = PlanCatalog()
    plan = catalog.get(SubscriptionTier.BASIC)
    plan.limit_for(UsageType.DAILY_GENERATION)
    plan.price_for(BillingCycle.YEARLY)
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from django.conf import settings

from neuralpix.billing.constants import UNLIMITED
from neuralpix.billing.constants import BillingCycle
from neuralpix.billing.constants import SubscriptionTier
from neuralpix.billing.constants import UsageType
from neuralpix.billing.constants import coerce_choice
from neuralpix.billing.exceptions import ConfigurationError


@dataclass(frozen=True)
class PlanLimits:
    """Limits, prices and feature flags for one tier. -1 means unlimited."""

    tier: str
    name: str
    daily_generation_limit: int
    monthly_generation_limit: int
    monthly_price: Decimal
    yearly_price: Decimal
    daily_api_request_limit: int = 0
    max_image_resolution: str = "1024x1024"
    concurrent_generations: int = 1
    priority_processing: bool = False
    watermark_removal: bool = False
    commercial_license: bool = False
    api_access: bool = False
    advanced_models: bool = False

    def limit_for(self, usage_type: str) -> int:
        if usage_type == UsageType.DAILY_GENERATION:
            return self.daily_generation_limit
        if usage_type == UsageType.MONTHLY_GENERATION:
            return self.monthly_generation_limit
        if usage_type == UsageType.API_REQUEST:
            # Plans without API access get a hard zero, whatever the table says.
            return self.daily_api_request_limit if self.api_access else 0
        raise ConfigurationError(f"No limit configured for usage type {usage_type!r}.")

    def price_for(self, billing_cycle: str) -> Decimal:
        if billing_cycle == BillingCycle.YEARLY:
            return self.yearly_price
        return self.monthly_price

    @staticmethod
    def is_unlimited(limit: int) -> bool:
        return limit == UNLIMITED


class PlanCatalog:
    """
    Read-only lookup of plan limits by tier.

    The catalog is built from an explicit mapping (or settings.BILLING_PLANS)
    and is never mutated afterwards; changing the settings only affects
    components constructed later, which is how price changes reach future
    renewals without touching running billing cycles.
    """

    def __init__(self, plans: dict | None = None):
        raw = settings.BILLING_PLANS if plans is None else plans
        self._plans: dict[str, PlanLimits] = {}
        for tier_value, config in raw.items():
            try:
                tier = coerce_choice(SubscriptionTier, tier_value, strict=True)
            except ValueError as exc:
                raise ConfigurationError(
                    f"Plan table refers to unknown tier {tier_value!r}.",
                ) from exc
            self._plans[tier] = self._build(tier, config)

    @staticmethod
    def _build(tier: str, config: dict) -> PlanLimits:
        try:
            return PlanLimits(
                tier=tier,
                name=config.get("name", str(tier).title()),
                daily_generation_limit=int(config["daily_generation_limit"]),
                monthly_generation_limit=int(config["monthly_generation_limit"]),
                monthly_price=Decimal(str(config.get("monthly_price", 0))),
                yearly_price=Decimal(str(config.get("yearly_price", 0))),
                daily_api_request_limit=int(config.get("daily_api_request_limit", 0)),
                max_image_resolution=config.get("max_image_resolution", "1024x1024"),
                concurrent_generations=int(config.get("concurrent_generations", 1)),
                priority_processing=bool(config.get("priority_processing", False)),
                watermark_removal=bool(config.get("watermark_removal", False)),
                commercial_license=bool(config.get("commercial_license", False)),
                api_access=bool(config.get("api_access", False)),
                advanced_models=bool(config.get("advanced_models", False)),
            )
        except KeyError as exc:
            raise ConfigurationError(
                f"Plan {tier!r} is missing required setting {exc.args[0]!r}.",
            ) from exc

    def get(self, tier: str) -> PlanLimits:
        """Return limits for ``tier`` or raise ConfigurationError."""
        try:
            key = coerce_choice(SubscriptionTier, tier, strict=True)
        except ValueError as exc:
            raise ConfigurationError(f"Unknown subscription tier {tier!r}.") from exc
        try:
            return self._plans[key]
        except KeyError as exc:
            raise ConfigurationError(f"No plan configured for tier {tier!r}.") from exc

    def tiers(self) -> list[str]:
        return list(self._plans)

    def __contains__(self, tier) -> bool:
        try:
            self.get(tier)
        except ConfigurationError:
            return False
        return True
