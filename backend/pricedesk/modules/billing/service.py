"""Billing service facade.

Wires the catalog, reconciliation engine, usage tracker and sync trigger
together for the API layer and background tasks, and hosts the
merchant-facing plan helpers (trial eligibility, feature gating, upgrade
recommendations).
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from pricedesk.core.config import settings
from pricedesk.core.logging import log_info
from pricedesk.modules.billing.catalog import (
    FREE_PLAN,
    GATED_CAPABILITIES,
    Plan,
    PlanCatalog,
    format_price,
    format_usage_limit,
    get_plan_catalog,
)
from pricedesk.modules.billing.models import Subscription, as_naive_utc, utcnow
from pricedesk.modules.billing.reconciliation import (
    ReconcileOutcome,
    ReconciliationEngine,
    smart_sync,
)
from pricedesk.modules.billing.repository import SubscriptionRepository
from pricedesk.modules.billing.schemas import (
    PlanResponse,
    SubscriptionDetailResponse,
    SubscriptionResponse,
    UpgradeRecommendation,
    UsageStatsResponse,
)
from pricedesk.modules.billing.sources import BillingSourceAdapter
from pricedesk.modules.billing.sync import SyncTrigger, needs_sync
from pricedesk.modules.billing.usage import (
    QuotaImpact,
    TrackResult,
    UsageStats,
    UsageTracker,
    build_usage_stats,
    calculate_usage_percent,
)

logger = logging.getLogger(__name__)


# Usage percentage above which the next tier is suggested, per current plan
UPGRADE_THRESHOLDS = {
    FREE_PLAN: 80.0,
    "starter": 85.0,
}

# Trial eligibility limits for "new" shops
TRIAL_MAX_USAGE = 10
TRIAL_MAX_ACCOUNT_AGE_DAYS = 30


@dataclass(frozen=True)
class TrialEligibility:
    eligible: bool
    trial_days: int
    reason: Optional[str] = None


def plan_to_response(plan: Plan) -> PlanResponse:
    return PlanResponse(
        name=plan.name,
        display_name=plan.display_name,
        price=plan.price,
        price_display=format_price(plan),
        currency=plan.currency,
        usage_limit=plan.usage_limit,
        usage_limit_display=format_usage_limit(plan.usage_limit),
        billing_interval=plan.billing_interval,
        trial_days=plan.trial_days,
        features=list(plan.features),
        recommended=plan.recommended,
    )


def can_use_feature(subscription: Optional[Subscription], feature: str, catalog: PlanCatalog) -> bool:
    """Check whether a shop's plan grants a feature.

    A shop at or over a finite quota is denied every feature, gated or not,
    until the period resets or it upgrades. Below the quota, features
    outside the gated set are allowed and gated ones need the plan's
    capability.
    """
    plan = catalog.get(subscription.plan_name if subscription else None)
    usage_count = subscription.usage_count if subscription else 0

    if not plan.is_unlimited and usage_count >= plan.usage_limit:
        return False

    if feature not in GATED_CAPABILITIES:
        return True
    return feature in plan.capabilities


def get_upgrade_recommendation(
    subscription: Subscription,
    catalog: PlanCatalog,
) -> Optional[UpgradeRecommendation]:
    """Suggest the next tier when usage is close to the current limit."""
    plan = catalog.get(subscription.plan_name)
    threshold = UPGRADE_THRESHOLDS.get(plan.name)
    if threshold is None or plan.is_unlimited:
        return None

    percent = calculate_usage_percent(subscription.usage_count, plan.usage_limit)
    if percent <= threshold:
        return None

    target = catalog.next_tier(plan.name)
    if target is None:
        return None

    if target.is_unlimited:
        reason = (
            f"You're approaching your limit. Upgrade to {target.display_name} "
            f"for unlimited products and advanced features."
        )
    else:
        reason = (
            f"You've modified {subscription.usage_count} of {plan.usage_limit} allowed "
            f"products this month. Upgrade to modify more products without interruption."
        )
    return UpgradeRecommendation(
        plan_name=target.name,
        display_name=target.display_name,
        reason=reason,
    )


def check_trial_eligibility(
    subscription: Subscription,
    plan: Plan,
    now: Optional[datetime] = None,
) -> TrialEligibility:
    """Decide whether a shop may start a free trial of ``plan``."""
    if plan.is_free:
        return TrialEligibility(False, 0, "Free plan doesn't require trial")

    if not plan.trial_days:
        return TrialEligibility(False, 0, "No trial available for this plan")

    if subscription.plan_name != FREE_PLAN or subscription.subscription_id is not None:
        return TrialEligibility(False, 0, "Already used paid features")

    if subscription.usage_count >= TRIAL_MAX_USAGE:
        return TrialEligibility(False, 0, "High usage on free plan")

    now = now or utcnow()
    created_at = as_naive_utc(subscription.created_at)
    if created_at and now - created_at > timedelta(days=TRIAL_MAX_ACCOUNT_AGE_DAYS):
        return TrialEligibility(False, 0, "Account too old for a trial")

    return TrialEligibility(True, plan.trial_days)


class BillingService:
    """Service for shop subscriptions, reconciliation and usage quota."""

    def __init__(self, session: AsyncSession, catalog: Optional[PlanCatalog] = None):
        self.session = session
        self.catalog = catalog or get_plan_catalog()
        self.repo = SubscriptionRepository(session, self.catalog, settings.BILLING_PERIOD_DAYS)
        self.usage = UsageTracker(session, self.catalog)
        self.trigger = SyncTrigger(session, self.catalog)

    # ==================== Plans ====================

    def list_plans(self) -> list[PlanResponse]:
        return [plan_to_response(plan) for plan in self.catalog]

    # ==================== Subscription ====================

    async def get_subscription(self, shop: str) -> Subscription:
        return await self.repo.get_or_create(shop)

    async def get_subscription_detail(self, shop: str) -> SubscriptionDetailResponse:
        subscription = await self.repo.get_or_create(shop)
        stats = build_usage_stats(subscription)
        return SubscriptionDetailResponse(
            subscription=self._subscription_response(subscription),
            plan=plan_to_response(self.catalog.get(subscription.plan_name)),
            usage=UsageStatsResponse.model_validate(stats),
            needs_sync=needs_sync(subscription),
            upgrade=get_upgrade_recommendation(subscription, self.catalog),
        )

    async def sync(
        self,
        shop: str,
        sources: Sequence[BillingSourceAdapter],
        force: bool = False,
    ) -> Optional[ReconcileOutcome]:
        """Reconcile the shop against the billing sources if needed."""
        engine = ReconciliationEngine(self.session, self.catalog, sources)
        return await smart_sync(engine, self.trigger, shop, force=force)

    async def redact_shop(self, shop: str) -> bool:
        """Delete everything stored for a shop (shop redaction request)."""
        deleted = await self.repo.delete(shop)
        log_info(logger, f"Shop redaction for {shop}", shop=shop, deleted=deleted)
        return deleted

    # ==================== Usage ====================

    async def estimate_impact(self, shop: str, product_ids: Iterable[str]) -> QuotaImpact:
        return await self.usage.estimate_impact(shop, product_ids)

    async def track_modifications(self, shop: str, product_ids: list[str]) -> TrackResult:
        return await self.usage.track_modifications(shop, product_ids)

    async def reset_usage(self, shop: str) -> UsageStats:
        await self.usage.reset_period(shop)
        return await self.usage.usage_stats(shop)

    async def usage_stats(self, shop: str) -> UsageStats:
        return await self.usage.usage_stats(shop)

    # ==================== Plan helpers ====================

    async def check_trial_eligibility(self, shop: str, plan_name: str) -> TrialEligibility:
        subscription = await self.repo.get_or_create(shop)
        try:
            plan = self.catalog.require(plan_name)
        except KeyError:
            return TrialEligibility(False, 0, f"Unknown plan '{plan_name}'")
        return check_trial_eligibility(subscription, plan)

    async def check_feature(self, shop: str, feature: str) -> bool:
        subscription = await self.repo.get_or_create(shop)
        return can_use_feature(subscription, feature, self.catalog)

    def _subscription_response(self, subscription: Subscription) -> SubscriptionResponse:
        return SubscriptionResponse(
            id=subscription.id,
            shop=subscription.shop,
            plan_name=subscription.plan_name,
            status=subscription.status,
            subscription_id=subscription.subscription_id,
            usage_limit=subscription.usage_limit,
            usage_count=subscription.usage_count,
            total_price_changes=subscription.total_price_changes,
            current_period_end=subscription.current_period_end,
            created_at=subscription.created_at,
            updated_at=subscription.updated_at,
        )
