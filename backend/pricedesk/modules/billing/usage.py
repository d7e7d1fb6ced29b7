"""Usage tracking by unique products modified.

Quota is spent per distinct product, not per edit: re-editing a product
already tracked this period costs nothing. Writes are compare-and-swap on
``quota_version`` and additionally serialized per shop within the process,
so two concurrent additions can never both pass the limit check against
the same stale set.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from pricedesk.core.config import settings
from pricedesk.core.logging import log_info, log_warning
from pricedesk.modules.billing.catalog import (
    UNLIMITED,
    PlanCatalog,
    format_usage_display,
    format_usage_limit,
)
from pricedesk.modules.billing.exceptions import PersistenceError, QuotaExceededError
from pricedesk.modules.billing.locks import ShopLockRegistry, quota_locks
from pricedesk.modules.billing.models import Subscription
from pricedesk.modules.billing.repository import SubscriptionRepository

logger = logging.getLogger(__name__)


# Usage percentage thresholds for dashboard warnings
NEAR_LIMIT_PERCENT = 80.0


@dataclass(frozen=True)
class QuotaImpact:
    """Projected effect of modifying a batch of products."""
    new_ids: list[str]
    already_tracked: list[str]
    total_after: int
    would_exceed: bool
    remaining_after: int
    usage_limit: int
    current_count: int


@dataclass(frozen=True)
class TrackResult:
    """Outcome of a successful tracking call."""
    shop: str
    new_ids: list[str]
    usage_count: int
    usage_limit: int
    total_price_changes: int
    remaining: int
    attempts: int = 1


@dataclass(frozen=True)
class UsageStats:
    """Dashboard view of a shop's quota consumption."""
    shop: str
    plan_name: str
    usage_count: int
    usage_limit: int
    total_price_changes: int
    percent_used: float
    remaining: int
    is_unlimited: bool
    near_limit: bool
    limit_reached: bool
    usage_display: str
    limit_display: str
    tracked_products: list[str] = field(default_factory=list)


def dedupe(product_ids: Iterable[str]) -> list[str]:
    """Distinct ids, first occurrence order."""
    seen: set[str] = set()
    unique = []
    for product_id in product_ids:
        product_id = str(product_id)
        if product_id not in seen:
            seen.add(product_id)
            unique.append(product_id)
    return unique


def compute_impact(
    tracked: list[str],
    usage_limit: int,
    candidate_ids: Iterable[str],
) -> QuotaImpact:
    """Pure quota projection over an already tracked set."""
    tracked_set = set(tracked)
    candidates = dedupe(candidate_ids)
    new_ids = [p for p in candidates if p not in tracked_set]
    already = [p for p in candidates if p in tracked_set]
    total_after = len(tracked_set) + len(new_ids)

    if usage_limit == UNLIMITED:
        would_exceed = False
        remaining_after = UNLIMITED
    else:
        would_exceed = total_after > usage_limit
        remaining_after = max(usage_limit - total_after, 0)

    return QuotaImpact(
        new_ids=new_ids,
        already_tracked=already,
        total_after=total_after,
        would_exceed=would_exceed,
        remaining_after=remaining_after,
        usage_limit=usage_limit,
        current_count=len(tracked_set),
    )


def calculate_usage_percent(usage_count: int, usage_limit: int) -> float:
    """Percentage of the quota used (0.0 for unlimited plans)."""
    if usage_limit == UNLIMITED or usage_limit <= 0:
        return 0.0
    return round(usage_count / usage_limit * 100, 1)


class UsageTracker:
    """Maintains per-shop unique product sets and enforces the quota."""

    def __init__(
        self,
        session: AsyncSession,
        catalog: PlanCatalog,
        max_attempts: Optional[int] = None,
        locks: ShopLockRegistry = quota_locks,
    ):
        self.catalog = catalog
        self.repo = SubscriptionRepository(session, catalog, settings.BILLING_PERIOD_DAYS)
        self.max_attempts = max_attempts or settings.QUOTA_WRITE_MAX_ATTEMPTS
        self.locks = locks

    async def estimate_impact(self, shop: str, candidate_ids: Iterable[str]) -> QuotaImpact:
        """Project the quota effect of modifying ``candidate_ids`` without writing.

        A shop with no record yet is treated as a fresh free-plan shop; no
        record is created.
        """
        subscription = await self.repo.get_by_shop(shop)
        if subscription is None:
            return compute_impact([], self.catalog.free_plan.usage_limit, candidate_ids)
        return compute_impact(
            subscription.tracked_products, subscription.usage_limit, candidate_ids
        )

    async def track_modifications(self, shop: str, product_ids: list[str]) -> TrackResult:
        """Add products to the shop's tracked set.

        ``total_price_changes`` grows by the number of edits supplied, which
        includes re-edits of already tracked products.

        Raises:
            QuotaExceededError: The union would exceed the usage limit; nothing written
            PersistenceError: Store unavailable or write kept conflicting
        """
        product_ids = [str(p) for p in product_ids]

        async with self.locks.hold(shop):
            for attempt in range(1, self.max_attempts + 1):
                subscription = await self.repo.get_or_create(shop)
                impact = compute_impact(
                    subscription.tracked_products, subscription.usage_limit, product_ids
                )

                if impact.would_exceed:
                    log_info(
                        logger,
                        f"Quota exceeded for {shop}: {impact.total_after} > {impact.usage_limit}",
                        shop=shop,
                        usage_limit=impact.usage_limit,
                        current_count=impact.current_count,
                        requested_new=len(impact.new_ids),
                    )
                    raise QuotaExceededError(
                        f"Modifying {len(impact.new_ids)} new products would exceed the "
                        f"limit of {impact.usage_limit} unique products",
                        shop=shop,
                        usage_limit=impact.usage_limit,
                        current_count=impact.current_count,
                        requested_new=len(impact.new_ids),
                    )

                if not product_ids:
                    return self._result(shop, subscription, [], subscription.total_price_changes, attempt)

                tracked = subscription.tracked_products + impact.new_ids
                total_changes = subscription.total_price_changes + len(product_ids)
                applied = await self.repo.update_quota_fields(
                    shop,
                    subscription.quota_version,
                    unique_products_modified=tracked,
                    total_price_changes=total_changes,
                )
                if applied:
                    logger.debug(
                        f"Tracked {len(impact.new_ids)} new products for {shop} "
                        f"({len(tracked)} total)"
                    )
                    return TrackResult(
                        shop=shop,
                        new_ids=impact.new_ids,
                        usage_count=len(tracked),
                        usage_limit=subscription.usage_limit,
                        total_price_changes=total_changes,
                        remaining=impact.remaining_after,
                        attempts=attempt,
                    )

                log_warning(
                    logger,
                    f"Usage write conflict for {shop}, retrying (attempt {attempt})",
                    shop=shop,
                    attempt=attempt,
                )

        raise PersistenceError(
            f"Usage update conflicted {self.max_attempts} times", shop=shop
        )

    async def reset_period(self, shop: str) -> None:
        """Clear the tracked set and edit counter at billing-period rollover."""
        async with self.locks.hold(shop):
            for attempt in range(1, self.max_attempts + 1):
                subscription = await self.repo.get_or_create(shop)
                applied = await self.repo.update_quota_fields(
                    shop,
                    subscription.quota_version,
                    unique_products_modified=[],
                    total_price_changes=0,
                )
                if applied:
                    log_info(
                        logger,
                        f"Usage period reset for {shop}",
                        shop=shop,
                        cleared_products=subscription.usage_count,
                    )
                    return
                log_warning(
                    logger,
                    f"Usage reset conflict for {shop}, retrying (attempt {attempt})",
                    shop=shop,
                    attempt=attempt,
                )

        raise PersistenceError(
            f"Usage reset conflicted {self.max_attempts} times", shop=shop
        )

    async def usage_stats(self, shop: str) -> UsageStats:
        subscription = await self.repo.get_or_create(shop)
        return build_usage_stats(subscription)

    def _result(
        self,
        shop: str,
        subscription: Subscription,
        new_ids: list[str],
        total_changes: int,
        attempts: int,
    ) -> TrackResult:
        impact = compute_impact(subscription.tracked_products, subscription.usage_limit, [])
        return TrackResult(
            shop=shop,
            new_ids=new_ids,
            usage_count=subscription.usage_count,
            usage_limit=subscription.usage_limit,
            total_price_changes=total_changes,
            remaining=impact.remaining_after,
            attempts=attempts,
        )


def build_usage_stats(subscription: Subscription) -> UsageStats:
    usage_count = subscription.usage_count
    usage_limit = subscription.usage_limit
    unlimited = usage_limit == UNLIMITED
    percent = calculate_usage_percent(usage_count, usage_limit)

    return UsageStats(
        shop=subscription.shop,
        plan_name=subscription.plan_name,
        usage_count=usage_count,
        usage_limit=usage_limit,
        total_price_changes=subscription.total_price_changes,
        percent_used=percent,
        remaining=UNLIMITED if unlimited else max(usage_limit - usage_count, 0),
        is_unlimited=unlimited,
        near_limit=not unlimited and percent > NEAR_LIMIT_PERCENT,
        limit_reached=not unlimited and usage_count >= usage_limit,
        usage_display=format_usage_display(usage_count, usage_limit),
        limit_display=format_usage_limit(usage_limit),
        tracked_products=subscription.tracked_products,
    )
