"""Staleness heuristic gating reconciliation runs.

Best effort only: it decides whether it is worth calling the billing API,
it never guarantees the local state is current.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from pricedesk.core.config import settings
from pricedesk.core.logging import log_warning
from pricedesk.modules.billing.catalog import FREE_PLAN, PlanCatalog
from pricedesk.modules.billing.exceptions import PersistenceError
from pricedesk.modules.billing.models import Subscription, as_naive_utc, utcnow
from pricedesk.modules.billing.repository import SubscriptionRepository

logger = logging.getLogger(__name__)


def needs_sync(
    subscription: Optional[Subscription],
    now: Optional[datetime] = None,
    free_grace_hours: Optional[float] = None,
    stale_after_hours: Optional[float] = None,
) -> bool:
    """Decide whether a subscription should be reconciled.

    Args:
        subscription: Stored subscription, None if the shop has no record yet
        now: Reference time (naive UTC)
        free_grace_hours: Skip free records younger than this
        stale_after_hours: Force sync when last update is older than this

    Returns:
        True if reconciliation should run
    """
    if subscription is None:
        return True

    now = now or utcnow()
    grace = timedelta(
        hours=settings.SYNC_FREE_GRACE_HOURS if free_grace_hours is None else free_grace_hours
    )
    stale_after = timedelta(
        hours=settings.SYNC_STALE_AFTER_HOURS if stale_after_hours is None else stale_after_hours
    )

    created_at = as_naive_utc(subscription.created_at)
    updated_at = as_naive_utc(subscription.updated_at)

    # Fresh install on free: don't hammer the billing API
    if subscription.plan_name == FREE_PLAN and created_at and now - created_at < grace:
        return False

    # Paid plan without a billing reference is provably inconsistent
    if subscription.plan_name != FREE_PLAN and subscription.subscription_id is None:
        return True

    if updated_at is None or now - updated_at > stale_after:
        return True

    return False


class SyncTrigger:
    """Reads the stored subscription and applies :func:`needs_sync`."""

    def __init__(self, session: AsyncSession, catalog: PlanCatalog):
        self.repo = SubscriptionRepository(session, catalog, settings.BILLING_PERIOD_DAYS)

    async def needs_sync(self, shop: str, now: Optional[datetime] = None) -> bool:
        try:
            subscription = await self.repo.get_by_shop(shop)
        except PersistenceError as e:
            log_warning(logger, f"Sync check failed for {shop}: {e.message}", shop=shop)
            return False
        return needs_sync(subscription, now)
