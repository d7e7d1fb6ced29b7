"""Billing background tasks.

Scheduled billing-period rollover: subscriptions whose period has ended get
a new period and a cleared usage quota.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from pricedesk.core.celery_app import celery_app
from pricedesk.core.config import settings
from pricedesk.core.logging import log_error
from pricedesk.modules.billing.catalog import PlanCatalog, get_plan_catalog
from pricedesk.modules.billing.exceptions import BillingError
from pricedesk.modules.billing.locks import reconciliation_locks
from pricedesk.modules.billing.models import as_naive_utc, utcnow
from pricedesk.modules.billing.repository import SubscriptionRepository
from pricedesk.modules.billing.usage import UsageTracker

logger = logging.getLogger(__name__)


def next_period_end(period_end: datetime, now: datetime, period_days: int) -> datetime:
    """Advance ``period_end`` by whole periods until it lies in the future."""
    step = timedelta(days=period_days)
    new_end = period_end + step
    while new_end <= now:
        new_end += step
    return new_end


async def rollover_shop(
    session: AsyncSession,
    shop: str,
    catalog: PlanCatalog,
    now: Optional[datetime] = None,
) -> bool:
    """Start a new billing period for one shop if its current one has ended.

    The quota is cleared before the period end moves. If the reset fails the
    row stays expired and the next run picks it up again.

    Returns:
        True if the shop was rolled over
    """
    now = now or utcnow()
    period_days = settings.BILLING_PERIOD_DAYS
    repo = SubscriptionRepository(session, catalog, period_days)

    async with reconciliation_locks.hold(shop):
        subscription = await repo.get_by_shop(shop)
        if subscription is None or not subscription.is_period_expired(now):
            return False
        new_end = next_period_end(as_naive_utc(subscription.current_period_end), now, period_days)

        await UsageTracker(session, catalog).reset_period(shop)
        await repo.update_reconciliation_fields(shop, current_period_end=new_end)

    logger.info(f"Rolled over billing period for {shop}, next period ends {new_end.isoformat()}")
    return True


async def rollover_expired_periods(
    session: AsyncSession,
    catalog: Optional[PlanCatalog] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Roll over every subscription whose billing period has ended.

    Should be run periodically via scheduler.

    Args:
        session: Database session
        catalog: Plan catalog, defaults to the process catalog
        now: Reference time (naive UTC)

    Returns:
        Summary of the run
    """
    catalog = catalog or get_plan_catalog()
    now = now or utcnow()
    repo = SubscriptionRepository(session, catalog, settings.BILLING_PERIOD_DAYS)

    logger.info("Running billing period rollover...")
    expired = await repo.get_with_expired_period(now)
    shops = [sub.shop for sub in expired]

    rolled_over = 0
    failed = 0
    for shop in shops:
        try:
            if await rollover_shop(session, shop, catalog, now):
                rolled_over += 1
        except BillingError as e:
            failed += 1
            log_error(logger, f"Failed to roll over period for {shop}: {e.message}", e, shop=shop)

    summary = {
        "expired_found": len(shops),
        "rolled_over": rolled_over,
        "failed": failed,
        "run_at": now.isoformat(),
    }
    logger.info(f"Billing rollover completed: {summary}")
    return summary


async def _rollover_async() -> dict:
    from pricedesk.core.database import async_session_maker

    async with async_session_maker() as session:
        return await rollover_expired_periods(session)


@celery_app.task(name="billing.rollover_expired_periods")
def rollover_expired_periods_task() -> dict:
    """Celery entry point for the periodic rollover."""
    return asyncio.run(_rollover_async())
