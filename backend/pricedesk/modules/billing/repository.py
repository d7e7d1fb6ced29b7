"""Repository for subscription store operations.

Writes are field-scoped UPDATE statements: the reconciliation path and the
usage path each update only the columns they own, so neither can write back
a stale copy of the other's fields.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import select, update, delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pricedesk.modules.billing.catalog import FREE_PLAN, PlanCatalog
from pricedesk.modules.billing.exceptions import PersistenceError
from pricedesk.modules.billing.models import (
    Subscription,
    SubscriptionStatus,
    RECONCILIATION_FIELDS,
    QUOTA_FIELDS,
    utcnow,
)

logger = logging.getLogger(__name__)


class SubscriptionRepository:
    """Repository for per-shop subscription records."""

    def __init__(self, session: AsyncSession, catalog: PlanCatalog, period_days: int = 30):
        self.session = session
        self.catalog = catalog
        self.period_days = period_days

    async def get_by_shop(self, shop: str) -> Optional[Subscription]:
        """Get the subscription for a shop, always reading the committed row."""
        try:
            result = await self.session.execute(
                select(Subscription)
                .where(Subscription.shop == shop)
                .execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load subscription: {e}", shop=shop) from e

    async def get_or_create(self, shop: str) -> Subscription:
        """Get the subscription for a shop, creating a free one on first access.

        Racing creations converge: the loser of the unique-key race rolls
        back and reads the winner's row.
        """
        subscription = await self.get_by_shop(shop)
        if subscription:
            return subscription

        now = utcnow()
        subscription = Subscription(
            shop=shop,
            plan_name=FREE_PLAN,
            status=SubscriptionStatus.ACTIVE.value,
            subscription_id=None,
            usage_limit=self.catalog.free_plan.usage_limit,
            current_period_end=now + timedelta(days=self.period_days),
            unique_products_modified=[],
            total_price_changes=0,
            quota_version=0,
            created_at=now,
            updated_at=now,
        )
        self.session.add(subscription)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            logger.info(f"Subscription for {shop} created concurrently, fetching existing row")
            existing = await self.get_by_shop(shop)
            if existing is None:
                raise PersistenceError("Subscription vanished after create conflict", shop=shop)
            return existing
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise PersistenceError(f"Failed to create subscription: {e}", shop=shop) from e

        logger.info(f"Created free subscription for {shop}")
        return subscription

    async def update_reconciliation_fields(self, shop: str, **fields: Any) -> None:
        """Apply reconciliation-owned fields in a single UPDATE."""
        unknown = set(fields) - RECONCILIATION_FIELDS
        if unknown:
            raise ValueError(f"Not reconciliation fields: {sorted(unknown)}")

        try:
            result = await self.session.execute(
                update(Subscription)
                .where(Subscription.shop == shop)
                .values(**fields, updated_at=utcnow())
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise PersistenceError(f"Failed to apply billing state: {e}", shop=shop) from e

        if result.rowcount == 0:
            raise PersistenceError("No subscription row to update", shop=shop)

    async def update_quota_fields(
        self,
        shop: str,
        expected_version: int,
        **fields: Any,
    ) -> bool:
        """Compare-and-swap quota-owned fields.

        The UPDATE only applies when ``quota_version`` still equals
        ``expected_version``; the version is bumped in the same statement.

        Returns:
            True if applied, False if another writer got there first
        """
        unknown = set(fields) - QUOTA_FIELDS
        if unknown:
            raise ValueError(f"Not quota fields: {sorted(unknown)}")

        try:
            result = await self.session.execute(
                update(Subscription)
                .where(
                    Subscription.shop == shop,
                    Subscription.quota_version == expected_version,
                )
                .values(
                    **fields,
                    quota_version=expected_version + 1,
                    updated_at=utcnow(),
                )
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise PersistenceError(f"Failed to update usage: {e}", shop=shop) from e

        return result.rowcount == 1

    async def delete(self, shop: str) -> bool:
        """Delete a shop's subscription (shop redaction)."""
        try:
            result = await self.session.execute(
                delete(Subscription).where(Subscription.shop == shop)
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise PersistenceError(f"Failed to delete subscription: {e}", shop=shop) from e
        return result.rowcount > 0

    async def get_with_expired_period(
        self,
        now: Optional[datetime] = None,
        limit: int = 500,
    ) -> list[Subscription]:
        """Get subscriptions whose current billing period has ended."""
        now = now or utcnow()
        try:
            result = await self.session.execute(
                select(Subscription)
                .where(
                    Subscription.current_period_end.is_not(None),
                    Subscription.current_period_end <= now,
                )
                .order_by(Subscription.current_period_end)
                .limit(limit)
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list expired subscriptions: {e}") from e
