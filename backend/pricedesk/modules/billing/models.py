"""Billing models for shop subscriptions and external billing records.

A shop's subscription row is written by two independent paths:
reconciliation owns the plan/billing columns, usage tracking owns the
product-quota columns. Neither path ever writes the other's columns.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Integer, String, JSON, Index, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from pricedesk.core.database import Base
from pricedesk.modules.billing.catalog import FREE_PLAN


class SubscriptionStatus(str, Enum):
    """Local subscription status values."""
    ACTIVE = "active"
    PENDING = "pending"
    CANCELLED = "cancelled"


class BillingSourceType(str, Enum):
    """Upstream billing record families, in reconciliation priority order."""
    SUBSCRIPTION = "subscription"
    CHARGE = "charge"


# Columns written only by the reconciliation engine
RECONCILIATION_FIELDS = frozenset({
    "plan_name",
    "status",
    "subscription_id",
    "usage_limit",
    "current_period_end",
})

# Columns written only by the usage tracker
QUOTA_FIELDS = frozenset({
    "unique_products_modified",
    "total_price_changes",
})


def utcnow() -> datetime:
    """Naive UTC timestamp, the convention for every stored datetime."""
    return datetime.utcnow()


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a possibly tz-aware datetime to naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Subscription(Base):
    """Per-shop subscription record."""

    __tablename__ = "shop_subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )

    shop: Mapped[str] = mapped_column(String(255), nullable=False)

    # Reconciliation-owned
    plan_name: Mapped[str] = mapped_column(
        String(50), default=FREE_PLAN, nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), default=SubscriptionStatus.ACTIVE.value, nullable=False
    )
    subscription_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    usage_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Quota-owned; usage_count is derived from the product set, never stored
    unique_products_modified: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    total_price_changes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    quota_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_shop_subscriptions_shop", "shop", unique=True),
        Index("ix_shop_subscriptions_period_end", "current_period_end"),
    )

    def __repr__(self) -> str:
        return f"<Subscription(shop={self.shop}, plan={self.plan_name}, usage={self.usage_count})>"

    @property
    def usage_count(self) -> int:
        return len(self.unique_products_modified or [])

    @property
    def tracked_products(self) -> list[str]:
        return list(self.unique_products_modified or [])

    def is_period_expired(self, now: Optional[datetime] = None) -> bool:
        end = as_naive_utc(self.current_period_end)
        if end is None:
            return False
        return (now or utcnow()) >= end

    def reconciliation_state(self) -> "SubscriptionState":
        return SubscriptionState(
            plan_name=self.plan_name,
            status=self.status,
            subscription_id=self.subscription_id,
            usage_limit=self.usage_limit,
            current_period_end=as_naive_utc(self.current_period_end),
        )


@dataclass(frozen=True)
class SubscriptionState:
    """The reconciliation-owned slice of a subscription."""
    plan_name: str
    status: str
    subscription_id: Optional[str]
    usage_limit: int
    current_period_end: Optional[datetime]

    def as_update(self) -> dict:
        return {
            "plan_name": self.plan_name,
            "status": self.status,
            "subscription_id": self.subscription_id,
            "usage_limit": self.usage_limit,
            "current_period_end": self.current_period_end,
        }


@dataclass(frozen=True)
class BillingRecord:
    """Read-only billing arrangement reported by the billing provider."""
    id: str
    source_type: BillingSourceType
    status: str
    amount: Decimal
    currency: str
    current_period_end: Optional[datetime] = None
    created_at: Optional[datetime] = None
    name: Optional[str] = None
