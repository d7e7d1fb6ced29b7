"""Pydantic schemas for the billing API."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


# ==================== Plan Schemas ====================

class PlanResponse(BaseModel):
    """A plan as shown to merchants."""
    name: str
    display_name: str
    price: Decimal
    price_display: str
    currency: str
    usage_limit: int = Field(..., description="Unique products per period (-1 for unlimited)")
    usage_limit_display: str
    billing_interval: str
    trial_days: Optional[int]
    features: list[str]
    recommended: bool


class PlanListResponse(BaseModel):
    plans: list[PlanResponse]


# ==================== Subscription Schemas ====================

class SubscriptionResponse(BaseModel):
    """Response schema for a shop subscription."""
    id: uuid.UUID
    shop: str
    plan_name: str
    status: str
    subscription_id: Optional[str]
    usage_limit: int
    usage_count: int
    total_price_changes: int
    current_period_end: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class SyncResponse(BaseModel):
    """Result of a sync request."""
    shop: str
    synced: bool = Field(..., description="False when the staleness check skipped the sync")
    plan_name: str
    changed: bool = False
    source: Optional[str] = None
    match_method: Optional[str] = None


# ==================== Usage Schemas ====================

class ProductBatchRequest(BaseModel):
    """Products about to be (or just) modified."""
    product_ids: list[str] = Field(..., description="Product identifiers, one entry per edit")


class QuotaImpactResponse(BaseModel):
    new_ids: list[str]
    already_tracked: list[str]
    total_after: int
    would_exceed: bool
    remaining_after: int = Field(..., description="-1 for unlimited plans")
    usage_limit: int
    current_count: int

    class Config:
        from_attributes = True


class TrackResponse(BaseModel):
    shop: str
    new_ids: list[str]
    usage_count: int
    usage_limit: int
    total_price_changes: int
    remaining: int

    class Config:
        from_attributes = True


class UsageStatsResponse(BaseModel):
    """Dashboard usage summary."""
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

    class Config:
        from_attributes = True


class UpgradeRecommendation(BaseModel):
    plan_name: str
    display_name: str
    reason: str


class SubscriptionDetailResponse(BaseModel):
    """Subscription plus usage and plan details."""
    subscription: SubscriptionResponse
    plan: PlanResponse
    usage: UsageStatsResponse
    needs_sync: bool
    upgrade: Optional[UpgradeRecommendation] = None


# ==================== Trial / Feature Schemas ====================

class TrialEligibilityResponse(BaseModel):
    shop: str
    plan_name: str
    eligible: bool
    reason: Optional[str] = None
    trial_days: Optional[int] = None


class FeatureAccessResponse(BaseModel):
    shop: str
    feature: str
    allowed: bool
