"""API Router for the billing engine.

Thin HTTP surface over :class:`BillingService`: plan listing, subscription
state, reconciliation, usage quota and shop redaction.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from pricedesk.core.database import get_session
from pricedesk.modules.billing.catalog import PlanCatalog, get_plan_catalog
from pricedesk.modules.billing.exceptions import BillingError
from pricedesk.modules.billing.schemas import (
    FeatureAccessResponse,
    PlanListResponse,
    ProductBatchRequest,
    QuotaImpactResponse,
    SubscriptionDetailResponse,
    SyncResponse,
    TrackResponse,
    TrialEligibilityResponse,
    UsageStatsResponse,
)
from pricedesk.modules.billing.service import BillingService
from pricedesk.modules.billing.sources import BillingSourceAdapter, build_shopify_sources

router = APIRouter(prefix="/billing", tags=["billing"])


def get_billing_service(
    session: AsyncSession = Depends(get_session),
    catalog: PlanCatalog = Depends(get_plan_catalog),
) -> BillingService:
    return BillingService(session, catalog)


def get_billing_sources(
    shop: str,
    x_shopify_access_token: Optional[str] = Header(None),
) -> list[BillingSourceAdapter]:
    """Billing source adapters for the shop, authenticated with its Admin API token."""
    if not x_shopify_access_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Shopify-Access-Token header is required",
        )
    return build_shopify_sources(shop, x_shopify_access_token)


def _http_error(e: BillingError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_dict())


# ==================== Plans ====================

@router.get("/plans", response_model=PlanListResponse)
async def list_plans(service: BillingService = Depends(get_billing_service)):
    """Get all plans in catalog order."""
    return PlanListResponse(plans=service.list_plans())


# ==================== Subscription ====================

@router.get("/shops/{shop}/subscription", response_model=SubscriptionDetailResponse)
async def get_subscription(
    shop: str,
    service: BillingService = Depends(get_billing_service),
):
    """Get the shop's subscription with plan and usage details.

    Served from the local record even when it may be stale.
    """
    try:
        return await service.get_subscription_detail(shop)
    except BillingError as e:
        raise _http_error(e)


@router.post("/shops/{shop}/sync", response_model=SyncResponse)
async def sync_subscription(
    shop: str,
    force: bool = Query(False, description="Reconcile even if the record looks fresh"),
    service: BillingService = Depends(get_billing_service),
    sources: list[BillingSourceAdapter] = Depends(get_billing_sources),
):
    """Reconcile the shop's subscription with the billing provider."""
    try:
        outcome = await service.sync(shop, sources, force=force)
        if outcome is None:
            subscription = await service.get_subscription(shop)
            return SyncResponse(shop=shop, synced=False, plan_name=subscription.plan_name)
    except BillingError as e:
        raise _http_error(e)

    return SyncResponse(
        shop=shop,
        synced=True,
        plan_name=outcome.plan_name,
        changed=outcome.changed,
        source=outcome.source.value if outcome.source else None,
        match_method=outcome.match_method.value,
    )


@router.delete("/shops/{shop}", status_code=status.HTTP_204_NO_CONTENT)
async def redact_shop(
    shop: str,
    service: BillingService = Depends(get_billing_service),
):
    """Delete the shop's subscription record (shop redaction)."""
    try:
        await service.redact_shop(shop)
    except BillingError as e:
        raise _http_error(e)


# ==================== Usage ====================

@router.get("/shops/{shop}/usage", response_model=UsageStatsResponse)
async def get_usage(
    shop: str,
    service: BillingService = Depends(get_billing_service),
):
    """Get usage statistics for the current period."""
    try:
        return await service.usage_stats(shop)
    except BillingError as e:
        raise _http_error(e)


@router.post("/shops/{shop}/usage/estimate", response_model=QuotaImpactResponse)
async def estimate_usage(
    shop: str,
    data: ProductBatchRequest,
    service: BillingService = Depends(get_billing_service),
):
    """Preview the quota impact of modifying products. Never writes."""
    try:
        return await service.estimate_impact(shop, data.product_ids)
    except BillingError as e:
        raise _http_error(e)


@router.post("/shops/{shop}/usage/track", response_model=TrackResponse)
async def track_usage(
    shop: str,
    data: ProductBatchRequest,
    service: BillingService = Depends(get_billing_service),
):
    """Record modified products against the quota.

    Returns 402 without recording anything if the quota would be exceeded.
    """
    try:
        return await service.track_modifications(shop, data.product_ids)
    except BillingError as e:
        raise _http_error(e)


@router.post("/shops/{shop}/usage/reset", response_model=UsageStatsResponse)
async def reset_usage(
    shop: str,
    service: BillingService = Depends(get_billing_service),
):
    """Clear the period's tracked products."""
    try:
        return await service.reset_usage(shop)
    except BillingError as e:
        raise _http_error(e)


# ==================== Plan helpers ====================

@router.get(
    "/shops/{shop}/trial-eligibility/{plan_name}",
    response_model=TrialEligibilityResponse,
)
async def get_trial_eligibility(
    shop: str,
    plan_name: str,
    service: BillingService = Depends(get_billing_service),
):
    """Check whether the shop may start a trial of a plan."""
    try:
        result = await service.check_trial_eligibility(shop, plan_name)
    except BillingError as e:
        raise _http_error(e)
    return TrialEligibilityResponse(
        shop=shop,
        plan_name=plan_name,
        eligible=result.eligible,
        reason=result.reason,
        trial_days=result.trial_days,
    )


@router.get("/shops/{shop}/features/{feature}", response_model=FeatureAccessResponse)
async def check_feature(
    shop: str,
    feature: str,
    service: BillingService = Depends(get_billing_service),
):
    """Check whether the shop's plan grants a feature."""
    try:
        allowed = await service.check_feature(shop, feature)
    except BillingError as e:
        raise _http_error(e)
    return FeatureAccessResponse(shop=shop, feature=feature, allowed=allowed)
