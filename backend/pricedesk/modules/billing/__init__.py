"""Billing module.

Maps Shopify billing amounts to plans, reconciles each shop's stored
subscription with the billing provider, and tracks the unique-product
usage quota.
"""

from pricedesk.modules.billing.router import router
from pricedesk.modules.billing.service import BillingService
from pricedesk.modules.billing.catalog import Plan, PlanCatalog, get_plan_catalog
from pricedesk.modules.billing.matcher import MatchMethod, PlanMatch, PlanMatcher
from pricedesk.modules.billing.models import (
    BillingRecord,
    BillingSourceType,
    Subscription,
    SubscriptionStatus,
)
from pricedesk.modules.billing.reconciliation import ReconcileOutcome, ReconciliationEngine
from pricedesk.modules.billing.usage import QuotaImpact, UsageTracker
from pricedesk.modules.billing.sync import SyncTrigger, needs_sync
from pricedesk.modules.billing.exceptions import (
    BillingError,
    ExternalFetchError,
    PersistenceError,
    PlanMatchError,
    QuotaExceededError,
)

__all__ = [
    "router",
    "BillingService",
    "Plan",
    "PlanCatalog",
    "get_plan_catalog",
    "MatchMethod",
    "PlanMatch",
    "PlanMatcher",
    "BillingRecord",
    "BillingSourceType",
    "Subscription",
    "SubscriptionStatus",
    "ReconcileOutcome",
    "ReconciliationEngine",
    "QuotaImpact",
    "UsageTracker",
    "SyncTrigger",
    "needs_sync",
    "BillingError",
    "ExternalFetchError",
    "PersistenceError",
    "PlanMatchError",
    "QuotaExceededError",
]
