"""Plan catalog.

Immutable table of service plans plus the price history used to resolve
amounts charged under earlier price points. Built once at process start
and handed to the matcher, the reconciliation engine and the usage tracker.
"""

import json
from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Iterator, Optional

from pydantic import BaseModel, Field

from pricedesk.core.config import settings
from pricedesk.modules.billing.exceptions import CatalogConfigurationError


FREE_PLAN = "free"

# Usage limit sentinel for plans without a product quota
UNLIMITED = -1


@dataclass(frozen=True)
class Plan:
    """A named service tier with a price and a product quota."""
    name: str
    display_name: str
    price: Decimal
    currency: str
    usage_limit: int
    billing_interval: str = "EVERY_30_DAYS"
    trial_days: Optional[int] = None
    features: tuple[str, ...] = ()
    capabilities: frozenset[str] = field(default_factory=frozenset)
    recommended: bool = False

    @property
    def is_free(self) -> bool:
        return self.name == FREE_PLAN

    @property
    def is_unlimited(self) -> bool:
        return self.usage_limit == UNLIMITED


@dataclass(frozen=True)
class PriceRange:
    """Historical price window mapped to a plan (bounds inclusive)."""
    low: Decimal
    high: Decimal
    plan_name: str

    def contains(self, amount: Decimal) -> bool:
        return self.low <= amount <= self.high

    def overlaps(self, other: "PriceRange") -> bool:
        return self.low <= other.high and other.low <= self.high


class PlanCatalog:
    """Validated, read-only collection of plans in declaration order."""

    def __init__(self, plans: list[Plan], price_history: Optional[list[PriceRange]] = None):
        self._plans: tuple[Plan, ...] = tuple(plans)
        self._by_name: dict[str, Plan] = {}
        self._price_history: tuple[PriceRange, ...] = tuple(price_history or ())
        self._validate()

    def _validate(self) -> None:
        for plan in self._plans:
            if plan.name in self._by_name:
                raise CatalogConfigurationError(
                    f"Duplicate plan name '{plan.name}'", context={"plan": plan.name}
                )
            if plan.usage_limit < 0 and plan.usage_limit != UNLIMITED:
                raise CatalogConfigurationError(
                    f"Plan '{plan.name}' has an invalid usage limit {plan.usage_limit}",
                    context={"plan": plan.name},
                )
            if plan.price < 0:
                raise CatalogConfigurationError(
                    f"Plan '{plan.name}' has a negative price", context={"plan": plan.name}
                )
            self._by_name[plan.name] = plan

        free = self._by_name.get(FREE_PLAN)
        if free is None:
            raise CatalogConfigurationError("Catalog must define a 'free' plan")
        if free.price != 0:
            raise CatalogConfigurationError(
                "The 'free' plan must be priced at 0", context={"price": str(free.price)}
            )

        for entry in self._price_history:
            if entry.plan_name not in self._by_name:
                raise CatalogConfigurationError(
                    f"Price history references unknown plan '{entry.plan_name}'",
                    context={"plan": entry.plan_name},
                )
            if entry.low <= 0 or entry.low > entry.high:
                raise CatalogConfigurationError(
                    f"Invalid price range {entry.low}-{entry.high}",
                    context={"plan": entry.plan_name},
                )

        # Overlapping windows would make range matching ambiguous
        for i, first in enumerate(self._price_history):
            for second in self._price_history[i + 1:]:
                if first.overlaps(second):
                    raise CatalogConfigurationError(
                        f"Price ranges {first.low}-{first.high} ({first.plan_name}) and "
                        f"{second.low}-{second.high} ({second.plan_name}) overlap",
                        context={"plans": [first.plan_name, second.plan_name]},
                    )

    def __iter__(self) -> Iterator[Plan]:
        return iter(self._plans)

    def __len__(self) -> int:
        return len(self._plans)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    @property
    def plans(self) -> tuple[Plan, ...]:
        return self._plans

    @property
    def price_history(self) -> tuple[PriceRange, ...]:
        return self._price_history

    @property
    def free_plan(self) -> Plan:
        return self._by_name[FREE_PLAN]

    def get(self, name: Optional[str]) -> Plan:
        """Get a plan by name, falling back to the free plan for unknown names."""
        if name is None:
            return self.free_plan
        return self._by_name.get(name, self.free_plan)

    def require(self, name: str) -> Plan:
        """Get a plan by name or raise KeyError."""
        return self._by_name[name]

    def is_unlimited(self, name: str) -> bool:
        return self.get(name).is_unlimited

    def next_tier(self, name: str) -> Optional[Plan]:
        """The plan declared right after ``name``, if any."""
        names = [p.name for p in self._plans]
        if name not in names:
            return None
        index = names.index(name)
        return self._plans[index + 1] if index + 1 < len(self._plans) else None

    @classmethod
    def from_definition(cls, definition: "CatalogDefinition") -> "PlanCatalog":
        plans = [
            Plan(
                name=p.name,
                display_name=p.display_name,
                price=p.price,
                currency=p.currency,
                usage_limit=p.usage_limit,
                billing_interval=p.billing_interval,
                trial_days=p.trial_days,
                features=tuple(p.features),
                capabilities=frozenset(p.capabilities),
                recommended=p.recommended,
            )
            for p in definition.plans
        ]
        history = [
            PriceRange(low=r.low, high=r.high, plan_name=r.plan)
            for r in definition.price_history
        ]
        return cls(plans, history)

    @classmethod
    def from_file(cls, path: str | Path) -> "PlanCatalog":
        """Load a catalog from a JSON document."""
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls.from_definition(CatalogDefinition.model_validate(raw))


# ==================== JSON definition schemas ====================

class PlanDefinition(BaseModel):
    """Plan entry as written in a catalog file."""
    name: str
    display_name: str
    price: Decimal = Field(..., ge=0)
    currency: str = "USD"
    usage_limit: int = Field(..., description="Unique products per period (-1 for unlimited)")
    billing_interval: str = "EVERY_30_DAYS"
    trial_days: Optional[int] = None
    features: list[str] = Field(default_factory=list)
    capabilities: list[str] = Field(default_factory=list)
    recommended: bool = False


class PriceRangeDefinition(BaseModel):
    """Historical price window entry as written in a catalog file."""
    low: Decimal
    high: Decimal
    plan: str


class CatalogDefinition(BaseModel):
    """Top-level catalog file document."""
    plans: list[PlanDefinition]
    price_history: list[PriceRangeDefinition] = Field(default_factory=list)


# ==================== Built-in catalog ====================

DEFAULT_PLANS = [
    Plan(
        name=FREE_PLAN,
        display_name="Free",
        price=Decimal("0"),
        currency="USD",
        usage_limit=20,
        features=(
            "Modify prices for up to 20 unique products per month",
            "Unlimited price changes per product",
            "4 modification types (%, fixed, +, -)",
            "Basic modification history",
            "Product search and filtering",
            "Community support via email",
        ),
    ),
    Plan(
        name="starter",
        display_name="Starter",
        price=Decimal("4.99"),
        currency="USD",
        usage_limit=500,
        trial_days=7,
        features=(
            "Modify prices for up to 500 unique products per month",
            "Unlimited price changes per product",
            "All modification types and filters",
            "Complete modification history",
            "Advanced product search",
            "Email support (48h response)",
            "Export pricing reports",
        ),
        capabilities=frozenset({"advanced_filters", "csv_export", "priority_support"}),
    ),
    Plan(
        name="standard",
        display_name="Standard",
        price=Decimal("9.99"),
        currency="USD",
        usage_limit=UNLIMITED,
        trial_days=7,
        features=(
            "Modify prices for unlimited products",
            "Unlimited price changes per product",
            "All modification types and bulk operations",
            "Complete modification history with filters",
            "Advanced product filters and search",
            "CSV export of price changes",
            "Priority email support (24h response)",
            "Detailed usage analytics",
            "Scheduled price updates",
        ),
        capabilities=frozenset({
            "advanced_filters", "csv_export", "bulk_operations", "unlimited_products",
            "priority_support", "analytics", "scheduled_updates",
        }),
        recommended=True,
    ),
]

DEFAULT_PRICE_HISTORY = [
    PriceRange(low=Decimal("4.50"), high=Decimal("5.50"), plan_name="starter"),
    PriceRange(low=Decimal("9.50"), high=Decimal("10.50"), plan_name="standard"),
]

# Every gated capability known to any catalog; features outside this set are ungated
GATED_CAPABILITIES = frozenset({
    "advanced_filters", "csv_export", "bulk_operations", "unlimited_products",
    "priority_support", "analytics", "scheduled_updates",
})


def build_default_catalog() -> PlanCatalog:
    return PlanCatalog(DEFAULT_PLANS, DEFAULT_PRICE_HISTORY)


@lru_cache(maxsize=1)
def get_plan_catalog() -> PlanCatalog:
    """Process-wide catalog, loaded once from settings."""
    if settings.PLAN_CATALOG_PATH:
        return PlanCatalog.from_file(settings.PLAN_CATALOG_PATH)
    return build_default_catalog()


def format_usage_limit(usage_limit: int) -> str:
    if usage_limit == UNLIMITED:
        return "unlimited"
    return str(usage_limit)


def format_usage_display(current: int, usage_limit: int) -> str:
    return f"{current} / {format_usage_limit(usage_limit)}"


def format_price(plan: Plan) -> str:
    if plan.price == 0:
        return "Free"
    symbol = "$" if plan.currency == "USD" else f"{plan.currency} "
    return f"{symbol}{plan.price:.2f}/month"
