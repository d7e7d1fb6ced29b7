"""Plan matching.

Maps an amount charged by the billing provider to a catalog plan.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Union

from pricedesk.modules.billing.catalog import Plan, PlanCatalog


# Amounts closer than this to a catalog price are an exact match
PRICE_TOLERANCE = Decimal("0.02")


class MatchMethod(str, Enum):
    """How a plan was resolved from an amount."""
    EXACT = "exact"
    PRICE_HISTORY = "price_history"
    FREE = "free"
    UNMATCHED = "unmatched"


@dataclass(frozen=True)
class PlanMatch:
    """Result of matching an amount.

    ``plan`` is the free plan both for a genuine zero amount and for an
    amount that matched nothing; ``method`` tells the two apart.
    """
    plan: Plan
    amount: Decimal
    method: MatchMethod

    @property
    def unmatched(self) -> bool:
        return self.method == MatchMethod.UNMATCHED

    @property
    def plan_name(self) -> str:
        return self.plan.name


def to_decimal(amount: Union[Decimal, float, int, str]) -> Decimal:
    """Normalize an amount to Decimal. Floats go through str() to avoid binary noise."""
    if isinstance(amount, Decimal):
        return amount
    try:
        return Decimal(str(amount))
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {amount!r}") from e


class PlanMatcher:
    """Resolves amounts against a catalog. Pure: no I/O, no mutation."""

    def __init__(self, catalog: PlanCatalog):
        self.catalog = catalog

    def match(self, amount: Union[Decimal, float, int, str]) -> PlanMatch:
        value = to_decimal(amount)

        if value == 0:
            return PlanMatch(self.catalog.free_plan, value, MatchMethod.FREE)

        # A negative charge is never a legitimate free plan
        if value < 0:
            return PlanMatch(self.catalog.free_plan, value, MatchMethod.UNMATCHED)

        # First plan in declaration order wins
        for plan in self.catalog:
            if abs(plan.price - value) < PRICE_TOLERANCE:
                method = MatchMethod.FREE if plan.is_free else MatchMethod.EXACT
                return PlanMatch(plan, value, method)

        for entry in self.catalog.price_history:
            if entry.contains(value):
                return PlanMatch(
                    self.catalog.require(entry.plan_name), value, MatchMethod.PRICE_HISTORY
                )

        return PlanMatch(self.catalog.free_plan, value, MatchMethod.UNMATCHED)
