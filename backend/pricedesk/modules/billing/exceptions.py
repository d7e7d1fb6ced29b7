"""
Billing engine exceptions.

Every failure carries an error code, an HTTP status for the API layer,
structured context and a recovery hint.
"""

from typing import Any


class BillingError(Exception):
    """
    Base billing engine error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "BILLING_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class CatalogConfigurationError(BillingError):
    """Plan catalog definition is inconsistent. Raised at startup."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(
            message,
            "CATALOG_CONFIGURATION_ERROR",
            status_code=500,
            context=context,
            recovery_hint="Fix the plan catalog definition and restart the service",
        )


class ExternalFetchError(BillingError):
    """Billing source unreachable, unauthorized or timed out."""

    def __init__(
        self,
        message: str,
        shop: str | None = None,
        source_type: str | None = None,
    ) -> None:
        context = {}
        if shop:
            context["shop"] = shop
        if source_type:
            context["source_type"] = source_type

        super().__init__(
            message,
            "EXTERNAL_FETCH_ERROR",
            status_code=502,
            context=context,
            recovery_hint="Local subscription state was left untouched; retry the sync later",
        )


class PlanMatchError(BillingError):
    """A positive billing amount does not correspond to any plan."""

    def __init__(self, message: str, shop: str, amount: Any, record_id: str | None = None) -> None:
        context = {"shop": shop, "amount": str(amount)}
        if record_id:
            context["record_id"] = record_id

        super().__init__(
            message,
            "PLAN_MATCH_ERROR",
            status_code=409,
            context=context,
            recovery_hint="Add the amount to the plan catalog price history",
        )


class QuotaExceededError(BillingError):
    """Tracking the requested products would breach the usage limit."""

    def __init__(
        self,
        message: str,
        shop: str,
        usage_limit: int,
        current_count: int,
        requested_new: int,
    ) -> None:
        super().__init__(
            message,
            "QUOTA_EXCEEDED",
            status_code=402,
            context={
                "shop": shop,
                "usage_limit": usage_limit,
                "current_count": current_count,
                "requested_new": requested_new,
            },
            recovery_hint="Upgrade the plan or modify fewer new products this period",
        )


class PersistenceError(BillingError):
    """Subscription store unavailable or write could not be applied."""

    def __init__(self, message: str, shop: str | None = None) -> None:
        super().__init__(
            message,
            "PERSISTENCE_ERROR",
            status_code=503,
            context={"shop": shop} if shop else None,
            recovery_hint="Last known subscription state is still served; retry later",
        )
