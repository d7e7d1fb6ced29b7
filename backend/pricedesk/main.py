"""FastAPI application entry point."""

from fastapi import FastAPI

from pricedesk.core.config import settings
from pricedesk.core.logging import setup_logging
from pricedesk.core.middleware import CorrelationIdMiddleware
from pricedesk.modules.billing import router as billing_router
from pricedesk.modules.billing.catalog import get_plan_catalog

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="""
## PriceDesk Billing API

Subscription reconciliation against Shopify billing and unique-product usage quota.

* **Plans** - Plan catalog with prices, limits and trials
* **Subscriptions** - Per-shop plan state, reconciled with the billing provider
* **Usage** - Quota accounting by unique products modified per billing period
    """,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    openapi_tags=[
        {
            "name": "health",
            "description": "Health check endpoints",
        },
        {
            "name": "billing",
            "description": "Plans, subscription reconciliation and usage quota",
        },
    ],
)

# Set up logging with correlation IDs
setup_logging(
    level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
    json_format=settings.LOG_JSON,
    include_stack_trace=True,
)

# Load and validate the plan catalog once; a bad catalog aborts startup
get_plan_catalog()

app.add_middleware(CorrelationIdMiddleware)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint.

    Returns:
        dict: Health status with "healthy" or "unhealthy" value.
    """
    return {"status": "healthy"}


# Include routers
app.include_router(billing_router, prefix=settings.API_V1_PREFIX)
