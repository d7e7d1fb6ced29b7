"""Billing sources - adapters over the Shopify Admin GraphQL API.

Two upstream record families report what a shop is paying for:
app subscriptions (current mechanism) and recurring application charges
(legacy mechanism). Each family has one adapter implementing
``BillingSourceAdapter.fetch_active_records``.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

import httpx

from pricedesk.core.config import settings
from pricedesk.modules.billing.exceptions import ExternalFetchError
from pricedesk.modules.billing.matcher import to_decimal
from pricedesk.modules.billing.models import BillingRecord, BillingSourceType, as_naive_utc

logger = logging.getLogger(__name__)


ACTIVE_SUBSCRIPTIONS_QUERY = """
query GetActiveSubscriptions {
  app {
    installation {
      activeSubscriptions {
        id
        name
        status
        createdAt
        currentPeriodEnd
        lineItems {
          plan {
            pricingDetails {
              ... on AppRecurringPricing {
                price { amount currencyCode }
                interval
              }
            }
          }
        }
      }
    }
  }
}
"""

RECURRING_CHARGES_QUERY = """
query GetAppRecurringApplicationCharges($first: Int!) {
  appRecurringApplicationCharges(first: $first) {
    edges {
      node {
        id
        name
        price { amount currencyCode }
        status
        createdAt
        activatedOn
      }
    }
  }
}
"""


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp from the API into naive UTC."""
    if not value:
        return None
    return as_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


class ShopifyAdminClient:
    """Minimal async GraphQL client for one shop's Admin API."""

    def __init__(
        self,
        shop: str,
        access_token: str,
        api_version: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.shop = shop
        self.access_token = access_token
        self.api_version = api_version or settings.SHOPIFY_API_VERSION
        self.timeout = timeout or settings.BILLING_FETCH_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def endpoint(self) -> str:
        return f"https://{self.shop}/admin/api/{self.api_version}/graphql.json"

    async def execute(self, query: str, variables: Optional[dict] = None) -> dict:
        """Run a GraphQL query and return its ``data`` payload.

        Raises:
            ExternalFetchError: On transport, HTTP or GraphQL errors
        """
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    self.endpoint,
                    headers={
                        "X-Shopify-Access-Token": self.access_token,
                        "Content-Type": "application/json",
                    },
                    json={"query": query, "variables": variables or {}},
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as e:
            raise ExternalFetchError(
                f"Admin API returned HTTP {e.response.status_code}", shop=self.shop
            ) from e
        except httpx.HTTPError as e:
            raise ExternalFetchError(f"Admin API request failed: {e}", shop=self.shop) from e
        except ValueError as e:
            raise ExternalFetchError("Admin API returned invalid JSON", shop=self.shop) from e

        if payload.get("errors"):
            messages = ", ".join(
                str(err.get("message", err)) if isinstance(err, dict) else str(err)
                for err in payload["errors"]
            )
            logger.warning(f"GraphQL errors from {self.shop}: {messages}")
            raise ExternalFetchError(f"GraphQL errors: {messages}", shop=self.shop)

        return payload.get("data") or {}


class BillingSourceAdapter(ABC):
    """Fetches billing records of one record family for a shop."""

    source_type: BillingSourceType

    @abstractmethod
    async def fetch_active_records(self, shop: str) -> list[BillingRecord]:
        """Return the records this source reports for the shop.

        Raises:
            ExternalFetchError: When the source cannot be queried
        """


class AppSubscriptionSource(BillingSourceAdapter):
    """App subscriptions of the current app installation."""

    source_type = BillingSourceType.SUBSCRIPTION

    def __init__(self, client: ShopifyAdminClient):
        self.client = client

    async def fetch_active_records(self, shop: str) -> list[BillingRecord]:
        data = await self.client.execute(ACTIVE_SUBSCRIPTIONS_QUERY)
        installation = (data.get("app") or {}).get("installation") or {}
        nodes = installation.get("activeSubscriptions") or []
        return [self._to_record(node) for node in nodes]

    def _to_record(self, node: dict[str, Any]) -> BillingRecord:
        price = _first_line_item_price(node)
        return BillingRecord(
            id=node["id"],
            source_type=self.source_type,
            status=node.get("status") or "",
            amount=to_decimal(price.get("amount") or "0"),
            currency=price.get("currencyCode") or "USD",
            current_period_end=parse_timestamp(node.get("currentPeriodEnd")),
            created_at=parse_timestamp(node.get("createdAt")),
            name=node.get("name"),
        )


class RecurringChargeSource(BillingSourceAdapter):
    """Legacy recurring application charges."""

    source_type = BillingSourceType.CHARGE

    def __init__(self, client: ShopifyAdminClient, page_size: int = 10):
        self.client = client
        self.page_size = page_size

    async def fetch_active_records(self, shop: str) -> list[BillingRecord]:
        data = await self.client.execute(
            RECURRING_CHARGES_QUERY, {"first": self.page_size}
        )
        edges = (data.get("appRecurringApplicationCharges") or {}).get("edges") or []
        return [self._to_record(edge["node"]) for edge in edges if edge.get("node")]

    def _to_record(self, node: dict[str, Any]) -> BillingRecord:
        price = node.get("price") or {}
        return BillingRecord(
            id=node["id"],
            source_type=self.source_type,
            status=node.get("status") or "",
            amount=to_decimal(price.get("amount") or "0"),
            currency=price.get("currencyCode") or "USD",
            # Charges carry no period end; the engine derives one
            current_period_end=None,
            created_at=parse_timestamp(node.get("createdAt")),
            name=node.get("name"),
        )


def _first_line_item_price(node: dict[str, Any]) -> dict[str, Any]:
    line_items = node.get("lineItems") or []
    if not line_items:
        return {}
    plan = line_items[0].get("plan") or {}
    pricing = plan.get("pricingDetails") or {}
    return pricing.get("price") or {}


def build_shopify_sources(
    shop: str,
    access_token: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> list[BillingSourceAdapter]:
    """Adapters in reconciliation priority order."""
    client = ShopifyAdminClient(shop, access_token, transport=transport)
    return [AppSubscriptionSource(client), RecurringChargeSource(client)]
