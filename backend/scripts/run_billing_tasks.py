"""Run the billing period rollover manually.

Usage:
    cd backend
    python -m scripts.run_billing_tasks
"""

import asyncio

from pricedesk.core.database import async_session_maker
from pricedesk.core.logging import setup_logging
from pricedesk.modules.billing.tasks import rollover_expired_periods


async def main():
    """Run billing tasks."""
    setup_logging(level="INFO", json_format=False)

    print("\n" + "=" * 60)
    print("Running Billing Period Rollover")
    print("=" * 60)

    async with async_session_maker() as session:
        summary = await rollover_expired_periods(session)

        print(f"\nResults:")
        print(f"  Expired periods found: {summary['expired_found']}")
        print(f"  Rolled over: {summary['rolled_over']}")
        print(f"  Failed: {summary['failed']}")
        print(f"  Run at: {summary['run_at']}")


if __name__ == "__main__":
    asyncio.run(main())
