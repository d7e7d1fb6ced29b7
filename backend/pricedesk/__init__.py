"""PriceDesk billing backend.

Plan reconciliation against Shopify billing and unique-product usage quota
for the PriceDesk price-editing app.

Modules:
    - core: Configuration, database, logging, Celery setup
    - modules.billing: Plan catalog, reconciliation, usage tracking
"""

__version__ = "0.1.0"
