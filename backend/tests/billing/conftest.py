"""Fixtures for billing engine tests.

Repository-backed tests run against a file-based SQLite database per test,
so separate sessions use separate connections like separate workers would.
"""

from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from pricedesk.core.database import Base
from pricedesk.modules.billing.catalog import (
    FREE_PLAN,
    UNLIMITED,
    Plan,
    PlanCatalog,
    PriceRange,
    build_default_catalog,
)
from pricedesk.modules.billing.models import Subscription  # noqa: F401


@pytest.fixture
def catalog() -> PlanCatalog:
    """Built-in catalog: free 20, starter 500, standard unlimited."""
    return build_default_catalog()


@pytest.fixture
def pro_catalog() -> PlanCatalog:
    """Small catalog: free $0/20, standard $4.99/100, pro $9.99/1000."""
    return PlanCatalog(
        [
            Plan(name=FREE_PLAN, display_name="Free", price=Decimal("0"), currency="USD", usage_limit=20),
            Plan(name="standard", display_name="Standard", price=Decimal("4.99"), currency="USD", usage_limit=100),
            Plan(name="pro", display_name="Pro", price=Decimal("9.99"), currency="USD", usage_limit=1000),
        ],
        [PriceRange(low=Decimal("9.50"), high=Decimal("10.50"), plan_name="pro")],
    )


@pytest.fixture
def unlimited_catalog() -> PlanCatalog:
    """Free plan of 2 products and an unlimited paid plan."""
    return PlanCatalog([
        Plan(name=FREE_PLAN, display_name="Free", price=Decimal("0"), currency="USD", usage_limit=2),
        Plan(name="max", display_name="Max", price=Decimal("19.99"), currency="USD", usage_limit=UNLIMITED),
    ])


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session
