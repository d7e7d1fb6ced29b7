"""Property-based tests for the unique-product quota.

**Feature: pricedesk-billing, Usage Quota**
"""

import asyncio
import tempfile
from pathlib import Path

from hypothesis import given, settings, strategies as st
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from pricedesk.core.database import Base
from pricedesk.modules.billing.catalog import UNLIMITED, build_default_catalog
from pricedesk.modules.billing.exceptions import QuotaExceededError
from pricedesk.modules.billing.usage import UsageTracker, compute_impact, dedupe

from billing_fakes import SHOP, load_subscription


# Small id alphabet so generated batches overlap often
product_id_strategy = st.integers(min_value=0, max_value=29).map(lambda n: f"gid://shopify/Product/{n}")

batch_strategy = st.lists(product_id_strategy, min_size=0, max_size=8)

tracked_strategy = st.lists(product_id_strategy, min_size=0, max_size=25, unique=True)

limit_strategy = st.one_of(st.just(UNLIMITED), st.integers(min_value=0, max_value=40))


def run_with_database(scenario):
    """Run an async scenario against a fresh SQLite database."""
    async def runner():
        with tempfile.TemporaryDirectory() as tmp:
            engine = create_async_engine(f"sqlite+aiosqlite:///{Path(tmp) / 'quota.db'}")
            try:
                async with engine.begin() as conn:
                    await conn.run_sync(Base.metadata.create_all)
                session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
                async with session_maker() as session:
                    await scenario(session, session_maker)
            finally:
                await engine.dispose()

    asyncio.run(runner())


class TestComputeImpact:
    """Quota projection over generated tracked sets and batches."""

    @given(tracked=tracked_strategy, candidates=batch_strategy, usage_limit=limit_strategy)
    @settings(max_examples=200)
    def test_total_after_is_size_of_union(self, tracked, candidates, usage_limit: int) -> None:
        impact = compute_impact(tracked, usage_limit, candidates)

        assert impact.total_after == len(set(tracked) | set(candidates))
        assert impact.current_count == len(tracked)
        assert not set(impact.new_ids) & set(tracked)
        assert impact.new_ids == [p for p in dedupe(candidates) if p not in tracked]
        assert impact.already_tracked == [p for p in dedupe(candidates) if p in tracked]

    @given(tracked=tracked_strategy, candidates=batch_strategy, usage_limit=limit_strategy)
    @settings(max_examples=200)
    def test_exceed_flag_follows_limit(self, tracked, candidates, usage_limit: int) -> None:
        impact = compute_impact(tracked, usage_limit, candidates)

        if usage_limit == UNLIMITED:
            assert not impact.would_exceed
            assert impact.remaining_after == UNLIMITED
        else:
            assert impact.would_exceed == (impact.total_after > usage_limit)
            assert impact.remaining_after == max(usage_limit - impact.total_after, 0)

    @given(tracked=tracked_strategy, candidates=batch_strategy, usage_limit=limit_strategy)
    @settings(max_examples=100)
    def test_projection_is_pure(self, tracked, candidates, usage_limit: int) -> None:
        tracked_before = list(tracked)
        candidates_before = list(candidates)

        first = compute_impact(tracked, usage_limit, candidates)
        second = compute_impact(tracked, usage_limit, candidates)

        assert first == second
        assert tracked == tracked_before
        assert candidates == candidates_before


class TestTrackerInvariants:
    """Tracker state over generated sequences of batches."""

    @given(batches=st.lists(batch_strategy, min_size=1, max_size=6))
    @settings(max_examples=25, deadline=None)
    def test_any_batch_sequence_keeps_set_within_limit(self, batches) -> None:
        """*For any* sequence of batches, usage SHALL equal the set size and never exceed the limit."""
        catalog = build_default_catalog()
        usage_limit = catalog.free_plan.usage_limit

        async def scenario(session, session_maker):
            tracker = UsageTracker(session, catalog)
            expected: list[str] = []
            expected_changes = 0

            for batch in batches:
                union = expected + [p for p in dedupe(batch) if p not in expected]
                if batch and len(union) > usage_limit:
                    try:
                        await tracker.track_modifications(SHOP, batch)
                    except QuotaExceededError:
                        pass
                    else:
                        raise AssertionError("over-limit batch was accepted")
                else:
                    result = await tracker.track_modifications(SHOP, batch)
                    expected = union
                    if batch:
                        expected_changes += len(batch)
                    assert result.usage_count == len(expected)

                stored = await load_subscription(session_maker)
                if stored is None:
                    assert expected == []
                    continue
                assert stored.usage_count == len(set(stored.unique_products_modified))
                assert stored.usage_count <= usage_limit
                assert stored.unique_products_modified == expected
                assert stored.total_price_changes == expected_changes

        run_with_database(scenario)

    @given(tracked=st.lists(product_id_strategy, max_size=15), candidates=batch_strategy)
    @settings(max_examples=25, deadline=None)
    def test_repeated_estimates_are_identical_and_write_nothing(self, tracked, candidates) -> None:
        catalog = build_default_catalog()

        async def scenario(session, session_maker):
            tracker = UsageTracker(session, catalog)
            if tracked:
                await tracker.track_modifications(SHOP, tracked)
            before = await load_subscription(session_maker)

            first = await tracker.estimate_impact(SHOP, candidates)
            second = await tracker.estimate_impact(SHOP, candidates)

            after = await load_subscription(session_maker)
            assert first == second
            if before is None:
                assert after is None
            else:
                assert after.unique_products_modified == before.unique_products_modified
                assert after.quota_version == before.quota_version

        run_with_database(scenario)
