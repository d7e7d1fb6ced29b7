"""Tests for subscription reconciliation against billing sources."""

from datetime import datetime, timedelta, timezone

import pytest

from pricedesk.modules.billing.catalog import FREE_PLAN
from pricedesk.modules.billing.exceptions import ExternalFetchError, PlanMatchError
from pricedesk.modules.billing.matcher import MatchMethod
from pricedesk.modules.billing.models import BillingSourceType, utcnow
from pricedesk.modules.billing.reconciliation import ReconciliationEngine, is_active_status, smart_sync
from pricedesk.modules.billing.repository import SubscriptionRepository
from pricedesk.modules.billing.sync import SyncTrigger
from pricedesk.modules.billing.usage import UsageTracker

from billing_fakes import (
    SHOP,
    StaticSource,
    charge_source,
    fetch_error,
    load_subscription,
    make_record,
    subscription_source,
)


def engine_for(session, catalog, *sources, **kwargs) -> ReconciliationEngine:
    return ReconciliationEngine(session, catalog, list(sources), **kwargs)


def charge_record(record_id: str = "gid://shopify/AppRecurringApplicationCharge/7", amount: str = "9.99", status: str = "active"):
    return make_record(record_id, amount, status, BillingSourceType.CHARGE)


class TestActiveStatus:

    @pytest.mark.parametrize("status", ["active", "ACTIVE", "Active", " active "])
    def test_active_variants(self, status):
        assert is_active_status(status)

    @pytest.mark.parametrize("status", ["PENDING", "CANCELLED", "DECLINED", "", None])
    def test_inactive(self, status):
        assert not is_active_status(status)


class TestReconcile:

    @pytest.mark.asyncio
    async def test_active_subscription_sets_matching_plan(self, session, session_maker, pro_catalog):
        """Active subscription at 9.99 with a pro plan at 9.99 puts the shop on pro."""
        record = make_record(amount="9.99")
        engine = engine_for(session, pro_catalog, subscription_source(record), charge_source())

        outcome = await engine.reconcile(SHOP)

        stored = await load_subscription(session_maker)
        assert stored.plan_name == "pro"
        assert stored.usage_limit == pro_catalog.require("pro").usage_limit
        assert stored.subscription_id == record.id
        assert stored.status == "active"
        assert outcome.source == BillingSourceType.SUBSCRIPTION
        assert outcome.match_method == MatchMethod.EXACT
        assert outcome.changed

    @pytest.mark.asyncio
    async def test_no_active_records_sets_free_and_keeps_products(self, session, session_maker, pro_catalog):
        """Zero active records in both sources puts the shop on free without touching usage."""
        tracker = UsageTracker(session, pro_catalog)
        await tracker.track_modifications(SHOP, ["p1", "p2", "p3"])
        engine = engine_for(
            session,
            pro_catalog,
            subscription_source(make_record(status="CANCELLED")),
            charge_source(),
        )

        outcome = await engine.reconcile(SHOP)

        stored = await load_subscription(session_maker)
        assert stored.plan_name == FREE_PLAN
        assert stored.subscription_id is None
        assert stored.usage_limit == 20
        assert stored.unique_products_modified == ["p1", "p2", "p3"]
        assert stored.total_price_changes == 3
        assert outcome.source is None
        assert outcome.match_method == MatchMethod.FREE

    @pytest.mark.asyncio
    async def test_downgrade_clears_subscription_id(self, session, session_maker, pro_catalog):
        await engine_for(session, pro_catalog, subscription_source(make_record()), charge_source()).reconcile(SHOP)

        outcome = await engine_for(session, pro_catalog, subscription_source(), charge_source()).reconcile(SHOP)

        stored = await load_subscription(session_maker)
        assert stored.plan_name == FREE_PLAN
        assert stored.subscription_id is None
        assert outcome.previous_plan == "pro"
        assert outcome.changed

    @pytest.mark.asyncio
    async def test_record_period_end_is_used(self, session, session_maker, pro_catalog):
        period_end = datetime(2030, 1, 15, 12, 0, 0)
        record = make_record(current_period_end=period_end)

        await engine_for(session, pro_catalog, subscription_source(record), charge_source()).reconcile(SHOP)

        stored = await load_subscription(session_maker)
        assert stored.current_period_end.replace(tzinfo=None) == period_end

    @pytest.mark.asyncio
    async def test_aware_period_end_is_stored_as_naive_utc(self, session, session_maker, pro_catalog):
        eastern = timezone(timedelta(hours=-5))
        record = make_record(current_period_end=datetime(2030, 1, 15, 7, 0, 0, tzinfo=eastern))
        engine = engine_for(session, pro_catalog, subscription_source(record), charge_source())

        await engine.reconcile(SHOP)
        second = await engine.reconcile(SHOP)

        stored = await load_subscription(session_maker)
        assert stored.current_period_end.replace(tzinfo=None) == datetime(2030, 1, 15, 12, 0, 0)
        assert second.changed is False

    @pytest.mark.asyncio
    async def test_rolled_over_period_end_is_not_moved_back(self, session, session_maker, pro_catalog):
        """A locally advanced period end survives a provider that has not renewed yet."""
        reported = datetime(2030, 1, 15, 12, 0, 0)
        advanced = reported + timedelta(days=30)
        record = make_record(current_period_end=reported)
        engine = engine_for(session, pro_catalog, subscription_source(record), charge_source())
        await engine.reconcile(SHOP)
        await SubscriptionRepository(session, pro_catalog).update_reconciliation_fields(
            SHOP, current_period_end=advanced
        )

        outcome = await engine.reconcile(SHOP)

        stored = await load_subscription(session_maker)
        assert stored.current_period_end.replace(tzinfo=None) == advanced
        assert outcome.changed is False

    @pytest.mark.asyncio
    async def test_new_arrangement_takes_reported_period_end(self, session, session_maker, pro_catalog):
        reported = datetime(2030, 1, 15, 12, 0, 0)
        first = make_record("gid://shopify/AppSubscription/1", current_period_end=reported + timedelta(days=60))
        second = make_record("gid://shopify/AppSubscription/2", current_period_end=reported)
        await engine_for(session, pro_catalog, subscription_source(first), charge_source()).reconcile(SHOP)

        await engine_for(session, pro_catalog, subscription_source(second), charge_source()).reconcile(SHOP)

        stored = await load_subscription(session_maker)
        assert stored.subscription_id == second.id
        assert stored.current_period_end.replace(tzinfo=None) == reported

    @pytest.mark.asyncio
    async def test_missing_period_end_defaults_to_thirty_days(self, session, session_maker, pro_catalog):
        before = utcnow()

        await engine_for(session, pro_catalog, subscription_source(), charge_source(charge_record())).reconcile(SHOP)

        stored = await load_subscription(session_maker)
        period_end = stored.current_period_end.replace(tzinfo=None)
        assert before + timedelta(days=30) <= period_end <= utcnow() + timedelta(days=30)

    @pytest.mark.asyncio
    async def test_price_history_amount_matches(self, session, session_maker, pro_catalog):
        outcome = await engine_for(
            session, pro_catalog, subscription_source(make_record(amount="10.25")), charge_source()
        ).reconcile(SHOP)

        assert outcome.plan_name == "pro"
        assert outcome.match_method == MatchMethod.PRICE_HISTORY


class TestIdempotence:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("use_charge", [False, True])
    async def test_rerun_leaves_fields_identical(self, session, session_maker, pro_catalog, use_charge):
        """Reconciling twice with unchanged upstream data yields identical reconciliation fields."""
        if use_charge:
            sources = (subscription_source(), charge_source(charge_record()))
        else:
            sources = (subscription_source(make_record(current_period_end=datetime(2030, 1, 1))), charge_source())

        first = await engine_for(session, pro_catalog, *sources).reconcile(SHOP)
        after_first = (await load_subscription(session_maker)).reconciliation_state()

        second = await engine_for(session, pro_catalog, *sources).reconcile(SHOP)
        after_second = (await load_subscription(session_maker)).reconciliation_state()

        assert after_first == after_second
        assert first.state == second.state
        assert second.changed is False

    @pytest.mark.asyncio
    async def test_free_rerun_keeps_period_end(self, session, session_maker, pro_catalog):
        engine = engine_for(session, pro_catalog, subscription_source(), charge_source())

        await engine.reconcile(SHOP)
        first = (await load_subscription(session_maker)).current_period_end
        await engine.reconcile(SHOP)
        second = (await load_subscription(session_maker)).current_period_end

        assert first == second


class TestSourcePriority:

    @pytest.mark.asyncio
    async def test_subscription_source_wins_and_charges_not_queried(self, session, pro_catalog):
        charges = charge_source(charge_record(amount="4.99"))
        engine = engine_for(session, pro_catalog, subscription_source(make_record(amount="9.99")), charges)

        outcome = await engine.reconcile(SHOP)

        assert outcome.plan_name == "pro"
        assert outcome.source == BillingSourceType.SUBSCRIPTION
        assert charges.calls == 0

    @pytest.mark.asyncio
    async def test_falls_back_to_charges(self, session, pro_catalog):
        engine = engine_for(session, pro_catalog, subscription_source(), charge_source(charge_record(amount="4.99")))

        outcome = await engine.reconcile(SHOP)

        assert outcome.plan_name == "standard"
        assert outcome.source == BillingSourceType.CHARGE

    @pytest.mark.asyncio
    async def test_falls_back_to_charges_when_subscription_source_fails(self, session, pro_catalog):
        engine = engine_for(
            session,
            pro_catalog,
            subscription_source(error=fetch_error()),
            charge_source(charge_record()),
        )

        outcome = await engine.reconcile(SHOP)

        assert outcome.source == BillingSourceType.CHARGE
        assert outcome.plan_name == "pro"

    @pytest.mark.asyncio
    async def test_first_active_record_is_used(self, session, pro_catalog):
        first = make_record("gid://shopify/AppSubscription/1", "4.99")
        second = make_record("gid://shopify/AppSubscription/2", "9.99")

        outcome = await engine_for(session, pro_catalog, subscription_source(first, second), charge_source()).reconcile(SHOP)

        assert outcome.record_id == first.id
        assert outcome.plan_name == "standard"


class TestFailures:

    @pytest.mark.asyncio
    async def test_fetch_error_leaves_state_untouched(self, session, session_maker, pro_catalog):
        await engine_for(session, pro_catalog, subscription_source(make_record()), charge_source()).reconcile(SHOP)
        before = (await load_subscription(session_maker)).reconciliation_state()

        engine = engine_for(session, pro_catalog, subscription_source(error=fetch_error()), charge_source())
        with pytest.raises(ExternalFetchError):
            await engine.reconcile(SHOP)

        assert (await load_subscription(session_maker)).reconciliation_state() == before

    @pytest.mark.asyncio
    async def test_fetch_error_does_not_create_row(self, session, session_maker, pro_catalog):
        engine = engine_for(
            session, pro_catalog, subscription_source(error=fetch_error()), charge_source(error=fetch_error())
        )

        with pytest.raises(ExternalFetchError):
            await engine.reconcile(SHOP)

        assert await load_subscription(session_maker) is None

    @pytest.mark.asyncio
    async def test_unexpected_adapter_error_is_wrapped(self, session, pro_catalog):
        engine = engine_for(
            session, pro_catalog, subscription_source(error=RuntimeError("boom")), charge_source()
        )

        with pytest.raises(ExternalFetchError) as exc_info:
            await engine.reconcile(SHOP)

        assert exc_info.value.context["source_type"] == "subscription"

    @pytest.mark.asyncio
    async def test_timeout_is_a_fetch_error(self, session, session_maker, pro_catalog):
        slow = StaticSource(BillingSourceType.SUBSCRIPTION, [make_record()], delay=1.0)
        engine = engine_for(session, pro_catalog, slow, charge_source(), fetch_timeout=0.05)

        with pytest.raises(ExternalFetchError):
            await engine.reconcile(SHOP)

        assert await load_subscription(session_maker) is None

    @pytest.mark.asyncio
    async def test_unmatched_amount_raises_without_write(self, session, session_maker, pro_catalog):
        await engine_for(session, pro_catalog, subscription_source(make_record()), charge_source()).reconcile(SHOP)
        before = (await load_subscription(session_maker)).reconciliation_state()

        engine = engine_for(
            session, pro_catalog, subscription_source(make_record("gid://shopify/AppSubscription/9", "3.33")), charge_source()
        )
        with pytest.raises(PlanMatchError) as exc_info:
            await engine.reconcile(SHOP)

        assert exc_info.value.status_code == 409
        assert exc_info.value.context["record_id"] == "gid://shopify/AppSubscription/9"
        after = (await load_subscription(session_maker)).reconciliation_state()
        assert after == before
        assert after.plan_name == "pro"


class TestSubscriptionInvariants:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "4.99", "9.99", "10.25"])
    async def test_subscription_id_null_only_on_free(self, session, session_maker, pro_catalog, amount):
        await engine_for(session, pro_catalog, subscription_source(make_record(amount=amount)), charge_source()).reconcile(SHOP)

        stored = await load_subscription(session_maker)
        assert stored.usage_limit == pro_catalog.get(stored.plan_name).usage_limit
        assert (stored.subscription_id is None) == (stored.plan_name == FREE_PLAN)


class TestSmartSync:

    @pytest.mark.asyncio
    async def test_fresh_free_shop_is_skipped(self, session, pro_catalog):
        sources = subscription_source(make_record())
        engine = engine_for(session, pro_catalog, sources, charge_source())
        await engine.repo.get_or_create(SHOP)

        outcome = await smart_sync(engine, SyncTrigger(session, pro_catalog), SHOP)

        assert outcome is None
        assert sources.calls == 0

    @pytest.mark.asyncio
    async def test_force_runs_reconcile(self, session, pro_catalog):
        engine = engine_for(session, pro_catalog, subscription_source(make_record()), charge_source())
        await engine.repo.get_or_create(SHOP)

        outcome = await smart_sync(engine, SyncTrigger(session, pro_catalog), SHOP, force=True)

        assert outcome.plan_name == "pro"

    @pytest.mark.asyncio
    async def test_unknown_shop_is_synced(self, session, pro_catalog):
        engine = engine_for(session, pro_catalog, subscription_source(make_record()), charge_source())

        outcome = await smart_sync(engine, SyncTrigger(session, pro_catalog), SHOP)

        assert outcome is not None
