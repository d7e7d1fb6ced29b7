"""Reconciliation engine.

Aligns a shop's local subscription with what the billing provider reports.
Billing sources are queried in priority order and never merged; the first
source reporting an active record is authoritative. The resulting state is
applied in one field-scoped write, so re-running against unchanged upstream
data leaves the reconciliation columns exactly as they were.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from pricedesk.core.config import settings
from pricedesk.core.logging import log_error, log_info, log_warning
from pricedesk.modules.billing.catalog import PlanCatalog
from pricedesk.modules.billing.exceptions import ExternalFetchError, PlanMatchError
from pricedesk.modules.billing.locks import ShopLockRegistry, reconciliation_locks
from pricedesk.modules.billing.matcher import MatchMethod, PlanMatcher
from pricedesk.modules.billing.models import (
    BillingRecord,
    BillingSourceType,
    Subscription,
    SubscriptionState,
    SubscriptionStatus,
    as_naive_utc,
    utcnow,
)
from pricedesk.modules.billing.repository import SubscriptionRepository
from pricedesk.modules.billing.sources import BillingSourceAdapter
from pricedesk.modules.billing.sync import SyncTrigger

logger = logging.getLogger(__name__)


# Upstream statuses treated as a live payment arrangement (compared case-insensitively)
ACTIVE_STATUSES = frozenset({"active"})


@dataclass(frozen=True)
class ReconcileOutcome:
    """What a reconciliation run decided and applied."""
    shop: str
    state: SubscriptionState
    source: Optional[BillingSourceType]
    record_id: Optional[str]
    match_method: MatchMethod
    changed: bool
    previous_plan: str

    @property
    def plan_name(self) -> str:
        return self.state.plan_name


@dataclass(frozen=True)
class _SourceResult:
    source_type: BillingSourceType
    records: list[BillingRecord]
    error: Optional[ExternalFetchError] = None


def is_active_status(status: Optional[str], accepted: Iterable[str] = ACTIVE_STATUSES) -> bool:
    if not status:
        return False
    return status.strip().lower() in {s.lower() for s in accepted}


class ReconciliationEngine:
    """Computes and applies the canonical subscription state for a shop."""

    def __init__(
        self,
        session: AsyncSession,
        catalog: PlanCatalog,
        sources: Sequence[BillingSourceAdapter],
        fetch_timeout: Optional[float] = None,
        period_days: Optional[int] = None,
        accepted_statuses: Iterable[str] = ACTIVE_STATUSES,
        locks: ShopLockRegistry = reconciliation_locks,
    ):
        self.catalog = catalog
        self.matcher = PlanMatcher(catalog)
        self.sources = list(sources)
        self.fetch_timeout = fetch_timeout or settings.BILLING_FETCH_TIMEOUT_SECONDS
        self.period_days = period_days or settings.BILLING_PERIOD_DAYS
        self.accepted_statuses = frozenset(accepted_statuses)
        self.locks = locks
        self.repo = SubscriptionRepository(session, catalog, self.period_days)

    async def reconcile(self, shop: str) -> ReconcileOutcome:
        """Reconcile one shop against its billing sources.

        Raises:
            ExternalFetchError: Billing sources could not be read; nothing was written
            PlanMatchError: Active record with an amount no plan accounts for; nothing was written
            PersistenceError: Subscription store unavailable
        """
        async with self.locks.hold(shop):
            log_info(logger, f"Reconciling subscription for {shop}", shop=shop)

            # No store access until every needed source has answered
            source_result = await self._find_active_source(shop)
            current = await self.repo.get_or_create(shop)
            now = utcnow()

            if source_result is None:
                target = self._free_state(current, now)
                source_type, record_id, method = None, None, MatchMethod.FREE
            else:
                record = source_result.records[0]
                match = self.matcher.match(record.amount)
                if match.unmatched:
                    log_error(
                        logger,
                        f"Unmatched billing amount {record.amount} for {shop}",
                        shop=shop,
                        amount=str(record.amount),
                        record_id=record.id,
                        source=source_result.source_type.value,
                    )
                    raise PlanMatchError(
                        f"No plan matches amount {record.amount} {record.currency}",
                        shop=shop,
                        amount=record.amount,
                        record_id=record.id,
                    )
                if match.plan.is_free:
                    # Zero-priced arrangement: free carries no billing reference
                    target = self._free_state(current, now)
                else:
                    target = SubscriptionState(
                        plan_name=match.plan.name,
                        status=SubscriptionStatus.ACTIVE.value,
                        subscription_id=record.id,
                        usage_limit=match.plan.usage_limit,
                        current_period_end=self._period_end(record, current, now),
                    )
                source_type, record_id, method = source_result.source_type, record.id, match.method

            previous = current.reconciliation_state()
            changed = previous != target
            await self.repo.update_reconciliation_fields(shop, **target.as_update())

            log_info(
                logger,
                f"Subscription for {shop} reconciled to {target.plan_name}"
                + ("" if changed else " (unchanged)"),
                shop=shop,
                plan=target.plan_name,
                previous_plan=previous.plan_name,
                source=source_type.value if source_type else "none",
                changed=changed,
            )

            return ReconcileOutcome(
                shop=shop,
                state=target,
                source=source_type,
                record_id=record_id,
                match_method=method,
                changed=changed,
                previous_plan=previous.plan_name,
            )

    async def _find_active_source(self, shop: str) -> Optional[_SourceResult]:
        """Query sources in priority order; the first with an active record wins.

        Returns None only when every source answered and none reported an
        active record. If any source failed, absence cannot be confirmed
        and the first failure is raised.
        """
        first_error: Optional[ExternalFetchError] = None

        for source in self.sources:
            result = await self._fetch(source, shop)
            if result.error is not None:
                first_error = first_error or result.error
                continue

            active = [
                r for r in result.records
                if is_active_status(r.status, self.accepted_statuses)
            ]
            if active:
                if len(active) > 1:
                    log_warning(
                        logger,
                        f"{len(active)} active {source.source_type.value} records for {shop}, "
                        f"using {active[0].id}",
                        shop=shop,
                    )
                return _SourceResult(result.source_type, active)

        if first_error is not None:
            raise first_error
        return None

    async def _fetch(self, source: BillingSourceAdapter, shop: str) -> _SourceResult:
        try:
            records = await asyncio.wait_for(
                source.fetch_active_records(shop), timeout=self.fetch_timeout
            )
            return _SourceResult(source.source_type, list(records))
        except asyncio.TimeoutError:
            error = ExternalFetchError(
                f"Timed out after {self.fetch_timeout}s fetching {source.source_type.value} records",
                shop=shop,
                source_type=source.source_type.value,
            )
        except ExternalFetchError as e:
            error = e
            error.context.setdefault("source_type", source.source_type.value)
        except Exception as e:
            error = ExternalFetchError(
                f"Failed to fetch {source.source_type.value} records: {e}",
                shop=shop,
                source_type=source.source_type.value,
            )

        log_warning(
            logger,
            f"Billing source {source.source_type.value} failed for {shop}: {error.message}",
            shop=shop,
            source=source.source_type.value,
        )
        return _SourceResult(source.source_type, [], error)

    def _free_state(self, current: Subscription, now: datetime) -> SubscriptionState:
        period_end = as_naive_utc(current.current_period_end)
        if period_end is None:
            period_end = now + timedelta(days=self.period_days)
        return SubscriptionState(
            plan_name=self.catalog.free_plan.name,
            status=SubscriptionStatus.ACTIVE.value,
            subscription_id=None,
            usage_limit=self.catalog.free_plan.usage_limit,
            current_period_end=period_end,
        )

    def _period_end(
        self,
        record: BillingRecord,
        current: Subscription,
        now: datetime,
    ) -> datetime:
        reported = as_naive_utc(record.current_period_end)
        stored = as_naive_utc(current.current_period_end)
        same_arrangement = current.subscription_id == record.id and stored is not None

        if reported is not None:
            # A local rollover may already have moved past a period the
            # provider has not renewed yet; never move the same arrangement back
            if same_arrangement and stored > reported:
                return stored
            return reported

        # Same billing arrangement already on file: keep its period end so a
        # re-run does not push it forward
        if same_arrangement:
            return stored

        return now + timedelta(days=self.period_days)


async def smart_sync(
    engine: ReconciliationEngine,
    trigger: SyncTrigger,
    shop: str,
    force: bool = False,
) -> Optional[ReconcileOutcome]:
    """Reconcile only when forced or when the staleness check asks for it.

    Returns:
        The reconcile outcome, or None if the sync was skipped
    """
    if not force and not await trigger.needs_sync(shop):
        logger.debug(f"Skipping sync for {shop}, subscription is fresh")
        return None
    return await engine.reconcile(shop)
