"""
Monthly Sales Aggregation

Rolls imported orders into per-(user, state, month) sales summaries.

Every bucket write is a full recomputation from ``imported_orders`` followed
by one atomic upsert, so edits, cancellations and refunds correct themselves
on the next recompute without delta tracking. Work is expressed as an
explicit list of bucket keys that is mapped over with bounded parallelism.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Union

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nexus_monitor.config import get_settings
from nexus_monitor.core.periods import YearMonth, month_range
from nexus_monitor.core.thresholds import ThresholdRegistry, default_registry
from nexus_monitor.database.connection import get_db
from nexus_monitor.database.models import (
    EXCLUDED_STATUSES,
    ImportedOrder,
    SalesSummary,
    utcnow,
)
from nexus_monitor.database.statements import upsert_insert
from nexus_monitor.metrics import BUCKETS_RECOMPUTED

logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")


def _money(value) -> Decimal:
    """Normalize a SQL SUM result to a 2-place Decimal."""
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENTS)


@dataclass(frozen=True)
class BucketKey:
    """One (state, month) unit of work for a user"""
    state_code: str
    period: YearMonth

    def __str__(self) -> str:
        return f"{self.state_code}:{self.period}"


@dataclass
class BucketTotals:
    """Recomputed values of one sales summary bucket"""
    user_id: str
    state_code: str
    period: str
    total_sales: Decimal
    taxable_sales: Decimal
    tax_collected: Decimal
    order_count: int
    channels: List[str] = field(default_factory=list)


class AggregationResult(BaseModel):
    """Outcome of recomputing a work-list of buckets"""
    user_id: str
    buckets_planned: int = 0
    buckets_written: int = 0
    buckets_empty: int = 0
    failed_buckets: List[str] = Field(default_factory=list)
    attempts: int = 0
    duration_seconds: float = 0

    @property
    def succeeded(self) -> bool:
        return not self.failed_buckets


class MonthlyAggregator:
    """
    Recomputes sales summary buckets from imported orders.

    Distinct buckets have no ordering dependency and run concurrently, each
    in its own session. Recomputing the same bucket twice is harmless: the
    output is a deterministic function of the current orders, so the last
    write wins.

    Example:
        aggregator = MonthlyAggregator(session_factory)
        result = await aggregator.recompute_for_affected_states("user-1", ["CA", "TX"])
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        registry: Optional[ThresholdRegistry] = None,
        max_concurrency: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        retry_backoff_ms: Optional[int] = None,
        domestic_country: Optional[str] = None,
    ):
        pipeline = get_settings().pipeline
        self.session_factory = session_factory
        self.registry = registry or default_registry()
        self.max_concurrency = max_concurrency or pipeline.bucket_concurrency
        self.retry_attempts = pipeline.bucket_retry_attempts if retry_attempts is None else retry_attempts
        self.retry_backoff_ms = pipeline.bucket_retry_backoff_ms if retry_backoff_ms is None else retry_backoff_ms
        self.domestic_country = (domestic_country or pipeline.domestic_country).upper()

    # -------------------------------------------------------------------
    # Single bucket
    # -------------------------------------------------------------------

    def _bucket_filter(self, user_id: str, state_code: str, month: YearMonth) -> list:
        return [
            ImportedOrder.user_id == user_id,
            ImportedOrder.shipping_state == state_code,
            ImportedOrder.shipping_country == self.domestic_country,
            ImportedOrder.status.not_in(EXCLUDED_STATUSES),
            ImportedOrder.order_date >= month.start,
            ImportedOrder.order_date < month.end,
        ]

    async def _sum_bucket(
        self,
        db: AsyncSession,
        user_id: str,
        state_code: str,
        month: YearMonth,
    ) -> BucketTotals:
        conditions = self._bucket_filter(user_id, state_code, month)

        row = (
            await db.execute(
                select(
                    func.count(ImportedOrder.order_id).label("order_count"),
                    func.sum(ImportedOrder.total_amount).label("total_sales"),
                    func.sum(ImportedOrder.subtotal).label("taxable_sales"),
                    func.sum(ImportedOrder.tax_amount).label("tax_collected"),
                ).where(*conditions)
            )
        ).one()

        channels = (
            await db.execute(
                select(ImportedOrder.channel).where(*conditions).distinct()
            )
        ).scalars().all()

        return BucketTotals(
            user_id=user_id,
            state_code=state_code,
            period=month.key,
            total_sales=_money(row.total_sales),
            taxable_sales=_money(row.taxable_sales),
            tax_collected=_money(row.tax_collected),
            order_count=row.order_count or 0,
            channels=sorted(channels),
        )

    async def _upsert_summary(self, db: AsyncSession, totals: BucketTotals) -> None:
        stmt = upsert_insert(db, SalesSummary).values(
            user_id=totals.user_id,
            state_code=totals.state_code,
            period=totals.period,
            total_sales=totals.total_sales,
            taxable_sales=totals.taxable_sales,
            tax_collected=totals.tax_collected,
            order_count=totals.order_count,
            channels=totals.channels,
            updated_at=utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "state_code", "period"],
            set_={
                "total_sales": stmt.excluded.total_sales,
                "taxable_sales": stmt.excluded.taxable_sales,
                "tax_collected": stmt.excluded.tax_collected,
                "order_count": stmt.excluded.order_count,
                "channels": stmt.excluded.channels,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await db.execute(stmt)

    async def _zero_existing_summary(self, db: AsyncSession, totals: BucketTotals) -> bool:
        """Overwrite a bucket whose orders were all cancelled or removed. Never inserts."""
        result = await db.execute(
            update(SalesSummary)
            .where(
                SalesSummary.user_id == totals.user_id,
                SalesSummary.state_code == totals.state_code,
                SalesSummary.period == totals.period,
            )
            .values(
                total_sales=totals.total_sales,
                taxable_sales=totals.taxable_sales,
                tax_collected=totals.tax_collected,
                order_count=0,
                channels=[],
                updated_at=utcnow(),
            )
        )
        return (result.rowcount or 0) > 0

    async def recompute_bucket(
        self,
        user_id: str,
        state_code: str,
        period: Union[YearMonth, str, datetime],
    ) -> Optional[BucketTotals]:
        """
        Recompute one (user, state, month) bucket.

        Returns:
            The written totals, or None when the bucket has no qualifying
            orders or the state code is unknown.
        """
        rule = self.registry.get_threshold(state_code)
        if rule is None:
            logger.warning("Skipping bucket for unknown state", user_id=user_id, state_code=state_code)
            return None

        month = YearMonth.coerce(period)

        async with get_db(self.session_factory) as db:
            totals = await self._sum_bucket(db, user_id, rule.state_code, month)

            if totals.order_count == 0:
                zeroed = await self._zero_existing_summary(db, totals)
                BUCKETS_RECOMPUTED.labels(outcome="zeroed" if zeroed else "empty").inc()
                return None

            await self._upsert_summary(db, totals)

        BUCKETS_RECOMPUTED.labels(outcome="written").inc()
        logger.debug(
            "Bucket recomputed",
            user_id=user_id,
            state_code=totals.state_code,
            period=totals.period,
            order_count=totals.order_count,
            total_sales=str(totals.total_sales),
        )
        return totals

    # -------------------------------------------------------------------
    # Work lists
    # -------------------------------------------------------------------

    def _normalize_states(self, state_codes: Iterable[str]) -> List[str]:
        """Uppercase, dedupe and drop codes the registry does not know."""
        states: List[str] = []
        for code in state_codes:
            rule = self.registry.get_threshold(code)
            if rule is None:
                logger.warning("Ignoring unknown state code", state_code=code)
                continue
            if rule.state_code not in states:
                states.append(rule.state_code)
        return states

    async def plan_buckets(
        self,
        user_id: str,
        state_codes: Iterable[str],
        as_of: Optional[datetime] = None,
    ) -> List[BucketKey]:
        """
        Build the work-list for the given states.

        Covers every month from the user's earliest order in any of the
        states through the current month. Cancelled and refunded orders
        still move the start back so their buckets get corrected.
        """
        states = self._normalize_states(state_codes)
        if not states:
            return []

        async with get_db(self.session_factory) as db:
            earliest = await db.scalar(
                select(func.min(ImportedOrder.order_date)).where(
                    ImportedOrder.user_id == user_id,
                    ImportedOrder.shipping_state.in_(states),
                    ImportedOrder.shipping_country == self.domestic_country,
                )
            )

        if earliest is None:
            return []

        current = YearMonth.from_date(as_of or utcnow())
        months = month_range(YearMonth.from_date(earliest), current)

        return [BucketKey(state, month) for state in states for month in months]

    async def _run_work_list(self, user_id: str, keys: Sequence[BucketKey]) -> list:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run(key: BucketKey):
            async with semaphore:
                return await self.recompute_bucket(user_id, key.state_code, key.period)

        return await asyncio.gather(*(run(key) for key in keys), return_exceptions=True)

    async def recompute_buckets(self, user_id: str, keys: Iterable[BucketKey]) -> AggregationResult:
        """
        Recompute a work-list of buckets with bounded parallelism.

        A failing bucket never blocks the others. Failures are collected and
        retried as a subset; whatever still fails is reported in the result.
        """
        started = time.perf_counter()
        pending = list(dict.fromkeys(keys))
        result = AggregationResult(user_id=user_id, buckets_planned=len(pending))

        while pending:
            result.attempts += 1
            outcomes = await self._run_work_list(user_id, pending)

            failed: List[BucketKey] = []
            for key, outcome in zip(pending, outcomes):
                if isinstance(outcome, BaseException):
                    BUCKETS_RECOMPUTED.labels(outcome="failed").inc()
                    logger.warning(
                        "Bucket recompute failed",
                        user_id=user_id,
                        bucket=str(key),
                        attempt=result.attempts,
                        error=str(outcome),
                        error_type=type(outcome).__name__,
                    )
                    failed.append(key)
                elif outcome is None:
                    result.buckets_empty += 1
                else:
                    result.buckets_written += 1

            pending = failed
            if pending and result.attempts <= self.retry_attempts:
                await asyncio.sleep(self.retry_backoff_ms / 1000 * result.attempts)
                continue
            break

        result.failed_buckets = [str(key) for key in pending]
        result.duration_seconds = time.perf_counter() - started

        log = logger.warning if result.failed_buckets else logger.info
        log(
            "Bucket recompute finished",
            user_id=user_id,
            planned=result.buckets_planned,
            written=result.buckets_written,
            empty=result.buckets_empty,
            failed=len(result.failed_buckets),
            attempts=result.attempts,
        )
        return result

    async def recompute_for_affected_states(
        self,
        user_id: str,
        state_codes: Iterable[str],
        as_of: Optional[datetime] = None,
    ) -> AggregationResult:
        """Recompute the full history of every touched state."""
        keys = await self.plan_buckets(user_id, state_codes, as_of=as_of)
        return await self.recompute_buckets(user_id, keys)

    async def recompute_all(self, user_id: str, as_of: Optional[datetime] = None) -> AggregationResult:
        """Rebuild every bucket for every domestic state the user has orders in."""
        async with get_db(self.session_factory) as db:
            states = (
                await db.execute(
                    select(ImportedOrder.shipping_state)
                    .where(
                        ImportedOrder.user_id == user_id,
                        ImportedOrder.shipping_country == self.domestic_country,
                        ImportedOrder.shipping_state.is_not(None),
                    )
                    .distinct()
                )
            ).scalars().all()

        return await self.recompute_for_affected_states(user_id, states, as_of=as_of)
