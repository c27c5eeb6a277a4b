"""
Unit Tests - Monthly Aggregation
"""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select, update

from nexus_monitor.core.aggregation import BucketKey, MonthlyAggregator
from nexus_monitor.core.periods import YearMonth
from nexus_monitor.database.models import ImportedOrder, SalesSummary, TransactionStatus


async def fetch_summaries(session_factory, user_id="u1"):
    async with session_factory() as db:
        rows = await db.execute(
            select(SalesSummary)
            .where(SalesSummary.user_id == user_id)
            .order_by(SalesSummary.state_code, SalesSummary.period)
        )
        return list(rows.scalars().all())


class TestRecomputeBucket:
    """Tests for single-bucket recomputation"""

    async def test_sums_qualifying_orders(self, session_factory, add_orders):
        await add_orders("u1", [
            {"state": "CA", "date": datetime(2025, 3, 1), "total": "108.25", "subtotal": "100.00", "tax": "8.25",
             "channel": "shopify"},
            {"state": "CA", "date": datetime(2025, 3, 31, 23, 59), "total": "54.13", "subtotal": "50.00",
             "tax": "4.13", "channel": "amazon"},
            {"state": "CA", "date": datetime(2025, 3, 15), "total": "999", "status": TransactionStatus.CANCELLED},
            {"state": "CA", "date": datetime(2025, 3, 15), "total": "999", "status": TransactionStatus.REFUNDED},
            {"state": "CA", "date": datetime(2025, 3, 15), "total": "999", "country": "CA"},
            {"state": "CA", "date": datetime(2025, 4, 1), "total": "999"},
            {"state": "NV", "date": datetime(2025, 3, 15), "total": "999"},
        ])
        aggregator = MonthlyAggregator(session_factory)

        totals = await aggregator.recompute_bucket("u1", "CA", "2025-03")

        assert totals.order_count == 2
        assert totals.total_sales == Decimal("162.38")
        assert totals.taxable_sales == Decimal("150.00")
        assert totals.tax_collected == Decimal("12.38")
        assert totals.channels == ["amazon", "shopify"]

        [row] = await fetch_summaries(session_factory)
        assert (row.state_code, row.period, row.order_count) == ("CA", "2025-03", 2)
        assert row.total_sales == Decimal("162.38")
        assert row.channels == ["amazon", "shopify"]

    async def test_recompute_is_idempotent(self, session_factory, add_orders):
        await add_orders("u1", [{"state": "TX", "date": datetime(2025, 1, 5), "total": "250"}])
        aggregator = MonthlyAggregator(session_factory)

        first = await aggregator.recompute_bucket("u1", "TX", YearMonth(2025, 1))
        second = await aggregator.recompute_bucket("u1", "TX", YearMonth(2025, 1))

        assert first == second
        rows = await fetch_summaries(session_factory)
        assert len(rows) == 1
        assert rows[0].total_sales == Decimal("250.00")

    async def test_reflects_later_changes(self, session_factory, add_orders):
        [order, _] = await add_orders("u1", [
            {"state": "TX", "date": datetime(2025, 1, 5), "total": "250"},
            {"state": "TX", "date": datetime(2025, 1, 6), "total": "100"},
        ])
        aggregator = MonthlyAggregator(session_factory)
        await aggregator.recompute_bucket("u1", "TX", "2025-01")

        async with session_factory() as db:
            await db.execute(
                update(ImportedOrder)
                .where(ImportedOrder.order_id == order.order_id)
                .values(status=TransactionStatus.REFUNDED)
            )
            await db.commit()
        await aggregator.recompute_bucket("u1", "TX", "2025-01")

        [row] = await fetch_summaries(session_factory)
        assert row.total_sales == Decimal("100.00")
        assert row.order_count == 1

    async def test_empty_bucket_writes_nothing(self, session_factory):
        aggregator = MonthlyAggregator(session_factory)

        assert await aggregator.recompute_bucket("u1", "TX", "2025-01") is None
        assert await fetch_summaries(session_factory) == []

    async def test_fully_cancelled_bucket_is_zeroed(self, session_factory, add_orders):
        [order] = await add_orders("u1", [{"state": "WA", "date": datetime(2025, 2, 1), "total": "500"}])
        aggregator = MonthlyAggregator(session_factory)
        await aggregator.recompute_bucket("u1", "WA", "2025-02")

        async with session_factory() as db:
            await db.execute(
                update(ImportedOrder)
                .where(ImportedOrder.order_id == order.order_id)
                .values(status=TransactionStatus.CANCELLED)
            )
            await db.commit()

        assert await aggregator.recompute_bucket("u1", "WA", "2025-02") is None
        [row] = await fetch_summaries(session_factory)
        assert row.order_count == 0
        assert row.total_sales == Decimal("0.00")
        assert row.channels == []

    async def test_unknown_state_is_skipped(self, session_factory, add_orders):
        await add_orders("u1", [{"state": "ZZ", "date": datetime(2025, 2, 1)}])
        aggregator = MonthlyAggregator(session_factory)

        assert await aggregator.recompute_bucket("u1", "ZZ", "2025-02") is None
        assert await fetch_summaries(session_factory) == []

    async def test_orders_without_date_never_count(self, session_factory, add_orders):
        await add_orders("u1", [
            {"state": "CO", "date": None, "total": "5000"},
            {"state": "CO", "date": datetime(2025, 2, 1), "total": "10"},
        ])
        totals = await MonthlyAggregator(session_factory).recompute_bucket("u1", "CO", "2025-02")
        assert totals.order_count == 1


class TestWorkList:
    """Tests for planning and running bucket work-lists"""

    async def test_plan_covers_history_through_current_month(self, session_factory, add_orders, as_of):
        await add_orders("u1", [
            {"state": "CA", "date": datetime(2025, 3, 20)},
            {"state": "TX", "date": datetime(2025, 5, 2)},
        ])
        aggregator = MonthlyAggregator(session_factory)

        keys = await aggregator.plan_buckets("u1", ["ca", "TX", "CA"], as_of=as_of)

        assert [str(k) for k in keys] == [
            "CA:2025-03", "CA:2025-04", "CA:2025-05", "CA:2025-06",
            "TX:2025-03", "TX:2025-04", "TX:2025-05", "TX:2025-06",
        ]

    async def test_plan_starts_at_cancelled_orders(self, session_factory, add_orders, as_of):
        await add_orders("u1", [
            {"state": "CA", "date": datetime(2025, 1, 20), "status": TransactionStatus.CANCELLED},
            {"state": "CA", "date": datetime(2025, 5, 2)},
        ])
        keys = await MonthlyAggregator(session_factory).plan_buckets("u1", ["CA"], as_of=as_of)
        assert keys[0] == BucketKey("CA", YearMonth(2025, 1))

    async def test_plan_is_empty_without_orders(self, session_factory, as_of):
        aggregator = MonthlyAggregator(session_factory)
        assert await aggregator.plan_buckets("u1", ["CA"], as_of=as_of) == []
        assert await aggregator.plan_buckets("u1", ["ZZ"], as_of=as_of) == []

    async def test_future_dated_orders_plan_nothing(self, session_factory, add_orders, as_of):
        await add_orders("u1", [{"state": "CA", "date": datetime(2025, 9, 1)}])
        assert await MonthlyAggregator(session_factory).plan_buckets("u1", ["CA"], as_of=as_of) == []

    async def test_recompute_affected_states(self, session_factory, add_orders, as_of):
        await add_orders("u1", [
            {"state": "CA", "date": datetime(2025, 3, 20), "total": "10"},
            {"state": "CA", "date": datetime(2025, 5, 2), "total": "20"},
            {"state": "TX", "date": datetime(2025, 6, 1), "total": "30"},
        ])
        aggregator = MonthlyAggregator(session_factory, max_concurrency=3)

        result = await aggregator.recompute_for_affected_states("u1", ["CA", "TX"], as_of=as_of)

        assert result.succeeded
        assert result.buckets_planned == 8
        assert result.buckets_written == 3
        assert result.buckets_empty == 5
        rows = await fetch_summaries(session_factory)
        assert [(r.state_code, r.period) for r in rows] == [("CA", "2025-03"), ("CA", "2025-05"), ("TX", "2025-06")]

    async def test_sum_of_buckets_matches_orders(self, session_factory, add_orders, as_of):
        orders = [
            {"state": "NJ", "date": datetime(2024, 11 + i % 2, 1 + i), "total": f"{10 + i}.50"}
            for i in range(12)
        ]
        await add_orders("u1", orders)

        await MonthlyAggregator(session_factory).recompute_for_affected_states("u1", ["NJ"], as_of=as_of)

        async with session_factory() as db:
            total = await db.scalar(select(func.sum(SalesSummary.total_sales)))
            count = await db.scalar(select(func.sum(SalesSummary.order_count)))
        assert Decimal(str(total)).quantize(Decimal("0.01")) == sum(Decimal(o["total"]) for o in orders)
        assert count == 12

    async def test_recompute_all_discovers_states(self, session_factory, add_orders, as_of):
        await add_orders("u1", [
            {"state": "CA", "date": datetime(2025, 6, 1)},
            {"state": "NY", "date": datetime(2025, 6, 1)},
            {"state": "ON", "date": datetime(2025, 6, 1), "country": "CA"},
        ])
        result = await MonthlyAggregator(session_factory).recompute_all("u1", as_of=as_of)

        assert result.buckets_written == 2
        assert {r.state_code for r in await fetch_summaries(session_factory)} == {"CA", "NY"}


class FlakyAggregator(MonthlyAggregator):
    """Fails selected buckets a fixed number of times."""

    def __init__(self, *args, failures=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures = dict(failures or {})

    async def recompute_bucket(self, user_id, state_code, period):
        key = f"{state_code}:{YearMonth.coerce(period)}"
        if self.failures.get(key, 0) > 0:
            self.failures[key] -= 1
            raise ConnectionError(f"lost connection on {key}")
        return await super().recompute_bucket(user_id, state_code, period)


class TestFailureIsolation:
    """Tests for per-bucket failure handling"""

    async def test_failed_bucket_is_retried(self, session_factory, add_orders, as_of):
        await add_orders("u1", [
            {"state": "CA", "date": datetime(2025, 6, 1)},
            {"state": "TX", "date": datetime(2025, 6, 1)},
        ])
        aggregator = FlakyAggregator(session_factory, failures={"CA:2025-06": 1}, retry_backoff_ms=0)

        result = await aggregator.recompute_for_affected_states("u1", ["CA", "TX"], as_of=as_of)

        assert result.succeeded
        assert result.attempts == 2
        assert result.buckets_written == 2

    async def test_persistent_failure_does_not_block_others(self, session_factory, add_orders, as_of):
        await add_orders("u1", [
            {"state": "CA", "date": datetime(2025, 6, 1)},
            {"state": "TX", "date": datetime(2025, 6, 1)},
        ])
        aggregator = FlakyAggregator(
            session_factory, failures={"CA:2025-06": 10}, retry_attempts=2, retry_backoff_ms=0
        )

        result = await aggregator.recompute_for_affected_states("u1", ["CA", "TX"], as_of=as_of)

        assert not result.succeeded
        assert result.failed_buckets == ["CA:2025-06"]
        assert result.attempts == 3
        assert [r.state_code for r in await fetch_summaries(session_factory)] == ["TX"]
