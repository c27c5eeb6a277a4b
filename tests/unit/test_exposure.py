"""
Unit Tests - Exposure Calculation
"""
from dataclasses import replace
from datetime import datetime
from decimal import Decimal

import pytest

from nexus_monitor.core.aggregation import MonthlyAggregator
from nexus_monitor.core.exposure import (
    ExposureCalculator,
    ExposureStatus,
    WindowTotals,
    build_exposure_report,
    classify_exposure,
    select_governing_totals,
)
from nexus_monitor.core.thresholds import MeasurementPeriod, default_registry


def rule(code: str):
    return default_registry().get_threshold(code)


class TestClassifyExposure:
    """Tests for threshold classification"""

    @pytest.mark.parametrize(
        "sales, expected",
        [
            ("74999.99", ExposureStatus.SAFE),
            ("75000", ExposureStatus.APPROACHING),
            ("80000", ExposureStatus.APPROACHING),
            ("89999.99", ExposureStatus.APPROACHING),
            ("90000", ExposureStatus.WARNING),
            ("99999.99", ExposureStatus.WARNING),
            ("100000", ExposureStatus.EXCEEDED),
            ("250000", ExposureStatus.EXCEEDED),
        ],
    )
    def test_dollar_boundaries(self, sales, expected):
        result = classify_exposure(Decimal(sales), 0, rule("IL"))
        assert result.status == expected

    def test_percentages(self):
        result = classify_exposure(Decimal("80000"), 50, rule("IL"))

        assert result.sales_pct == pytest.approx(80.0)
        assert result.tx_pct == pytest.approx(25.0)
        assert result.highest_pct == pytest.approx(80.0)

    def test_transaction_count_alone_exceeds_or_rule(self):
        result = classify_exposure(Decimal("10"), 210, rule("IL"))

        assert result.status == ExposureStatus.EXCEEDED
        assert result.tx_pct == pytest.approx(105.0)

    def test_missing_transaction_threshold_contributes_zero(self):
        result = classify_exposure(Decimal("1000"), 10_000, rule("CA"))

        assert result.tx_pct == 0
        assert result.status == ExposureStatus.SAFE

    def test_no_sales_tax_state_always_safe(self):
        result = classify_exposure(Decimal("10000000"), 50_000, rule("OR"))

        assert result.status == ExposureStatus.SAFE
        assert result.highest_pct == 0

    def test_and_rule_uses_highest_percentage_by_default(self):
        result = classify_exposure(Decimal("600000"), 40, rule("NY"))

        assert result.status == ExposureStatus.EXCEEDED
        assert result.highest_pct == pytest.approx(120.0)

    def test_and_rule_requiring_all_thresholds(self):
        strict = replace(rule("NY"), exceeded_requires_all=True)

        assert classify_exposure(Decimal("600000"), 40, strict).status == ExposureStatus.SAFE
        assert classify_exposure(Decimal("600000"), 95, strict).status == ExposureStatus.WARNING
        assert classify_exposure(Decimal("600000"), 100, strict).status == ExposureStatus.EXCEEDED


class TestGoverningTotals:
    """Tests for measurement period selection"""

    rolling = WindowTotals(sales=Decimal("90000"), transactions=20)
    calendar = WindowTotals(sales=Decimal("30000"), transactions=150)

    def test_rolling_period(self):
        assert select_governing_totals(rule("TX"), self.rolling, self.calendar) == (Decimal("90000"), 20)

    def test_calendar_period(self):
        calendar_rule = replace(rule("IL"), measurement_period=MeasurementPeriod.CALENDAR_YEAR)
        assert select_governing_totals(calendar_rule, self.rolling, self.calendar) == (Decimal("30000"), 150)

    def test_previous_or_current_takes_elementwise_max(self):
        assert select_governing_totals(rule("GA"), self.rolling, self.calendar) == (Decimal("90000"), 150)


class TestExposureCalculator:
    """Tests for ExposureCalculator against stored summaries"""

    async def _aggregate(self, session_factory, user_id, states, as_of):
        aggregator = MonthlyAggregator(session_factory)
        await aggregator.recompute_for_affected_states(user_id, states, as_of=as_of)

    async def test_rolling_window_bounds(self, session_factory, add_orders, as_of):
        await add_orders("u1", [
            {"state": "TX", "date": datetime(2024, 6, 30), "total": "300000"},  # outside
            {"state": "TX", "date": datetime(2024, 7, 1), "total": "200000"},
            {"state": "TX", "date": datetime(2025, 6, 14), "total": "160000"},
        ])
        await self._aggregate(session_factory, "u1", ["TX"], as_of)

        snapshots = await ExposureCalculator(session_factory).compute_exposure("u1", as_of=as_of)

        tx = snapshots["TX"]
        assert tx.rolling_sales == Decimal("360000.00")
        assert tx.rolling_transactions == 2
        assert tx.calendar_sales == Decimal("160000.00")
        assert tx.evaluated_sales == Decimal("360000.00")
        assert tx.highest_pct == pytest.approx(72.0)
        assert tx.status == ExposureStatus.SAFE

    async def test_previous_or_current_year_state(self, session_factory, add_orders, as_of):
        await add_orders("u1", [
            {"state": "GA", "date": datetime(2024, 9, 10), "total": "85000"},
            {"state": "GA", "date": datetime(2025, 2, 3), "total": "7000"},
        ])
        await self._aggregate(session_factory, "u1", ["GA"], as_of)

        snapshots = await ExposureCalculator(session_factory).compute_exposure("u1", as_of=as_of)

        ga = snapshots["GA"]
        assert ga.calendar_sales == Decimal("7000.00")
        assert ga.evaluated_sales == Decimal("92000.00")
        assert ga.status == ExposureStatus.WARNING

    async def test_window_slides_forward(self, session_factory, add_orders):
        await add_orders("u1", [{"state": "IL", "date": datetime(2024, 6, 10), "total": "100000"}])
        await self._aggregate(session_factory, "u1", ["IL"], datetime(2025, 6, 15))
        calculator = ExposureCalculator(session_factory)

        before = await calculator.compute_exposure("u1", as_of=datetime(2025, 5, 31))
        after = await calculator.compute_exposure("u1", as_of=datetime(2025, 6, 1))

        assert before["IL"].status == ExposureStatus.EXCEEDED
        assert "IL" not in after

    async def test_thirteenth_month_leaves_rolling_total_unchanged(self, session_factory, add_orders, as_of):
        months = [datetime(2024, m, 10) for m in range(7, 13)] + [datetime(2025, m, 10) for m in range(1, 7)]
        await add_orders("u1", [{"state": "IL", "date": d, "total": "6666.67"} for d in months])
        await self._aggregate(session_factory, "u1", ["IL"], as_of)
        calculator = ExposureCalculator(session_factory)

        before = (await calculator.compute_exposure("u1", as_of=as_of))["IL"]

        await add_orders("u1", [{"state": "IL", "date": datetime(2024, 6, 10), "total": "15000"}])
        await self._aggregate(session_factory, "u1", ["IL"], as_of)
        after = (await calculator.compute_exposure("u1", as_of=as_of))["IL"]

        assert before.rolling_sales == Decimal("80000.04")
        assert after.rolling_sales == before.rolling_sales
        assert before.status == after.status == ExposureStatus.APPROACHING

    async def test_no_sales_tax_state_reported_safe(self, session_factory, add_orders, as_of):
        await add_orders("u1", [{"state": "OR", "date": datetime(2025, 3, 1), "total": "900000"}])
        await self._aggregate(session_factory, "u1", ["OR"], as_of)

        snapshots = await ExposureCalculator(session_factory).compute_exposure("u1", as_of=as_of)

        assert snapshots["OR"].status == ExposureStatus.SAFE
        assert snapshots["OR"].rolling_sales == Decimal("900000.00")

    async def test_unknown_user_has_no_exposure(self, session_factory, as_of):
        assert await ExposureCalculator(session_factory).compute_exposure("nobody", as_of=as_of) == {}


class TestExposureReport:
    """Tests for the all-states exposure report"""

    async def test_sorted_with_summary(self, session_factory, add_orders, as_of):
        await add_orders("u1", [
            {"state": "IL", "date": datetime(2025, 3, 1), "total": "120000"},
            {"state": "GA", "date": datetime(2025, 3, 1), "total": "80000"},
            {"state": "FL", "date": datetime(2025, 3, 1), "total": "95000"},
            {"state": "OR", "date": datetime(2025, 3, 1), "total": "95000"},
        ])
        await MonthlyAggregator(session_factory).recompute_for_affected_states(
            "u1", ["IL", "GA", "FL", "OR"], as_of=as_of
        )
        snapshots = await ExposureCalculator(session_factory).compute_exposure("u1", as_of=as_of)

        report = build_exposure_report(snapshots)
        exposures = report["exposures"]

        assert len(exposures) == 51
        assert [s.state_code for s in exposures[:3]] == ["IL", "FL", "GA"]
        assert all(not s.has_sales_tax for s in exposures[-5:])
        assert report["summary"] == {
            "total_states_with_sales": 4,
            "exceeded_count": 1,
            "warning_count": 1,
            "approaching_count": 1,
            "safe_count": 43,
            "no_sales_tax_count": 5,
        }
