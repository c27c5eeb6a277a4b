"""
Nexus Exposure Calculation

Derives per-state exposure snapshots from the monthly sales summaries.

Both measurement windows are served by one batched read over the union of
their month keys; the governing totals for each state are then picked by
the state's measurement period and classified against its thresholds.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nexus_monitor.core.periods import calendar_year_window, rolling_window
from nexus_monitor.core.thresholds import (
    Combinator,
    MeasurementPeriod,
    ThresholdRegistry,
    ThresholdRule,
    default_registry,
)
from nexus_monitor.database.connection import get_db
from nexus_monitor.database.models import SalesSummary, utcnow

logger = structlog.get_logger(__name__)

APPROACHING_PCT = 75
WARNING_PCT = 90
EXCEEDED_PCT = 100


class ExposureStatus(str, Enum):
    """Exposure classification of one state"""
    SAFE = "safe"
    APPROACHING = "approaching"
    WARNING = "warning"
    EXCEEDED = "exceeded"

    @property
    def severity(self) -> int:
        return _STATUS_SEVERITY[self]


_STATUS_SEVERITY = {
    ExposureStatus.SAFE: 0,
    ExposureStatus.APPROACHING: 1,
    ExposureStatus.WARNING: 2,
    ExposureStatus.EXCEEDED: 3,
}


@dataclass(frozen=True)
class Classification:
    status: ExposureStatus
    sales_pct: float
    tx_pct: float
    highest_pct: float
    # Percentage that decided the status; differs from highest_pct only
    # for AND rules requiring every threshold
    governing_pct: float


@dataclass
class WindowTotals:
    """Sales and transaction sums over one measurement window"""
    sales: Decimal = Decimal("0.00")
    transactions: int = 0


@dataclass
class ExposureSnapshot:
    """Derived exposure of one state for one user. Never persisted."""
    state_code: str
    state_name: str
    has_sales_tax: bool
    measurement_period: MeasurementPeriod
    sales_threshold: Optional[Decimal]
    transaction_threshold: Optional[int]
    rolling_sales: Decimal
    rolling_transactions: int
    calendar_sales: Decimal
    calendar_transactions: int
    evaluated_sales: Decimal
    evaluated_transactions: int
    sales_pct: float
    tx_pct: float
    highest_pct: float
    status: ExposureStatus
    governing_pct: float = 0.0
    notes: str = ""

    def to_dict(self) -> dict:
        return {
            "state_code": self.state_code,
            "state_name": self.state_name,
            "has_sales_tax": self.has_sales_tax,
            "measurement_period": self.measurement_period.value,
            "sales_threshold": float(self.sales_threshold) if self.sales_threshold is not None else None,
            "transaction_threshold": self.transaction_threshold,
            "rolling_12_month_sales": float(self.rolling_sales),
            "rolling_12_month_transactions": self.rolling_transactions,
            "calendar_year_sales": float(self.calendar_sales),
            "calendar_year_transactions": self.calendar_transactions,
            "current_sales": float(self.evaluated_sales),
            "current_transactions": self.evaluated_transactions,
            "sales_percentage": self.sales_pct,
            "transaction_percentage": self.tx_pct,
            "highest_percentage": self.highest_pct,
            "governing_percentage": self.governing_pct,
            "status": self.status.value,
            "notes": self.notes,
        }


def _status_for(pct: float) -> ExposureStatus:
    if pct >= EXCEEDED_PCT:
        return ExposureStatus.EXCEEDED
    if pct >= WARNING_PCT:
        return ExposureStatus.WARNING
    if pct >= APPROACHING_PCT:
        return ExposureStatus.APPROACHING
    return ExposureStatus.SAFE


def classify_exposure(sales: Decimal, transactions: int, rule: ThresholdRule) -> Classification:
    """
    Classify sales and transaction totals against a state rule.

    A missing threshold contributes 0%. States without sales tax are always
    safe. For AND rules flagged ``exceeded_requires_all`` the lower of the
    configured percentages governs, so one threshold alone never escalates.
    """
    if not rule.has_sales_tax:
        return Classification(ExposureStatus.SAFE, 0.0, 0.0, 0.0, 0.0)

    sales_pct = 0.0
    if rule.sales_threshold:
        sales_pct = float(Decimal(sales) / rule.sales_threshold * 100)

    tx_pct = 0.0
    if rule.transaction_threshold:
        tx_pct = transactions / rule.transaction_threshold * 100

    highest_pct = max(sales_pct, tx_pct)
    governing_pct = highest_pct

    if rule.combinator == Combinator.AND and rule.exceeded_requires_all:
        configured = []
        if rule.sales_threshold:
            configured.append(sales_pct)
        if rule.transaction_threshold:
            configured.append(tx_pct)
        if configured:
            governing_pct = min(configured)

    return Classification(_status_for(governing_pct), sales_pct, tx_pct, highest_pct, governing_pct)


def select_governing_totals(
    rule: ThresholdRule,
    rolling: WindowTotals,
    calendar: WindowTotals,
) -> Tuple[Decimal, int]:
    """Pick the totals a state's measurement period evaluates."""
    if rule.measurement_period == MeasurementPeriod.ROLLING_12_MONTHS:
        return rolling.sales, rolling.transactions
    if rule.measurement_period == MeasurementPeriod.CALENDAR_YEAR:
        return calendar.sales, calendar.transactions
    # Element-wise: the larger sales figure and the larger count may come
    # from different windows.
    return (
        max(rolling.sales, calendar.sales),
        max(rolling.transactions, calendar.transactions),
    )


def build_snapshot(rule: ThresholdRule, rolling: WindowTotals, calendar: WindowTotals) -> ExposureSnapshot:
    sales, transactions = select_governing_totals(rule, rolling, calendar)
    classification = classify_exposure(sales, transactions, rule)

    return ExposureSnapshot(
        state_code=rule.state_code,
        state_name=rule.state_name,
        has_sales_tax=rule.has_sales_tax,
        measurement_period=rule.measurement_period,
        sales_threshold=rule.sales_threshold,
        transaction_threshold=rule.transaction_threshold,
        rolling_sales=rolling.sales,
        rolling_transactions=rolling.transactions,
        calendar_sales=calendar.sales,
        calendar_transactions=calendar.transactions,
        evaluated_sales=sales,
        evaluated_transactions=transactions,
        sales_pct=classification.sales_pct,
        tx_pct=classification.tx_pct,
        highest_pct=classification.highest_pct,
        status=classification.status,
        governing_pct=classification.governing_pct,
        notes=rule.notes,
    )


class ExposureCalculator:
    """
    Computes exposure snapshots for a user.

    Example:
        calculator = ExposureCalculator(session_factory)
        snapshots = await calculator.compute_exposure("user-1")
        snapshots["CA"].status
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        registry: Optional[ThresholdRegistry] = None,
    ):
        self.session_factory = session_factory
        self.registry = registry or default_registry()

    async def _load_period_totals(self, user_id: str, periods: List[str]) -> Dict[Tuple[str, str], WindowTotals]:
        async with get_db(self.session_factory) as db:
            rows = (
                await db.execute(
                    select(
                        SalesSummary.state_code,
                        SalesSummary.period,
                        func.sum(SalesSummary.total_sales).label("sales"),
                        func.sum(SalesSummary.order_count).label("transactions"),
                    )
                    .where(
                        SalesSummary.user_id == user_id,
                        SalesSummary.period.in_(periods),
                    )
                    .group_by(SalesSummary.state_code, SalesSummary.period)
                )
            ).all()

        return {
            (row.state_code, row.period): WindowTotals(
                sales=Decimal(str(row.sales or 0)).quantize(Decimal("0.01")),
                transactions=int(row.transactions or 0),
            )
            for row in rows
        }

    async def compute_exposure(
        self,
        user_id: str,
        as_of: Optional[datetime] = None,
    ) -> Dict[str, ExposureSnapshot]:
        """
        Exposure of every state the user has summaries for in either window.

        Returns:
            Mapping of state code to snapshot. States with no activity in
            either window are absent; unknown state codes are skipped.
        """
        as_of = as_of or utcnow()
        rolling_keys = {month.key for month in rolling_window(as_of)}
        calendar_keys = {month.key for month in calendar_year_window(as_of)}

        period_totals = await self._load_period_totals(user_id, sorted(rolling_keys | calendar_keys))

        rolling: Dict[str, WindowTotals] = {}
        calendar: Dict[str, WindowTotals] = {}
        for (state_code, period), totals in period_totals.items():
            if period in rolling_keys:
                window = rolling.setdefault(state_code, WindowTotals())
                window.sales += totals.sales
                window.transactions += totals.transactions
            if period in calendar_keys:
                window = calendar.setdefault(state_code, WindowTotals())
                window.sales += totals.sales
                window.transactions += totals.transactions

        snapshots: Dict[str, ExposureSnapshot] = {}
        for state_code in sorted(set(rolling) | set(calendar)):
            rule = self.registry.get_threshold(state_code)
            if rule is None:
                logger.warning("Summary for unknown state ignored", user_id=user_id, state_code=state_code)
                continue
            snapshots[rule.state_code] = build_snapshot(
                rule,
                rolling.get(state_code, WindowTotals()),
                calendar.get(state_code, WindowTotals()),
            )

        logger.debug("Exposure computed", user_id=user_id, states=len(snapshots), as_of=as_of.isoformat())
        return snapshots


def build_exposure_report(
    snapshots: Dict[str, ExposureSnapshot],
    registry: Optional[ThresholdRegistry] = None,
) -> dict:
    """
    Full exposure report across every registry state.

    States without activity appear as safe. Taxable states sort first, then
    by severity, then by highest percentage.
    """
    registry = registry or default_registry()

    exposures: List[ExposureSnapshot] = []
    for rule in registry:
        snapshot = snapshots.get(rule.state_code)
        if snapshot is None:
            snapshot = build_snapshot(rule, WindowTotals(), WindowTotals())
        exposures.append(snapshot)

    exposures.sort(key=lambda s: (not s.has_sales_tax, -s.status.severity, -s.highest_pct))

    summary = {
        "total_states_with_sales": sum(1 for s in exposures if s.evaluated_sales > 0),
        "exceeded_count": sum(1 for s in exposures if s.status == ExposureStatus.EXCEEDED),
        "warning_count": sum(1 for s in exposures if s.status == ExposureStatus.WARNING),
        "approaching_count": sum(1 for s in exposures if s.status == ExposureStatus.APPROACHING),
        "safe_count": sum(1 for s in exposures if s.status == ExposureStatus.SAFE and s.has_sales_tax),
        "no_sales_tax_count": sum(1 for s in exposures if not s.has_sales_tax),
    }

    return {"exposures": exposures, "summary": summary}
