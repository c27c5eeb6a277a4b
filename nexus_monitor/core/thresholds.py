"""
Economic Nexus Threshold Registry

Static per-state rules (50 states + DC). The table is built once per process
into an immutable mapping and handed to the calculator, so tests can swap in
fixture rule sets through ``ThresholdRegistry.from_rules``.

Most states use $100,000 in sales OR 200 transactions; CA, NY and TX use
$500,000. Connecticut and New York require both thresholds (AND).
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from functools import lru_cache
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, List, Mapping, Optional


class MeasurementPeriod(str, Enum):
    """Window a state measures its threshold over"""
    CALENDAR_YEAR = "calendar_year"
    ROLLING_12_MONTHS = "rolling_12_months"
    # Larger of the rolling-12-month and current calendar year totals
    PREVIOUS_OR_CURRENT_CALENDAR_YEAR = "previous_or_current_calendar_year"


class Combinator(str, Enum):
    """How the dollar and transaction thresholds combine"""
    OR = "or"
    AND = "and"


@dataclass(frozen=True)
class ThresholdRule:
    """
    Economic nexus rule for one state.

    ``exceeded_requires_all`` only matters for AND rules: when set, exposure
    is classified on the lower of the two percentages instead of the higher.
    """

    state_code: str
    state_name: str
    has_sales_tax: bool
    sales_threshold: Optional[Decimal]
    transaction_threshold: Optional[int]
    measurement_period: MeasurementPeriod
    combinator: Combinator = Combinator.OR
    exceeded_requires_all: bool = False
    notes: str = ""


# -----------------------------------------------------------------------
# State table
# -----------------------------------------------------------------------

_ROLLING = MeasurementPeriod.ROLLING_12_MONTHS
_CALENDAR = MeasurementPeriod.CALENDAR_YEAR
_PREV_OR_CURRENT = MeasurementPeriod.PREVIOUS_OR_CURRENT_CALENDAR_YEAR

_STATE_RULES: Dict[str, dict] = {
    "AL": {"name": "Alabama", "sales": 250000, "transactions": None, "period": _PREV_OR_CURRENT,
           "notes": "Simplified Sellers Use Tax (SSUT) program. $250K threshold."},
    "AK": {"name": "Alaska", "tax": False, "period": _CALENDAR,
           "notes": "No statewide sales tax. Some local jurisdictions impose sales tax."},
    "AZ": {"name": "Arizona", "sales": 100000, "transactions": None, "period": _PREV_OR_CURRENT,
           "notes": "Transaction privilege tax (TPT). No transaction count threshold."},
    "AR": {"name": "Arkansas", "sales": 100000, "transactions": 200, "period": _PREV_OR_CURRENT,
           "notes": "$100K in sales OR 200 transactions."},
    "CA": {"name": "California", "sales": 500000, "transactions": None, "period": _PREV_OR_CURRENT,
           "notes": "$500K threshold. No transaction count threshold."},
    "CO": {"name": "Colorado", "sales": 100000, "transactions": None, "period": _PREV_OR_CURRENT,
           "notes": "Retail delivery fee also applies. No transaction count threshold."},
    "CT": {"name": "Connecticut", "sales": 100000, "transactions": 200, "period": _ROLLING,
           "combinator": Combinator.AND,
           "notes": "$100K in sales AND 200 transactions (both must be met)."},
    "DE": {"name": "Delaware", "tax": False, "period": _CALENDAR, "notes": "No sales tax."},
    "FL": {"name": "Florida", "sales": 100000, "transactions": None, "period": _PREV_OR_CURRENT,
           "notes": "Effective July 2021. No transaction count threshold."},
    "GA": {"name": "Georgia", "sales": 100000, "transactions": 200, "period": _PREV_OR_CURRENT,
           "notes": "$100K in sales OR 200 transactions."},
    "HI": {"name": "Hawaii", "sales": 100000, "transactions": 200, "period": _PREV_OR_CURRENT,
           "notes": "General excise tax (GET)."},
    "ID": {"name": "Idaho", "sales": 100000, "transactions": None, "period": _PREV_OR_CURRENT,
           "notes": "No transaction count threshold."},
    "IL": {"name": "Illinois", "sales": 100000, "transactions": 200, "period": _ROLLING,
           "notes": "$100K in sales OR 200 transactions."},
    "IN": {"name": "Indiana", "sales": 100000, "transactions": 200, "period": _PREV_OR_CURRENT,
           "notes": "$100K in sales OR 200 transactions."},
    "IA": {"name": "Iowa", "sales": 100000, "transactions": None, "period": _PREV_OR_CURRENT,
           "notes": "No transaction count threshold."},
    "KS": {"name": "Kansas", "sales": 100000, "transactions": None, "period": _PREV_OR_CURRENT,
           "notes": "No transaction count threshold."},
    "KY": {"name": "Kentucky", "sales": 100000, "transactions": 200, "period": _PREV_OR_CURRENT,
           "notes": "$100K in sales OR 200 transactions."},
    "LA": {"name": "Louisiana", "sales": 100000, "transactions": 200, "period": _PREV_OR_CURRENT,
           "notes": "$100K in sales OR 200 transactions."},
    "ME": {"name": "Maine", "sales": 100000, "transactions": 200, "period": _PREV_OR_CURRENT,
           "notes": "$100K in sales OR 200 transactions."},
    "MD": {"name": "Maryland", "sales": 100000, "transactions": 200, "period": _PREV_OR_CURRENT,
           "notes": "$100K in sales OR 200 transactions."},
    "MA": {"name": "Massachusetts", "sales": 100000, "transactions": None, "period": _PREV_OR_CURRENT,
           "notes": "No transaction count threshold."},
    "MI": {"name": "Michigan", "sales": 100000, "transactions": 200, "period": _PREV_OR_CURRENT,
           "notes": "$100K in sales OR 200 transactions."},
    "MN": {"name": "Minnesota", "sales": 100000, "transactions": 200, "period": _ROLLING,
           "notes": "$100K in sales OR 200 transactions over 12 months."},
    "MS": {"name": "Mississippi", "sales": 250000, "transactions": None, "period": _ROLLING,
           "notes": "$250K threshold. No transaction count threshold."},
    "MO": {"name": "Missouri", "sales": 100000, "transactions": None, "period": _PREV_OR_CURRENT,
           "notes": "Effective January 2023. No transaction count threshold."},
    "MT": {"name": "Montana", "tax": False, "period": _CALENDAR, "notes": "No sales tax."},
    "NE": {"name": "Nebraska", "sales": 100000, "transactions": 200, "period": _PREV_OR_CURRENT,
           "notes": "$100K in sales OR 200 transactions."},
    "NV": {"name": "Nevada", "sales": 100000, "transactions": 200, "period": _PREV_OR_CURRENT,
           "notes": "$100K in sales OR 200 transactions."},
    "NH": {"name": "New Hampshire", "tax": False, "period": _CALENDAR, "notes": "No sales tax."},
    "NJ": {"name": "New Jersey", "sales": 100000, "transactions": 200, "period": _PREV_OR_CURRENT,
           "notes": "$100K in sales OR 200 transactions."},
    "NM": {"name": "New Mexico", "sales": 100000, "transactions": None, "period": _PREV_OR_CURRENT,
           "notes": "Gross receipts tax (GRT). No transaction count threshold."},
    "NY": {"name": "New York", "sales": 500000, "transactions": 100, "period": _PREV_OR_CURRENT,
           "combinator": Combinator.AND,
           "notes": "$500K in sales AND 100 transactions (both must be met)."},
    "NC": {"name": "North Carolina", "sales": 100000, "transactions": 200, "period": _PREV_OR_CURRENT,
           "notes": "$100K in sales OR 200 transactions."},
    "ND": {"name": "North Dakota", "sales": 100000, "transactions": None, "period": _PREV_OR_CURRENT,
           "notes": "No transaction count threshold."},
    "OH": {"name": "Ohio", "sales": 100000, "transactions": 200, "period": _PREV_OR_CURRENT,
           "notes": "$100K in sales OR 200 transactions."},
    "OK": {"name": "Oklahoma", "sales": 100000, "transactions": None, "period": _PREV_OR_CURRENT,
           "notes": "No transaction count threshold."},
    "OR": {"name": "Oregon", "tax": False, "period": _CALENDAR, "notes": "No sales tax."},
    "PA": {"name": "Pennsylvania", "sales": 100000, "transactions": None, "period": _PREV_OR_CURRENT,
           "notes": "No transaction count threshold."},
    "RI": {"name": "Rhode Island", "sales": 100000, "transactions": 200, "period": _PREV_OR_CURRENT,
           "notes": "$100K in sales OR 200 transactions."},
    "SC": {"name": "South Carolina", "sales": 100000, "transactions": None, "period": _PREV_OR_CURRENT,
           "notes": "No transaction count threshold."},
    "SD": {"name": "South Dakota", "sales": 100000, "transactions": 200, "period": _PREV_OR_CURRENT,
           "notes": "$100K in sales OR 200 transactions. Wayfair v. South Dakota origin state."},
    "TN": {"name": "Tennessee", "sales": 100000, "transactions": None, "period": _ROLLING,
           "notes": "No transaction count threshold."},
    "TX": {"name": "Texas", "sales": 500000, "transactions": None, "period": _ROLLING,
           "notes": "$500K threshold. No transaction count threshold."},
    "UT": {"name": "Utah", "sales": 100000, "transactions": 200, "period": _PREV_OR_CURRENT,
           "notes": "$100K in sales OR 200 transactions."},
    "VT": {"name": "Vermont", "sales": 100000, "transactions": 200, "period": _ROLLING,
           "notes": "$100K in sales OR 200 transactions."},
    "VA": {"name": "Virginia", "sales": 100000, "transactions": 200, "period": _PREV_OR_CURRENT,
           "notes": "$100K in sales OR 200 transactions."},
    "WA": {"name": "Washington", "sales": 100000, "transactions": None, "period": _PREV_OR_CURRENT,
           "notes": "B&O tax also applies. No transaction count threshold."},
    "WV": {"name": "West Virginia", "sales": 100000, "transactions": 200, "period": _PREV_OR_CURRENT,
           "notes": "$100K in sales OR 200 transactions."},
    "WI": {"name": "Wisconsin", "sales": 100000, "transactions": None, "period": _PREV_OR_CURRENT,
           "notes": "No transaction count threshold."},
    "WY": {"name": "Wyoming", "sales": 100000, "transactions": 200, "period": _PREV_OR_CURRENT,
           "notes": "$100K in sales OR 200 transactions."},
    "DC": {"name": "District of Columbia", "sales": 100000, "transactions": 200, "period": _PREV_OR_CURRENT,
           "notes": "$100K in sales OR 200 transactions."},
}


def _load_rules() -> List[ThresholdRule]:
    rules: List[ThresholdRule] = []
    for code, data in _STATE_RULES.items():
        sales = data.get("sales")
        rules.append(
            ThresholdRule(
                state_code=code,
                state_name=data["name"],
                has_sales_tax=data.get("tax", True),
                sales_threshold=Decimal(str(sales)) if sales is not None else None,
                transaction_threshold=data.get("transactions"),
                measurement_period=data["period"],
                combinator=data.get("combinator", Combinator.OR),
                notes=data.get("notes", ""),
            )
        )
    return rules


class ThresholdRegistry:
    """
    Immutable state-code -> ThresholdRule lookup.

    Lookups are case-insensitive and side-effect free.
    """

    def __init__(self, rules: Iterable[ThresholdRule]):
        table: Dict[str, ThresholdRule] = {}
        for rule in rules:
            code = rule.state_code.upper()
            if code in table:
                raise ValueError(f"Duplicate threshold rule for {code}")
            table[code] = rule
        self._rules: Mapping[str, ThresholdRule] = MappingProxyType(table)

    @classmethod
    def from_rules(cls, rules: Iterable[ThresholdRule]) -> "ThresholdRegistry":
        return cls(rules)

    def get_threshold(self, state_code: Optional[str]) -> Optional[ThresholdRule]:
        if not state_code:
            return None
        return self._rules.get(state_code.strip().upper())

    def taxable_states(self) -> List[ThresholdRule]:
        return [r for r in self._rules.values() if r.has_sales_tax]

    def non_taxable_states(self) -> List[ThresholdRule]:
        return [r for r in self._rules.values() if not r.has_sales_tax]

    @property
    def state_codes(self) -> List[str]:
        return list(self._rules.keys())

    def __contains__(self, state_code: object) -> bool:
        return isinstance(state_code, str) and self.get_threshold(state_code) is not None

    def __iter__(self) -> Iterator[ThresholdRule]:
        return iter(self._rules.values())

    def __len__(self) -> int:
        return len(self._rules)


@lru_cache()
def default_registry() -> ThresholdRegistry:
    """Registry over the built-in state table, built once per process."""
    return ThresholdRegistry(_load_rules())
