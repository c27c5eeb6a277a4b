"""
Core Module

Threshold rules, monthly aggregation and exposure calculation.
"""
from .aggregation import AggregationResult, BucketKey, BucketTotals, MonthlyAggregator
from .exposure import (
    Classification,
    ExposureCalculator,
    ExposureSnapshot,
    ExposureStatus,
    build_exposure_report,
    classify_exposure,
)
from .periods import YearMonth, calendar_year_window, rolling_window
from .thresholds import (
    Combinator,
    MeasurementPeriod,
    ThresholdRegistry,
    ThresholdRule,
    default_registry,
)

__all__ = [
    "AggregationResult",
    "BucketKey",
    "BucketTotals",
    "MonthlyAggregator",
    "Classification",
    "ExposureCalculator",
    "ExposureSnapshot",
    "ExposureStatus",
    "build_exposure_report",
    "classify_exposure",
    "YearMonth",
    "calendar_year_window",
    "rolling_window",
    "Combinator",
    "MeasurementPeriod",
    "ThresholdRegistry",
    "ThresholdRule",
    "default_registry",
]
