"""
Margin Reasoning Core
"""
from .classifier import CLASSIFICATION_RULES, Classification, ClassifierInput, classify
from .engine import evaluate_margin
from .history import locate_last_sale
from .metrics import DerivedMetrics, derive_metrics, margin_pct, profit_per_unit, roi_pct
from .models import (
    CogsRecord,
    HistoricalContext,
    MarginFact,
    MarginMissing,
    MarginOk,
    MarginResult,
    MissingDataReason,
    Product,
)
from .resolver import CogsApplicability, CogsResolution, resolve_cogs
from .schemas import AnalyticsRow
from .weeks import IsoWeek

__all__ = [
    "CLASSIFICATION_RULES",
    "Classification",
    "ClassifierInput",
    "classify",
    "evaluate_margin",
    "locate_last_sale",
    "DerivedMetrics",
    "derive_metrics",
    "margin_pct",
    "profit_per_unit",
    "roi_pct",
    "CogsRecord",
    "HistoricalContext",
    "MarginFact",
    "MarginMissing",
    "MarginOk",
    "MarginResult",
    "MissingDataReason",
    "Product",
    "CogsApplicability",
    "CogsResolution",
    "resolve_cogs",
    "AnalyticsRow",
    "IsoWeek",
]
