"""
Missing-Data Reason Classifier

Maps resolver outcome, sales presence and analytics availability to exactly
one of: Ok, or a MissingDataReason.

The precedence is an ordered rule list evaluated top-down; the first rule
whose predicate holds decides the reason. COGS absence is reported ahead of
dormancy because assigning COGS is the actionable remediation.
"""

from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from margin_engine.core.models import MissingDataReason
from margin_engine.core.resolver import CogsResolution


@dataclass(frozen=True)
class ClassifierInput:
    """Facts the classifier decides on"""
    cogs: CogsResolution
    has_sales_in_week: bool
    analytics_unavailable: bool = False
    has_sales_in_lookback: bool = False


@dataclass(frozen=True)
class Classification:
    """Ok when ``reason`` is None"""
    reason: Optional[MissingDataReason] = None

    @property
    def is_ok(self) -> bool:
        return self.reason is None


OK = Classification()

Rule = Tuple[MissingDataReason, Callable[[ClassifierInput], bool]]


def _analytics_unavailable(facts: ClassifierInput) -> bool:
    return facts.analytics_unavailable


def _no_sales_in_period(facts: ClassifierInput) -> bool:
    return (
        not facts.has_sales_in_week
        and facts.has_sales_in_lookback
        and facts.cogs.is_applicable
    )


def _cogs_not_assigned(facts: ClassifierInput) -> bool:
    return facts.cogs.is_missing


def _no_sales_data(facts: ClassifierInput) -> bool:
    return (
        not facts.has_sales_in_week
        and not facts.has_sales_in_lookback
        and facts.cogs.is_applicable
    )


CLASSIFICATION_RULES: Tuple[Rule, ...] = (
    (MissingDataReason.ANALYTICS_UNAVAILABLE, _analytics_unavailable),
    (MissingDataReason.NO_SALES_IN_PERIOD, _no_sales_in_period),
    (MissingDataReason.COGS_NOT_ASSIGNED, _cogs_not_assigned),
    (MissingDataReason.NO_SALES_DATA, _no_sales_data),
)


def classify(
    facts: ClassifierInput,
    rules: Tuple[Rule, ...] = CLASSIFICATION_RULES,
) -> Classification:
    """
    Classify a product/week.

    Args:
        facts: Resolver outcome and sales/availability flags
        rules: Ordered (reason, predicate) pairs; first match wins

    Returns:
        Classification with the matching reason, or OK
    """
    for reason, predicate in rules:
        if predicate(facts):
            return Classification(reason=reason)
    return OK
