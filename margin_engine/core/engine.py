"""
Margin Evaluation Pipeline

API row -> COGS resolver -> reason classifier (historical locator consulted
when the week has no sales) -> metrics calculator or missing-data result.

The output is one discriminated result consumed everywhere a margin figure
is displayed, so the precedence logic lives only here.
"""

from typing import Iterable, Optional

import structlog

from margin_engine.core.classifier import ClassifierInput, classify
from margin_engine.core.history import (
    DEFAULT_LOOKBACK_WEEKS,
    historical_context_from_fields,
    locate_last_sale,
)
from margin_engine.core.metrics import derive_metrics, sanitize_number
from margin_engine.core.models import (
    HistoricalContext,
    MarginFact,
    MarginMissing,
    MarginOk,
    MarginResult,
)
from margin_engine.core.resolver import (
    CogsApplicability,
    applicable_cogs_view,
    resolve_cogs,
)
from margin_engine.core.schemas import AnalyticsRow
from margin_engine.core.weeks import IsoWeek, WeekLike

logger = structlog.get_logger(__name__)


def _lookup_history(
    row: AnalyticsRow,
    week: IsoWeek,
    prior_facts: Optional[Iterable[MarginFact]],
    horizon: int,
) -> Optional[HistoricalContext]:
    if prior_facts is not None:
        return locate_last_sale(week, prior_facts, horizon=horizon)

    context = historical_context_from_fields(
        row.last_sales_week,
        row.last_sales_margin_pct,
        row.last_sales_qty,
        row.weeks_since_last_sale,
        current_week=week,
    )
    if context is None:
        return None
    if not 0 < context.weeks_since_last_sale <= horizon:
        logger.warning(
            "Upstream last sale outside lookback window",
            nm_id=row.nm_id,
            last_sales_week=str(context.last_sales_week),
            weeks_since_last_sale=context.weeks_since_last_sale,
            horizon=horizon,
        )
        return None
    return context


def evaluate_margin(
    row: AnalyticsRow,
    week: WeekLike,
    prior_facts: Optional[Iterable[MarginFact]] = None,
    horizon: int = DEFAULT_LOOKBACK_WEEKS,
) -> MarginResult:
    """
    Evaluate the margin for one product in one week.

    Args:
        row: Upstream analytics row for the product and week
        week: Target ISO week
        prior_facts: Earlier weekly facts for the historical lookup; when
            None the row's own ``last_sales_*`` fields are used
        horizon: Look-back horizon in weeks

    Returns:
        MarginOk with derived metrics, or MarginMissing with a reason
    """
    target = IsoWeek.coerce(week)
    records = row.cogs_record_list()
    resolution = resolve_cogs(records, target)
    fact = row.to_fact(target)

    historical: Optional[HistoricalContext] = None
    history_checked = False
    if not fact.has_sales:
        historical = _lookup_history(row, target, prior_facts, horizon)
        history_checked = True

    classification = classify(
        ClassifierInput(
            cogs=resolution,
            has_sales_in_week=fact.has_sales,
            analytics_unavailable=row.analytics_unavailable,
            has_sales_in_lookback=historical is not None,
        )
    )

    if (
        row.missing_data_reason is not None
        and not row.analytics_unavailable
        and row.missing_data_reason != classification.reason
    ):
        logger.debug(
            "Upstream reason differs from local classification",
            nm_id=row.nm_id,
            week=str(target),
            upstream=row.missing_data_reason.value,
            local=classification.reason.value if classification.reason else "ok",
        )

    applicable = applicable_cogs_view(resolution, records)

    if classification.is_ok:
        metrics = derive_metrics(fact.operating_profit, fact.revenue_net, fact.cogs, fact.qty)
        margin = metrics.margin_pct
        if fact.operating_profit is None:
            margin = sanitize_number(fact.margin_pct)
        return MarginOk(
            margin_pct=margin,
            roi_pct=metrics.roi_pct,
            profit_per_unit=metrics.profit_per_unit,
            week=target,
            applicable_cogs=applicable,
            awaiting_calculation=fact.operating_profit is None and margin is None,
        )

    if not history_checked:
        historical = _lookup_history(row, target, prior_facts, horizon)

    return MarginMissing(
        reason=classification.reason,
        historical=historical,
        week=target,
        applicable_cogs=applicable,
        future_cogs=resolution.record if resolution.status == CogsApplicability.FUTURE else None,
    )
