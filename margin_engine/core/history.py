"""
Historical Fallback Locator

When a week has no margin, find the most recent prior week with sales
inside a fixed look-back horizon. A product with no sale in the horizon is
"dormant".
"""

from typing import Any, Iterable, Optional

import structlog

from margin_engine.core.metrics import margin_pct, sanitize_number
from margin_engine.core.models import HistoricalContext, MarginFact
from margin_engine.core.weeks import IsoWeek, WeekLike

logger = structlog.get_logger(__name__)

DEFAULT_LOOKBACK_WEEKS = 12


def _week_margin(fact: MarginFact) -> Optional[float]:
    # Profit is already net of that week's own COGS
    if fact.operating_profit is not None:
        return margin_pct(fact.operating_profit, fact.revenue_net)
    return sanitize_number(fact.margin_pct)


def locate_last_sale(
    week: WeekLike,
    prior_facts: Iterable[MarginFact],
    horizon: int = DEFAULT_LOOKBACK_WEEKS,
) -> Optional[HistoricalContext]:
    """
    Scan prior weeks most-recent-first for the last week with sales.

    Args:
        week: The target week W
        prior_facts: Weekly facts for the product, any order; facts outside
            ``[W - horizon, W - 1]`` are ignored
        horizon: Number of prior weeks searched

    Returns:
        HistoricalContext for the most recent week with qty > 0, or None
        when there is no sale within the horizon
    """
    target = IsoWeek.coerce(week)
    earliest = target.shift(-horizon)

    in_window = [
        fact for fact in prior_facts
        if earliest <= fact.week < target
    ]
    in_window.sort(key=lambda fact: fact.week, reverse=True)

    for fact in in_window:
        if fact.has_sales:
            return HistoricalContext(
                last_sales_week=fact.week,
                last_sales_margin_pct=_week_margin(fact),
                last_sales_qty=fact.qty,
                weeks_since_last_sale=target - fact.week,
            )

    logger.debug("No sales in lookback window", week=str(target), horizon=horizon)
    return None


def historical_context_from_fields(
    last_sales_week: Optional[str],
    last_sales_margin_pct: Any = None,
    last_sales_qty: Any = None,
    weeks_since_last_sale: Any = None,
    current_week: Optional[WeekLike] = None,
) -> Optional[HistoricalContext]:
    """
    Build a context from the upstream row's ``last_sales_*`` fields.

    The context is all-or-nothing: without a last sales week there is no
    context. A missing distance is derived from ``current_week`` when given.
    """
    if not last_sales_week:
        return None

    sales_week = IsoWeek.coerce(last_sales_week)
    qty = sanitize_number(last_sales_qty)
    distance = sanitize_number(weeks_since_last_sale)

    if distance is None and current_week is not None:
        distance = IsoWeek.coerce(current_week) - sales_week
    if qty is None or distance is None:
        logger.warning(
            "Incomplete historical context dropped",
            last_sales_week=last_sales_week,
        )
        return None

    return HistoricalContext(
        last_sales_week=sales_week,
        last_sales_margin_pct=sanitize_number(last_sales_margin_pct),
        last_sales_qty=int(qty),
        weeks_since_last_sale=int(distance),
    )
