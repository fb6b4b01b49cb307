"""
Derived Metrics Calculator

Operating margin %, ROI % and profit per unit from upstream analytics
figures. Zero is a real result and is never reported as missing; NaN and
infinities are treated as invalid input and become None.
"""

import math
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class DerivedMetrics:
    """Independently nullable profitability metrics"""
    margin_pct: Optional[float]
    roi_pct: Optional[float]
    profit_per_unit: Optional[float]

    def to_dict(self) -> Dict[str, Optional[float]]:
        return {
            "margin_pct": self.margin_pct,
            "roi_pct": self.roi_pct,
            "profit_per_unit": self.profit_per_unit,
        }


def sanitize_number(value: Any) -> Optional[float]:
    """
    Coerce an upstream numeric value to a finite float.

    Accepts int, float, Decimal and numeric strings (the analytics API sends
    some money fields as decimal strings). Returns None for None, booleans,
    unparseable strings, NaN and infinities. 0 stays 0.0.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        try:
            value = Decimal(value)
        except InvalidOperation:
            return None

    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None

    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _finite(value: float) -> Optional[float]:
    if math.isnan(value) or math.isinf(value):
        return None
    return value


def margin_pct(operating_profit: Any, revenue_net: Any) -> Optional[float]:
    """
    Operating margin as a percentage of absolute net revenue.

    Args:
        operating_profit: Profit net of all expenses (sign preserved)
        revenue_net: Net revenue; may be negative after returns

    Returns:
        ``profit / |revenue| * 100``, or None when revenue is 0 or an input
        is missing/invalid
    """
    profit = sanitize_number(operating_profit)
    revenue = sanitize_number(revenue_net)
    if profit is None or revenue is None or revenue == 0:
        return None
    return _finite(profit / abs(revenue) * 100)


def roi_pct(operating_profit: Any, cogs: Any) -> Optional[float]:
    """Return on cost of goods; None unless COGS is present and positive"""
    profit = sanitize_number(operating_profit)
    cost = sanitize_number(cogs)
    if profit is None or cost is None or cost <= 0:
        return None
    return _finite(profit / cost * 100)


def profit_per_unit(operating_profit: Any, qty: Any) -> Optional[float]:
    """Profit per unit sold; None unless quantity is positive"""
    profit = sanitize_number(operating_profit)
    units = sanitize_number(qty)
    if profit is None or units is None or units <= 0:
        return None
    return _finite(profit / units)


def derive_metrics(
    operating_profit: Any,
    revenue_net: Any,
    cogs: Any = None,
    qty: Any = None,
) -> DerivedMetrics:
    """Compute all three metrics; absence of one never implies another"""
    return DerivedMetrics(
        margin_pct=margin_pct(operating_profit, revenue_net),
        roi_pct=roi_pct(operating_profit, cogs),
        profit_per_unit=profit_per_unit(operating_profit, qty),
    )
