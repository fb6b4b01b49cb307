"""
Margin Domain Models

Immutable value types shared by the resolver, classifier, calculator and
historical locator, plus the discriminated result handed to consumers.
"""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, Literal, Optional, Union

from margin_engine.core.weeks import IsoWeek


class MissingDataReason(str, Enum):
    """Why no margin figure is shown for a product/week"""
    NO_SALES_IN_PERIOD = "NO_SALES_IN_PERIOD"  # Sold before, not in this week
    NO_SALES_DATA = "NO_SALES_DATA"  # No sales within the lookback window
    COGS_NOT_ASSIGNED = "COGS_NOT_ASSIGNED"  # No cost basis covers the week
    ANALYTICS_UNAVAILABLE = "ANALYTICS_UNAVAILABLE"  # Backend could not compute


@dataclass(frozen=True)
class Product:
    """Seller product (WB article)"""
    nm_id: str
    vendor_code: Optional[str] = None
    name: Optional[str] = None
    brand: Optional[str] = None
    has_cogs: bool = False


@dataclass(frozen=True)
class CogsRecord:
    """Per-unit cost basis with a temporal validity window"""
    unit_cost: float
    valid_from: date
    valid_to: Optional[date] = None  # None = open-ended
    record_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.unit_cost < 0:
            raise ValueError(f"unit_cost must be non-negative, got {self.unit_cost}")
        if self.valid_to is not None and self.valid_to < self.valid_from:
            raise ValueError(
                f"valid_to {self.valid_to} precedes valid_from {self.valid_from}"
            )

    @property
    def is_open_ended(self) -> bool:
        return self.valid_to is None

    def covers(self, day: date) -> bool:
        """True if the record is in effect on ``day`` (bounds inclusive)"""
        if self.valid_from > day:
            return False
        return self.valid_to is None or self.valid_to >= day


@dataclass(frozen=True)
class MarginFact:
    """Analytics figures for one product in one week"""
    week: IsoWeek
    revenue_net: float = 0.0
    qty: int = 0
    cogs: Optional[float] = None
    operating_profit: Optional[float] = None
    margin_pct: Optional[float] = None

    @property
    def has_sales(self) -> bool:
        return self.qty > 0


@dataclass(frozen=True)
class HistoricalContext:
    """Most recent week with sales inside the lookback window"""
    last_sales_week: IsoWeek
    last_sales_margin_pct: Optional[float]
    last_sales_qty: int
    weeks_since_last_sale: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_sales_week": str(self.last_sales_week),
            "last_sales_margin_pct": self.last_sales_margin_pct,
            "last_sales_qty": self.last_sales_qty,
            "weeks_since_last_sale": self.weeks_since_last_sale,
        }


@dataclass(frozen=True)
class ApplicableCogs:
    """The COGS record actually used for a week's margin"""
    unit_cost: float
    valid_from: date
    applies_to_week: IsoWeek
    is_same_as_current: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unit_cost": self.unit_cost,
            "valid_from": self.valid_from.isoformat(),
            "applies_to_week": str(self.applies_to_week),
            "is_same_as_current": self.is_same_as_current,
        }


@dataclass(frozen=True)
class MarginOk:
    """Margin may be shown; each metric is independently nullable"""
    margin_pct: Optional[float]
    roi_pct: Optional[float]
    profit_per_unit: Optional[float]
    week: Optional[IsoWeek] = None
    applicable_cogs: Optional[ApplicableCogs] = None
    # Cost basis and sales exist but the backend has not returned profit yet
    awaiting_calculation: bool = False
    kind: Literal["ok"] = field(default="ok", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "week": str(self.week) if self.week else None,
            "margin_pct": self.margin_pct,
            "roi_pct": self.roi_pct,
            "profit_per_unit": self.profit_per_unit,
            "awaiting_calculation": self.awaiting_calculation,
            "applicable_cogs": self.applicable_cogs.to_dict() if self.applicable_cogs else None,
        }


@dataclass(frozen=True)
class MarginMissing:
    """No margin figure; exactly one reason applies"""
    reason: MissingDataReason
    historical: Optional[HistoricalContext] = None
    week: Optional[IsoWeek] = None
    applicable_cogs: Optional[ApplicableCogs] = None
    future_cogs: Optional[CogsRecord] = None  # "COGS effective from X"
    kind: Literal["missing"] = field(default="missing", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "week": str(self.week) if self.week else None,
            "reason": self.reason.value,
            "historical": self.historical.to_dict() if self.historical else None,
            "applicable_cogs": self.applicable_cogs.to_dict() if self.applicable_cogs else None,
            "future_cogs_valid_from": (
                self.future_cogs.valid_from.isoformat() if self.future_cogs else None
            ),
        }


MarginResult = Union[MarginOk, MarginMissing]
