"""
Analytics API Row Schemas

Pydantic models for the per-(product, week) rows consumed from the upstream
analytics API. Numeric fields are sanitized on the way in so NaN/Infinity
never reach the calculator.
"""

from datetime import date
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from margin_engine.core.metrics import sanitize_number
from margin_engine.core.models import CogsRecord, MarginFact, MissingDataReason, Product
from margin_engine.core.weeks import IsoWeek, WeekLike


class CogsRecordIn(BaseModel):
    """COGS version as returned by the COGS history endpoint"""
    model_config = ConfigDict(extra="ignore")

    unit_cost: float = Field(ge=0)
    valid_from: date
    valid_to: Optional[date] = None
    record_id: Optional[str] = None

    @field_validator("unit_cost", mode="before")
    @classmethod
    def parse_cost(cls, v):
        number = sanitize_number(v)
        if number is None:
            raise ValueError("unit_cost must be a finite number")
        return number

    @model_validator(mode="after")
    def check_window(self) -> "CogsRecordIn":
        if self.valid_to is not None and self.valid_to < self.valid_from:
            raise ValueError("valid_to must not precede valid_from")
        return self

    def to_record(self) -> CogsRecord:
        return CogsRecord(
            unit_cost=self.unit_cost,
            valid_from=self.valid_from,
            valid_to=self.valid_to,
            record_id=self.record_id,
        )


class AnalyticsRow(BaseModel):
    """Margin analytics for one product in one week"""
    model_config = ConfigDict(extra="ignore")

    nm_id: str
    vendor_code: Optional[str] = None
    name: Optional[str] = None
    brand: Optional[str] = None

    revenue_net: Optional[float] = None
    qty: int = Field(default=0, ge=0)
    operating_profit: Optional[float] = None
    cogs: Optional[float] = None  # Week's cost of goods (unit cost x qty)
    margin_pct: Optional[float] = None  # Upstream-computed margin, if any

    cogs_unit_cost: Optional[float] = None
    cogs_valid_from: Optional[date] = None
    cogs_valid_to: Optional[date] = None
    cogs_records: List[CogsRecordIn] = Field(default_factory=list)

    missing_data_reason: Optional[MissingDataReason] = None

    last_sales_week: Optional[str] = None
    last_sales_margin_pct: Optional[float] = None
    last_sales_qty: Optional[int] = None
    weeks_since_last_sale: Optional[int] = None

    @field_validator(
        "revenue_net",
        "operating_profit",
        "cogs",
        "margin_pct",
        "cogs_unit_cost",
        "last_sales_margin_pct",
        mode="before",
    )
    @classmethod
    def finite_or_none(cls, v):
        return sanitize_number(v)

    @field_validator("qty", mode="before")
    @classmethod
    def parse_qty(cls, v):
        number = sanitize_number(v)
        return 0 if number is None else int(number)

    @field_validator("last_sales_qty", "weeks_since_last_sale", mode="before")
    @classmethod
    def optional_int(cls, v):
        number = sanitize_number(v)
        return None if number is None else int(number)

    @field_validator("last_sales_week")
    @classmethod
    def validate_week(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return str(IsoWeek.parse(v))

    @model_validator(mode="after")
    def check_cogs_fields(self) -> "AnalyticsRow":
        if self.cogs_unit_cost is not None and self.cogs_unit_cost < 0:
            raise ValueError("cogs_unit_cost must not be negative")
        if (
            self.cogs_valid_from is not None
            and self.cogs_valid_to is not None
            and self.cogs_valid_to < self.cogs_valid_from
        ):
            raise ValueError("cogs_valid_to must not precede cogs_valid_from")
        return self

    @property
    def analytics_unavailable(self) -> bool:
        return self.missing_data_reason == MissingDataReason.ANALYTICS_UNAVAILABLE

    def cogs_record_list(self) -> List[CogsRecord]:
        """All COGS versions carried by the row, single-record fields included"""
        records = [item.to_record() for item in self.cogs_records]

        if self.cogs_valid_from is not None:
            unit_cost = self.cogs_unit_cost
            if unit_cost is None:
                unit_cost = max(self.cogs / self.qty, 0.0) if self.cogs is not None and self.qty > 0 else 0.0
            record = CogsRecord(
                unit_cost=unit_cost,
                valid_from=self.cogs_valid_from,
                valid_to=self.cogs_valid_to,
            )
            if not any(
                r.valid_from == record.valid_from and r.valid_to == record.valid_to
                for r in records
            ):
                records.append(record)

        return records

    def to_product(self) -> Product:
        return Product(
            nm_id=self.nm_id,
            vendor_code=self.vendor_code,
            name=self.name,
            brand=self.brand,
            has_cogs=bool(self.cogs_record_list()),
        )

    def to_fact(self, week: WeekLike) -> MarginFact:
        return MarginFact(
            week=IsoWeek.coerce(week),
            revenue_net=self.revenue_net if self.revenue_net is not None else 0.0,
            qty=self.qty,
            cogs=self.cogs,
            operating_profit=self.operating_profit,
            margin_pct=self.margin_pct,
        )


class WeeklyFactIn(BaseModel):
    """One prior week of analytics for the historical lookup"""
    model_config = ConfigDict(extra="ignore")

    week: str
    revenue_net: Optional[float] = None
    qty: int = Field(default=0, ge=0)
    cogs: Optional[float] = None
    operating_profit: Optional[float] = None
    margin_pct: Optional[float] = None

    @field_validator("revenue_net", "cogs", "operating_profit", "margin_pct", mode="before")
    @classmethod
    def finite_or_none(cls, v):
        return sanitize_number(v)

    @field_validator("qty", mode="before")
    @classmethod
    def parse_qty(cls, v):
        number = sanitize_number(v)
        return 0 if number is None else int(number)

    @field_validator("week")
    @classmethod
    def validate_week(cls, v: str) -> str:
        return str(IsoWeek.parse(v))

    def to_fact(self) -> MarginFact:
        return MarginFact(
            week=IsoWeek.parse(self.week),
            revenue_net=self.revenue_net if self.revenue_net is not None else 0.0,
            qty=self.qty,
            cogs=self.cogs,
            operating_profit=self.operating_profit,
            margin_pct=self.margin_pct,
        )
