"""
Margin Rollups

Tabulates per-product margin results with polars and aggregates them per
brand. Aggregated metrics follow the same null rules as the per-product
calculator: no revenue means no margin, no positive COGS means no ROI, no
units means no profit per unit.
"""

from typing import List, Sequence

import polars as pl
import structlog

from margin_engine.core.models import MarginMissing, MarginOk, MarginResult
from margin_engine.core.schemas import AnalyticsRow

logger = structlog.get_logger(__name__)

NO_BRAND = "(no brand)"

RESULT_SCHEMA = {
    "nm_id": pl.Utf8,
    "vendor_code": pl.Utf8,
    "brand": pl.Utf8,
    "week": pl.Utf8,
    "revenue_net": pl.Float64,
    "qty": pl.Int64,
    "operating_profit": pl.Float64,
    "cogs": pl.Float64,
    "margin_pct": pl.Float64,
    "roi_pct": pl.Float64,
    "profit_per_unit": pl.Float64,
    "reason": pl.Utf8,
}


def results_to_frame(
    rows: Sequence[AnalyticsRow],
    results: Sequence[MarginResult],
) -> pl.DataFrame:
    """
    One row per evaluated product.

    Missing results keep their upstream figures but carry null metrics and
    the reason code.
    """
    if len(rows) != len(results):
        raise ValueError(f"Got {len(rows)} rows but {len(results)} results")

    records: List[dict] = []
    for row, result in zip(rows, results):
        record = {
            "nm_id": row.nm_id,
            "vendor_code": row.vendor_code,
            "brand": row.brand,
            "week": str(result.week) if result.week else None,
            "revenue_net": row.revenue_net,
            "qty": row.qty,
            "operating_profit": row.operating_profit,
            "cogs": row.cogs,
            "margin_pct": None,
            "roi_pct": None,
            "profit_per_unit": None,
            "reason": None,
        }
        if isinstance(result, MarginOk):
            record["margin_pct"] = result.margin_pct
            record["roi_pct"] = result.roi_pct
            record["profit_per_unit"] = result.profit_per_unit
        elif isinstance(result, MarginMissing):
            record["reason"] = result.reason.value
        records.append(record)

    return pl.DataFrame(records, schema=RESULT_SCHEMA)


def rollup_by_brand(frame: pl.DataFrame) -> pl.DataFrame:
    """
    Aggregate product results per brand.

    Revenue and quantity are summed over all products. Margin, ROI and
    profit per unit are recomputed from the products that have an operating
    profit, so products still awaiting calculation do not dilute them.
    """
    if frame.is_empty():
        return pl.DataFrame(
            schema={
                "brand": pl.Utf8,
                "products": pl.UInt32,
                "products_with_margin": pl.UInt32,
                "revenue_net": pl.Float64,
                "qty": pl.Int64,
                "operating_profit": pl.Float64,
                "cogs": pl.Float64,
                "margin_pct": pl.Float64,
                "roi_pct": pl.Float64,
                "profit_per_unit": pl.Float64,
            }
        )

    has_profit = pl.col("operating_profit").is_not_null()

    grouped = (
        frame
        .with_columns(pl.col("brand").fill_null(NO_BRAND))
        .group_by("brand")
        .agg([
            pl.len().cast(pl.UInt32).alias("products"),
            has_profit.sum().cast(pl.UInt32).alias("products_with_margin"),
            pl.col("revenue_net").fill_null(0.0).sum().alias("revenue_net"),
            pl.col("qty").sum().alias("qty"),
            pl.col("operating_profit").sum().alias("_profit_sum"),
            pl.col("cogs").fill_null(0.0).sum().alias("cogs"),
            pl.col("revenue_net").filter(has_profit).fill_null(0.0).sum().alias("_revenue_basis"),
            pl.col("cogs").filter(has_profit).fill_null(0.0).sum().alias("_cogs_basis"),
            pl.col("qty").filter(has_profit).sum().alias("_qty_basis"),
        ])
    )

    profit = (
        pl.when(pl.col("products_with_margin") > 0)
        .then(pl.col("_profit_sum"))
        .otherwise(None)
    )

    result = (
        grouped
        .with_columns(profit.alias("operating_profit"))
        .with_columns([
            pl.when(pl.col("operating_profit").is_not_null() & (pl.col("_revenue_basis") != 0))
            .then(pl.col("operating_profit") / pl.col("_revenue_basis").abs() * 100)
            .otherwise(None)
            .alias("margin_pct"),
            pl.when(pl.col("operating_profit").is_not_null() & (pl.col("_cogs_basis") > 0))
            .then(pl.col("operating_profit") / pl.col("_cogs_basis") * 100)
            .otherwise(None)
            .alias("roi_pct"),
            pl.when(pl.col("operating_profit").is_not_null() & (pl.col("_qty_basis") > 0))
            .then(pl.col("operating_profit") / pl.col("_qty_basis"))
            .otherwise(None)
            .alias("profit_per_unit"),
        ])
        .select([
            "brand",
            "products",
            "products_with_margin",
            "revenue_net",
            "qty",
            "operating_profit",
            "cogs",
            "margin_pct",
            "roi_pct",
            "profit_per_unit",
        ])
        .sort("brand")
    )

    logger.debug("Brand rollup computed", brands=len(result), products=len(frame))
    return result


def sort_by_metric(
    frame: pl.DataFrame,
    column: str = "margin_pct",
    descending: bool = True,
) -> pl.DataFrame:
    """Sort by a metric column; products without the metric always go last"""
    if column not in frame.columns:
        raise ValueError(f"Unknown column: {column}")
    return frame.sort(column, descending=descending, nulls_last=True)
