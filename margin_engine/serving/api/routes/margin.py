"""
Margin API Endpoints

Evaluate margins for analytics rows, and enqueue or inspect margin
recalculations after COGS changes.
"""

from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field, field_validator
import structlog

from margin_engine.config import get_settings
from margin_engine.core.engine import evaluate_margin
from margin_engine.core.schemas import AnalyticsRow, WeeklyFactIn
from margin_engine.core.weeks import IsoWeek
from margin_engine.recalculation.access import RecalculationForbidden
from margin_engine.recalculation.controller import (
    MarginCalculationStatus,
    MarginObservation,
    RecalculationController,
)
from margin_engine.recalculation.timeline import (
    affected_weeks,
    last_completed_week,
    polling_strategy,
)
from margin_engine.serving.metrics import RECALCULATION_REQUESTS, record_evaluation
from margin_engine.transformation.rollups import (
    results_to_frame,
    rollup_by_brand,
    sort_by_metric,
)

router = APIRouter()
logger = structlog.get_logger(__name__)

SORTABLE_COLUMNS = {"margin_pct", "roi_pct", "profit_per_unit", "revenue_net", "operating_profit", "qty"}


def _validate_week(v: str) -> str:
    return str(IsoWeek.parse(v))


class EvaluateRequest(BaseModel):
    """Single product evaluation"""
    week: str
    row: AnalyticsRow
    prior_weeks: Optional[List[WeeklyFactIn]] = None

    @field_validator("week")
    @classmethod
    def validate_week(cls, v: str) -> str:
        return _validate_week(v)


class BatchEvaluateRequest(BaseModel):
    """Evaluation of a product table for one week"""
    week: str
    rows: List[AnalyticsRow]
    include_brand_rollup: bool = False
    sort_by: Optional[str] = None
    descending: bool = True

    @field_validator("week")
    @classmethod
    def validate_week(cls, v: str) -> str:
        return _validate_week(v)

    @field_validator("sort_by")
    @classmethod
    def validate_sort(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in SORTABLE_COLUMNS:
            raise ValueError(f"sort_by must be one of: {sorted(SORTABLE_COLUMNS)}")
        return v


class BatchEvaluateResponse(BaseModel):
    """Per-product results plus optional brand rollup"""
    week: str
    results: List[Dict[str, Any]]
    brands: Optional[List[Dict[str, Any]]] = None


class RecalculateRequest(BaseModel):
    """Manual recalculation of a product's margin"""
    nm_id: str
    weeks: Optional[List[str]] = None

    @field_validator("weeks")
    @classmethod
    def validate_weeks(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return v
        return [_validate_week(week) for week in v]


class CogsChangedRequest(BaseModel):
    """Notification that a COGS record was saved"""
    nm_id: str
    valid_from: date
    is_bulk: bool = False


class StatusCallback(BaseModel):
    """Margin status reported back by the analytics backend"""
    margin_pct: Optional[float] = None
    status: Optional[MarginCalculationStatus] = None
    # Generation from the recalculation response; reports for an older one are ignored
    generation: int = Field(ge=1)


def get_controller(request: Request) -> RecalculationController:
    return request.app.state.controller


def _role(request: Request) -> Optional[str]:
    return request.headers.get(get_settings().security.role_header)


# =============================================================================
# EVALUATION
# =============================================================================

@router.post("/evaluate")
async def evaluate(payload: EvaluateRequest) -> Dict[str, Any]:
    """
    Evaluate one product for one week.

    When ``prior_weeks`` is given the historical context is located from it;
    otherwise the row's own ``last_sales_*`` fields are used.
    """
    prior_facts = None
    if payload.prior_weeks is not None:
        prior_facts = [item.to_fact() for item in payload.prior_weeks]

    result = evaluate_margin(
        payload.row,
        payload.week,
        prior_facts=prior_facts,
        horizon=get_settings().margin.lookback_weeks,
    )
    record_evaluation(result)

    response = result.to_dict()
    response["nm_id"] = payload.row.nm_id
    return response


@router.post("/evaluate/batch", response_model=BatchEvaluateResponse)
async def evaluate_batch(payload: BatchEvaluateRequest) -> BatchEvaluateResponse:
    """Evaluate a product table; optionally sorted and rolled up per brand"""
    horizon = get_settings().margin.lookback_weeks
    results = [evaluate_margin(row, payload.week, horizon=horizon) for row in payload.rows]
    for result in results:
        record_evaluation(result)

    frame = results_to_frame(payload.rows, results)
    table = frame.with_row_index("position")
    if payload.sort_by:
        table = sort_by_metric(table, payload.sort_by, descending=payload.descending)

    items = []
    for record in table.to_dicts():
        item = results[record.pop("position")].to_dict()
        item.update(record)
        items.append(item)

    brands = None
    if payload.include_brand_rollup:
        brands = rollup_by_brand(frame).to_dicts()

    logger.info(
        "Batch evaluated",
        week=payload.week,
        products=len(payload.rows),
        missing=sum(1 for r in results if r.kind == "missing"),
    )

    return BatchEvaluateResponse(week=payload.week, results=items, brands=brands)


# =============================================================================
# RECALCULATION
# =============================================================================

@router.post("/recalculate", status_code=status.HTTP_202_ACCEPTED)
async def recalculate(
    payload: RecalculateRequest,
    request: Request,
    controller: RecalculationController = Depends(get_controller),
) -> Dict[str, Any]:
    """
    Enqueue a manual margin recalculation.

    Requires an Owner, Manager or Service role. A request for a product
    already pending is accepted but not enqueued again.
    """
    role = _role(request)
    try:
        enqueued = await controller.request_recalculation(payload.nm_id, role, weeks=payload.weeks)
    except RecalculationForbidden:
        RECALCULATION_REQUESTS.labels(result="forbidden").inc()
        raise

    RECALCULATION_REQUESTS.labels(result="enqueued" if enqueued else "suppressed").inc()

    entry = controller.get(payload.nm_id)
    response = entry.to_dict()
    response["enqueued"] = enqueued
    return response


@router.post("/cogs-changed", status_code=status.HTTP_202_ACCEPTED)
async def cogs_changed(
    payload: CogsChangedRequest,
    controller: RecalculationController = Depends(get_controller),
) -> Dict[str, Any]:
    """
    Mark a product's margin as pending after a COGS save.

    Returns the affected completed weeks and the polling cadence the client
    should use. Nothing becomes pending when the cost basis starts after the
    last completed week.
    """
    last_completed = last_completed_week(controller.scheduler.now(), controller.reporting_timezone)
    weeks = affected_weeks(payload.valid_from, last_completed)
    strategy = polling_strategy(weeks, is_bulk=payload.is_bulk)

    if weeks:
        entry = controller.cogs_changed(payload.nm_id, weeks)
    else:
        logger.info(
            "COGS change affects no completed week",
            nm_id=payload.nm_id,
            valid_from=payload.valid_from.isoformat(),
            last_completed_week=str(last_completed),
        )
        entry = controller.get(payload.nm_id)

    response = entry.to_dict()
    response["affected_weeks"] = [str(w) for w in weeks]
    response["polling"] = {
        "interval_seconds": strategy.interval_seconds,
        "max_attempts": strategy.max_attempts,
        "estimated_seconds": strategy.estimated_seconds,
    }
    return response


@router.post("/recalculate/{nm_id}/status")
async def report_status(
    nm_id: str,
    payload: StatusCallback,
    controller: RecalculationController = Depends(get_controller),
) -> Dict[str, Any]:
    """Apply a margin status report from the analytics backend"""
    changed = controller.observe(
        nm_id,
        MarginObservation(margin_pct=payload.margin_pct, status=payload.status),
        generation=payload.generation,
    )
    response = controller.get(nm_id).to_dict()
    response["changed"] = changed
    return response


@router.get("/recalculate/{nm_id}")
async def recalculation_state(
    nm_id: str,
    request: Request,
    controller: RecalculationController = Depends(get_controller),
) -> Dict[str, Any]:
    """Recalculation state of a product and whether the caller may retry"""
    entry = controller.get(nm_id)
    response = entry.to_dict()
    response["can_retry"] = controller.can_retry(nm_id, _role(request))
    return response
