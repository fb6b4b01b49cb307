"""
Service Metrics

Prometheus counters for margin evaluations and recalculation requests. The
core package stays free of metrics; only the service layer records them.
"""

from prometheus_client import Counter

from margin_engine.core.models import MarginMissing, MarginResult

MARGIN_EVALUATIONS = Counter(
    "margin_evaluations_total",
    "Margin evaluations by outcome",
    ["outcome"],
)

RECALCULATION_REQUESTS = Counter(
    "margin_recalculation_requests_total",
    "Manual recalculation requests by result",
    ["result"],
)

RECALCULATIONS_DISPATCHED = Counter(
    "margin_recalculations_dispatched_total",
    "Recalculation requests taken off the queue by the worker",
)


def record_evaluation(result: MarginResult) -> None:
    """Count one evaluation under ``ok`` or its missing-data reason"""
    if isinstance(result, MarginMissing):
        outcome = result.reason.value
    else:
        outcome = "ok"
    MARGIN_EVALUATIONS.labels(outcome=outcome).inc()
