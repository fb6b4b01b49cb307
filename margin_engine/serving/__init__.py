"""
Serving Module
"""
from .metrics import MARGIN_EVALUATIONS, RECALCULATION_REQUESTS, record_evaluation

__all__ = [
    "MARGIN_EVALUATIONS",
    "RECALCULATION_REQUESTS",
    "record_evaluation",
]
