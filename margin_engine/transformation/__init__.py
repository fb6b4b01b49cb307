"""
Margin Table Transformations
"""
from .rollups import results_to_frame, rollup_by_brand, sort_by_metric

__all__ = [
    "results_to_frame",
    "rollup_by_brand",
    "sort_by_metric",
]
