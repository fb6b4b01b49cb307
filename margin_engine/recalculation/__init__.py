"""
Margin Recalculation Module
"""
from .access import Role, RecalculationForbidden, can_trigger_recalculation
from .controller import (
    MarginCalculationStatus,
    MarginObservation,
    RecalculationController,
    RecalculationRequest,
    RecalculationState,
)
from .queue import RecalculationQueue
from .scheduler import AsyncioScheduler, Scheduler, VirtualScheduler

__all__ = [
    "Role",
    "RecalculationForbidden",
    "can_trigger_recalculation",
    "MarginCalculationStatus",
    "MarginObservation",
    "RecalculationController",
    "RecalculationRequest",
    "RecalculationState",
    "RecalculationQueue",
    "AsyncioScheduler",
    "Scheduler",
    "VirtualScheduler",
]
