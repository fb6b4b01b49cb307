"""
Margin Recalculation Poll Controller

Tracks, per product, whether a margin figure is still being computed after
a COGS change, and offers a role-gated manual retry once the wait exceeds
the stale threshold.

States:
    NOT_PENDING -> PENDING -> (STALE | RESOLVED)

- PENDING is entered on a COGS change (or a manual retry)
- PENDING -> RESOLVED when a poll returns a non-null margin
- PENDING -> STALE after the dwell threshold, or when the backend reports
  the calculation task failed
- RESOLVED only goes back to PENDING through a new COGS change

Poll responses carry the generation they were requested under; responses
from an older generation, or arriving after resolution, are discarded.
"""

import inspect
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, Optional, Tuple, Union

import structlog

from margin_engine.config import get_settings
from margin_engine.core.metrics import sanitize_number
from margin_engine.core.weeks import IsoWeek, WeekLike
from margin_engine.recalculation.access import (
    can_trigger_recalculation,
    require_recalculation_role,
)
from margin_engine.recalculation.scheduler import Handle, Scheduler
from margin_engine.recalculation.timeline import PollingStrategy, last_completed_week

logger = structlog.get_logger(__name__)


class RecalculationState(str, Enum):
    """Per-product recalculation state"""
    NOT_PENDING = "not_pending"
    PENDING = "pending"
    STALE = "stale"
    RESOLVED = "resolved"


class MarginCalculationStatus(str, Enum):
    """Task status reported by the margin-status endpoint"""
    PENDING = "pending"  # Queued, not started
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    NOT_FOUND = "not_found"  # No task and no margin data yet
    FAILED = "failed"


@dataclass(frozen=True)
class MarginObservation:
    """One poll response for a product"""
    margin_pct: Optional[float] = None
    status: Optional[MarginCalculationStatus] = None


@dataclass(frozen=True)
class RecalculationRequest:
    """Enqueued recalculation for a product over specific weeks"""
    nm_id: str
    weeks: Tuple[IsoWeek, ...]
    generation: int = field(default=0, compare=False)

    @property
    def key(self) -> Tuple[str, Tuple[str, ...]]:
        return (self.nm_id, tuple(str(w) for w in self.weeks))


@dataclass
class PendingRecalculation:
    """Mutable tracking record for one product"""
    nm_id: str
    state: RecalculationState = RecalculationState.NOT_PENDING
    weeks: Tuple[IsoWeek, ...] = ()
    enqueued_at: Optional[datetime] = None
    generation: int = 0
    attempts: int = 0
    margin_pct: Optional[float] = None
    resolved_at: Optional[datetime] = None
    max_attempts: Optional[int] = None

    def to_dict(self) -> Dict:
        return {
            "nm_id": self.nm_id,
            "state": self.state.value,
            "weeks": [str(w) for w in self.weeks],
            "enqueued_at": self.enqueued_at.isoformat() if self.enqueued_at else None,
            "generation": self.generation,
            "attempts": self.attempts,
            "margin_pct": self.margin_pct,
        }


FetchMargin = Callable[[str, Tuple[IsoWeek, ...]], Awaitable[MarginObservation]]
Enqueue = Callable[[RecalculationRequest], Union[Awaitable[object], object]]


class RecalculationController:
    """
    Per-product recalculation state machine driven by an injectable scheduler.

    Example:
        controller = RecalculationController(AsyncioScheduler(), enqueue=queue.put)
        controller.cogs_changed("12345678", ["2025-W47"])
        controller.start_polling("12345678", fetch_margin_status)
        if controller.can_retry("12345678", user.role):
            await controller.request_recalculation("12345678", user.role)
    """

    def __init__(
        self,
        scheduler: Scheduler,
        enqueue: Optional[Enqueue] = None,
        stale_after_seconds: Optional[float] = None,
        poll_interval_seconds: Optional[float] = None,
        reporting_timezone: Optional[str] = None,
    ):
        margin_settings = get_settings().margin
        self.scheduler = scheduler
        self._enqueue = enqueue
        self.stale_after = timedelta(
            seconds=stale_after_seconds if stale_after_seconds is not None
            else margin_settings.stale_after_seconds
        )
        self.poll_interval = (
            poll_interval_seconds if poll_interval_seconds is not None
            else margin_settings.poll_interval_seconds
        )
        self.reporting_timezone = reporting_timezone or margin_settings.reporting_timezone

        self._entries: Dict[str, PendingRecalculation] = {}
        self._fetchers: Dict[str, FetchMargin] = {}
        self._intervals: Dict[str, float] = {}
        self._poll_handles: Dict[str, Optional[Handle]] = {}

    # =========================================================================
    # STATE
    # =========================================================================

    def get(self, nm_id: str) -> PendingRecalculation:
        """Tracking record for a product, staleness refreshed"""
        self.refresh(nm_id)
        return self._entries.get(nm_id) or PendingRecalculation(nm_id=nm_id)

    def state(self, nm_id: str) -> RecalculationState:
        return self.get(nm_id).state

    def refresh(self, nm_id: Optional[str] = None) -> None:
        """Move PENDING entries past the dwell threshold to STALE"""
        now = self.scheduler.now()
        if nm_id is None:
            entries = list(self._entries.values())
        else:
            entries = [self._entries[nm_id]] if nm_id in self._entries else []

        for entry in entries:
            if (
                entry.state == RecalculationState.PENDING
                and entry.enqueued_at is not None
                and now - entry.enqueued_at >= self.stale_after
            ):
                self._mark_stale(entry, cause="timeout")

    def _mark_stale(self, entry: PendingRecalculation, cause: str) -> None:
        entry.state = RecalculationState.STALE
        self._cancel_poll(entry.nm_id)
        logger.info(
            "Margin recalculation stale",
            nm_id=entry.nm_id,
            cause=cause,
            weeks=[str(w) for w in entry.weeks],
            attempts=entry.attempts,
        )

    def _enter_pending(self, nm_id: str, weeks: Tuple[IsoWeek, ...]) -> PendingRecalculation:
        previous = self._entries.get(nm_id)
        entry = PendingRecalculation(
            nm_id=nm_id,
            state=RecalculationState.PENDING,
            weeks=weeks,
            enqueued_at=self.scheduler.now(),
            generation=(previous.generation + 1) if previous else 1,
            max_attempts=previous.max_attempts if previous else None,
        )
        self._entries[nm_id] = entry
        return entry

    def cogs_changed(self, nm_id: str, weeks: Iterable[WeekLike]) -> PendingRecalculation:
        """
        A COGS record newly applies to ``weeks``; the backend recomputes.

        This is the only transition out of RESOLVED.
        """
        entry = self._enter_pending(nm_id, tuple(IsoWeek.coerce(w) for w in weeks))
        logger.info(
            "Margin recalculation pending",
            nm_id=nm_id,
            weeks=[str(w) for w in entry.weeks],
            generation=entry.generation,
        )
        return entry

    def observe(
        self,
        nm_id: str,
        observation: MarginObservation,
        generation: Optional[int] = None,
    ) -> bool:
        """
        Apply a poll response.

        Args:
            nm_id: Product the response is for
            observation: Margin and task status from the backend
            generation: Generation the poll was issued under; None means the
                current one

        Returns:
            True if the response changed the tracked state
        """
        entry = self._entries.get(nm_id)
        if entry is None:
            return False

        if generation is not None and generation != entry.generation:
            logger.debug(
                "Discarding poll response from older generation",
                nm_id=nm_id,
                response_generation=generation,
                current_generation=entry.generation,
            )
            return False

        if entry.state not in (RecalculationState.PENDING, RecalculationState.STALE):
            logger.debug("Discarding poll response after resolution", nm_id=nm_id, state=entry.state.value)
            return False

        margin = sanitize_number(observation.margin_pct)
        if margin is not None:
            entry.state = RecalculationState.RESOLVED
            entry.margin_pct = margin
            entry.resolved_at = self.scheduler.now()
            self._cancel_poll(nm_id)
            logger.info("Margin recalculation resolved", nm_id=nm_id, margin_pct=margin)
            return True

        if observation.status == MarginCalculationStatus.FAILED and entry.state == RecalculationState.PENDING:
            self._mark_stale(entry, cause="task_failed")
            return True

        self.refresh(nm_id)
        return False

    # =========================================================================
    # MANUAL RETRY
    # =========================================================================

    def can_retry(self, nm_id: str, role: Optional[str]) -> bool:
        """Manual retry is offered for STALE products to allowed roles"""
        return self.state(nm_id) == RecalculationState.STALE and can_trigger_recalculation(role)

    async def request_recalculation(
        self,
        nm_id: str,
        role: Optional[str],
        weeks: Optional[Iterable[WeekLike]] = None,
    ) -> bool:
        """
        Enqueue a manual recalculation.

        Args:
            nm_id: Product to recalculate
            role: Caller role
            weeks: Weeks to recompute; defaults to the tracked weeks, then
                to the last completed week

        Returns:
            False if suppressed because the product is already PENDING or
            RESOLVED, or if the queue already holds the same request

        Raises:
            RecalculationForbidden: if the role may not recalculate
        """
        require_recalculation_role(role)

        entry = self.get(nm_id)
        if entry.state == RecalculationState.PENDING:
            logger.info("Duplicate recalculation suppressed", nm_id=nm_id, role=role)
            return False
        if entry.state == RecalculationState.RESOLVED:
            # Only a new COGS change reopens a resolved product
            logger.info("Recalculation of resolved margin suppressed", nm_id=nm_id, role=role)
            return False

        target_weeks: Tuple[IsoWeek, ...]
        if weeks is not None:
            target_weeks = tuple(IsoWeek.coerce(w) for w in weeks)
        else:
            target_weeks = entry.weeks
        if not target_weeks:
            target_weeks = (last_completed_week(self.scheduler.now(), self.reporting_timezone),)

        # Flip to PENDING before handing off so concurrent calls are suppressed
        entry = self._enter_pending(nm_id, target_weeks)
        request = RecalculationRequest(nm_id=nm_id, weeks=target_weeks, generation=entry.generation)

        logger.info(
            "Margin recalculation requested",
            nm_id=nm_id,
            role=role,
            weeks=[str(w) for w in target_weeks],
            generation=entry.generation,
        )

        enqueued = True
        if self._enqueue is not None:
            result = self._enqueue(request)
            if inspect.isawaitable(result):
                result = await result
            # Queues report False when the same request is still waiting
            enqueued = result is not False

        if not enqueued:
            logger.info(
                "Recalculation already queued",
                nm_id=nm_id,
                weeks=[str(w) for w in target_weeks],
            )

        if nm_id in self._fetchers and not self.is_polling(nm_id):
            self._schedule_poll(nm_id, delay=0)

        return enqueued

    # =========================================================================
    # POLLING
    # =========================================================================

    def is_polling(self, nm_id: str) -> bool:
        return self._poll_handles.get(nm_id) is not None

    def start_polling(
        self,
        nm_id: str,
        fetch: FetchMargin,
        strategy: Optional[PollingStrategy] = None,
    ) -> bool:
        """
        Poll ``fetch`` while the product is PENDING.

        The first poll runs immediately. Polling stops when the state leaves
        PENDING, when ``strategy.max_attempts`` is exhausted, or on
        ``stop_polling``.

        Returns:
            False if the product is not PENDING or already polled
        """
        if self.state(nm_id) != RecalculationState.PENDING or self.is_polling(nm_id):
            return False

        self._fetchers[nm_id] = fetch
        self._intervals[nm_id] = strategy.interval_seconds if strategy else self.poll_interval
        self._entries[nm_id].max_attempts = strategy.max_attempts if strategy else None
        self._schedule_poll(nm_id, delay=0)
        return True

    def stop_polling(self, nm_id: str) -> None:
        """Stop rescheduling, e.g. when the product leaves the view"""
        self._cancel_poll(nm_id)
        self._fetchers.pop(nm_id, None)
        self._intervals.pop(nm_id, None)

    def stop_all(self) -> None:
        for nm_id in list(self._poll_handles):
            self.stop_polling(nm_id)

    def _cancel_poll(self, nm_id: str) -> None:
        handle = self._poll_handles.pop(nm_id, None)
        if handle is not None:
            handle.cancel()

    def _schedule_poll(self, nm_id: str, delay: float) -> None:
        # At most one polling loop per product
        self._cancel_poll(nm_id)

        async def run() -> None:
            await self._poll_once(nm_id, handle)

        handle = self.scheduler.call_later(delay, run)
        self._poll_handles[nm_id] = handle

    def _is_current_poll(self, nm_id: str, handle: Handle) -> bool:
        return self._poll_handles.get(nm_id) is handle

    async def _poll_once(self, nm_id: str, handle: Handle) -> None:
        fetch = self._fetchers.get(nm_id)
        if fetch is None or not self._is_current_poll(nm_id, handle):
            return

        if self.state(nm_id) != RecalculationState.PENDING:
            self._cancel_poll(nm_id)
            return

        entry = self._entries[nm_id]
        generation = entry.generation
        entry.attempts += 1

        try:
            observation = await fetch(nm_id, entry.weeks)
        except Exception as e:
            # Fetches are idempotent reads; keep polling
            logger.warning("Margin poll failed", nm_id=nm_id, attempt=entry.attempts, error=str(e))
        else:
            self.observe(nm_id, observation, generation=generation)

        # The loop may have been stopped or replaced while the fetch was in flight
        if not self._is_current_poll(nm_id, handle):
            return

        current = self._entries[nm_id]
        if current.state != RecalculationState.PENDING:
            self._cancel_poll(nm_id)
            return

        if current.max_attempts is not None and current.attempts >= current.max_attempts:
            logger.warning(
                "Margin polling attempts exhausted",
                nm_id=nm_id,
                attempts=current.attempts,
            )
            self._poll_handles.pop(nm_id, None)
            return

        self._schedule_poll(nm_id, delay=self._intervals.get(nm_id, self.poll_interval))
