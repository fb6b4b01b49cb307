"""
Unit Tests - Recalculation Poll Controller
"""
import asyncio
from contextlib import suppress

import pytest

from margin_engine.core.weeks import IsoWeek
from margin_engine.recalculation.access import (
    RecalculationForbidden,
    Role,
    can_trigger_recalculation,
)
from margin_engine.recalculation.controller import (
    MarginCalculationStatus,
    MarginObservation,
    RecalculationController,
    RecalculationRequest,
    RecalculationState,
)
from margin_engine.recalculation.queue import RecalculationQueue
from margin_engine.recalculation.scheduler import AsyncioScheduler
from margin_engine.recalculation.timeline import PollingStrategy

NM_ID = "12345678"


class ScriptedFetch:
    """Fetch callable returning queued observations, then pending forever"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = 0

    async def __call__(self, nm_id, weeks):
        self.calls += 1
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return MarginObservation(status=MarginCalculationStatus.IN_PROGRESS)


class TestAccess:
    """Tests for the recalculation capability check"""

    @pytest.mark.parametrize("role", ["Owner", "Manager", "Service", Role.OWNER])
    def test_allowed_roles(self, role):
        assert can_trigger_recalculation(role)

    @pytest.mark.parametrize("role", ["Analyst", "owner", "", None, "Admin"])
    def test_denied_roles(self, role):
        assert not can_trigger_recalculation(role)


class TestStateMachine:
    """Tests for PENDING / STALE / RESOLVED transitions"""

    def test_unknown_product_not_pending(self, controller):
        assert controller.state(NM_ID) == RecalculationState.NOT_PENDING

    @pytest.mark.asyncio
    async def test_pending_becomes_stale_after_dwell(self, controller, scheduler):
        controller.cogs_changed(NM_ID, ["2025-W47"])

        await scheduler.advance(299)
        assert controller.state(NM_ID) == RecalculationState.PENDING

        await scheduler.advance(1)
        assert controller.state(NM_ID) == RecalculationState.STALE

    def test_margin_resolves(self, controller):
        controller.cogs_changed(NM_ID, ["2025-W47"])

        changed = controller.observe(NM_ID, MarginObservation(margin_pct=0.0))

        assert changed
        entry = controller.get(NM_ID)
        assert entry.state == RecalculationState.RESOLVED
        assert entry.margin_pct == 0.0

    def test_nan_margin_does_not_resolve(self, controller):
        controller.cogs_changed(NM_ID, ["2025-W47"])
        assert not controller.observe(NM_ID, MarginObservation(margin_pct=float("nan")))
        assert controller.state(NM_ID) == RecalculationState.PENDING

    def test_failed_task_goes_stale(self, controller):
        controller.cogs_changed(NM_ID, ["2025-W47"])
        controller.observe(NM_ID, MarginObservation(status=MarginCalculationStatus.FAILED))
        assert controller.state(NM_ID) == RecalculationState.STALE

    def test_late_margin_resolves_stale(self, controller):
        controller.cogs_changed(NM_ID, ["2025-W47"])
        controller.observe(NM_ID, MarginObservation(status=MarginCalculationStatus.FAILED))
        assert controller.observe(NM_ID, MarginObservation(margin_pct=12.5))
        assert controller.state(NM_ID) == RecalculationState.RESOLVED

    def test_response_after_resolution_discarded(self, controller):
        controller.cogs_changed(NM_ID, ["2025-W47"])
        controller.observe(NM_ID, MarginObservation(margin_pct=20.0))

        assert not controller.observe(NM_ID, MarginObservation(margin_pct=30.0))
        assert controller.get(NM_ID).margin_pct == 20.0

    def test_older_generation_discarded(self, controller):
        first = controller.cogs_changed(NM_ID, ["2025-W46"])
        controller.cogs_changed(NM_ID, ["2025-W47"])

        assert not controller.observe(NM_ID, MarginObservation(margin_pct=10.0), generation=first.generation)
        assert controller.state(NM_ID) == RecalculationState.PENDING

    def test_cogs_change_reopens_resolved(self, controller):
        controller.cogs_changed(NM_ID, ["2025-W47"])
        controller.observe(NM_ID, MarginObservation(margin_pct=20.0))

        entry = controller.cogs_changed(NM_ID, ["2025-W47"])

        assert entry.state == RecalculationState.PENDING
        assert entry.generation == 2
        assert entry.margin_pct is None


class TestManualRetry:
    """Tests for role-gated manual recalculation"""

    @pytest.mark.asyncio
    async def test_retry_offered_only_when_stale(self, controller, scheduler):
        controller.cogs_changed(NM_ID, ["2025-W47"])
        assert not controller.can_retry(NM_ID, "Owner")

        await scheduler.advance(300)

        assert controller.can_retry(NM_ID, "Owner")
        assert controller.can_retry(NM_ID, "Service")
        assert not controller.can_retry(NM_ID, "Analyst")
        assert not controller.can_retry(NM_ID, None)

    @pytest.mark.asyncio
    async def test_forbidden_role_rejected(self, controller, scheduler, enqueued):
        controller.cogs_changed(NM_ID, ["2025-W47"])
        await scheduler.advance(300)

        with pytest.raises(RecalculationForbidden) as exc_info:
            await controller.request_recalculation(NM_ID, "Analyst")

        assert exc_info.value.role == "Analyst"
        assert enqueued == []
        assert controller.state(NM_ID) == RecalculationState.STALE

    @pytest.mark.asyncio
    async def test_retry_enqueues_tracked_weeks(self, controller, scheduler, enqueued):
        controller.cogs_changed(NM_ID, ["2025-W46", "2025-W47"])
        await scheduler.advance(300)

        assert await controller.request_recalculation(NM_ID, "Manager")

        assert enqueued == [
            RecalculationRequest(nm_id=NM_ID, weeks=(IsoWeek(2025, 46), IsoWeek(2025, 47)))
        ]
        entry = controller.get(NM_ID)
        assert entry.state == RecalculationState.PENDING
        assert entry.generation == 2

    @pytest.mark.asyncio
    async def test_duplicate_request_suppressed(self, controller, scheduler, enqueued):
        controller.cogs_changed(NM_ID, ["2025-W47"])
        await scheduler.advance(300)

        assert await controller.request_recalculation(NM_ID, "Owner")
        assert not await controller.request_recalculation(NM_ID, "Owner")
        assert len(enqueued) == 1

    @pytest.mark.asyncio
    async def test_resolved_product_not_recalculated(self, controller, enqueued):
        controller.cogs_changed(NM_ID, ["2025-W47"])
        controller.observe(NM_ID, MarginObservation(margin_pct=15.0))

        assert not await controller.request_recalculation(NM_ID, "Owner")
        assert enqueued == []

    @pytest.mark.asyncio
    async def test_untracked_product_defaults_to_last_completed_week(self, controller, enqueued):
        """Wednesday 2025-11-26: last completed week is 2025-W47"""
        assert await controller.request_recalculation(NM_ID, "Service")
        assert enqueued[0].weeks == (IsoWeek(2025, 47),)

    @pytest.mark.asyncio
    async def test_explicit_weeks(self, controller, enqueued):
        await controller.request_recalculation(NM_ID, "Owner", weeks=["2025-W40"])
        assert enqueued[0].weeks == (IsoWeek(2025, 40),)

    @pytest.mark.asyncio
    async def test_sync_enqueue_callback(self, scheduler):
        received = []
        controller = RecalculationController(scheduler, enqueue=received.append)

        assert await controller.request_recalculation(NM_ID, "Owner", weeks=["2025-W47"])
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_request_carries_generation(self, controller, scheduler, enqueued):
        controller.cogs_changed(NM_ID, ["2025-W47"])
        await scheduler.advance(300)

        await controller.request_recalculation(NM_ID, "Owner")

        assert enqueued[0].generation == controller.get(NM_ID).generation == 2

    @pytest.mark.asyncio
    async def test_repeated_stale_retries_each_enqueued(self, scheduler):
        """Each STALE -> retry cycle reaches the worker once the previous request was taken"""
        queue = RecalculationQueue()
        controller = RecalculationController(scheduler, enqueue=queue.put, stale_after_seconds=300)
        dispatched = []

        async def dispatch(request):
            dispatched.append(request)

        worker = asyncio.create_task(queue.consume(dispatch))
        try:
            controller.cogs_changed(NM_ID, ["2025-W47"])
            for _ in range(2):
                await scheduler.advance(300)
                assert controller.state(NM_ID) == RecalculationState.STALE
                assert await controller.request_recalculation(NM_ID, "Owner")
                await queue.join()
        finally:
            worker.cancel()
            with suppress(asyncio.CancelledError):
                await worker

        assert [request.generation for request in dispatched] == [2, 3]
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_retry_while_still_queued_not_reported_as_enqueued(self, scheduler):
        queue = RecalculationQueue()
        controller = RecalculationController(scheduler, enqueue=queue.put, stale_after_seconds=300)
        controller.cogs_changed(NM_ID, ["2025-W47"])

        await scheduler.advance(300)
        assert await controller.request_recalculation(NM_ID, "Owner")

        await scheduler.advance(300)
        assert controller.state(NM_ID) == RecalculationState.STALE
        assert not await controller.request_recalculation(NM_ID, "Owner")

        assert len(queue) == 1
        assert controller.state(NM_ID) == RecalculationState.PENDING


class TestPolling:
    """Tests for scheduler-driven polling"""

    @pytest.mark.asyncio
    async def test_polls_until_resolved(self, controller, scheduler):
        fetch = ScriptedFetch(
            MarginObservation(status=MarginCalculationStatus.PENDING),
            MarginObservation(status=MarginCalculationStatus.IN_PROGRESS),
            MarginObservation(margin_pct=25.0, status=MarginCalculationStatus.COMPLETED),
        )
        controller.cogs_changed(NM_ID, ["2025-W47"])
        assert controller.start_polling(NM_ID, fetch)

        await scheduler.advance(0)
        assert fetch.calls == 1

        await scheduler.advance(5)

        assert fetch.calls == 3
        assert controller.state(NM_ID) == RecalculationState.RESOLVED
        assert controller.get(NM_ID).margin_pct == 25.0
        assert not controller.is_polling(NM_ID)

        await scheduler.advance(60)
        assert fetch.calls == 3

    @pytest.mark.asyncio
    async def test_polling_stops_when_stale(self, controller, scheduler):
        fetch = ScriptedFetch()
        controller.cogs_changed(NM_ID, ["2025-W47"])
        controller.start_polling(NM_ID, fetch)

        await scheduler.advance(310)

        assert controller.state(NM_ID) == RecalculationState.STALE
        assert not controller.is_polling(NM_ID)
        assert scheduler.pending_calls == 0

        calls = fetch.calls
        await scheduler.advance(60)
        assert fetch.calls == calls

    @pytest.mark.asyncio
    async def test_polling_stops_after_max_attempts(self, controller, scheduler):
        fetch = ScriptedFetch()
        controller.cogs_changed(NM_ID, ["2025-W47"])
        controller.start_polling(NM_ID, fetch, PollingStrategy(interval_seconds=3, max_attempts=2, estimated_seconds=10))

        await scheduler.advance(30)

        assert fetch.calls == 2
        assert not controller.is_polling(NM_ID)
        assert controller.state(NM_ID) == RecalculationState.PENDING

    @pytest.mark.asyncio
    async def test_fetch_errors_keep_polling(self, controller, scheduler):
        fetch = ScriptedFetch(
            ConnectionError("backend unavailable"),
            MarginObservation(margin_pct=18.0),
        )
        controller.cogs_changed(NM_ID, ["2025-W47"])
        controller.start_polling(NM_ID, fetch)

        await scheduler.advance(2.5)

        assert fetch.calls == 2
        assert controller.state(NM_ID) == RecalculationState.RESOLVED

    @pytest.mark.asyncio
    async def test_in_flight_response_from_older_generation_discarded(self, controller, scheduler):
        async def fetch(nm_id, weeks):
            # A new COGS change lands while this poll is in flight
            controller.cogs_changed(nm_id, ["2025-W47"])
            return MarginObservation(margin_pct=12.0)

        controller.cogs_changed(NM_ID, ["2025-W47"])
        controller.start_polling(NM_ID, fetch)

        await scheduler.advance(0)

        entry = controller.get(NM_ID)
        assert entry.state == RecalculationState.PENDING
        assert entry.margin_pct is None
        assert entry.generation == 2

    @pytest.mark.asyncio
    async def test_stop_polling(self, controller, scheduler):
        fetch = ScriptedFetch()
        controller.cogs_changed(NM_ID, ["2025-W47"])
        controller.start_polling(NM_ID, fetch)
        await scheduler.advance(0)

        controller.stop_polling(NM_ID)
        await scheduler.advance(30)

        assert fetch.calls == 1
        assert controller.state(NM_ID) == RecalculationState.PENDING

    def test_start_polling_requires_pending(self, controller):
        assert not controller.start_polling(NM_ID, ScriptedFetch())

    def test_start_polling_once(self, controller):
        controller.cogs_changed(NM_ID, ["2025-W47"])
        assert controller.start_polling(NM_ID, ScriptedFetch())
        assert not controller.start_polling(NM_ID, ScriptedFetch())

    @pytest.mark.asyncio
    async def test_manual_retry_resumes_polling(self, controller, scheduler):
        fetch = ScriptedFetch()
        controller.cogs_changed(NM_ID, ["2025-W47"])
        controller.start_polling(NM_ID, fetch)
        await scheduler.advance(300)
        assert not controller.is_polling(NM_ID)

        fetch.responses.append(MarginObservation(margin_pct=22.0))
        await controller.request_recalculation(NM_ID, "Owner")
        await scheduler.advance(0)

        assert controller.state(NM_ID) == RecalculationState.RESOLVED

    @pytest.mark.asyncio
    async def test_retry_during_in_flight_poll_keeps_one_loop(self, controller, scheduler):
        started = asyncio.Event()
        release = asyncio.Event()
        calls = []

        async def fetch(nm_id, weeks):
            calls.append(nm_id)
            if len(calls) == 1:
                started.set()
                await release.wait()
            return MarginObservation(status=MarginCalculationStatus.IN_PROGRESS)

        controller.cogs_changed(NM_ID, ["2025-W47"])
        controller.start_polling(NM_ID, fetch)

        in_flight = asyncio.create_task(scheduler.advance(0))
        await started.wait()

        await scheduler.advance(301)
        assert controller.state(NM_ID) == RecalculationState.STALE
        assert await controller.request_recalculation(NM_ID, "Owner")

        release.set()
        await in_flight

        assert scheduler.pending_calls == 1
        assert controller.get(NM_ID).margin_pct is None

        await scheduler.advance(0)
        assert len(calls) == 2
        assert scheduler.pending_calls == 1

    @pytest.mark.asyncio
    async def test_attempt_cap_survives_manual_retry(self, controller, scheduler):
        fetch = ScriptedFetch()
        controller.cogs_changed(NM_ID, ["2025-W47"])
        controller.start_polling(NM_ID, fetch, PollingStrategy(interval_seconds=3, max_attempts=2, estimated_seconds=10))

        await scheduler.advance(10)
        assert fetch.calls == 2
        assert not controller.is_polling(NM_ID)

        await scheduler.advance(290)
        assert await controller.request_recalculation(NM_ID, "Owner")
        await scheduler.advance(60)

        assert fetch.calls == 4
        assert not controller.is_polling(NM_ID)
        assert controller.get(NM_ID).max_attempts == 2


class TestRecalculationQueue:
    """Tests for RecalculationQueue"""

    @pytest.mark.asyncio
    async def test_duplicate_requests_not_queued(self):
        queue = RecalculationQueue()
        request = RecalculationRequest(nm_id=NM_ID, weeks=(IsoWeek(2025, 47),))

        assert await queue.put(request)
        assert not await queue.put(RecalculationRequest(nm_id=NM_ID, weeks=(IsoWeek(2025, 47),)))
        assert len(queue) == 1
        assert request in queue

    @pytest.mark.asyncio
    async def test_taken_request_can_be_queued_again(self):
        queue = RecalculationQueue()
        request = RecalculationRequest(nm_id=NM_ID, weeks=(IsoWeek(2025, 47),))

        await queue.put(request)
        assert await queue.get() == request
        queue.task_done()

        assert await queue.put(request)

    @pytest.mark.asyncio
    async def test_different_weeks_are_distinct(self):
        queue = RecalculationQueue()
        await queue.put(RecalculationRequest(nm_id=NM_ID, weeks=(IsoWeek(2025, 46),)))
        await queue.put(RecalculationRequest(nm_id=NM_ID, weeks=(IsoWeek(2025, 47),)))
        assert len(queue) == 2

    @pytest.mark.asyncio
    async def test_consume_dispatches_in_order(self):
        queue = RecalculationQueue()
        first = RecalculationRequest(nm_id=NM_ID, weeks=(IsoWeek(2025, 46),))
        second = RecalculationRequest(nm_id=NM_ID, weeks=(IsoWeek(2025, 47),))
        dispatched = []

        async def dispatch(request):
            dispatched.append(request)

        worker = asyncio.create_task(queue.consume(dispatch))
        await queue.put(first)
        await queue.put(second)
        await queue.join()

        assert dispatched == [first, second]
        assert len(queue) == 0
        assert await queue.put(second)

        worker.cancel()
        with suppress(asyncio.CancelledError):
            await worker

    @pytest.mark.asyncio
    async def test_dispatch_failure_does_not_stop_worker(self):
        queue = RecalculationQueue()
        dispatched = []

        async def dispatch(request):
            if not dispatched:
                dispatched.append(None)
                raise ConnectionError("backend unavailable")
            dispatched.append(request)

        worker = asyncio.create_task(queue.consume(dispatch))
        await queue.put(RecalculationRequest(nm_id="1", weeks=(IsoWeek(2025, 47),)))
        await queue.put(RecalculationRequest(nm_id="2", weeks=(IsoWeek(2025, 47),)))
        await queue.join()

        assert not worker.done()
        assert dispatched[1].nm_id == "2"

        worker.cancel()
        with suppress(asyncio.CancelledError):
            await worker


class TestAsyncioScheduler:
    """Tests for the event-loop scheduler"""

    @pytest.mark.asyncio
    async def test_runs_callback_later(self):
        scheduler = AsyncioScheduler()
        ran = []

        async def callback():
            ran.append(scheduler.now())

        scheduler.call_later(0.01, callback)
        await asyncio.sleep(0.1)

        assert len(ran) == 1
        assert ran[0].tzinfo is not None

    @pytest.mark.asyncio
    async def test_cancelled_callback_skipped(self):
        scheduler = AsyncioScheduler()
        ran = []

        async def callback():
            ran.append(True)

        handle = scheduler.call_later(0.01, callback)
        handle.cancel()
        await asyncio.sleep(0.05)

        assert ran == []
