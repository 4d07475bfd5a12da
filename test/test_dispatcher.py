"""
Integration tests for the Dispatcher.

The dispatcher is built through ``build_dispatcher`` with an in-memory state
store and the mock initiator, so every collaborator is the real one.
"""

from __future__ import annotations

import asyncio
import json
import random
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio

from conftest import START, FakeClock, FakeTimer
from dialgate.calls.models import RetryStatus
from dialgate.config import Settings
from dialgate.contacts.models import Target
from dialgate.dispatcher import Dispatcher, DispatchStatus
from dialgate.factory import ADMISSION, AFFINITY, RESOURCES, RETRY_STATE, build_dispatcher
from dialgate.storage.base import MemoryStateStore
from dialgate.telephony.events import OutcomeEvent, OutcomeKind
from dialgate.telephony.interface import AttemptRequest
from dialgate.telephony.mock_adapter import MockAttemptInitiator, QueueOutcomeSource
from dialgate.throttling.limiter import LimiterConfig, ThroughputLimiter

SF = "+14155550001"


class GatedSleep:
    """Limiter sleep that parks until the test releases it."""

    def __init__(self, timer: FakeTimer) -> None:
        self.timer = timer
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, seconds: float) -> None:
        self.entered.set()
        await self.release.wait()
        self.timer.now += seconds


class UnreachableOnceInitiator(MockAttemptInitiator):
    """Mock initiator whose first call fails with a transport error."""

    def __init__(self) -> None:
        super().__init__()
        self.calls = 0

    def start_sync(self, request: AttemptRequest) -> str:
        self.calls += 1
        if self.calls == 1:
            raise ConnectionError("provider unreachable")
        return super().start_sync(request)


def _event(attempt_id: str, target: Target, kind: OutcomeKind, disposition: str | None) -> OutcomeEvent:
    return OutcomeEvent(
        attempt_id=attempt_id,
        target_key=target.key,
        outcome_kind=kind,
        disposition=disposition,
    )


@pytest.fixture
def initiator() -> MockAttemptInitiator:
    return MockAttemptInitiator()


@pytest.fixture
def store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def dispatcher(
    settings: Settings,
    initiator: MockAttemptInitiator,
    store: MemoryStateStore,
    clock: FakeClock,
    rng: random.Random,
) -> Dispatcher:
    return build_dispatcher(initiator, settings, store=store, clock=clock, rng=rng)


@pytest_asyncio.fixture
async def throttled(dispatcher: Dispatcher, initiator: MockAttemptInitiator, clock: FakeClock, timer: FakeTimer):
    """Dispatcher whose limiter window is full and whose wait is gated."""
    gate = GatedSleep(timer)
    limiter = ThroughputLimiter(
        LimiterConfig(max_attempts_per_second=1, per_target_interval_seconds=0),
        clock=timer,
        sleep=gate,
    )
    await limiter.acquire("+19995550000")
    gated = Dispatcher(
        scheduler=dispatcher.scheduler,
        guard=dispatcher.guard,
        pool=dispatcher.pool,
        limiter=limiter,
        initiator=initiator,
        clock=clock,
    )
    return gated, gate


class TestDispatch:
    @pytest.mark.asyncio
    async def test_dispatch_starts_attempt(
        self, dispatcher: Dispatcher, initiator: MockAttemptInitiator, target: Target
    ) -> None:
        result = await dispatcher.dispatch(target)

        assert result.status is DispatchStatus.DISPATCHED
        assert result.attempt_id == "MOCK_ATTEMPT_000001"
        assert result.resource_id == SF
        assert initiator.get_last_request().target == target
        assert dispatcher.guard.has_active_attempt(target.key) is True
        assert "MOCK_ATTEMPT_000001" in dispatcher.scheduler.get(target.key).in_flight

    @pytest.mark.asyncio
    async def test_tick_waits_for_outcomes_of_dispatched_targets(
        self, dispatcher: Dispatcher, make_target, clock: FakeClock
    ) -> None:
        for n in range(3):
            await dispatcher.enqueue(make_target(n))

        first = await dispatcher.run_tick()
        clock.advance(seconds=5)
        second = await dispatcher.run_tick()

        assert first.dispatched == 3
        assert second.results == []

    @pytest.mark.asyncio
    async def test_line_busy_elsewhere_is_queued(
        self, dispatcher: Dispatcher, initiator: MockAttemptInitiator, target: Target
    ) -> None:
        await dispatcher.enqueue(target)
        dispatcher.guard.record_start(target, "other-dialer-1")

        tick = await dispatcher.run_tick()

        assert tick.count(DispatchStatus.QUEUED) == 1
        assert dispatcher.scheduler.get(target.key).next_eligible_at == START + timedelta(minutes=5)
        assert dispatcher.scheduler.due() == []
        assert initiator.requests == []

    @pytest.mark.asyncio
    async def test_no_double_dial_with_guard_disabled(
        self,
        settings: Settings,
        initiator: MockAttemptInitiator,
        clock: FakeClock,
        rng: random.Random,
        target: Target,
    ) -> None:
        unguarded = settings.model_copy(update={"admission_enabled": False})
        dispatcher = build_dispatcher(initiator, unguarded, store=MemoryStateStore(), clock=clock, rng=rng)
        await dispatcher.enqueue(target)

        first = await dispatcher.run_tick()
        clock.advance(seconds=5)
        second = await dispatcher.run_tick()

        assert first.dispatched == 1
        assert second.dispatched == 0
        assert list(dispatcher.scheduler.get(target.key).in_flight) == ["MOCK_ATTEMPT_000001"]

        # An attempt whose outcome never arrives stops holding the target.
        clock.advance(minutes=90)
        third = await dispatcher.run_tick()

        assert third.dispatched == 1
        assert list(dispatcher.scheduler.get(target.key).in_flight) == ["MOCK_ATTEMPT_000002"]

    @pytest.mark.asyncio
    async def test_tick_prunes_past_day_admission_records(
        self, dispatcher: Dispatcher, target: Target, clock: FakeClock
    ) -> None:
        started = await dispatcher.dispatch(target)
        await dispatcher.handle_outcome(
            _event(started.attempt_id, target, OutcomeKind.RETRYABLE_FAILURE, "NO_ANSWER")
        )
        dispatcher.scheduler.pause(target.key)
        clock.now = datetime(2026, 6, 11, 4, 0, tzinfo=timezone.utc)

        await dispatcher.run_tick()

        assert dispatcher.guard.snapshot() == {}

    @pytest.mark.asyncio
    async def test_blocked_target_deferred_to_recheck(
        self, dispatcher: Dispatcher, initiator: MockAttemptInitiator, target: Target
    ) -> None:
        dispatcher.guard.block(target.key, "do not call list")

        result = await dispatcher.dispatch(target)

        assert result.status is DispatchStatus.BLOCKED
        assert result.reason == "do not call list"
        assert dispatcher.scheduler.get(target.key).next_eligible_at == START + timedelta(minutes=60)
        assert initiator.requests == []

    @pytest.mark.asyncio
    async def test_blocked_target_deferred_to_retry_after(
        self, dispatcher: Dispatcher, target: Target
    ) -> None:
        dispatcher.guard.mark_failed_for_today(target.key, "carrier rejected")

        await dispatcher.dispatch(target)

        assert dispatcher.scheduler.get(target.key).next_eligible_at == datetime(
            2026, 6, 11, 4, 0, tzinfo=timezone.utc
        )

    @pytest.mark.asyncio
    async def test_initiation_failure_goes_through_backoff(
        self, dispatcher: Dispatcher, initiator: MockAttemptInitiator, target: Target
    ) -> None:
        initiator.configure_failure(error_message="provider unavailable", times=1)

        result = await dispatcher.dispatch(target)

        state = dispatcher.scheduler.get(target.key)
        assert result.status is DispatchStatus.FAILED
        assert result.reason == "provider unavailable"
        assert state.attempts == 1
        assert state.status is RetryStatus.PENDING
        assert state.last_attempt_id.startswith("init-")
        assert state.next_eligible_at == START + timedelta(minutes=45)
        assert dispatcher.guard.history(target.key) is None
        assert dispatcher.pool.status().resources[0].stats.total == 0

    @pytest.mark.asyncio
    async def test_unexpected_initiator_error_does_not_abort_tick(
        self,
        settings: Settings,
        store: MemoryStateStore,
        clock: FakeClock,
        rng: random.Random,
        make_target,
    ) -> None:
        initiator = UnreachableOnceInitiator()
        dispatcher = build_dispatcher(initiator, settings, store=store, clock=clock, rng=rng)
        for n in range(3):
            await dispatcher.enqueue(make_target(n))

        tick = await dispatcher.run_tick()

        assert initiator.calls == 3
        assert tick.dispatched == 2
        failed = tick.results[0]
        assert failed.status is DispatchStatus.FAILED
        assert failed.reason == "provider unreachable"
        state = dispatcher.scheduler.get(failed.target_key)
        assert state.attempts == 1
        assert state.last_attempt_id.startswith("init-")
        assert state.next_eligible_at == START + timedelta(minutes=45)

    @pytest.mark.asyncio
    async def test_completed_target_is_skipped(self, dispatcher: Dispatcher, target: Target) -> None:
        await dispatcher.enqueue(target)
        await dispatcher.handle_outcome(_event("old-1", target, OutcomeKind.SUCCESS_TERMINAL, "SALE"))

        result = await dispatcher.dispatch(target)

        assert result.status is DispatchStatus.SKIPPED
        assert result.reason == "status completed"


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_outcome_fans_out(self, dispatcher: Dispatcher, target: Target) -> None:
        started = await dispatcher.dispatch(target)

        update = await dispatcher.handle_outcome(
            _event(started.attempt_id, target, OutcomeKind.RETRYABLE_FAILURE, "NO_ANSWER")
        )

        assert update.attempts == 1
        assert update.resource_id == SF
        assert dispatcher.pool.resource_stats(SF).stats.no_answers == 1
        assert dispatcher.guard.has_active_attempt(target.key) is False
        assert dispatcher.guard.history(target.key).terminal_outcome == "NO_ANSWER"

    @pytest.mark.asyncio
    async def test_duplicate_outcome_skips_pool(self, dispatcher: Dispatcher, target: Target) -> None:
        started = await dispatcher.dispatch(target)
        event = _event(started.attempt_id, target, OutcomeKind.RETRYABLE_FAILURE, "NO_ANSWER")

        await dispatcher.handle_outcome(event)
        again = await dispatcher.handle_outcome(event)

        assert again.duplicate is True
        assert again.attempts == 1
        assert dispatcher.pool.resource_stats(SF).stats.total == 1

    @pytest.mark.asyncio
    async def test_transfer_completes_and_locks_line(self, dispatcher: Dispatcher, target: Target) -> None:
        started = await dispatcher.dispatch(target)

        update = await dispatcher.handle_outcome(
            _event(started.attempt_id, target, OutcomeKind.SUCCESS_TERMINAL, "TRANSFERRED")
        )

        assert update.status is RetryStatus.COMPLETED
        assert dispatcher.guard.has_active_attempt(target.key) is True
        assert dispatcher.pool.affinity_for(target.key).last_successful_resource == SF

    @pytest.mark.asyncio
    async def test_consume_drains_source(self, dispatcher: Dispatcher, target: Target) -> None:
        started = await dispatcher.dispatch(target)
        source = QueueOutcomeSource()
        await source.publish(_event(started.attempt_id, target, OutcomeKind.RETRYABLE_FAILURE, "BUSY"))
        await source.close()

        handled = await dispatcher.consume(source)

        assert handled == 1
        assert dispatcher.scheduler.get(target.key).last_outcome == "BUSY"


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_outcome_during_throttle_wait_wins(
        self, throttled, initiator: MockAttemptInitiator, target: Target
    ) -> None:
        gated, gate = throttled
        task = asyncio.create_task(gated.dispatch(target))
        await gate.entered.wait()

        await gated.handle_outcome(_event("late-1", target, OutcomeKind.SUCCESS_TERMINAL, "SALE"))
        gate.release.set()
        result = await task

        assert result.status is DispatchStatus.SKIPPED
        assert result.reason == "status completed"
        assert initiator.requests == []

    @pytest.mark.asyncio
    async def test_reentrant_tick_is_skipped(self, throttled, target: Target) -> None:
        gated, gate = throttled
        await gated.enqueue(target)
        first = asyncio.create_task(gated.run_tick())
        await gate.entered.wait()

        second = await gated.run_tick()
        gate.release.set()
        finished = await first

        assert second.skipped_reentrant is True
        assert second.results == []
        assert finished.dispatched == 1


class TestPersistence:
    @pytest.mark.asyncio
    async def test_all_collections_persisted(self, dispatcher: Dispatcher, store: MemoryStateStore) -> None:
        await dispatcher.persistence.flush(force=True)
        assert set(store.collections) == {RETRY_STATE, RESOURCES, AFFINITY, ADMISSION}

    @pytest.mark.asyncio
    async def test_restart_resumes_state(
        self,
        dispatcher: Dispatcher,
        settings: Settings,
        store: MemoryStateStore,
        clock: FakeClock,
        target: Target,
    ) -> None:
        started = await dispatcher.dispatch(target)
        event = _event(started.attempt_id, target, OutcomeKind.RETRYABLE_FAILURE, "VOICEMAIL")
        await dispatcher.handle_outcome(event)

        restarted = build_dispatcher(MockAttemptInitiator(), settings, store=store, clock=clock)
        await restarted.persistence.load_all()

        assert restarted.scheduler.get(target.key).attempts == 1
        assert restarted.pool.resource_stats(SF).stats.voicemails == 1
        assert len(restarted.guard.history(target.key).attempts) == 1
        assert (await restarted.handle_outcome(event)).duplicate is True

        clock.advance(minutes=46)
        tick = await restarted.run_tick()
        assert tick.dispatched == 1

    @pytest.mark.asyncio
    async def test_start_stop_writes_json_snapshots(
        self,
        settings: Settings,
        initiator: MockAttemptInitiator,
        clock: FakeClock,
        target: Target,
    ) -> None:
        dispatcher = build_dispatcher(initiator, settings, clock=clock)

        await dispatcher.start()
        assert dispatcher.running is True
        await dispatcher.enqueue(target)
        await dispatcher.stop()

        assert dispatcher.running is False
        snapshot = json.loads((Path(settings.data_dir) / f"{RETRY_STATE}.json").read_text(encoding="utf-8"))
        assert target.key in snapshot


class TestPacedScenario:
    @pytest.mark.asyncio
    async def test_five_targets_at_two_per_second_skip_cooled_resource(
        self,
        dispatcher: Dispatcher,
        initiator: MockAttemptInitiator,
        clock: FakeClock,
        timer: FakeTimer,
        make_target,
    ) -> None:
        limiter = ThroughputLimiter(
            LimiterConfig(max_attempts_per_second=2, per_target_interval_seconds=60),
            clock=timer,
            sleep=timer.sleep,
        )
        paced = Dispatcher(
            scheduler=dispatcher.scheduler,
            guard=dispatcher.guard,
            pool=dispatcher.pool,
            limiter=limiter,
            initiator=initiator,
            clock=clock,
        )
        for n in range(5):
            dispatcher.pool.record_outcome(SF, make_target(90 + n), OutcomeKind.RETRYABLE_FAILURE, "NO_ANSWER")
        assert dispatcher.pool.resource_stats(SF).on_cooldown is True
        targets = [make_target(n) for n in range(5)]
        for target in targets:
            await paced.enqueue(target)

        tick = await paced.run_tick()

        assert tick.dispatched == 5
        assert [r.target_key for r in tick.results] == [t.key for t in targets]
        assert SF not in {r.resource_id for r in tick.results}
        assert dispatcher.pool.resource_stats(SF).on_cooldown is True
        assert timer.now - 1000.0 >= 2.0
        assert limiter.wait_time(targets[0].key) == pytest.approx(58.0)
