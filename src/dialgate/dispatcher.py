"""
Dispatcher: the composition root of the dispatch core.

Per tick it asks the retry scheduler for due targets and, for each one in
turn, consults the admission guard, picks a resource, waits on the throughput
limiter and starts the attempt. Outcomes fan out to the scheduler, the pool
selector and the guard, in that order.

Tick processing and outcome delivery share one lock per target. The lock is
released while waiting on the limiter and everything is re-validated after
the wait, so an outcome that lands during the wait wins.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING
from uuid import uuid4

from dialgate.admission.guard import AdmissionGuard
from dialgate.admission.models import AdmissionAction, AdmissionDecision
from dialgate.calls.models import OutcomeUpdate, RetryState
from dialgate.calls.scheduler import RetryScheduler
from dialgate.contacts.models import Target
from dialgate.pool.selector import ResourcePoolSelector
from dialgate.shared.clock import utc_now
from dialgate.shared.errors import AttemptInitiationError
from dialgate.shared.locks import KeyedLock
from dialgate.shared.logging import correlation_id_var, get_logger
from dialgate.shared.phone import mask_phone
from dialgate.storage.snapshots import SnapshotManager
from dialgate.telephony.events import Disposition, OutcomeEvent, OutcomeKind
from dialgate.telephony.interface import AttemptInitiator, AttemptRequest, OutcomeSource
from dialgate.throttling.limiter import ThroughputLimiter

if TYPE_CHECKING:
    from dialgate.config import Settings

logger = get_logger(__name__)


@dataclass(frozen=True)
class DispatcherConfig:
    """Configuration for the dispatcher."""

    tick_interval_seconds: float = 300.0
    queue_push_ahead_minutes: float = 5.0
    blocked_recheck_minutes: float = 60.0
    max_per_tick: int | None = None

    @classmethod
    def from_settings(cls, settings: "Settings") -> "DispatcherConfig":
        return cls(
            tick_interval_seconds=settings.tick_interval_seconds,
            queue_push_ahead_minutes=settings.queue_push_ahead_minutes,
            blocked_recheck_minutes=settings.blocked_recheck_minutes,
        )


class DispatchStatus(str, Enum):
    DISPATCHED = "dispatched"
    QUEUED = "queued"
    BLOCKED = "blocked"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of one dispatch decision."""

    target_key: str
    status: DispatchStatus
    attempt_id: str | None = None
    resource_id: str | None = None
    reason: str | None = None
    waited_seconds: float = 0.0


@dataclass
class TickResult:
    """Summary of one tick."""

    started_at: datetime
    finished_at: datetime | None = None
    results: list[DispatchResult] = field(default_factory=list)
    skipped_reentrant: bool = False

    def count(self, status: DispatchStatus) -> int:
        return sum(1 for result in self.results if result.status is status)

    @property
    def dispatched(self) -> int:
        return self.count(DispatchStatus.DISPATCHED)

    def summary(self) -> dict[str, int]:
        return {status.value: self.count(status) for status in DispatchStatus}


class Dispatcher:
    """Drives due targets through admission, selection, throttling and start."""

    def __init__(
        self,
        *,
        scheduler: RetryScheduler,
        guard: AdmissionGuard,
        pool: ResourcePoolSelector,
        limiter: ThroughputLimiter,
        initiator: AttemptInitiator,
        persistence: SnapshotManager | None = None,
        config: DispatcherConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._scheduler = scheduler
        self._guard = guard
        self._pool = pool
        self._limiter = limiter
        self._initiator = initiator
        self._persistence = persistence
        self._config = config or DispatcherConfig()
        self._clock = clock

        self._target_locks = KeyedLock()
        self._tick_running = False
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._consumers: list[asyncio.Task[None]] = []

    @property
    def scheduler(self) -> RetryScheduler:
        return self._scheduler

    @property
    def guard(self) -> AdmissionGuard:
        return self._guard

    @property
    def pool(self) -> ResourcePoolSelector:
        return self._pool

    @property
    def limiter(self) -> ThroughputLimiter:
        return self._limiter

    @property
    def persistence(self) -> SnapshotManager | None:
        return self._persistence

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    async def enqueue(self, target: Target) -> RetryState:
        """Enroll a target so the next tick considers it."""
        async with self._target_locks.hold(target.key):
            state = self._scheduler.enroll(target)
        await self._persist()
        return state

    async def dispatch(self, target: Target) -> DispatchResult:
        """Enroll ``target`` if needed and try to start an attempt right away."""
        async with self._target_locks.hold(target.key):
            self._scheduler.enroll(target)
        return await self._dispatch_due(target.key)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def run_tick(self) -> TickResult:
        """Process every due target once, sequentially."""
        tick = TickResult(started_at=self._clock())
        if self._tick_running:
            logger.warning("Tick already in progress, skipping")
            tick.skipped_reentrant = True
            tick.finished_at = self._clock()
            return tick

        self._tick_running = True
        try:
            self._housekeeping(tick.started_at)
            due = self._scheduler.due(tick.started_at, limit=self._config.max_per_tick)
            logger.info("Tick started", extra={"due_targets": len(due)})
            for state in due:
                try:
                    result = await self._dispatch_due(state.key)
                except Exception as exc:
                    logger.exception("Dispatch failed", extra={"target": mask_phone(state.key)})
                    result = DispatchResult(
                        target_key=state.key,
                        status=DispatchStatus.FAILED,
                        reason=str(exc) or type(exc).__name__,
                    )
                tick.results.append(result)
        finally:
            self._tick_running = False

        tick.finished_at = self._clock()
        logger.info("Tick finished", extra=tick.summary())
        return tick

    def _housekeeping(self, now: datetime) -> None:
        self._scheduler.purge_expired(now)
        self._scheduler.drop_stale_in_flight(now)
        self._guard.purge_stale()
        self._pool.purge_expired()

    async def _dispatch_due(self, key: str) -> DispatchResult:
        async with self._target_locks.hold(key):
            ok, reason = self._scheduler.revalidate(key)
            state = self._scheduler.get(key)
            if not ok or state is None:
                return DispatchResult(target_key=key, status=DispatchStatus.SKIPPED, reason=reason)
            decision = self._guard.check(state.target, last_outcome=state.last_outcome)
            if not decision.allowed:
                return self._apply_refusal(key, decision)
            resource_id = self._pool.select(state.target)

        waited = await self._limiter.acquire(key)

        async with self._target_locks.hold(key):
            ok, reason = self._scheduler.revalidate(key)
            state = self._scheduler.get(key)
            if not ok or state is None:
                logger.info(
                    "Target changed while throttled, dropping attempt",
                    extra={"target": mask_phone(key), "reason": reason},
                )
                return DispatchResult(
                    target_key=key,
                    status=DispatchStatus.SKIPPED,
                    reason=reason,
                    waited_seconds=waited,
                )
            decision = self._guard.check(state.target, last_outcome=state.last_outcome)
            if not decision.allowed:
                return self._apply_refusal(key, decision)

            request = AttemptRequest(target=state.target, resource_id=resource_id, request_id=uuid4().hex)
            token = correlation_id_var.set(request.request_id)
            failure: DispatchResult | None = None
            try:
                attempt_id = await self._initiator.start(request)
            except AttemptInitiationError as exc:
                failure = self._record_initiation_failure(state, request, exc.message, exc.error_code, waited)
            except Exception as exc:
                logger.exception(
                    "Unexpected error starting attempt",
                    extra={"target": mask_phone(key), "resource_id": resource_id},
                )
                failure = self._record_initiation_failure(
                    state, request, str(exc) or type(exc).__name__, None, waited
                )
            else:
                started_at = self._clock()
                self._guard.record_start(state.target, attempt_id)
                self._scheduler.record_dispatch(key, attempt_id, resource_id, started_at)
                logger.info(
                    "Attempt started",
                    extra={
                        "target": mask_phone(key),
                        "attempt_id": attempt_id,
                        "resource_id": resource_id,
                        "waited_seconds": round(waited, 3),
                    },
                )
            finally:
                correlation_id_var.reset(token)

        await self._persist()
        if failure is not None:
            return failure
        return DispatchResult(
            target_key=key,
            status=DispatchStatus.DISPATCHED,
            attempt_id=attempt_id,
            resource_id=resource_id,
            waited_seconds=waited,
        )

    def _apply_refusal(self, key: str, decision: AdmissionDecision) -> DispatchResult:
        now = self._clock()
        if decision.action is AdmissionAction.QUEUE:
            until = now + timedelta(minutes=self._config.queue_push_ahead_minutes)
            status = DispatchStatus.QUEUED
        else:
            until = decision.retry_after or now + timedelta(minutes=self._config.blocked_recheck_minutes)
            status = DispatchStatus.BLOCKED
        self._scheduler.defer(key, until, reason=decision.reason or decision.action.value)
        logger.info(
            "Admission refused attempt",
            extra={
                "target": mask_phone(key),
                "action": decision.action.value,
                "reason": decision.reason,
                "deferred_until": until.isoformat(),
            },
        )
        return DispatchResult(target_key=key, status=status, reason=decision.reason)

    def _record_initiation_failure(
        self,
        state: RetryState,
        request: AttemptRequest,
        message: str,
        error_code: str | None,
        waited: float,
    ) -> DispatchResult:
        # The provider never assigned an id, so the request id stands in and
        # the failure counts once like any other attempt.
        attempt_id = f"init-{request.request_id}"
        logger.warning(
            "Attempt initiation failed, scheduling retry",
            extra={
                "target": mask_phone(state.key),
                "resource_id": request.resource_id,
                "error_code": error_code,
                "error": message,
            },
        )
        event = OutcomeEvent(
            attempt_id=attempt_id,
            target_key=state.key,
            outcome_kind=OutcomeKind.RETRYABLE_FAILURE,
            disposition=Disposition.FAILED,
            resource_id=request.resource_id,
            error_message=message,
            occurred_at=self._clock(),
        )
        self._scheduler.record_outcome(event)
        return DispatchResult(
            target_key=state.key,
            status=DispatchStatus.FAILED,
            attempt_id=attempt_id,
            resource_id=request.resource_id,
            reason=message,
            waited_seconds=waited,
        )

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    async def handle_outcome(self, event: OutcomeEvent) -> OutcomeUpdate:
        """Fan an outcome out to the scheduler, the pool and the guard.

        Duplicate deliveries reach the guard (idempotent) but not the pool,
        so resource stats never count an attempt twice.
        """
        key = event.target_key
        token = correlation_id_var.set(event.attempt_id)
        try:
            async with self._target_locks.hold(key):
                update = self._scheduler.record_outcome(event)
                state = self._scheduler.get(key)
                target = state.target if state is not None else Target(phone_number=key)
                if not update.duplicate:
                    self._pool.record_outcome(
                        update.resource_id,
                        target,
                        event.outcome_kind,
                        event.disposition,
                    )
                self._guard.record_terminal(
                    target,
                    event.attempt_id,
                    event.outcome_kind,
                    event.disposition,
                    duration_seconds=event.duration_seconds,
                    error_message=event.error_message,
                )
        finally:
            correlation_id_var.reset(token)
        await self._persist()
        return update

    async def consume(self, source: OutcomeSource) -> int:
        """Drain ``source`` until it ends.

        Returns:
            Number of events handled.
        """
        handled = 0
        async for event in source.events():
            try:
                await self.handle_outcome(event)
                handled += 1
            except Exception:
                logger.exception(
                    "Outcome handling failed",
                    extra={"attempt_id": event.attempt_id},
                )
        return handled

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, sources: list[OutcomeSource] | None = None) -> None:
        """Load snapshots and start the tick loop and outcome consumers."""
        if self._running:
            logger.warning("Dispatcher already running")
            return
        if self._persistence is not None:
            await self._persistence.load_all()
            await self._persistence.start()
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        for source in sources or []:
            self._consumers.append(asyncio.create_task(self.consume(source)))
        logger.info(
            "Dispatcher started",
            extra={"tick_interval_seconds": self._config.tick_interval_seconds},
        )

    async def stop(self) -> None:
        """Cancel the tick loop and consumers, then flush state."""
        self._running = False
        tasks = [t for t in [self._task, *self._consumers] if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._consumers = []
        if self._persistence is not None:
            await self._persistence.stop()
        logger.info("Dispatcher stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_tick()
            except Exception:
                logger.exception("Tick failed")
            await asyncio.sleep(self._config.tick_interval_seconds)

    async def _persist(self) -> None:
        if self._persistence is not None:
            await self._persistence.flush_soon()
