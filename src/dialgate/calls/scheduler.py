"""
Retry scheduler.

Owns the durable retry state of every target and decides when each one is due
again. State machine::

    pending     -> completed | rescheduled | pending | exhausted
    rescheduled -> pending | completed | exhausted
    any         -> paused -> pending   (manual)

Retry intervals are tiered by local calendar days since the target was first
enrolled. Targets without a creation time fall back to a per-attempt list.
"""

import copy
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from dialgate.calls.models import (
    AttemptRecord,
    InFlightAttempt,
    OutcomeUpdate,
    RetryState,
    RetryStatus,
)
from dialgate.contacts.models import Target
from dialgate.shared.clock import calendar_days_between, resolve_timezone, utc_now
from dialgate.shared.errors import ConfigurationError, UnknownTargetError
from dialgate.shared.logging import get_logger
from dialgate.shared.phone import mask_phone, normalize_phone
from dialgate.telephony.events import Disposition, OutcomeEvent, OutcomeKind

if TYPE_CHECKING:
    from dialgate.config import Settings

logger = get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry timing and limits."""

    max_attempts: int = 8
    success_dispositions: frozenset[str] = frozenset(
        {Disposition.TRANSFERRED.value, Disposition.SALE.value}
    )
    progressive_intervals: tuple[int, ...] = (0, 0, 5, 10, 30, 60, 120)
    same_day_interval_minutes: int = 45
    next_day_interval_minutes: int = 120
    older_interval_minutes: int = 240
    min_interval_minutes: float = 2.0
    retention_days: int = 30
    history_limit: int = 50
    in_flight_timeout_minutes: float = 90.0
    timezone: str = "America/New_York"

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError(f"max_attempts must be >= 1, got {self.max_attempts}")
        tiers = (self.same_day_interval_minutes, self.next_day_interval_minutes, self.older_interval_minutes)
        if any(t < 0 for t in tiers) or any(m < 0 for m in self.progressive_intervals):
            raise ConfigurationError("retry intervals must be >= 0")
        if not (tiers[0] <= tiers[1] <= tiers[2]):
            raise ConfigurationError(
                "retry tiers must not shrink with age: same_day <= next_day <= older"
            )
        if self.min_interval_minutes <= 0:
            raise ConfigurationError("min_interval_minutes must be > 0")
        if self.retention_days < 1:
            raise ConfigurationError("retention_days must be >= 1")
        # Duplicate detection searches the retained history.
        if self.history_limit < self.max_attempts:
            raise ConfigurationError(
                f"history_limit ({self.history_limit}) must be >= max_attempts ({self.max_attempts})"
            )
        if self.in_flight_timeout_minutes <= 0:
            raise ConfigurationError("in_flight_timeout_minutes must be > 0")

    @classmethod
    def from_settings(cls, settings: "Settings") -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            success_dispositions=settings.success_dispositions_set,
            progressive_intervals=tuple(settings.progressive_intervals_list),
            same_day_interval_minutes=settings.same_day_interval_minutes,
            next_day_interval_minutes=settings.next_day_interval_minutes,
            older_interval_minutes=settings.older_interval_minutes,
            min_interval_minutes=settings.min_interval_minutes,
            retention_days=settings.retention_days,
            history_limit=max(cls.history_limit, settings.max_attempts),
            in_flight_timeout_minutes=settings.stale_attempt_minutes,
            timezone=settings.timezone,
        )

    def tier_minutes(self, days_elapsed: int) -> int:
        if days_elapsed <= 0:
            return self.same_day_interval_minutes
        if days_elapsed == 1:
            return self.next_day_interval_minutes
        return self.older_interval_minutes

    def progressive_minutes(self, attempt_number: int) -> int:
        """Interval after the ``attempt_number``-th attempt (1-based)."""
        if not self.progressive_intervals:
            return self.older_interval_minutes
        index = min(max(attempt_number, 1), len(self.progressive_intervals)) - 1
        return self.progressive_intervals[index]


class RetryScheduler:
    """Per-target retry state machine.

    All mutations are synchronous and therefore atomic with respect to the
    event loop. Callers get copies of the state, never the live objects.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._policy = policy or RetryPolicy()
        self._clock = clock
        self._states: dict[str, RetryState] = {}
        self._version = 0

        logger.info(
            "Retry scheduler initialized",
            extra={
                "max_attempts": self._policy.max_attempts,
                "success_dispositions": sorted(self._policy.success_dispositions),
            },
        )

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def version(self) -> int:
        return self._version

    def _touch(self) -> None:
        self._version += 1

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, key: object) -> bool:
        return key in self._states

    # ------------------------------------------------------------------
    # Interval computation
    # ------------------------------------------------------------------

    def days_since_creation(self, state: RetryState, now: datetime) -> int:
        if state.created_at is None:
            return 0
        zone = resolve_timezone(state.target.timezone, self._policy.timezone)
        return calendar_days_between(state.created_at, now, zone)

    def compute_interval(self, state: RetryState, now: datetime) -> timedelta:
        """Delay before the next attempt after ``state.attempts`` attempts."""
        if state.created_at is None:
            minutes = float(self._policy.progressive_minutes(state.attempts))
        else:
            minutes = float(self._policy.tier_minutes(self.days_since_creation(state, now)))
        if minutes <= 0:
            minutes = self._policy.min_interval_minutes
        return timedelta(minutes=minutes)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, target_key: str) -> RetryState | None:
        state = self._states.get(target_key)
        return copy.deepcopy(state) if state is not None else None

    def _within_retention(self, state: RetryState, now: datetime) -> bool:
        if state.created_at is None:
            return True
        return now - state.created_at <= timedelta(days=self._policy.retention_days)

    def _live_in_flight(self, state: RetryState, now: datetime) -> list[str]:
        """Attempt ids still awaiting an outcome inside the in-flight timeout."""
        horizon = timedelta(minutes=self._policy.in_flight_timeout_minutes)
        return [
            attempt_id
            for attempt_id, item in state.in_flight.items()
            if now - item.started_at < horizon
        ]

    def _is_due(self, state: RetryState, now: datetime) -> bool:
        if state.attempts >= self._policy.max_attempts:
            return False
        if not self._within_retention(state, now):
            return False
        if self._live_in_flight(state, now):
            return False
        if state.next_eligible_at > now:
            return False
        if state.status is RetryStatus.PENDING:
            return True
        if state.status is RetryStatus.RESCHEDULED:
            return state.scheduled_for is None or state.scheduled_for <= now
        return False

    def due(self, now: datetime | None = None, limit: int | None = None) -> list[RetryState]:
        """Targets eligible for an attempt, earliest first."""
        now = now or self._clock()
        due = sorted(
            (state for state in self._states.values() if self._is_due(state, now)),
            key=lambda s: s.next_eligible_at,
        )
        if limit is not None:
            due = due[:limit]
        return [copy.deepcopy(state) for state in due]

    def revalidate(self, target_key: str, now: datetime | None = None) -> tuple[bool, str]:
        """Re-check a target right before dispatch.

        Returns:
            ``(True, "ok")`` when still due, else ``(False, reason)``.
        """
        now = now or self._clock()
        state = self._states.get(target_key)
        if state is None:
            return False, "unknown target"
        if state.status in (RetryStatus.PENDING, RetryStatus.RESCHEDULED) and (
            state.attempts >= self._policy.max_attempts
        ):
            logger.warning(
                "Target at max attempts was still schedulable, marking exhausted",
                extra={"target": mask_phone(target_key), "attempts": state.attempts},
            )
            state.status = RetryStatus.EXHAUSTED
            state.updated_at = now
            self._touch()
            return False, "max attempts reached"
        if state.status.is_terminal or state.status is RetryStatus.PAUSED:
            return False, f"status {state.status.value}"
        live = self._live_in_flight(state, now)
        if live:
            return False, f"attempt in flight ({live[0]})"
        if not self._is_due(state, now):
            return False, "not due"
        return True, "ok"

    def stats(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or self._clock()
        by_status = {status.value: 0 for status in RetryStatus}
        ready = 0
        total_attempts = 0
        in_flight = 0
        for state in self._states.values():
            by_status[state.status.value] += 1
            total_attempts += state.attempts
            in_flight += len(state.in_flight)
            if self._is_due(state, now):
                ready += 1
        return {
            "total": len(self._states),
            "by_status": by_status,
            "ready_now": ready,
            "in_flight": in_flight,
            "total_attempts": total_attempts,
            "max_attempts": self._policy.max_attempts,
        }

    def records(
        self,
        status: RetryStatus | None = None,
        ready_only: bool = False,
        limit: int = 100,
        offset: int = 0,
        now: datetime | None = None,
    ) -> tuple[int, list[RetryState]]:
        """Filtered, paginated listing ordered by next eligibility.

        Returns:
            Total matching count and the requested page.
        """
        now = now or self._clock()
        matching = [
            state
            for state in self._states.values()
            if (status is None or state.status is status) and (not ready_only or self._is_due(state, now))
        ]
        matching.sort(key=lambda s: s.next_eligible_at)
        page = matching[offset:offset + limit]
        return len(matching), [copy.deepcopy(state) for state in page]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def enroll(self, target: Target, now: datetime | None = None) -> RetryState:
        """Start tracking ``target``, or refresh the metadata of a known one."""
        now = now or self._clock()
        state = self._states.get(target.key)
        if state is not None:
            merged = state.target.merge_metadata(target)
            if merged != state.target:
                logger.info(
                    "Updated target metadata",
                    extra={
                        "target": mask_phone(target.key),
                        "old_list_id": state.target.list_id,
                        "new_list_id": merged.list_id,
                    },
                )
                state.target = merged
                state.updated_at = now
                self._touch()
            return copy.deepcopy(state)

        state = RetryState(
            target=target,
            next_eligible_at=now,
            created_at=now,
            updated_at=now,
        )
        self._states[target.key] = state
        self._touch()
        logger.info("Target enrolled", extra={"target": mask_phone(target.key), "lead_id": target.lead_id})
        return copy.deepcopy(state)

    def record_dispatch(
        self,
        target_key: str,
        attempt_id: str,
        resource_id: str | None,
        started_at: datetime | None = None,
    ) -> None:
        """Remember a started attempt until its outcome arrives."""
        state = self._require(target_key)
        started_at = started_at or self._clock()
        state.in_flight[attempt_id] = InFlightAttempt(
            attempt_id=attempt_id,
            resource_id=resource_id,
            started_at=started_at,
        )
        state.updated_at = started_at
        self._touch()

    def record_outcome(self, event: OutcomeEvent, target: Target | None = None) -> OutcomeUpdate:
        """Apply an attempt outcome.

        A repeated attempt id merges its signal into the existing record and
        leaves the counter alone. Every new attempt id adds exactly one
        attempt, whatever its outcome.
        """
        now = self._clock()
        key = event.target_key
        signal = event.signal
        state = self._states.get(key)

        if state is not None:
            index = state.find_attempt(event.attempt_id)
            if index is not None:
                self._merge_signal(state, index, signal, now)
                logger.info(
                    "Duplicate outcome merged",
                    extra={
                        "target": mask_phone(key),
                        "attempt_id": event.attempt_id,
                        "signal": signal,
                        "attempts": state.attempts,
                    },
                )
                return OutcomeUpdate(
                    target_key=key,
                    status=state.status,
                    attempts=state.attempts,
                    duplicate=True,
                    resource_id=state.outcome_history[index].resource_id,
                    next_eligible_at=state.next_eligible_at,
                )
            if target is not None:
                state.target = state.target.merge_metadata(target)
        else:
            state = RetryState(
                target=target or Target(phone_number=key, lead_id=event.lead_id or ""),
                next_eligible_at=now,
                created_at=now,
                updated_at=now,
            )
            self._states[key] = state
            logger.info("Outcome for untracked target, enrolling", extra={"target": mask_phone(key)})

        in_flight = state.in_flight.pop(event.attempt_id, None)
        resource_id = event.resource_id or (in_flight.resource_id if in_flight else None)
        started_at = in_flight.started_at if in_flight else None
        duration = event.duration_seconds
        if duration is None and started_at is not None:
            duration = max(0.0, (event.occurred_at - started_at).total_seconds())

        state.outcome_history.append(
            AttemptRecord(
                attempt_id=event.attempt_id,
                target_key=key,
                outcome=event.outcome_kind,
                signals=(signal,),
                resource_id=resource_id,
                started_at=started_at,
                duration_seconds=duration,
                recorded_at=now,
            )
        )
        if len(state.outcome_history) > self._policy.history_limit:
            state.outcome_history = state.outcome_history[-self._policy.history_limit:]

        state.attempts += 1
        state.last_attempt_id = event.attempt_id
        state.last_outcome = signal
        state.updated_at = now
        previous_status = state.status

        if previous_status.is_terminal:
            logger.info(
                "Outcome after terminal status, status kept",
                extra={"target": mask_phone(key), "status": previous_status.value},
            )
        elif self._is_success(event):
            state.status = RetryStatus.COMPLETED
            state.scheduled_for = None
        else:
            if event.callback_time is not None:
                state.scheduled_for = event.callback_time
                state.next_eligible_at = event.callback_time
                new_status = RetryStatus.RESCHEDULED
            else:
                candidate = now + self.compute_interval(state, now)
                state.next_eligible_at = max(state.next_eligible_at, candidate)
                state.scheduled_for = None
                new_status = RetryStatus.PENDING
            if previous_status is not RetryStatus.PAUSED:
                state.status = new_status
            if state.attempts >= self._policy.max_attempts:
                state.status = RetryStatus.EXHAUSTED

        self._touch()
        logger.info(
            "Outcome recorded",
            extra={
                "target": mask_phone(key),
                "attempt_id": event.attempt_id,
                "signal": signal,
                "attempts": state.attempts,
                "status": state.status.value,
                "next_eligible_at": state.next_eligible_at.isoformat(),
            },
        )
        return OutcomeUpdate(
            target_key=key,
            status=state.status,
            attempts=state.attempts,
            duplicate=False,
            resource_id=resource_id,
            next_eligible_at=state.next_eligible_at,
        )

    def _is_success(self, event: OutcomeEvent) -> bool:
        if event.outcome_kind is OutcomeKind.SUCCESS_TERMINAL:
            return True
        if event.callback_time is not None:
            return False
        return event.disposition is not None and event.disposition.value in self._policy.success_dispositions

    def _merge_signal(self, state: RetryState, index: int, signal: str, now: datetime) -> None:
        record = state.outcome_history[index]
        if signal in record.signals:
            return
        state.outcome_history[index] = AttemptRecord(
            attempt_id=record.attempt_id,
            target_key=record.target_key,
            outcome=record.outcome,
            signals=record.signals + (signal,),
            resource_id=record.resource_id,
            started_at=record.started_at,
            duration_seconds=record.duration_seconds,
            recorded_at=record.recorded_at,
        )
        state.updated_at = now
        self._touch()

    def defer(self, target_key: str, until: datetime, reason: str = "") -> bool:
        """Push a target's next eligibility out to ``until``; never pulls it in."""
        state = self._states.get(target_key)
        if state is None:
            return False
        if until <= state.next_eligible_at:
            return False
        state.next_eligible_at = until
        state.updated_at = self._clock()
        self._touch()
        logger.info(
            "Target deferred",
            extra={"target": mask_phone(target_key), "until": until.isoformat(), "reason": reason},
        )
        return True

    def pause(self, phone_number: str) -> RetryState:
        state = self._require(normalize_phone(phone_number))
        if state.status.is_terminal:
            return copy.deepcopy(state)
        state.status = RetryStatus.PAUSED
        state.updated_at = self._clock()
        self._touch()
        logger.info("Target paused", extra={"target": mask_phone(state.key)})
        return copy.deepcopy(state)

    def resume(self, phone_number: str) -> RetryState:
        state = self._require(normalize_phone(phone_number))
        if state.status is not RetryStatus.PAUSED:
            return copy.deepcopy(state)
        now = self._clock()
        state.status = RetryStatus.PENDING
        state.scheduled_for = None
        state.updated_at = now
        if state.attempts >= self._policy.max_attempts:
            state.status = RetryStatus.EXHAUSTED
        self._touch()
        logger.info("Target resumed", extra={"target": mask_phone(state.key), "status": state.status.value})
        return copy.deepcopy(state)

    def remove(self, phone_number: str) -> bool:
        key = normalize_phone(phone_number)
        if self._states.pop(key, None) is None:
            return False
        self._touch()
        logger.info("Target removed", extra={"target": mask_phone(key)})
        return True

    def purge_expired(self, now: datetime | None = None) -> int:
        """Forget targets created longer ago than the retention window."""
        now = now or self._clock()
        expired = [key for key, state in self._states.items() if not self._within_retention(state, now)]
        for key in expired:
            del self._states[key]
        if expired:
            self._touch()
            logger.info("Purged expired retry states", extra={"purged": len(expired)})
        return len(expired)

    def drop_stale_in_flight(self, now: datetime | None = None) -> int:
        """Forget dispatched attempts whose outcome never arrived in time."""
        now = now or self._clock()
        dropped = 0
        for state in self._states.values():
            live = set(self._live_in_flight(state, now))
            stale = [attempt_id for attempt_id in state.in_flight if attempt_id not in live]
            for attempt_id in stale:
                del state.in_flight[attempt_id]
                logger.warning(
                    "Dropping in-flight attempt with no outcome",
                    extra={"target": mask_phone(state.key), "attempt_id": attempt_id},
                )
            dropped += len(stale)
        if dropped:
            self._touch()
        return dropped

    def _require(self, target_key: str) -> RetryState:
        state = self._states.get(target_key)
        if state is None:
            raise UnknownTargetError(target_key)
        return state

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {key: state.to_dict() for key, state in self._states.items()}

    def restore(self, data: dict[str, dict[str, Any]]) -> None:
        """Load persisted states, collapsing records that share a phone number.

        When two records normalize to the same key the one with more attempts
        wins.
        """
        merged = 0
        for key, payload in data.items():
            try:
                state = RetryState.from_dict(payload)
            except (KeyError, ValueError, TypeError, AttributeError):
                logger.warning("Skipping malformed retry state", extra={"target": mask_phone(key)})
                continue
            existing = self._states.get(state.key)
            if existing is not None:
                merged += 1
                if existing.attempts >= state.attempts:
                    continue
            self._states[state.key] = state
        logger.info(
            "Restored retry states",
            extra={"count": len(self._states), "merged_duplicates": merged},
        )
