"""
Unit tests for AdmissionGuard.

The clock starts at noon America/New_York, so the next local day begins at
04:00 UTC the following morning.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import START, FakeClock
from dialgate.admission.guard import AdmissionGuard, GuardConfig
from dialgate.admission.models import AdmissionAction, DailyAttemptStatus
from dialgate.contacts.models import Target
from dialgate.telephony.events import OutcomeKind

NEXT_DAY_NY = datetime(2026, 6, 11, 4, 0, tzinfo=timezone.utc)


@pytest.fixture
def guard(clock: FakeClock) -> AdmissionGuard:
    return AdmissionGuard(GuardConfig(), clock=clock)


def _complete(
    guard: AdmissionGuard,
    target: Target,
    attempt_id: str,
    disposition: str = "NO_ANSWER",
    kind: OutcomeKind = OutcomeKind.RETRYABLE_FAILURE,
) -> None:
    guard.record_start(target, attempt_id)
    guard.record_terminal(target, attempt_id, kind, disposition)


class TestCheckOrder:
    def test_new_target_allowed(self, guard: AdmissionGuard, target: Target) -> None:
        decision = guard.check(target)
        assert decision.allowed
        assert decision.action is AdmissionAction.ALLOW

    def test_active_attempt_queues(self, guard: AdmissionGuard, target: Target) -> None:
        guard.record_start(target, "a-1")

        decision = guard.check(target)

        assert decision.action is AdmissionAction.QUEUE
        assert "a-1" in decision.reason
        assert decision.retry_after is None
        assert guard.has_active_attempt("415.555.1234") is True

    def test_duplicate_window(self, guard: AdmissionGuard, target: Target, clock: FakeClock) -> None:
        _complete(guard, target, "a-1")
        clock.advance(minutes=5)

        decision = guard.check(target)

        assert decision.action is AdmissionAction.BLOCK
        assert "Duplicate" in decision.reason
        assert decision.retry_after == START + timedelta(minutes=10)

        clock.advance(minutes=5)
        assert guard.check(target).allowed

    def test_duplicate_window_per_lead(self, clock: FakeClock, target: Target) -> None:
        strict = AdmissionGuard(GuardConfig(), clock=clock)
        relaxed = AdmissionGuard(GuardConfig(allow_different_lead_ids=True), clock=clock)
        for guard in (strict, relaxed):
            _complete(guard, target, "a-1")

        assert strict.check(target, lead_id="lead-2").action is AdmissionAction.BLOCK
        assert relaxed.check(target, lead_id="lead-2").allowed
        assert relaxed.check(target).action is AdmissionAction.BLOCK

    def test_daily_ceiling(self, guard: AdmissionGuard, target: Target, clock: FakeClock) -> None:
        for n in range(3):
            _complete(guard, target, f"a-{n}")
            clock.advance(minutes=11)

        decision = guard.check(target)

        assert decision.action is AdmissionAction.BLOCK
        assert "Max daily attempts" in decision.reason
        assert decision.retry_after == NEXT_DAY_NY

        clock.now = NEXT_DAY_NY
        assert guard.check(target).allowed
        assert guard.history(target.key).attempts == []

    def test_ceiling_uses_target_timezone(self, guard: AdmissionGuard, clock: FakeClock) -> None:
        west = Target("+13105551234", timezone="America/Los_Angeles")
        for n in range(3):
            _complete(guard, west, f"a-{n}")
            clock.advance(minutes=11)

        decision = guard.check(west)

        assert decision.retry_after == datetime(2026, 6, 11, 7, 0, tzinfo=timezone.utc)

    def test_never_recontact_is_permanent(
        self, guard: AdmissionGuard, target: Target, clock: FakeClock
    ) -> None:
        _complete(guard, target, "a-1", "NOT_INTERESTED", OutcomeKind.PERMANENT_FAILURE)
        guard.unblock(target.key)
        clock.advance(minutes=11)

        decision = guard.check(target)
        assert decision.action is AdmissionAction.BLOCK
        assert decision.retry_after is None

        clock.advance(days=3)
        assert guard.check(target).action is AdmissionAction.BLOCK

    def test_never_recontact_from_last_outcome(self, guard: AdmissionGuard, target: Target) -> None:
        decision = guard.check(target, last_outcome="sale")
        assert decision.action is AdmissionAction.BLOCK
        assert "SALE" in decision.reason

    def test_blocking_outcome_not_overwritten(
        self, guard: AdmissionGuard, target: Target, clock: FakeClock
    ) -> None:
        _complete(guard, target, "a-1", "NOT_INTERESTED")
        clock.advance(minutes=11)
        guard.record_terminal(target, "a-2", OutcomeKind.RETRYABLE_FAILURE, "NO_ANSWER")

        assert guard.history(target.key).terminal_outcome == "NOT_INTERESTED"

    def test_voicemail_retry_flag_is_day_scoped(self, clock: FakeClock, target: Target) -> None:
        guard = AdmissionGuard(GuardConfig(allow_voicemail_retry=False), clock=clock)
        _complete(guard, target, "a-1", "VOICEMAIL")
        clock.advance(minutes=11)

        decision = guard.check(target)
        assert decision.action is AdmissionAction.BLOCK
        assert decision.retry_after == NEXT_DAY_NY

        clock.now = NEXT_DAY_NY
        assert guard.check(target).allowed

    def test_no_answer_retry_flag(self, clock: FakeClock, target: Target) -> None:
        guard = AdmissionGuard(GuardConfig(allow_no_answer_retry=False), clock=clock)
        _complete(guard, target, "a-1", "NO_ANSWER")
        clock.advance(minutes=11)

        assert "No-answer" in guard.check(target).reason

    def test_disabled_guard_allows_everything(self, clock: FakeClock, target: Target) -> None:
        guard = AdmissionGuard(GuardConfig(enabled=False), clock=clock)
        guard.block(target.key, "manual")
        assert guard.check(target).allowed


class TestActiveLock:
    def test_transfer_keeps_line_locked(self, clock: FakeClock, target: Target) -> None:
        guard = AdmissionGuard(GuardConfig(never_recontact=frozenset()), clock=clock)
        _complete(guard, target, "a-1", "TRANSFERRED", OutcomeKind.SUCCESS_TERMINAL)

        decision = guard.check(target)
        assert decision.action is AdmissionAction.QUEUE
        assert decision.retry_after == START + timedelta(minutes=30)

        clock.advance(minutes=29)
        assert guard.has_active_attempt(target.key) is True
        clock.advance(minutes=1)
        assert guard.check(target).allowed
        assert guard.has_active_attempt(target.key) is False

    def test_repeated_transfer_does_not_extend_lock(self, clock: FakeClock, target: Target) -> None:
        guard = AdmissionGuard(GuardConfig(never_recontact=frozenset()), clock=clock)
        _complete(guard, target, "a-1", "TRANSFERRED", OutcomeKind.SUCCESS_TERMINAL)
        clock.advance(minutes=20)
        guard.record_terminal(target, "a-1", OutcomeKind.SUCCESS_TERMINAL, "TRANSFERRED")

        assert guard.history(target.key).active_lock_until == START + timedelta(minutes=30)

    def test_stale_active_attempt_released(
        self, guard: AdmissionGuard, target: Target, clock: FakeClock
    ) -> None:
        guard.record_start(target, "a-1")
        clock.advance(minutes=89)
        assert guard.check(target).action is AdmissionAction.QUEUE

        clock.advance(minutes=1)

        assert guard.check(target).allowed
        assert guard.history(target.key).attempts[0].status is DailyAttemptStatus.FAILED

    def test_start_failed_releases_line(self, guard: AdmissionGuard, target: Target) -> None:
        guard.record_start(target, "a-1")
        guard.record_start_failed(target, "a-1", "provider down")

        record = guard.history(target.key)
        assert record.active_attempt_id is None
        assert record.attempts[0].status is DailyAttemptStatus.FAILED

    def test_active_attempt_survives_day_rotation(
        self, guard: AdmissionGuard, target: Target, clock: FakeClock
    ) -> None:
        clock.now = NEXT_DAY_NY - timedelta(minutes=5)
        guard.record_start(target, "a-1")
        clock.now = NEXT_DAY_NY

        decision = guard.check(target)

        record = guard.history(target.key)
        assert decision.action is AdmissionAction.QUEUE
        assert record.day == "2026-06-11"
        assert record.attempts == []
        assert record.active_attempt_id == "a-1"


class TestManualControls:
    def test_block_and_unblock(self, guard: AdmissionGuard, target: Target, clock: FakeClock) -> None:
        guard.block("(415) 555-1234", "do not call list")

        decision = guard.check(target)
        assert decision.action is AdmissionAction.BLOCK
        assert decision.reason == "do not call list"

        clock.advance(days=1)
        assert guard.check(target).action is AdmissionAction.BLOCK

        assert guard.unblock(target.key) is True
        assert guard.check(target).allowed
        assert guard.unblock("+19995550000") is False

    def test_permanent_failure_blocks_for_the_day(
        self, guard: AdmissionGuard, target: Target, clock: FakeClock
    ) -> None:
        guard.record_start(target, "a-1")
        guard.record_terminal(target, "a-1", OutcomeKind.PERMANENT_FAILURE, "FAILED", error_message="bad number")

        decision = guard.check(target)
        assert decision.action is AdmissionAction.BLOCK
        assert "bad number" in decision.reason
        assert decision.retry_after == NEXT_DAY_NY

        clock.now = NEXT_DAY_NY
        assert guard.check(target).allowed

    def test_mark_failed_for_today(self, guard: AdmissionGuard, target: Target) -> None:
        guard.mark_failed_for_today(target.key, "carrier rejected")
        assert "carrier rejected" in guard.check(target).reason
        guard.unblock(target.key)
        assert guard.check(target).allowed


class TestReporting:
    def test_today_stats(self, guard: AdmissionGuard, make_target) -> None:
        _complete(guard, make_target(1), "a-1", "VOICEMAIL")
        _complete(guard, make_target(2), "a-2", "VOICEMAIL")
        guard.record_start(make_target(3), "a-3")
        guard.block(make_target(4).key, "manual")

        stats = guard.today_stats()

        assert stats["day"] == "2026-06-10"
        assert stats["total_unique_targets"] == 4
        assert stats["total_attempts"] == 3
        assert stats["active_attempts"] == 1
        assert stats["blocked_targets"] == 1
        assert stats["outcomes_breakdown"] == {"VOICEMAIL": 2}

    def test_snapshot_restore(self, guard: AdmissionGuard, target: Target, clock: FakeClock) -> None:
        guard.record_start(target, "a-1")

        restored = AdmissionGuard(guard.config, clock=clock)
        restored.restore(guard.snapshot())

        assert restored.check(target).action is AdmissionAction.QUEUE
        assert restored.history(target.key).lead_ids == ["lead-1"]


class TestHousekeeping:
    def test_purge_stale_keeps_records_that_carry_over(
        self, guard: AdmissionGuard, make_target, clock: FakeClock
    ) -> None:
        _complete(guard, make_target(1), "a-1", "VOICEMAIL")
        _complete(guard, make_target(2), "a-2", "NOT_INTERESTED")
        guard.record_start(make_target(3), "a-3")
        guard.block(make_target(4).key, "manual")
        assert guard.purge_stale() == 0

        clock.now = NEXT_DAY_NY

        assert guard.purge_stale() == 1
        assert guard.history(make_target(1).key) is None
        assert guard.history(make_target(2).key).terminal_outcome == "NOT_INTERESTED"
        assert guard.history(make_target(3).key).active_attempt_id == "a-3"
        assert guard.history(make_target(4).key).blocked is True

    def test_restore_skips_malformed_records(
        self, guard: AdmissionGuard, target: Target, clock: FakeClock
    ) -> None:
        guard.record_start(target, "a-1")
        data = guard.snapshot()
        data["+12125550000"] = {"day": "2026-06-10"}

        restored = AdmissionGuard(guard.config, clock=clock)
        restored.restore(data)

        assert [r.target_key for r in restored.records()] == [target.key]
