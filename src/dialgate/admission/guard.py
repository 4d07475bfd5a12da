"""
Admission guard.

Decides, per target, whether an attempt may start now. One record per target
per local day holds the day's attempts, the active attempt lock and the
blocking flags. Checks run in this order:

1. manual block
2. permanent failure earlier today
3. an attempt is still active (queue, not block)
4. daily attempt ceiling
5. duplicate request window
6. terminal outcome rules (never re-contact set, voicemail and no-answer retry)
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from dialgate.admission.models import (
    AdmissionDecision,
    AdmissionRecord,
    DailyAttempt,
    DailyAttemptStatus,
)
from dialgate.contacts.models import Target
from dialgate.shared.clock import local_date, resolve_timezone, start_of_next_day, utc_now
from dialgate.shared.errors import ConfigurationError
from dialgate.shared.logging import get_logger
from dialgate.shared.phone import mask_phone, normalize_phone
from dialgate.telephony.events import Disposition, OutcomeKind, signal_of

if TYPE_CHECKING:
    from dialgate.config import Settings

logger = get_logger(__name__)


@dataclass(frozen=True)
class GuardConfig:
    """Configuration for the admission guard."""

    enabled: bool = True
    max_daily_attempts: int = 3
    duplicate_window_minutes: float = 10.0
    transfer_safety_minutes: float = 30.0
    stale_attempt_minutes: float = 90.0
    allow_different_lead_ids: bool = False
    never_recontact: frozenset[str] = frozenset(
        {Disposition.TRANSFERRED.value, Disposition.SALE.value, Disposition.NOT_INTERESTED.value}
    )
    transfer_dispositions: frozenset[str] = frozenset({Disposition.TRANSFERRED.value})
    allow_voicemail_retry: bool = True
    allow_no_answer_retry: bool = True
    timezone: str = "America/New_York"

    def __post_init__(self) -> None:
        if self.max_daily_attempts < 1:
            raise ConfigurationError("max_daily_attempts must be >= 1")
        if self.duplicate_window_minutes < 0 or self.transfer_safety_minutes < 0:
            raise ConfigurationError("guard windows must be >= 0")
        if self.stale_attempt_minutes <= 0:
            raise ConfigurationError("stale_attempt_minutes must be > 0")

    @classmethod
    def from_settings(cls, settings: "Settings") -> "GuardConfig":
        return cls(
            enabled=settings.admission_enabled,
            max_daily_attempts=settings.max_daily_attempts_per_target,
            duplicate_window_minutes=settings.duplicate_window_minutes,
            transfer_safety_minutes=settings.transfer_safety_minutes,
            stale_attempt_minutes=settings.stale_attempt_minutes,
            allow_different_lead_ids=settings.allow_different_lead_ids,
            never_recontact=settings.never_recontact_set,
            transfer_dispositions=settings.transfer_dispositions_set,
            allow_voicemail_retry=settings.allow_voicemail_retry,
            allow_no_answer_retry=settings.allow_no_answer_retry,
            timezone=settings.timezone,
        )


class AdmissionGuard:
    """Per-target admission control with daily rotation."""

    def __init__(
        self,
        config: GuardConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config or GuardConfig()
        self._clock = clock
        self._records: dict[str, AdmissionRecord] = {}
        self._version = 0

    @property
    def config(self) -> GuardConfig:
        return self._config

    @property
    def version(self) -> int:
        return self._version

    def _touch(self) -> None:
        self._version += 1

    # ------------------------------------------------------------------
    # Day rotation
    # ------------------------------------------------------------------

    def _zone_name(self, target: Target | None, record: AdmissionRecord | None = None) -> str:
        if target is not None and target.timezone:
            return target.timezone
        if record is not None:
            return record.timezone
        return self._config.timezone

    def _day_of(self, now: datetime, zone_name: str) -> str:
        return local_date(now, resolve_timezone(zone_name, self._config.timezone)).isoformat()

    def _current(self, key: str, now: datetime, target: Target | None = None) -> AdmissionRecord | None:
        """Return today's record for ``key``, rotating a stale one in place."""
        record = self._records.get(key)
        if record is None:
            return None
        zone_name = self._zone_name(target, record)
        today = self._day_of(now, zone_name)
        if record.day == today:
            return record

        rotated = AdmissionRecord(
            target_key=key,
            day=today,
            timezone=zone_name,
            active_attempt_id=record.active_attempt_id,
            active_since=record.active_since,
            active_lock_until=record.active_lock_until,
            terminal_outcome=(
                record.terminal_outcome if record.terminal_outcome in self._config.never_recontact else None
            ),
            blocked=record.blocked,
            blocked_reason=record.blocked_reason,
        )
        self._records[key] = rotated
        self._touch()
        logger.debug(
            "Admission record rotated to new day",
            extra={"target": mask_phone(key), "day": today},
        )
        return rotated

    def _get_or_create(self, key: str, now: datetime, target: Target | None = None) -> AdmissionRecord:
        record = self._current(key, now, target)
        if record is None:
            zone_name = self._zone_name(target)
            record = AdmissionRecord(target_key=key, day=self._day_of(now, zone_name), timezone=zone_name)
            self._records[key] = record
        return record

    def _next_day_start(self, record: AdmissionRecord, now: datetime) -> datetime:
        return start_of_next_day(now, resolve_timezone(record.timezone, self._config.timezone))

    def _release_expired_active(self, record: AdmissionRecord, now: datetime) -> None:
        if record.active_attempt_id is None:
            return
        if record.active_lock_until is not None:
            if now >= record.active_lock_until:
                logger.info(
                    "Transfer safety window expired, line released",
                    extra={"target": mask_phone(record.target_key), "attempt_id": record.active_attempt_id},
                )
                record.clear_active()
                self._touch()
            return
        if record.active_since is not None and now - record.active_since >= timedelta(
            minutes=self._config.stale_attempt_minutes
        ):
            logger.warning(
                "Releasing stale active attempt with no outcome",
                extra={"target": mask_phone(record.target_key), "attempt_id": record.active_attempt_id},
            )
            attempt = record.find_attempt(record.active_attempt_id)
            if attempt is not None and attempt.status is DailyAttemptStatus.ACTIVE:
                attempt.status = DailyAttemptStatus.FAILED
            record.clear_active()
            self._touch()

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def check(
        self,
        target: Target,
        last_outcome: str | None = None,
        lead_id: str | None = None,
    ) -> AdmissionDecision:
        """Decide whether an attempt on ``target`` may start now.

        Args:
            target: Candidate target.
            last_outcome: Last known outcome signal from the retry state, used
                when today's record carries none.
            lead_id: Lead the attempt is for. Defaults to the target's lead.

        Returns:
            The admission decision.
        """
        cfg = self._config
        if not cfg.enabled:
            return AdmissionDecision.allow()

        now = self._clock()
        lead_id = lead_id if lead_id is not None else target.lead_id
        record = self._current(target.key, now, target)

        if record is not None:
            if record.blocked:
                return AdmissionDecision.block(record.blocked_reason or "Target manually blocked")

            if record.failed_today:
                return AdmissionDecision.block(
                    f"Blocked for today due to failure: {record.failed_today_message or 'attempt failed'}",
                    retry_after=self._next_day_start(record, now),
                )

            self._release_expired_active(record, now)
            if record.active_attempt_id is not None:
                return AdmissionDecision.queue(
                    f"Active attempt in progress ({record.active_attempt_id})",
                    retry_after=record.active_lock_until,
                )

            if len(record.attempts) >= cfg.max_daily_attempts:
                return AdmissionDecision.block(
                    f"Max daily attempts reached ({cfg.max_daily_attempts})",
                    retry_after=self._next_day_start(record, now),
                )

            window = timedelta(minutes=cfg.duplicate_window_minutes)
            for attempt in record.attempts:
                if cfg.allow_different_lead_ids and attempt.lead_id != lead_id:
                    continue
                if now - attempt.started_at < window:
                    return AdmissionDecision.block(
                        f"Duplicate request detected (within {cfg.duplicate_window_minutes:g} min)",
                        retry_after=attempt.started_at + window,
                    )

        today_outcome = record.terminal_outcome if record is not None else None
        for outcome in (today_outcome, last_outcome):
            if outcome and outcome.upper() in cfg.never_recontact:
                return AdmissionDecision.block(f"Target must not be contacted again ({outcome.upper()})")

        # Retry flags only look at today's outcome; they lift at day rotation.
        if record is not None and today_outcome:
            next_day = self._next_day_start(record, now)
            if today_outcome == Disposition.VOICEMAIL.value and not cfg.allow_voicemail_retry:
                return AdmissionDecision.block("Voicemail retry not allowed", retry_after=next_day)
            if today_outcome == Disposition.NO_ANSWER.value and not cfg.allow_no_answer_retry:
                return AdmissionDecision.block("No-answer retry not allowed", retry_after=next_day)

        return AdmissionDecision.allow()

    # ------------------------------------------------------------------
    # Attempt lifecycle
    # ------------------------------------------------------------------

    def record_start(self, target: Target, attempt_id: str, lead_id: str | None = None) -> None:
        """Record that an attempt started; it becomes the active attempt."""
        now = self._clock()
        lead_id = lead_id if lead_id is not None else target.lead_id
        record = self._get_or_create(target.key, now, target)

        if lead_id and lead_id not in record.lead_ids:
            record.lead_ids.append(lead_id)
        if record.find_attempt(attempt_id) is None:
            record.attempts.append(DailyAttempt(attempt_id=attempt_id, started_at=now, lead_id=lead_id))
        record.active_attempt_id = attempt_id
        record.active_since = now
        record.active_lock_until = None
        record.last_attempt_at = now
        self._touch()

        logger.info(
            "Attempt start recorded",
            extra={
                "target": mask_phone(target.key),
                "attempt_id": attempt_id,
                "attempts_today": len(record.attempts),
            },
        )

    def record_terminal(
        self,
        target: Target,
        attempt_id: str,
        outcome_kind: OutcomeKind,
        disposition: Disposition | str | None = None,
        duration_seconds: float | None = None,
        error_message: str | None = None,
    ) -> None:
        """Record how an attempt ended.

        Safe to call more than once for the same attempt.
        """
        now = self._clock()
        record = self._get_or_create(target.key, now, target)
        signal = signal_of(outcome_kind, disposition)

        attempt = record.find_attempt(attempt_id)
        if attempt is not None:
            attempt.status = (
                DailyAttemptStatus.FAILED
                if outcome_kind is OutcomeKind.PERMANENT_FAILURE
                else DailyAttemptStatus.COMPLETED
            )
            attempt.outcome = signal
            if duration_seconds is not None:
                attempt.duration_seconds = duration_seconds

        if record.active_attempt_id == attempt_id:
            if signal in self._config.transfer_dispositions and outcome_kind.is_success:
                if record.active_lock_until is None:
                    record.active_lock_until = now + timedelta(minutes=self._config.transfer_safety_minutes)
                    logger.info(
                        "Transfer detected, keeping line protected",
                        extra={
                            "target": mask_phone(target.key),
                            "attempt_id": attempt_id,
                            "safety_window_minutes": self._config.transfer_safety_minutes,
                        },
                    )
            else:
                record.clear_active()

        # A blocking terminal outcome is never overwritten by a later one.
        if record.terminal_outcome not in self._config.never_recontact:
            record.terminal_outcome = signal

        if outcome_kind is OutcomeKind.PERMANENT_FAILURE:
            record.failed_today = True
            record.failed_today_message = error_message or signal

        self._touch()
        logger.info(
            "Attempt terminal outcome recorded",
            extra={
                "target": mask_phone(target.key),
                "attempt_id": attempt_id,
                "signal": signal,
                "line_locked": record.active_lock_until is not None,
            },
        )

    def record_start_failed(self, target: Target, attempt_id: str, error: str) -> None:
        """Record that a started attempt failed before producing an outcome."""
        now = self._clock()
        record = self._current(target.key, now, target)
        if record is None:
            logger.warning(
                "No admission record for failed attempt",
                extra={"target": mask_phone(target.key), "attempt_id": attempt_id},
            )
            return

        attempt = record.find_attempt(attempt_id)
        if attempt is not None:
            attempt.status = DailyAttemptStatus.FAILED
        if record.active_attempt_id == attempt_id:
            record.clear_active()
        self._touch()
        logger.info(
            "Attempt failure recorded",
            extra={"target": mask_phone(target.key), "attempt_id": attempt_id, "error": error},
        )

    # ------------------------------------------------------------------
    # Manual controls
    # ------------------------------------------------------------------

    def block(self, phone_number: str, reason: str) -> None:
        key = normalize_phone(phone_number)
        record = self._get_or_create(key, self._clock())
        record.blocked = True
        record.blocked_reason = reason
        self._touch()
        logger.info("Target manually blocked", extra={"target": mask_phone(key), "reason": reason})

    def unblock(self, phone_number: str) -> bool:
        """Clear the manual block and today's failure flag.

        Returns:
            False when the target has no record.
        """
        key = normalize_phone(phone_number)
        record = self._current(key, self._clock())
        if record is None:
            return False
        record.blocked = False
        record.blocked_reason = None
        record.failed_today = False
        record.failed_today_message = None
        self._touch()
        logger.info("Target unblocked", extra={"target": mask_phone(key)})
        return True

    def mark_failed_for_today(self, phone_number: str, message: str) -> None:
        key = normalize_phone(phone_number)
        record = self._get_or_create(key, self._clock())
        record.failed_today = True
        record.failed_today_message = message
        self._touch()
        logger.info(
            "Target marked as failed for today",
            extra={"target": mask_phone(key), "error_message": message},
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_active_attempt(self, phone_number: str) -> bool:
        key = normalize_phone(phone_number)
        now = self._clock()
        record = self._current(key, now)
        if record is None:
            return False
        self._release_expired_active(record, now)
        return record.active_attempt_id is not None

    def history(self, phone_number: str) -> AdmissionRecord | None:
        return self._current(normalize_phone(phone_number), self._clock())

    def records(self) -> list[AdmissionRecord]:
        now = self._clock()
        return [r for r in (self._current(key, now) for key in list(self._records)) if r is not None]

    def today_stats(self) -> dict[str, Any]:
        outcomes: dict[str, int] = {}
        total_attempts = 0
        active = 0
        blocked = 0
        records = self.records()
        for record in records:
            total_attempts += len(record.attempts)
            if record.active_attempt_id:
                active += 1
            if record.blocked:
                blocked += 1
            if record.terminal_outcome:
                outcomes[record.terminal_outcome] = outcomes.get(record.terminal_outcome, 0) + 1
        return {
            "day": self._day_of(self._clock(), self._config.timezone),
            "total_unique_targets": len(records),
            "total_attempts": total_attempts,
            "active_attempts": active,
            "blocked_targets": blocked,
            "outcomes_breakdown": outcomes,
        }

    def purge_stale(self) -> int:
        """Forget past-day records that carry nothing into today.

        A record survives while it holds a manual block, an active attempt
        or a never re-contact outcome; rotation would keep those anyway.
        """
        now = self._clock()
        stale = []
        for key, record in self._records.items():
            if record.day == self._day_of(now, record.timezone):
                continue
            if (
                record.blocked
                or record.active_attempt_id is not None
                or record.terminal_outcome in self._config.never_recontact
            ):
                continue
            stale.append(key)
        for key in stale:
            del self._records[key]
        if stale:
            self._touch()
            logger.info("Purged past-day admission records", extra={"purged": len(stale)})
        return len(stale)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {key: record.to_dict() for key, record in self._records.items()}

    def restore(self, data: dict[str, dict[str, Any]]) -> None:
        for key, payload in data.items():
            try:
                record = AdmissionRecord.from_dict(payload)
            except (KeyError, ValueError, TypeError, AttributeError):
                logger.warning("Skipping malformed admission record", extra={"target": mask_phone(key)})
                continue
            self._records[record.target_key] = record
        logger.info("Restored admission records", extra={"count": len(data)})
