"""
Admission guard records and decisions.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from dialgate.shared.clock import from_iso, to_iso


class AdmissionAction(str, Enum):
    """What the dispatcher should do with a candidate attempt."""

    ALLOW = "allow"
    BLOCK = "block"
    QUEUE = "queue"


@dataclass(frozen=True)
class AdmissionDecision:
    """Result of an admission check."""

    action: AdmissionAction
    reason: str | None = None
    retry_after: datetime | None = None

    @property
    def allowed(self) -> bool:
        return self.action is AdmissionAction.ALLOW

    @classmethod
    def allow(cls) -> "AdmissionDecision":
        return cls(action=AdmissionAction.ALLOW)

    @classmethod
    def block(cls, reason: str, retry_after: datetime | None = None) -> "AdmissionDecision":
        return cls(action=AdmissionAction.BLOCK, reason=reason, retry_after=retry_after)

    @classmethod
    def queue(cls, reason: str, retry_after: datetime | None = None) -> "AdmissionDecision":
        return cls(action=AdmissionAction.QUEUE, reason=reason, retry_after=retry_after)


class DailyAttemptStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class DailyAttempt:
    """One attempt started today on a target."""

    attempt_id: str
    started_at: datetime
    lead_id: str = ""
    status: DailyAttemptStatus = DailyAttemptStatus.ACTIVE
    outcome: str | None = None
    duration_seconds: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "started_at": to_iso(self.started_at),
            "lead_id": self.lead_id,
            "status": self.status.value,
            "outcome": self.outcome,
            "duration_seconds": self.duration_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DailyAttempt":
        return cls(
            attempt_id=data["attempt_id"],
            started_at=from_iso(data["started_at"]),  # type: ignore[arg-type]
            lead_id=data.get("lead_id") or "",
            status=DailyAttemptStatus(data.get("status", DailyAttemptStatus.ACTIVE.value)),
            outcome=data.get("outcome"),
            duration_seconds=data.get("duration_seconds"),
        )


@dataclass
class AdmissionRecord:
    """Per-target, per-local-day admission state."""

    target_key: str
    day: str
    timezone: str
    attempts: list[DailyAttempt] = field(default_factory=list)
    lead_ids: list[str] = field(default_factory=list)
    active_attempt_id: str | None = None
    active_since: datetime | None = None
    active_lock_until: datetime | None = None
    terminal_outcome: str | None = None
    blocked: bool = False
    blocked_reason: str | None = None
    failed_today: bool = False
    failed_today_message: str | None = None
    last_attempt_at: datetime | None = None

    def find_attempt(self, attempt_id: str) -> DailyAttempt | None:
        for attempt in self.attempts:
            if attempt.attempt_id == attempt_id:
                return attempt
        return None

    def clear_active(self) -> None:
        self.active_attempt_id = None
        self.active_since = None
        self.active_lock_until = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_key": self.target_key,
            "day": self.day,
            "timezone": self.timezone,
            "attempts": [attempt.to_dict() for attempt in self.attempts],
            "lead_ids": list(self.lead_ids),
            "active_attempt_id": self.active_attempt_id,
            "active_since": to_iso(self.active_since),
            "active_lock_until": to_iso(self.active_lock_until),
            "terminal_outcome": self.terminal_outcome,
            "blocked": self.blocked,
            "blocked_reason": self.blocked_reason,
            "failed_today": self.failed_today,
            "failed_today_message": self.failed_today_message,
            "last_attempt_at": to_iso(self.last_attempt_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AdmissionRecord":
        return cls(
            target_key=data["target_key"],
            day=data["day"],
            timezone=data["timezone"],
            attempts=[DailyAttempt.from_dict(item) for item in data.get("attempts", [])],
            lead_ids=list(data.get("lead_ids", [])),
            active_attempt_id=data.get("active_attempt_id"),
            active_since=from_iso(data.get("active_since")),
            active_lock_until=from_iso(data.get("active_lock_until")),
            terminal_outcome=data.get("terminal_outcome"),
            blocked=bool(data.get("blocked")),
            blocked_reason=data.get("blocked_reason"),
            failed_today=bool(data.get("failed_today")),
            failed_today_message=data.get("failed_today_message"),
            last_attempt_at=from_iso(data.get("last_attempt_at")),
        )
