"""
Retry state models.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from dialgate.contacts.models import Target
from dialgate.shared.clock import from_iso, to_iso
from dialgate.telephony.events import OutcomeKind


class RetryStatus(str, Enum):
    """Retry state machine status."""

    PENDING = "pending"
    RESCHEDULED = "rescheduled"
    COMPLETED = "completed"
    EXHAUSTED = "exhausted"
    PAUSED = "paused"

    @property
    def is_terminal(self) -> bool:
        return self in (RetryStatus.COMPLETED, RetryStatus.EXHAUSTED)


@dataclass(frozen=True)
class AttemptRecord:
    """Immutable record of one attempt's outcome.

    ``signals`` holds every disposition reported for the attempt; duplicate
    deliveries may add signals but never create a second record.
    """

    attempt_id: str
    target_key: str
    outcome: OutcomeKind
    signals: tuple[str, ...] = ()
    resource_id: str | None = None
    started_at: datetime | None = None
    duration_seconds: float | None = None
    recorded_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "target_key": self.target_key,
            "outcome": self.outcome.value,
            "signals": list(self.signals),
            "resource_id": self.resource_id,
            "started_at": to_iso(self.started_at),
            "duration_seconds": self.duration_seconds,
            "recorded_at": to_iso(self.recorded_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AttemptRecord":
        return cls(
            attempt_id=data["attempt_id"],
            target_key=data["target_key"],
            outcome=OutcomeKind(data["outcome"]),
            signals=tuple(data.get("signals", ())),
            resource_id=data.get("resource_id"),
            started_at=from_iso(data.get("started_at")),
            duration_seconds=data.get("duration_seconds"),
            recorded_at=from_iso(data.get("recorded_at")),
        )


@dataclass
class InFlightAttempt:
    """A dispatched attempt still waiting for its outcome."""

    attempt_id: str
    resource_id: str | None
    started_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "resource_id": self.resource_id,
            "started_at": to_iso(self.started_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InFlightAttempt":
        return cls(
            attempt_id=data["attempt_id"],
            resource_id=data.get("resource_id"),
            started_at=from_iso(data["started_at"]),  # type: ignore[arg-type]
        )


@dataclass
class RetryState:
    """Durable per-target retry state."""

    target: Target
    next_eligible_at: datetime
    created_at: datetime | None
    updated_at: datetime
    attempts: int = 0
    status: RetryStatus = RetryStatus.PENDING
    scheduled_for: datetime | None = None
    last_attempt_id: str | None = None
    last_outcome: str | None = None
    outcome_history: list[AttemptRecord] = field(default_factory=list)
    in_flight: dict[str, InFlightAttempt] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return self.target.key

    def find_attempt(self, attempt_id: str) -> int | None:
        for index, record in enumerate(self.outcome_history):
            if record.attempt_id == attempt_id:
                return index
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target.to_dict(),
            "attempts": self.attempts,
            "status": self.status.value,
            "next_eligible_at": to_iso(self.next_eligible_at),
            "scheduled_for": to_iso(self.scheduled_for),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "last_attempt_id": self.last_attempt_id,
            "last_outcome": self.last_outcome,
            "outcome_history": [record.to_dict() for record in self.outcome_history],
            "in_flight": {key: item.to_dict() for key, item in self.in_flight.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RetryState":
        return cls(
            target=Target.from_dict(data["target"]),
            attempts=int(data.get("attempts", 0)),
            status=RetryStatus(data.get("status", RetryStatus.PENDING.value)),
            next_eligible_at=from_iso(data["next_eligible_at"]),  # type: ignore[arg-type]
            scheduled_for=from_iso(data.get("scheduled_for")),
            created_at=from_iso(data.get("created_at")),
            updated_at=from_iso(data["updated_at"]),  # type: ignore[arg-type]
            last_attempt_id=data.get("last_attempt_id"),
            last_outcome=data.get("last_outcome"),
            outcome_history=[AttemptRecord.from_dict(item) for item in data.get("outcome_history", [])],
            in_flight={
                key: InFlightAttempt.from_dict(item) for key, item in data.get("in_flight", {}).items()
            },
        )


@dataclass(frozen=True)
class OutcomeUpdate:
    """What ``RetryScheduler.record_outcome`` did with an event."""

    target_key: str
    status: RetryStatus
    attempts: int
    duplicate: bool
    resource_id: str | None = None
    next_eligible_at: datetime | None = None
