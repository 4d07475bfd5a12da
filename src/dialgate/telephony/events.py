"""
Outcome events delivered by the voice provider side.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from dialgate.shared.clock import ensure_aware, utc_now
from dialgate.shared.phone import normalize_phone


class OutcomeKind(str, Enum):
    """Classification of how an attempt ended."""

    SUCCESS_TERMINAL = "success_terminal"
    SUCCESS_RESCHEDULE = "success_reschedule"
    RETRYABLE_FAILURE = "retryable_failure"
    PERMANENT_FAILURE = "permanent_failure"

    @property
    def is_success(self) -> bool:
        return self in (OutcomeKind.SUCCESS_TERMINAL, OutcomeKind.SUCCESS_RESCHEDULE)


class Disposition(str, Enum):
    """Provider-side disposition signals."""

    TRANSFERRED = "TRANSFERRED"
    SALE = "SALE"
    CALLBACK = "CALLBACK"
    CONFUSED = "CONFUSED"
    NOT_INTERESTED = "NOT_INTERESTED"
    VOICEMAIL = "VOICEMAIL"
    NO_ANSWER = "NO_ANSWER"
    BUSY = "BUSY"
    FAILED = "FAILED"


# Dispositions that mean a human picked up.
PICKUP_DISPOSITIONS: frozenset[str] = frozenset(
    {
        Disposition.TRANSFERRED.value,
        Disposition.CALLBACK.value,
        Disposition.CONFUSED.value,
        Disposition.SALE.value,
        Disposition.NOT_INTERESTED.value,
    }
)


def is_pickup(outcome_kind: OutcomeKind, disposition: str | None) -> bool:
    """Decide whether an attempt reached a person.

    The disposition wins when present; otherwise any success kind counts.
    """
    if disposition:
        return disposition in PICKUP_DISPOSITIONS
    return outcome_kind.is_success


class OutcomeEvent(BaseModel):
    """Terminal outcome of one attempt."""

    model_config = ConfigDict(frozen=True)

    attempt_id: str = Field(..., min_length=1)
    target_key: str = Field(..., description="Target phone number, normalized on input")
    outcome_kind: OutcomeKind
    disposition: Disposition | None = None
    callback_time: datetime | None = None
    resource_id: str | None = None
    lead_id: str | None = None
    duration_seconds: float | None = Field(default=None, ge=0)
    error_message: str | None = None
    occurred_at: datetime = Field(default_factory=utc_now)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("target_key")
    @classmethod
    def normalize_target_key(cls, v: str) -> str:
        return normalize_phone(v)

    @field_validator("disposition", mode="before")
    @classmethod
    def upper_disposition(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().upper() or None
        return v

    @field_validator("callback_time", "occurred_at")
    @classmethod
    def make_aware(cls, v: datetime | None) -> datetime | None:
        return ensure_aware(v) if v is not None else None

    @property
    def signal(self) -> str:
        """Disposition value, or the outcome kind when no disposition was given."""
        return self.disposition.value if self.disposition else self.outcome_kind.value


def signal_of(outcome_kind: OutcomeKind, disposition: "Disposition | str | None") -> str:
    """Single string signal for an outcome: the disposition if any, else the kind."""
    if isinstance(disposition, Disposition):
        return disposition.value
    if disposition:
        return disposition.upper()
    return outcome_kind.value
