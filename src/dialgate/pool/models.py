"""
Resource pool records.
"""

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from dialgate.shared.clock import from_iso, to_iso


@dataclass(frozen=True)
class ResourceAttempt:
    """One outcome observed on a resource."""

    timestamp: datetime
    signal: str
    pickup: bool
    target_key: str
    lead_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = to_iso(self.timestamp)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResourceAttempt":
        return cls(
            timestamp=from_iso(data["timestamp"]),  # type: ignore[arg-type]
            signal=data["signal"],
            pickup=bool(data.get("pickup")),
            target_key=data.get("target_key", ""),
            lead_id=data.get("lead_id") or "",
        )


@dataclass
class ResourceStats:
    """Stats derived from a resource's rolling window."""

    total: int = 0
    pickups: int = 0
    pickup_rate: float = 0.0
    voicemails: int = 0
    no_answers: int = 0
    failures: int = 0
    failure_streak: int = 0
    last_used_at: datetime | None = None
    last_pickup_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_used_at"] = to_iso(self.last_used_at)
        data["last_pickup_at"] = to_iso(self.last_pickup_at)
        return data


@dataclass
class ResourceRecord:
    """Rolling history and cooldown state of one originating resource."""

    resource_id: str
    attempts: list[ResourceAttempt] = field(default_factory=list)
    stats: ResourceStats = field(default_factory=ResourceStats)
    cooldown_until: datetime | None = None

    def on_cooldown(self, now: datetime) -> bool:
        return self.cooldown_until is not None and self.cooldown_until > now

    def cooldown_remaining_seconds(self, now: datetime) -> int | None:
        if not self.on_cooldown(now):
            return None
        return math.ceil((self.cooldown_until - now).total_seconds())  # type: ignore[operator]

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "attempts": [attempt.to_dict() for attempt in self.attempts],
            "cooldown_until": to_iso(self.cooldown_until),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResourceRecord":
        return cls(
            resource_id=data["resource_id"],
            attempts=[ResourceAttempt.from_dict(item) for item in data.get("attempts", [])],
            cooldown_until=from_iso(data.get("cooldown_until")),
        )


@dataclass
class AffinityRecord:
    """Per (target, pool) memory of which resources worked."""

    target_key: str
    pool: str
    last_successful_resource: str | None = None
    preferred_resource: str | None = None
    last_resource: str | None = None
    area_code_match: str | None = None
    call_count: int = 0
    last_used_at: datetime | None = None

    @property
    def key(self) -> str:
        return f"{self.target_key}:{self.pool}"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_used_at"] = to_iso(self.last_used_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AffinityRecord":
        return cls(
            target_key=data["target_key"],
            pool=data["pool"],
            last_successful_resource=data.get("last_successful_resource"),
            preferred_resource=data.get("preferred_resource"),
            last_resource=data.get("last_resource"),
            area_code_match=data.get("area_code_match"),
            call_count=int(data.get("call_count", 0)),
            last_used_at=from_iso(data.get("last_used_at")),
        )


@dataclass(frozen=True)
class ResourceStatus:
    """Reporting view of one resource."""

    resource_id: str
    formatted: str
    stats: ResourceStats
    on_cooldown: bool
    cooldown_remaining_seconds: int | None
    recent_attempts: tuple[ResourceAttempt, ...] = ()
