"""
Resource pool selector.

Picks the originating resource for each attempt and tracks how every resource
performs. Selection priority:

1. the target's last successful resource, when still pooled and not cooling down
2. a resource sharing the target's area code, weighted by performance
3. any resource not cooling down, weighted by performance
4. every resource cooling down: the best historical pickup rate

A resource whose consecutive-failure streak reaches the threshold is put on
cooldown, unless it is the last available resource of the configured pool.
"""

import random
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from dialgate.contacts.models import Target
from dialgate.pool.models import (
    AffinityRecord,
    ResourceAttempt,
    ResourceRecord,
    ResourceStats,
    ResourceStatus,
)
from dialgate.shared.clock import utc_now
from dialgate.shared.errors import ConfigurationError
from dialgate.shared.logging import get_logger
from dialgate.shared.phone import extract_area_code, format_phone, mask_phone
from dialgate.telephony.events import Disposition, OutcomeKind, is_pickup, signal_of

if TYPE_CHECKING:
    from dialgate.config import Settings

logger = get_logger(__name__)


@dataclass(frozen=True)
class PoolConfig:
    """Configuration for the resource pool selector."""

    resources: tuple[str, ...]
    pool_name: str = "default"
    cooldown_threshold: int = 5
    cooldown_minutes: float = 5.0
    extended_cooldown_multiplier: float = 3.0
    rolling_window_hours: float = 48.0
    affinity_expiry_days: int = 30
    min_sample_size: int = 10
    neutral_weight: float = 0.5
    min_weight: float = 0.05
    streak_penalty_threshold: int = 3
    balance_bonus: float = 1.2
    max_window_records: int = 5000
    trimmed_window_records: int = 3000
    recent_attempts_reported: int = 50

    def __post_init__(self) -> None:
        resources = tuple(dict.fromkeys(r.strip() for r in self.resources if r and r.strip()))
        if not resources:
            raise ConfigurationError("Resource pool is empty; configure at least one resource")
        object.__setattr__(self, "resources", resources)
        if self.cooldown_threshold < 1:
            raise ConfigurationError("cooldown_threshold must be >= 1")
        if self.cooldown_minutes <= 0:
            raise ConfigurationError("cooldown_minutes must be > 0")
        if self.trimmed_window_records > self.max_window_records:
            raise ConfigurationError("trimmed_window_records must not exceed max_window_records")

    @classmethod
    def from_settings(cls, settings: "Settings") -> "PoolConfig":
        return cls(
            resources=tuple(settings.resource_pool_list),
            pool_name=settings.pool_name,
            cooldown_threshold=settings.cooldown_threshold,
            cooldown_minutes=settings.cooldown_minutes,
            rolling_window_hours=settings.rolling_window_hours,
            affinity_expiry_days=settings.affinity_expiry_days,
            min_sample_size=settings.min_sample_size,
        )


@dataclass(frozen=True)
class PoolStatus:
    """Whole-pool reporting view."""

    pool_name: str
    pool_size: int
    strategy: str
    resources: list[ResourceStatus] = field(default_factory=list)
    total_affinities: int = 0

    @property
    def available(self) -> int:
        return sum(1 for status in self.resources if not status.on_cooldown)


class ResourcePoolSelector:
    """Weighted resource selection with cooldowns and target affinity."""

    def __init__(
        self,
        config: PoolConfig,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config
        self._clock = clock
        self._rng = rng or random.Random()
        self._records: dict[str, ResourceRecord] = {}
        self._affinities: dict[str, AffinityRecord] = {}
        self._version = 0
        self._ensure_pool_records()

        logger.info(
            "Resource pool selector initialized",
            extra={
                "pool_name": config.pool_name,
                "pool_size": len(config.resources),
                "cooldown_threshold": config.cooldown_threshold,
                "cooldown_minutes": config.cooldown_minutes,
            },
        )

    @property
    def config(self) -> PoolConfig:
        return self._config

    @property
    def version(self) -> int:
        """Bumped on every mutation; lets persistence skip clean flushes."""
        return self._version

    def _touch(self) -> None:
        self._version += 1

    def _ensure_pool_records(self) -> None:
        for resource_id in self._config.resources:
            if resource_id not in self._records:
                self._records[resource_id] = ResourceRecord(resource_id=resource_id)

    def _affinity_key(self, target_key: str) -> str:
        return f"{target_key}:{self._config.pool_name}"

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select(self, target: Target | None = None) -> str:
        """Choose the originating resource for an attempt on ``target``.

        Args:
            target: Target about to be attempted. Without it only weighted
                selection applies.

        Returns:
            A resource id from the configured pool.
        """
        now = self._clock()
        pool = list(self._config.resources)
        available = [r for r in pool if not self._records[r].on_cooldown(now)]

        if target is not None:
            affinity = self._affinities.get(self._affinity_key(target.key))
            preferred = affinity.last_successful_resource if affinity else None
            if preferred and preferred in available:
                logger.debug(
                    "Selected resource by affinity",
                    extra={"target": mask_phone(target.key), "resource_id": preferred},
                )
                return preferred

            area_code = extract_area_code(target.key)
            if area_code:
                matches = [r for r in available if extract_area_code(r) == area_code]
                chosen = self._select_weighted(matches)
                if chosen is not None:
                    self._note_area_code_match(target, area_code, now)
                    logger.debug(
                        "Selected resource by area code",
                        extra={
                            "target": mask_phone(target.key),
                            "resource_id": chosen,
                            "area_code": area_code,
                        },
                    )
                    return chosen

        chosen = self._select_weighted(available)
        if chosen is not None:
            return chosen

        chosen = self._best_historical(pool)
        logger.warning(
            "All resources on cooldown, using best historical performer",
            extra={"resource_id": chosen, "pool_size": len(pool)},
        )
        return chosen

    def weight_of(self, resource_id: str) -> float:
        """Selection weight of a resource right now."""
        return self._weight(resource_id, self._average_pool_attempts())

    def _average_pool_attempts(self) -> float:
        pool = self._config.resources
        total = sum(self._records[r].stats.total for r in pool if r in self._records)
        return total / len(pool)

    def _weight(self, resource_id: str, average: float) -> float:
        cfg = self._config
        record = self._records.get(resource_id)
        stats = record.stats if record else ResourceStats()

        if stats.total < cfg.min_sample_size:
            weight = cfg.neutral_weight
        else:
            weight = stats.pickup_rate
        weight = max(weight, cfg.min_weight)

        if stats.failure_streak >= cfg.streak_penalty_threshold:
            weight *= 0.5 ** (stats.failure_streak / cfg.streak_penalty_threshold)

        if average > 0 and stats.total < average:
            weight *= cfg.balance_bonus
        return weight

    def _select_weighted(self, candidates: list[str]) -> str | None:
        if not candidates:
            return None
        if len(candidates) == 1:
            return candidates[0]

        average = self._average_pool_attempts()
        weights = [(r, self._weight(r, average)) for r in candidates]
        total = sum(w for _, w in weights)
        if total <= 0:
            return candidates[0]

        roll = self._rng.random() * total
        for resource_id, weight in weights:
            roll -= weight
            if roll <= 0:
                return resource_id
        return weights[-1][0]

    def _best_historical(self, pool: list[str]) -> str:
        best = pool[0]
        best_rate = -1.0
        for resource_id in pool:
            rate = self._records[resource_id].stats.pickup_rate
            if rate > best_rate:
                best, best_rate = resource_id, rate
        return best

    def _note_area_code_match(self, target: Target, area_code: str, now: datetime) -> None:
        affinity = self._get_or_create_affinity(target.key, now)
        if affinity.area_code_match != area_code:
            affinity.area_code_match = area_code
            self._touch()

    def _get_or_create_affinity(self, target_key: str, now: datetime) -> AffinityRecord:
        key = self._affinity_key(target_key)
        affinity = self._affinities.get(key)
        if affinity is None:
            affinity = AffinityRecord(
                target_key=target_key,
                pool=self._config.pool_name,
                last_used_at=now,
            )
            self._affinities[key] = affinity
        return affinity

    # ------------------------------------------------------------------
    # Outcome recording
    # ------------------------------------------------------------------

    def record_outcome(
        self,
        resource_id: str | None,
        target: Target,
        outcome_kind: OutcomeKind,
        disposition: Disposition | str | None = None,
    ) -> None:
        """Record how an attempt on ``resource_id`` ended.

        Appends to the resource's rolling window, recomputes its stats,
        updates the target's affinity and may put the resource on cooldown.
        Outcomes without a resource id are ignored.
        """
        if not resource_id:
            return

        now = self._clock()
        signal = signal_of(outcome_kind, disposition)
        pickup = is_pickup(outcome_kind, signal if disposition else None)

        record = self._records.get(resource_id)
        if record is None:
            # Resource left the pool since dispatch; keep its history anyway.
            record = ResourceRecord(resource_id=resource_id)
            self._records[resource_id] = record

        record.attempts.append(
            ResourceAttempt(
                timestamp=now,
                signal=signal,
                pickup=pickup,
                target_key=target.key,
                lead_id=target.lead_id,
            )
        )
        self._prune_window(record, now)
        record.stats = self._compute_stats(record)
        self._check_cooldown(record, now)

        affinity = self._get_or_create_affinity(target.key, now)
        affinity.call_count += 1
        affinity.last_used_at = now
        affinity.last_resource = resource_id
        if pickup:
            affinity.last_successful_resource = resource_id
            affinity.preferred_resource = resource_id

        self._touch()
        logger.info(
            "Resource outcome recorded",
            extra={
                "resource_id": resource_id,
                "signal": signal,
                "target": mask_phone(target.key),
                "pickup_rate": round(record.stats.pickup_rate, 3),
                "failure_streak": record.stats.failure_streak,
                "on_cooldown": record.on_cooldown(now),
            },
        )

    def _prune_window(self, record: ResourceRecord, now: datetime) -> None:
        cutoff = now - timedelta(hours=self._config.rolling_window_hours)
        if record.attempts and record.attempts[0].timestamp < cutoff:
            record.attempts = [a for a in record.attempts if a.timestamp >= cutoff]
        if len(record.attempts) > self._config.max_window_records:
            record.attempts = record.attempts[-self._config.trimmed_window_records:]

    @staticmethod
    def _compute_stats(record: ResourceRecord) -> ResourceStats:
        stats = ResourceStats(total=len(record.attempts))
        for attempt in record.attempts:
            if stats.last_used_at is None or attempt.timestamp > stats.last_used_at:
                stats.last_used_at = attempt.timestamp
            if attempt.pickup:
                stats.pickups += 1
                if stats.last_pickup_at is None or attempt.timestamp > stats.last_pickup_at:
                    stats.last_pickup_at = attempt.timestamp
            elif attempt.signal == Disposition.VOICEMAIL.value:
                stats.voicemails += 1
            elif attempt.signal == Disposition.NO_ANSWER.value:
                stats.no_answers += 1
            elif attempt.signal in (Disposition.FAILED.value, OutcomeKind.RETRYABLE_FAILURE.value,
                                    OutcomeKind.PERMANENT_FAILURE.value):
                stats.failures += 1

        # Attempts are appended in arrival order; walk back from the newest.
        for attempt in reversed(record.attempts):
            if attempt.pickup:
                break
            stats.failure_streak += 1

        stats.pickup_rate = stats.pickups / stats.total if stats.total else 0.0
        return stats

    def _check_cooldown(self, record: ResourceRecord, now: datetime) -> None:
        cfg = self._config
        streak = record.stats.failure_streak
        if streak < cfg.cooldown_threshold:
            return

        # Only the configured pool counts; stray resources never keep the pool alive.
        others_available = sum(
            1
            for r in cfg.resources
            if r != record.resource_id and not self._records[r].on_cooldown(now)
        )
        if others_available == 0:
            logger.warning(
                "Skipping cooldown, last available resource in pool",
                extra={
                    "resource_id": record.resource_id,
                    "failure_streak": streak,
                    "pool_size": len(cfg.resources),
                },
            )
            return

        minutes = cfg.cooldown_minutes
        if streak >= cfg.cooldown_threshold * 2:
            minutes *= cfg.extended_cooldown_multiplier
        record.cooldown_until = now + timedelta(minutes=minutes)
        logger.warning(
            "Resource placed on cooldown",
            extra={
                "resource_id": record.resource_id,
                "failure_streak": streak,
                "cooldown_minutes": minutes,
                "available_resources_remaining": others_available,
            },
        )

    # ------------------------------------------------------------------
    # Reporting and maintenance
    # ------------------------------------------------------------------

    def _status_of(self, record: ResourceRecord, now: datetime, recent: int = 0) -> ResourceStatus:
        return ResourceStatus(
            resource_id=record.resource_id,
            formatted=format_phone(record.resource_id),
            stats=record.stats,
            on_cooldown=record.on_cooldown(now),
            cooldown_remaining_seconds=record.cooldown_remaining_seconds(now),
            recent_attempts=tuple(record.attempts[-recent:]) if recent else (),
        )

    def status(self) -> PoolStatus:
        now = self._clock()
        return PoolStatus(
            pool_name=self._config.pool_name,
            pool_size=len(self._config.resources),
            strategy="weighted",
            resources=[self._status_of(self._records[r], now) for r in self._config.resources],
            total_affinities=len(self._affinities),
        )

    def resource_stats(self, resource_id: str) -> ResourceStatus | None:
        record = self._records.get(resource_id)
        if record is None:
            return None
        return self._status_of(record, self._clock(), recent=self._config.recent_attempts_reported)

    def affinities(self, limit: int = 100, offset: int = 0) -> tuple[int, list[AffinityRecord]]:
        """Affinity records, most recently used first.

        Returns:
            Total count and the requested page.
        """
        epoch = datetime.min.replace(tzinfo=self._clock().tzinfo)
        ordered = sorted(
            self._affinities.values(),
            key=lambda a: a.last_used_at or epoch,
            reverse=True,
        )
        return len(ordered), ordered[offset:offset + limit]

    def affinity_for(self, target_key: str) -> AffinityRecord | None:
        return self._affinities.get(self._affinity_key(target_key))

    def clear_cooldowns(self) -> int:
        cleared = 0
        for record in self._records.values():
            if record.cooldown_until is not None:
                record.cooldown_until = None
                cleared += 1
        if cleared:
            self._touch()
            logger.info("Cleared all cooldowns", extra={"cleared": cleared})
        return cleared

    def reset(self) -> None:
        self._records.clear()
        self._affinities.clear()
        self._ensure_pool_records()
        self._touch()
        logger.info("Resource pool data reset")

    def purge_expired(self) -> int:
        """Drop affinities unused for longer than the expiry and prune windows."""
        now = self._clock()
        cutoff = now - timedelta(days=self._config.affinity_expiry_days)
        expired = [
            key
            for key, affinity in self._affinities.items()
            if affinity.last_used_at is not None and affinity.last_used_at < cutoff
        ]
        for key in expired:
            del self._affinities[key]
        changed = bool(expired)
        for record in self._records.values():
            before = len(record.attempts)
            self._prune_window(record, now)
            if len(record.attempts) != before:
                record.stats = self._compute_stats(record)
                changed = True
        if expired:
            logger.info("Pruned expired affinities", extra={"pruned": len(expired)})
        if changed:
            self._touch()
        return len(expired)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot_resources(self) -> dict[str, dict[str, Any]]:
        return {resource_id: record.to_dict() for resource_id, record in self._records.items()}

    def restore_resources(self, data: dict[str, dict[str, Any]]) -> None:
        now = self._clock()
        for resource_id, payload in data.items():
            try:
                record = ResourceRecord.from_dict(payload)
            except (KeyError, ValueError, TypeError, AttributeError):
                logger.warning("Skipping malformed resource record", extra={"resource_id": resource_id})
                continue
            self._prune_window(record, now)
            record.stats = self._compute_stats(record)
            self._records[resource_id] = record
        self._ensure_pool_records()
        logger.info("Restored resource records", extra={"count": len(data)})

    def snapshot_affinity(self) -> dict[str, dict[str, Any]]:
        return {key: affinity.to_dict() for key, affinity in self._affinities.items()}

    def restore_affinity(self, data: dict[str, dict[str, Any]]) -> None:
        for payload in data.values():
            try:
                affinity = AffinityRecord.from_dict(payload)
            except (KeyError, ValueError, TypeError, AttributeError):
                logger.warning("Skipping malformed affinity record")
                continue
            self._affinities[affinity.key] = affinity
        logger.info("Restored affinity records", extra={"count": len(data)})
