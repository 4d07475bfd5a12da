"""
Throughput limiter.

Enforces a global attempts-per-second ceiling over a sliding window and a
minimum spacing between attempts on the same target. It never rejects a
caller, it only delays them.
"""

import asyncio
import math
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from dialgate.shared.errors import ConfigurationError
from dialgate.shared.locks import KeyedLock
from dialgate.shared.logging import get_logger
from dialgate.shared.phone import mask_phone

if TYPE_CHECKING:
    from dialgate.config import Settings

logger = get_logger(__name__)


@dataclass(frozen=True)
class LimiterConfig:
    """Configuration for the throughput limiter."""

    max_attempts_per_second: float = 5.0
    per_target_interval_seconds: float = 120.0
    enabled: bool = True
    purge_interval_seconds: float = 60.0
    target_retention_seconds: float = 600.0

    def __post_init__(self) -> None:
        if not self.max_attempts_per_second > 0:
            raise ConfigurationError(
                f"max_attempts_per_second must be > 0, got {self.max_attempts_per_second}"
            )
        if self.per_target_interval_seconds < 0:
            raise ConfigurationError("per_target_interval_seconds must be >= 0")
        if self.purge_interval_seconds <= 0:
            raise ConfigurationError("purge_interval_seconds must be > 0")

    @property
    def window_capacity(self) -> int:
        """Attempts admitted per window."""
        if self.max_attempts_per_second >= 1:
            return math.floor(self.max_attempts_per_second)
        return 1

    @property
    def window_seconds(self) -> float:
        # Sub-1/s rates stretch the window so one attempt per window still honours the rate.
        if self.max_attempts_per_second >= 1:
            return 1.0
        return 1.0 / self.max_attempts_per_second

    @classmethod
    def from_settings(cls, settings: "Settings") -> "LimiterConfig":
        return cls(
            max_attempts_per_second=settings.max_attempts_per_second,
            per_target_interval_seconds=settings.per_target_interval_seconds,
            enabled=settings.rate_limiter_enabled,
        )


class ThroughputLimiter:
    """Global sliding-window rate limiter with per-target spacing.

    ``clock`` must be monotonic. ``sleep`` is awaited for every delay, which
    lets tests drive the limiter with a fake clock.
    """

    def __init__(
        self,
        config: LimiterConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._config = config or LimiterConfig()
        self._clock = clock
        self._sleep = sleep
        self._recent: deque[float] = deque()
        self._last_by_target: dict[str, float] = {}
        self._global_lock = asyncio.Lock()
        self._target_locks = KeyedLock()
        self._last_purge = clock()
        self._total_acquired = 0
        self._total_waited = 0.0

        logger.info(
            "Throughput limiter initialized",
            extra={
                "max_attempts_per_second": self._config.max_attempts_per_second,
                "per_target_interval_seconds": self._config.per_target_interval_seconds,
                "enabled": self._config.enabled,
            },
        )

    @property
    def config(self) -> LimiterConfig:
        return self._config

    async def acquire(self, target_key: str) -> float:
        """Wait until an attempt on ``target_key`` may start, then record it.

        Args:
            target_key: Normalized target key.

        Returns:
            Seconds spent waiting.
        """
        if not self._config.enabled:
            return 0.0

        started = self._clock()
        async with self._target_locks.hold(target_key):
            await self._wait_for_target(target_key)
            async with self._global_lock:
                await self._wait_for_global_slot()
                now = self._clock()
                self._recent.append(now)
                self._last_by_target[target_key] = now
            self._maybe_purge(now)

        waited = max(0.0, self._clock() - started)
        self._total_acquired += 1
        self._total_waited += waited
        if waited > 0:
            logger.debug(
                "Throughput limiter delayed attempt",
                extra={"target": mask_phone(target_key), "waited_seconds": round(waited, 3)},
            )
        return waited

    async def _wait_for_target(self, target_key: str) -> None:
        wait = self._target_wait(target_key, self._clock())
        if wait > 0:
            logger.debug(
                "Waiting for per-target interval",
                extra={"target": mask_phone(target_key), "wait_seconds": round(wait, 3)},
            )
            await self._sleep(wait)

    async def _wait_for_global_slot(self) -> None:
        # Caller holds the global lock; waiters queue behind it in FIFO order.
        now = self._clock()
        self._prune_window(now)
        if len(self._recent) < self._config.window_capacity:
            return
        wait = self._recent[0] + self._config.window_seconds - now
        if wait > 0:
            await self._sleep(wait)
        await self._wait_for_global_slot()

    def _target_wait(self, target_key: str, now: float) -> float:
        last = self._last_by_target.get(target_key)
        if last is None:
            return 0.0
        return max(0.0, last + self._config.per_target_interval_seconds - now)

    def _global_wait(self, now: float) -> float:
        self._prune_window(now)
        if len(self._recent) < self._config.window_capacity:
            return 0.0
        return max(0.0, self._recent[0] + self._config.window_seconds - now)

    def _prune_window(self, now: float) -> None:
        cutoff = now - self._config.window_seconds
        while self._recent and self._recent[0] <= cutoff:
            self._recent.popleft()

    def _maybe_purge(self, now: float) -> None:
        if now - self._last_purge < self._config.purge_interval_seconds:
            return
        self.purge(now)

    def purge(self, now: float | None = None) -> int:
        """Drop per-target entries that can no longer delay anyone.

        Returns:
            Number of target entries removed.
        """
        now = self._clock() if now is None else now
        self._last_purge = now
        self._prune_window(now)
        horizon = max(self._config.per_target_interval_seconds, self._config.target_retention_seconds)
        stale = [key for key, last in self._last_by_target.items() if now - last > horizon]
        for key in stale:
            del self._last_by_target[key]
        if stale:
            logger.debug("Purged stale limiter entries", extra={"purged": len(stale)})
        return len(stale)

    def can_proceed_now(self, target_key: str) -> bool:
        """True when ``acquire`` would not wait right now."""
        return self.wait_time(target_key) == 0.0

    def wait_time(self, target_key: str) -> float:
        """Seconds ``acquire`` would currently wait, ignoring queued callers."""
        if not self._config.enabled:
            return 0.0
        now = self._clock()
        return max(self._target_wait(target_key, now), self._global_wait(now))

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        self._prune_window(now)
        return {
            "enabled": self._config.enabled,
            "max_attempts_per_second": self._config.max_attempts_per_second,
            "per_target_interval_seconds": self._config.per_target_interval_seconds,
            "attempts_in_window": len(self._recent),
            "tracked_targets": len(self._last_by_target),
            "total_acquired": self._total_acquired,
            "total_waited_seconds": round(self._total_waited, 3),
        }

    def reset(self) -> None:
        """Forget all recorded attempts."""
        self._recent.clear()
        self._last_by_target.clear()
        self._total_acquired = 0
        self._total_waited = 0.0
        self._last_purge = self._clock()
        logger.info("Throughput limiter reset")
