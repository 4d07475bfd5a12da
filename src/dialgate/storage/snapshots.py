"""
Snapshot manager.

Flushes registered components to a ``StateStore`` periodically and on
request. Persistence is best effort: failures are logged and retried on the
next flush, and never interrupt scheduling.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from dialgate.shared.errors import PersistenceError
from dialgate.shared.logging import get_logger
from dialgate.storage.base import Records, StateStore

logger = get_logger(__name__)


@dataclass
class _Registration:
    collection: str
    snapshot: Callable[[], Records]
    restore: Callable[[Records], None]
    version: Callable[[], int]
    flushed_version: int | None = None


class SnapshotManager:
    """Coordinates loading and flushing of component snapshots."""

    def __init__(self, store: StateStore, interval_seconds: float = 60.0) -> None:
        self._store = store
        self._interval = interval_seconds
        self._registrations: dict[str, _Registration] = {}
        self._flush_lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def running(self) -> bool:
        return self._running

    def register(
        self,
        collection: str,
        snapshot: Callable[[], Records],
        restore: Callable[[Records], None],
        version: Callable[[], int],
    ) -> None:
        if collection in self._registrations:
            raise ValueError(f"Collection already registered: {collection}")
        self._registrations[collection] = _Registration(collection, snapshot, restore, version)

    async def load_all(self) -> dict[str, int]:
        """Restore every registered collection from the store.

        A collection that fails to load or restore is logged and skipped;
        it never stops startup.

        Returns:
            Record count loaded per collection.
        """
        loaded: dict[str, int] = {}
        for reg in self._registrations.values():
            try:
                records = await self._store.load(reg.collection)
            except PersistenceError:
                logger.exception("Failed to load snapshot, starting empty", extra={"collection": reg.collection})
                loaded[reg.collection] = 0
                continue
            try:
                reg.restore(records)
            except (KeyError, ValueError, TypeError, AttributeError):
                logger.exception("Failed to restore snapshot", extra={"collection": reg.collection})
                loaded[reg.collection] = 0
                continue
            reg.flushed_version = reg.version()
            loaded[reg.collection] = len(records)
        logger.info("Snapshots loaded", extra={"collections": loaded})
        return loaded

    async def flush(self, force: bool = False) -> bool:
        """Write every changed collection.

        Args:
            force: Write collections even when unchanged since the last flush.

        Returns:
            True when every write succeeded.
        """
        ok = True
        async with self._flush_lock:
            for reg in self._registrations.values():
                version = reg.version()
                if not force and reg.flushed_version == version:
                    continue
                records: dict[str, Any] = reg.snapshot()
                try:
                    await self._store.save(reg.collection, records)
                except PersistenceError:
                    ok = False
                    logger.exception("Snapshot flush failed", extra={"collection": reg.collection})
                    continue
                reg.flushed_version = version
        return ok

    async def flush_soon(self) -> None:
        """Flush promptly: wake the loop when running, else flush inline."""
        if self._running:
            self._wakeup.set()
            return
        await self.flush()

    async def start(self) -> None:
        """Start the periodic flush task."""
        if self._running:
            logger.warning("Snapshot manager already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Snapshot manager started", extra={"interval_seconds": self._interval})

    async def stop(self) -> None:
        """Stop the periodic task and write a final snapshot."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.flush()
        logger.info("Snapshot manager stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()
            try:
                await self.flush()
            except Exception:
                logger.exception("Snapshot iteration failed")
