"""
Composition factory.

Builds a fully wired ``Dispatcher`` from ``Settings``. Single source of truth
for configuration: everything comes from ``Settings`` (OS env + .env), never
from raw ``os.getenv`` here.
"""

from __future__ import annotations

import random
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.engine import make_url

from dialgate.admission.guard import AdmissionGuard, GuardConfig
from dialgate.calls.scheduler import RetryPolicy, RetryScheduler
from dialgate.config import Settings, get_settings
from dialgate.dispatcher import Dispatcher, DispatcherConfig
from dialgate.pool.selector import PoolConfig, ResourcePoolSelector
from dialgate.shared.clock import utc_now
from dialgate.shared.errors import ConfigurationError
from dialgate.shared.logging import get_logger
from dialgate.storage.base import MemoryStateStore, StateStore
from dialgate.storage.json_store import JsonFileStateStore
from dialgate.storage.snapshots import SnapshotManager
from dialgate.storage.sql_store import SqlAlchemyStateStore
from dialgate.telephony.interface import AttemptInitiator
from dialgate.throttling.limiter import LimiterConfig, ThroughputLimiter

logger = get_logger(__name__)

RETRY_STATE = "retry_state"
RESOURCES = "resources"
AFFINITY = "affinity"
ADMISSION = "admission"


def _mask_url(url: str) -> str:
    return make_url(url).render_as_string(hide_password=True)


def build_state_store(settings: Settings) -> StateStore:
    """Create the state store selected by ``storage_backend``."""
    backend = settings.storage_backend
    if backend == "json":
        return JsonFileStateStore(settings.data_dir)
    if backend == "sqlalchemy":
        return SqlAlchemyStateStore(settings.database_url)
    if backend == "memory":
        return MemoryStateStore()
    raise ConfigurationError(f"Unsupported storage_backend: {backend}")


def build_dispatcher(
    initiator: AttemptInitiator,
    settings: Settings | None = None,
    store: StateStore | None = None,
    clock: Callable[[], datetime] = utc_now,
    rng: random.Random | None = None,
) -> Dispatcher:
    """Wire limiter, pool, guard, scheduler and persistence into a Dispatcher.

    Raises:
        ConfigurationError: If the settings describe an unusable setup, e.g.
            an empty resource pool.
    """
    settings = settings or get_settings()

    logger.info(
        "Dispatch config resolved",
        extra={
            "pool_name": settings.pool_name,
            "pool_size": len(settings.resource_pool_list),
            "max_attempts_per_second": settings.max_attempts_per_second,
            "max_attempts": settings.max_attempts,
            "storage_backend": settings.storage_backend,
            "database_url": _mask_url(settings.database_url)
            if settings.storage_backend == "sqlalchemy"
            else None,
        },
    )

    limiter = ThroughputLimiter(LimiterConfig.from_settings(settings))
    pool = ResourcePoolSelector(PoolConfig.from_settings(settings), clock=clock, rng=rng)
    guard = AdmissionGuard(GuardConfig.from_settings(settings), clock=clock)
    scheduler = RetryScheduler(RetryPolicy.from_settings(settings), clock=clock)

    persistence = SnapshotManager(
        store if store is not None else build_state_store(settings),
        interval_seconds=settings.persist_interval_seconds,
    )
    persistence.register(
        RETRY_STATE, scheduler.snapshot, scheduler.restore, lambda: scheduler.version
    )
    persistence.register(
        RESOURCES, pool.snapshot_resources, pool.restore_resources, lambda: pool.version
    )
    persistence.register(
        AFFINITY, pool.snapshot_affinity, pool.restore_affinity, lambda: pool.version
    )
    persistence.register(ADMISSION, guard.snapshot, guard.restore, lambda: guard.version)

    return Dispatcher(
        scheduler=scheduler,
        guard=guard,
        pool=pool,
        limiter=limiter,
        initiator=initiator,
        persistence=persistence,
        config=DispatcherConfig.from_settings(settings),
        clock=clock,
    )
