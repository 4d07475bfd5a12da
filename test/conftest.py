"""
Pytest configuration and shared fixtures.

Time is always injected: ``FakeClock`` drives the wall-clock components and
``FakeTimer`` drives the limiter's monotonic clock and sleep.
"""

from __future__ import annotations

import asyncio
import random
from datetime import datetime, timedelta, timezone

import pytest

from dialgate.config import Settings
from dialgate.contacts.models import Target

# 12:00 in America/New_York (EDT), far from any DST switch.
START = datetime(2026, 6, 10, 16, 0, tzinfo=timezone.utc)

RESOURCES = ("+14155550001", "+12125550002", "+13105550003")


class FakeClock:
    """Settable wall clock returning aware UTC datetimes."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeTimer:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def timer() -> FakeTimer:
    return FakeTimer()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def target() -> Target:
    return Target(phone_number="(415) 555-1234", lead_id="lead-1", first_name="Ada", list_id="list-a")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        resource_pool=",".join(RESOURCES),
        storage_backend="json",
        data_dir=str(tmp_path / "state"),
        per_target_interval_seconds=0,
        max_attempts_per_second=100,
    )


@pytest.fixture
def make_target():
    """Factory for distinct North American targets numbered ``n``."""

    def _make(number: int, **kwargs: str) -> Target:
        return Target(phone_number=f"+1646555{number:04d}", lead_id=f"lead-{number}", **kwargs)

    return _make
