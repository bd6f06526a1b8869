"""
Shared pytest fixtures for txstress tests.
"""

import asyncio

import pytest

from txstress.config import LoadConfig
from txstress.models import RunCounters


class FakeClock:
    """
    Deterministic monotonic clock. `sleep` advances time instead of waiting,
    so pacing can be checked exactly.
    """

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def counters() -> RunCounters:
    return RunCounters(error_log_limit=100)


@pytest.fixture
def make_config():
    """LoadConfig factory with quiet, fast defaults for tests."""
    def factory(**overrides) -> LoadConfig:
        params = {
            "policy": "fixed-interval",
            "target_rate": 1000,
            "total": 10,
            "confirmation_timeout": 2.0,
            "show_live": False,
            "progress_every": 0,
        }
        params.update(overrides)
        return LoadConfig(**params)
    return factory
