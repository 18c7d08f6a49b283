from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable

import pytest

from agent_monitor import AgentMonitor

START = datetime(2026, 2, 22, 9, 0, tzinfo=timezone.utc)


class ManualClock:
    """Deterministic clock; advances by ``step`` on every read."""

    def __init__(self, start: datetime = START, step: timedelta = timedelta(0)) -> None:
        self.current = start
        self.step = step

    def __call__(self) -> datetime:
        now = self.current
        self.current += self.step
        return now

    def advance(self, **delta: float) -> None:
        self.current += timedelta(**delta)


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def ticking_clock() -> ManualClock:
    return ManualClock(step=timedelta(seconds=1))


@pytest.fixture
def monitor(clock: ManualClock) -> AgentMonitor:
    return AgentMonitor(clock=clock)
