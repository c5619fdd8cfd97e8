"""Pytest configuration shared across the test suite."""

import random
from typing import List

import pytest

from quorumlock import MemoryInstance, QuorumLock


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.clock.advance(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep(clock: FakeClock) -> RecordingSleep:
    return RecordingSleep(clock)


@pytest.fixture
def instances(clock: FakeClock) -> List[MemoryInstance]:
    return [MemoryInstance(clock=clock) for _ in range(3)]


@pytest.fixture
def make_lock(clock: FakeClock, sleep: RecordingSleep):
    def factory(instances, **kwargs) -> QuorumLock:
        kwargs.setdefault("rng", random.Random(1234))
        return QuorumLock(instances, clock=clock, sleep=sleep, **kwargs)

    return factory


@pytest.fixture
def lock(make_lock, instances) -> QuorumLock:
    return make_lock(instances)
