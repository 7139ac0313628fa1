"""Shared fixtures: fake clocks and in-process stores."""

import asyncio
import random

import pytest

from store.errors import StoreError
from store.memory import InMemoryStore


class FakeClock:
    """A clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FlakyStore(InMemoryStore):
    """In-process store that fails chosen (operation, path) pairs."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.failures: set[tuple[str, str]] = set()
        self.fail_all = False

    def _before(self, op: str, path: str) -> None:
        if self.fail_all or (op, path) in self.failures:
            raise StoreError(f"injected failure: {op} {path}")


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll predicate until it is true or fail the test."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def flaky_store():
    return FlakyStore()


@pytest.fixture
def slow_store():
    """A store whose round trips take a random few milliseconds."""
    rng = random.Random(7)
    return InMemoryStore(latency=lambda: rng.uniform(0, 0.004))


@pytest.fixture
def eventually():
    return wait_until
