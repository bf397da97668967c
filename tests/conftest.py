"""
Shared fixtures for metering tests.
"""

from typing import Optional, Set

import pytest

from token_meter.storage.kv import InMemoryKeyValueStore, StoreError


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FlakyStore(InMemoryKeyValueStore):
    """In-memory store that fails reads or writes for chosen key prefixes."""

    def __init__(self, clock):
        super().__init__(clock=clock)
        self.fail_get: Set[str] = set()
        self.fail_put: Set[str] = set()

    def get(self, key: str) -> Optional[str]:
        if any(key.startswith(prefix) for prefix in self.fail_get):
            raise StoreError(f"read failed for {key}")
        return super().get(key)

    def put(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        if any(key.startswith(prefix) for prefix in self.fail_put):
            raise StoreError(f"write failed for {key}")
        super().put(key, value, ttl)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryKeyValueStore(clock=clock)


@pytest.fixture
def flaky_store(clock):
    return FlakyStore(clock)
