from decimal import Decimal

import pytest

from hashcloud.config import AppConfig
from hashcloud.service import HashCloudService
from hashcloud.store import InMemoryLedgerStore


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def service(store, clock) -> HashCloudService:
    return HashCloudService(store=store, config=AppConfig(), clock=clock)


@pytest.fixture
def fund(store):
    """Set a user's stored balance directly."""
    def _fund(user_id: str, amount: str) -> None:
        user = store.get(user_id)
        user.balance = Decimal(amount)
        store.put(user)
    return _fund
