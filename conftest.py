import pytest
from sqlalchemy import create_engine

from orders.adapters import PaymentsStub
from orders.db import init_db
from orders.ledger import InMemoryStockLedger
from orders.repository import InMemoryOrderStore


class FakeClock:
    """Manually advanced clock for reservation expiry tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(clock):
    lg = InMemoryStockLedger(reservation_ttl=60.0, clock=clock)
    lg.set_stock("P1", 2)
    lg.set_stock("P2", 5)
    return lg


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
def payments():
    return PaymentsStub()


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(f"sqlite:///{tmp_path / 'orders.db'}", connect_args={"check_same_thread": False})
    init_db(eng)
    yield eng
    eng.dispose()
