"""
Shared test fixtures for pytest
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from aviator_sync.config import Config
from aviator_sync.core.bet_ledger import BetLedger
from aviator_sync.models import RoundSnapshot, SnapshotPhase
from aviator_sync.services import EventBus, cleanup_logging, setup_logging
from aviator_sync.sources.phase_reconciler import PhaseReconciler


class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture(autouse=True)
def setup_test_logging():
    """Setup logging for all tests"""
    setup_logging({"level": "DEBUG", "colored": False})
    yield
    cleanup_logging()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    """Default configuration"""
    return Config()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def mock_client():
    """API client double with sensible server answers"""
    client = AsyncMock()
    client.base_url = "http://test.invalid"
    client.set_access_token = MagicMock()
    client.fetch_balance.return_value = Decimal("100.00")
    client.fetch_history.return_value = [2.4, 1.1, 5.75]
    client.fetch_bet_history.return_value = []
    client.check_active_bet.return_value = False
    client.place_bet.return_value = {
        "balance": Decimal("50.00"),
        "bet": {"id": "b-1", "amount": Decimal("50"), "multiplier": None, "payout": None},
    }
    client.cash_out.return_value = {
        "balance": Decimal("137.00"),
        "bet": {"id": "b-1", "amount": Decimal("20"), "multiplier": None, "payout": None},
    }
    return client


@pytest.fixture
def snap():
    """Factory for RoundSnapshot"""

    def make(round_number: int, phase: str = "waiting", **fields) -> RoundSnapshot:
        return RoundSnapshot(round_number=round_number, phase=SnapshotPhase(phase), **fields)

    return make


@pytest.fixture
def reconciler(config, clock):
    return PhaseReconciler(config, clock=clock)


@pytest.fixture
def ledger(mock_client, reconciler, config, event_bus, clock):
    """Ledger wired to the reconciler; balance preset to 100"""
    ledger = BetLedger(mock_client, reconciler, config, event_bus=event_bus, clock=clock)
    reconciler.on_settle = ledger.settle_round
    ledger.balance = Decimal("100.00")
    return ledger
