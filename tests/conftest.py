"""
Pytest configuration and shared fixtures for share ledger tests.
"""
from decimal import Decimal

import pytest

from core.config.settings import (
    LedgerSettings,
    LoggingSettings,
    SettlementSettings,
    Settings,
)
from core.monitoring.prometheus_metrics import get_metrics_for_testing
from services.auditor.auditor import InvariantAuditor
from services.ledger.locks import IssuerLockManager
from services.ledger.stores.memory_store import InMemoryLedgerStore
from services.settlement.coordinator import SettlementCoordinator
from tests.factories import ALICE, BOB, ISSUER


@pytest.fixture
def test_settings():
    """Test settings configuration."""
    return Settings(
        environment="testing",
        ledger=LedgerSettings(backend="memory"),
        settlement=SettlementSettings(
            max_attempts=3,
            retry_base_delay_seconds=0.0,
            compensation_attempts=3,
            lock_timeout_seconds=1.0,
        ),
        logging=LoggingSettings(console_enabled=False, file_enabled=False),
    )


@pytest.fixture
def metrics():
    return get_metrics_for_testing()


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
async def seeded_store(store):
    """Issuer with 10,000 shares; alice holds 20,000.00 and bob the default 1,000.00."""
    await store.create_issuer_supply(ISSUER, 10_000)
    await store.create_cash_account(ALICE, Decimal("20000.00"))
    await store.create_cash_account(BOB, Decimal("1000.00"))
    return store


@pytest.fixture
def lock_manager():
    return IssuerLockManager(lock_timeout_seconds=1.0)


@pytest.fixture
def coordinator(seeded_store, lock_manager, test_settings, metrics):
    return SettlementCoordinator(
        store=seeded_store,
        lock_manager=lock_manager,
        settings=test_settings.settlement,
        metrics=metrics,
    )


@pytest.fixture
def auditor(seeded_store, lock_manager, metrics):
    return InvariantAuditor(store=seeded_store, lock_manager=lock_manager, metrics=metrics)
