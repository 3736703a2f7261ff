from decimal import Decimal

import pytest
from dependency_injector import providers

from app.containers import AppContainer
from app.main import ApplicationOrchestrator
from core.config.settings import AuditorSettings, LedgerSettings, LoggingSettings, Settings
from core.logging import reset_logging
from services.ledger.stores.memory_store import InMemoryLedgerStore
from services.settlement.models import Settled
from tests.factories import ALICE, ISSUER, make_order


@pytest.fixture
def container():
    reset_logging()
    container = AppContainer()
    container.settings.override(providers.Object(Settings(
        _env_file=None,
        environment="testing",
        ledger=LedgerSettings(backend="memory"),
        auditor=AuditorSettings(enabled=True, interval_seconds=3600),
        logging=LoggingSettings(console_enabled=False, file_enabled=False),
    )))
    yield container
    container.settings.reset_override()
    reset_logging()


def test_container_wires_memory_backend(container):
    store = container.ledger_store()
    assert isinstance(store, InMemoryLedgerStore)
    coordinator = container.settlement_coordinator()
    assert coordinator.store is store
    assert container.invariant_auditor().store is store
    assert coordinator.lock_manager is container.invariant_auditor().lock_manager
    assert coordinator.metrics is container.settlement_metrics()


@pytest.mark.asyncio
async def test_container_settles_end_to_end(container):
    store = container.ledger_store()
    await store.create_issuer_supply(ISSUER, 100)
    await store.create_cash_account(ALICE, Decimal("50.00"))

    outcome = await container.settlement_coordinator().settle(make_order("buy", 10, "2.00"))

    assert isinstance(outcome, Settled)
    assert (await container.invariant_auditor().audit(ISSUER)).consistent


@pytest.mark.asyncio
async def test_startup_starts_scheduler_and_shutdown_stops_it(container):
    app = ApplicationOrchestrator(container)

    await app.startup()
    scheduler = container.audit_scheduler()
    assert scheduler.running

    await app.shutdown()
    assert not scheduler.running


@pytest.mark.asyncio
async def test_run_returns_after_shutdown_request(container):
    app = ApplicationOrchestrator(container)
    app.request_shutdown()
    await app.run()
    assert not container.audit_scheduler().running
