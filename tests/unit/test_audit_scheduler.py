import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from services.auditor.models import AuditSweep
from services.auditor.scheduler import AuditScheduler
from tests.factories import ISSUER


@pytest.mark.asyncio
async def test_run_once_audits_without_repair(seeded_store, auditor):
    supply = await seeded_store.read_issuer_supply(ISSUER)
    await seeded_store.write_issuer_supply(ISSUER, 9000, supply.version)

    scheduler = AuditScheduler(auditor, interval_seconds=60)
    sweep = await scheduler.run_once()

    assert len(sweep.discrepancies) == 1
    assert scheduler.last_sweep is sweep
    assert scheduler.sweeps_completed == 1
    assert (await seeded_store.read_issuer_supply(ISSUER)).available_shares == 9000


@pytest.mark.asyncio
async def test_run_once_with_auto_repair(seeded_store, auditor):
    supply = await seeded_store.read_issuer_supply(ISSUER)
    await seeded_store.write_issuer_supply(ISSUER, 9000, supply.version)

    scheduler = AuditScheduler(auditor, interval_seconds=60, auto_repair=True)
    sweep = await scheduler.run_once()

    assert [r.new_available for r in sweep.repairs] == [10_000]
    assert (await seeded_store.read_issuer_supply(ISSUER)).available_shares == 10_000


@pytest.mark.asyncio
async def test_start_and_stop_background_loop():
    auditor = MagicMock()
    auditor.audit_all = AsyncMock(return_value=AuditSweep())
    scheduler = AuditScheduler(auditor, interval_seconds=0.01)

    await scheduler.start()
    assert scheduler.running
    await asyncio.sleep(0.05)
    await scheduler.stop()

    assert not scheduler.running
    assert scheduler.sweeps_completed >= 1
    assert auditor.audit_all.await_count == scheduler.sweeps_completed


@pytest.mark.asyncio
async def test_loop_survives_failed_sweep():
    auditor = MagicMock()
    auditor.audit_all = AsyncMock(side_effect=[RuntimeError("store offline"), AuditSweep(), AuditSweep()])
    scheduler = AuditScheduler(auditor, interval_seconds=0.01)

    await scheduler.start()
    await asyncio.sleep(0.05)
    await scheduler.stop()

    assert auditor.audit_all.await_count >= 2
    assert scheduler.sweeps_completed >= 1


@pytest.mark.asyncio
async def test_start_twice_and_stop_when_idle():
    auditor = MagicMock()
    auditor.audit_all = AsyncMock(return_value=AuditSweep())
    scheduler = AuditScheduler(auditor, interval_seconds=10)

    await scheduler.stop()
    await scheduler.start()
    first_task = scheduler._audit_task
    await scheduler.start()
    assert scheduler._audit_task is first_task
    await scheduler.stop()
