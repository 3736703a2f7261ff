from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from core.utils.exceptions import InvariantViolation, StorageFailure, VersionConflictError
from services.ledger.locks import IssuerLockManager
from services.settlement.coordinator import SettlementCoordinator
from services.settlement.models import (
    Contended,
    FailureReason,
    PartialFailure,
    Rejected,
    RejectionReason,
    Settled,
    SettlementFailed,
    SettlementStatus,
)
from tests.factories import ALICE, BOB, ISSUER, make_order


def storage_down(operation):
    return StorageFailure(f"{operation} unavailable", operation=operation)


def stale(record_type, key):
    return VersionConflictError("stale", record_type=record_type, record_key=key,
                                expected_version=1, actual_version=2)


@pytest.mark.asyncio
async def test_buy_then_sell_scenario(coordinator, seeded_store):
    bought = await coordinator.settle(make_order("buy", 100, "100.00"))
    assert isinstance(bought, Settled)
    assert bought.status is SettlementStatus.SETTLED

    position = await seeded_store.read_position(ALICE, ISSUER)
    assert (position.quantity, position.average_cost) == (100, Decimal("100.00"))
    assert (await seeded_store.read_issuer_supply(ISSUER)).available_shares == 9900
    assert (await seeded_store.read_cash_account(ALICE)).balance == Decimal("10000.00")

    sold = await coordinator.settle(make_order("sell", 40, "120.00"))
    assert isinstance(sold, Settled)

    position = await seeded_store.read_position(ALICE, ISSUER)
    assert (position.quantity, position.average_cost) == (60, Decimal("100.00"))
    assert (await seeded_store.read_issuer_supply(ISSUER)).available_shares == 9940
    assert (await seeded_store.read_cash_account(ALICE)).balance == Decimal("14800.00")

    log = await seeded_store.list_transactions(issuer_id=ISSUER)
    assert [t.id for t in log] == [bought.transaction_id, sold.transaction_id]
    assert log[0].total_amount == Decimal("10000.00")
    assert log[1].total_amount == Decimal("4800.00")


@pytest.mark.asyncio
async def test_selling_whole_position_deletes_it(coordinator, seeded_store):
    await coordinator.settle(make_order("buy", 10, "5.00"))
    outcome = await coordinator.settle(make_order("sell", 10, "6.00"))
    assert outcome.is_settled
    assert await seeded_store.read_position(ALICE, ISSUER) is None
    assert (await seeded_store.read_issuer_supply(ISSUER)).available_shares == 10_000


@pytest.mark.asyncio
async def test_rejection_writes_nothing(coordinator, seeded_store):
    outcome = await coordinator.settle(make_order("buy", 11, "100.00", buyer_id=BOB))
    assert isinstance(outcome, Rejected)
    assert outcome.reason is RejectionReason.INSUFFICIENT_FUNDS
    assert outcome.message
    assert await seeded_store.list_transactions() == []
    assert (await seeded_store.read_cash_account(BOB)).balance == Decimal("1000.00")


@pytest.mark.asyncio
async def test_oversell_rejected(coordinator):
    await coordinator.settle(make_order("buy", 5, "1.00"))
    outcome = await coordinator.settle(make_order("sell", 6, "1.00"))
    assert outcome.reason_code == "insufficient_holdings"


@pytest.mark.asyncio
@pytest.mark.parametrize("quantity, price", [(10**27, "10.00"), (1, "1E+30")])
async def test_unstorable_total_is_rejected_not_raised(coordinator, seeded_store, quantity, price):
    outcome = await coordinator.settle(make_order("buy", quantity, price))
    assert isinstance(outcome, Rejected)
    assert outcome.reason_code == "invalid_price"
    assert outcome.retryable is False
    assert await seeded_store.list_transactions() == []


@pytest.mark.asyncio
async def test_supply_write_failure_rolls_back(coordinator, seeded_store, auditor):
    seeded_store.write_issuer_supply = AsyncMock(side_effect=storage_down("write_issuer_supply"))

    outcome = await coordinator.settle(make_order("buy", 100, "10.00"))

    assert isinstance(outcome, SettlementFailed)
    assert outcome.reason_code is FailureReason.STORAGE_FAILURE
    assert outcome.retryable is True
    assert await seeded_store.list_transactions() == []
    assert (await seeded_store.read_cash_account(ALICE)).balance == Decimal("20000.00")
    assert await seeded_store.read_position(ALICE, ISSUER) is None

    del seeded_store.write_issuer_supply
    report = await auditor.audit(ISSUER)
    assert report.consistent


@pytest.mark.asyncio
async def test_position_write_failure_rolls_back_supply_and_cash(coordinator, seeded_store):
    seeded_store.upsert_position = AsyncMock(side_effect=storage_down("upsert_position"))

    outcome = await coordinator.settle(make_order("buy", 100, "10.00"))

    assert isinstance(outcome, SettlementFailed)
    assert (await seeded_store.read_issuer_supply(ISSUER)).available_shares == 10_000
    assert (await seeded_store.read_cash_account(ALICE)).balance == Decimal("20000.00")
    assert await seeded_store.list_transactions() == []


@pytest.mark.asyncio
async def test_invariant_violation_aborts_without_retry(coordinator, seeded_store):
    seeded_store.upsert_position = AsyncMock(side_effect=InvariantViolation(
        "bad position", invariant="non_negative_position"))

    outcome = await coordinator.settle(make_order("buy", 1, "10.00"))

    assert isinstance(outcome, SettlementFailed)
    assert outcome.reason_code is FailureReason.INVARIANT_VIOLATION
    assert outcome.retryable is False
    assert seeded_store.upsert_position.await_count == 1
    assert (await seeded_store.read_issuer_supply(ISSUER)).available_shares == 10_000


@pytest.mark.asyncio
async def test_log_append_rejected_by_constraint_is_not_retryable(coordinator, seeded_store):
    seeded_store.append_transaction = AsyncMock(side_effect=InvariantViolation(
        "ledger_transactions row rejected by a CHECK constraint", invariant="ledger_transactions_check"))

    outcome = await coordinator.settle(make_order("buy", 1, "10.00"))

    assert isinstance(outcome, SettlementFailed)
    assert outcome.reason_code is FailureReason.INVARIANT_VIOLATION
    assert outcome.retryable is False
    assert seeded_store.append_transaction.await_count == 1
    assert (await seeded_store.read_cash_account(ALICE)).balance == Decimal("20000.00")


@pytest.mark.asyncio
async def test_failed_compensation_is_partial_failure(coordinator, seeded_store, auditor, metrics):
    seeded_store.write_issuer_supply = AsyncMock(side_effect=storage_down("write_issuer_supply"))
    seeded_store.delete_transaction = AsyncMock(side_effect=storage_down("delete_transaction"))

    outcome = await coordinator.settle(make_order("buy", 100, "10.00"))

    assert isinstance(outcome, PartialFailure)
    assert outcome.reason_code == "partial_failure"
    assert [r.record_type for r in outcome.inconsistent_records] == ["transaction"]
    assert outcome.inconsistent_records[0].key == outcome.transaction_id
    assert len(outcome.errors) == 2
    # Cash compensation still ran
    assert (await seeded_store.read_cash_account(ALICE)).balance == Decimal("20000.00")
    assert seeded_store.delete_transaction.await_count == 3
    assert metrics.registry.get_sample_value(
        "settlement_compensation_failures_total", {"record_type": "transaction"}) == 1.0

    # The orphaned log entry is what the auditor reconciles against
    del seeded_store.write_issuer_supply
    report = await auditor.audit(ISSUER)
    assert not report.consistent
    assert report.expected_available == 9900
    await auditor.repair(ISSUER)
    assert (await auditor.audit(ISSUER)).consistent


@pytest.mark.asyncio
async def test_version_conflict_retries_from_fresh_snapshot(coordinator, seeded_store, metrics):
    original = seeded_store.write_issuer_supply
    calls = []

    async def conflict_once(issuer_id, new_available, expected_version):
        calls.append(expected_version)
        if len(calls) == 1:
            raise stale("issuer_supply", issuer_id)
        return await original(issuer_id, new_available, expected_version)

    seeded_store.write_issuer_supply = conflict_once

    outcome = await coordinator.settle(make_order("buy", 10, "10.00"))

    assert isinstance(outcome, Settled)
    assert len(calls) == 2
    assert (await seeded_store.read_cash_account(ALICE)).balance == Decimal("19900.00")
    assert len(await seeded_store.list_transactions()) == 1
    assert (await seeded_store.read_issuer_supply(ISSUER)).available_shares == 9990
    assert metrics.registry.get_sample_value(
        "settlement_retries_total", {"reason": "VersionConflictError"}) == 1.0


@pytest.mark.asyncio
async def test_persistent_conflict_returns_contended(coordinator, seeded_store, metrics):
    seeded_store.write_cash_account = AsyncMock(side_effect=stale("cash_account", ALICE))

    outcome = await coordinator.settle(make_order("buy", 10, "10.00"))

    assert isinstance(outcome, Contended)
    assert outcome.attempts == 3
    assert outcome.retryable is True
    assert seeded_store.write_cash_account.await_count == 3
    assert await seeded_store.list_transactions() == []
    assert metrics.registry.get_sample_value(
        "settlement_outcomes_total", {"side": "buy", "outcome": "contended"}) == 1.0


@pytest.mark.asyncio
async def test_lock_timeout_counts_as_contention(seeded_store, test_settings):
    locks = IssuerLockManager(lock_timeout_seconds=0.01)
    coordinator = SettlementCoordinator(seeded_store, locks, settings=test_settings.settlement)

    async with locks.hold(ISSUER):
        outcome = await coordinator.settle(make_order("buy", 1, "1.00"))

    assert isinstance(outcome, Contended)
    assert await seeded_store.list_transactions() == []


@pytest.mark.asyncio
async def test_snapshot_read_failure(coordinator, seeded_store):
    seeded_store.read_issuer_supply = AsyncMock(side_effect=storage_down("read_issuer_supply"))

    outcome = await coordinator.settle(make_order("buy", 1, "1.00"))

    assert isinstance(outcome, SettlementFailed)
    assert outcome.transaction_id is None
    assert outcome.reason_code is FailureReason.STORAGE_FAILURE


@pytest.mark.asyncio
async def test_outcome_serializes_for_callers(coordinator):
    outcome = await coordinator.settle(make_order("buy", 1, "1.00", issuer_id="nobody"))
    assert outcome.to_dict() == {
        "status": "rejected",
        "reason_code": "issuer_not_found",
        "message": outcome.message,
        "retryable": False,
        "reason": "issuer_not_found",
    }


@pytest.mark.asyncio
async def test_metrics_record_settled_outcomes(coordinator, metrics):
    await coordinator.settle(make_order("buy", 1, "1.00"))
    await coordinator.settle(make_order("sell", 1, "1.00"))
    registry = metrics.registry
    assert registry.get_sample_value("settlement_outcomes_total", {"side": "buy", "outcome": "settled"}) == 1.0
    assert registry.get_sample_value("settlement_outcomes_total", {"side": "sell", "outcome": "settled"}) == 1.0
    assert registry.get_sample_value("settlement_latency_seconds_count", {"side": "buy"}) == 1.0
