# Settlement saga: log append, cash, supply, position, with compensation
import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional

from core.config.settings import SettlementSettings
from core.logging import get_error_logger_safe, get_trading_logger_safe
from core.monitoring.prometheus_metrics import SettlementMetrics, SettlementTimer
from core.utils.exceptions import (
    ConcurrencyConflict,
    InvariantViolation,
    PermanentError,
    RecordNotFoundError,
    SettlementEngineException,
    StorageFailure,
    create_error_context,
    get_retry_delay,
)
from services.ledger.interfaces.ledger_store import LedgerStore
from services.ledger.locks import IssuerLockManager
from services.ledger.models import RecordRef, TradeSide, TransactionRecord
from .models import (
    Accepted,
    Contended,
    FailureReason,
    LedgerSnapshot,
    Order,
    PartialFailure,
    Rejected,
    Settled,
    SettlementFailed,
    SettlementOutcome,
)
from .position_ledger import PositionLedger
from .validator import OrderValidator


@dataclass
class CompensationStep:
    """A completed saga step and the write that undoes it."""
    record: RecordRef
    undo: Callable[[], Awaitable[None]]


class SettlementCoordinator:
    """
    Applies an accepted order to the ledger as one unit of work.

    Steps run under the issuer's write lock with version-checked writes:
    append the log entry, move cash, move supply, update the position. When a
    step fails the completed ones are compensated newest first. A concurrency
    conflict is retried from a fresh snapshot up to ``max_attempts`` times and
    then reported as Contended. If a compensation itself fails the outcome is
    PartialFailure, listing the records left inconsistent.
    """

    def __init__(self, store: LedgerStore, lock_manager: IssuerLockManager,
                 validator: Optional[OrderValidator] = None,
                 position_ledger: Optional[PositionLedger] = None,
                 settings: Optional[SettlementSettings] = None,
                 metrics: Optional[SettlementMetrics] = None):
        settings = settings or SettlementSettings()
        self.store = store
        self.lock_manager = lock_manager
        self.validator = validator or OrderValidator(money_quantum=settings.money_quantum)
        self.position_ledger = position_ledger or PositionLedger()
        self.max_attempts = settings.max_attempts
        self.retry_base_delay = settings.retry_base_delay_seconds
        self.compensation_attempts = settings.compensation_attempts
        self.metrics = metrics
        self.logger = get_trading_logger_safe("settlement")
        self.error_logger = get_error_logger_safe("settlement")

    async def settle(self, order: Order) -> SettlementOutcome:
        """Settle one order. Returns only once the outcome is final."""
        side = order.side.value
        with SettlementTimer(self.metrics, side):
            outcome = await self._settle_with_retries(order)

        if self.metrics:
            self.metrics.record_outcome(side, outcome.status.value)

        log_fields = dict(buyer_id=order.buyer_id, issuer_id=order.issuer_id, side=side,
                          quantity=order.quantity, price_per_unit=str(order.price_per_unit),
                          outcome=outcome.status.value, reason_code=outcome.reason_code)
        if isinstance(outcome, Settled):
            self.logger.info("Order settled", transaction_id=outcome.transaction_id, **log_fields)
        elif isinstance(outcome, PartialFailure):
            self.error_logger.critical("Settlement left ledger inconsistent",
                                       transaction_id=outcome.transaction_id,
                                       inconsistent_records=[r.model_dump() for r in outcome.inconsistent_records],
                                       errors=outcome.errors, **log_fields)
        else:
            self.logger.info("Order not settled", message=outcome.message, **log_fields)
        return outcome

    async def read_snapshot(self, order: Order) -> LedgerSnapshot:
        cash_account = await self.store.read_cash_account(order.buyer_id)
        issuer_supply = await self.store.read_issuer_supply(order.issuer_id)
        position = await self.store.read_position(order.buyer_id, order.issuer_id)
        return LedgerSnapshot(cash_account=cash_account, issuer_supply=issuer_supply, position=position)

    async def _settle_with_retries(self, order: Order) -> SettlementOutcome:
        for attempt in range(1, self.max_attempts + 1):
            try:
                # A started attempt runs to completion or rollback even if the caller is cancelled
                return await asyncio.shield(self._attempt(order))
            except ConcurrencyConflict as conflict:
                conflict.retry_count = attempt - 1
                self.logger.info("Settlement attempt contended",
                                 issuer_id=order.issuer_id, buyer_id=order.buyer_id,
                                 attempt=attempt, max_attempts=self.max_attempts,
                                 error_type=type(conflict).__name__, error=str(conflict))
                if attempt < self.max_attempts:
                    if self.metrics:
                        self.metrics.record_retry(type(conflict).__name__)
                    await asyncio.sleep(get_retry_delay(conflict, self.retry_base_delay))

        return Contended(
            attempts=self.max_attempts,
            message=f"Issuer {order.issuer_id} is busy; gave up after {self.max_attempts} attempts",
        )

    async def _attempt(self, order: Order) -> SettlementOutcome:
        try:
            async with self.lock_manager.hold(order.issuer_id):
                snapshot = await self.read_snapshot(order)
                verdict = self.validator.validate(order, snapshot)
                if isinstance(verdict, Rejected):
                    return verdict
                return await self._run_saga(verdict)
        except StorageFailure as e:
            # Nothing was written yet: the snapshot read or lock acquisition failed
            self.error_logger.error("Settlement aborted before any write",
                                    **create_error_context(e, "settle", {"issuer_id": order.issuer_id}))
            return SettlementFailed(reason_code=FailureReason.STORAGE_FAILURE, retryable=True,
                                    message=f"Ledger unavailable: {e}")

    async def _run_saga(self, accepted: Accepted) -> SettlementOutcome:
        order = accepted.order
        snapshot = accepted.snapshot
        total_amount = self.validator.total_amount(order)
        record = TransactionRecord(
            buyer_id=order.buyer_id,
            issuer_id=order.issuer_id,
            side=order.side,
            quantity=order.quantity,
            price_per_unit=order.price_per_unit,
            total_amount=total_amount,
        )
        cash_delta = -total_amount if order.side == TradeSide.BUY else total_amount
        supply_delta = -record.signed_quantity
        completed: List[CompensationStep] = []

        try:
            await self.store.append_transaction(record)
            completed.append(CompensationStep(
                RecordRef(record_type="transaction", key=record.id),
                lambda: self._undo_append(record.id),
            ))
            self.logger.debug("Transaction appended", transaction_id=record.id)

            await self._apply_cash(snapshot, cash_delta)
            completed.append(CompensationStep(
                RecordRef(record_type="cash_account", key=order.buyer_id, detail=f"delta {cash_delta}"),
                lambda: self._undo_cash(order.buyer_id, cash_delta),
            ))

            await self._apply_supply(snapshot, supply_delta)
            completed.append(CompensationStep(
                RecordRef(record_type="issuer_supply", key=order.issuer_id, detail=f"delta {supply_delta}"),
                lambda: self._undo_supply(order.issuer_id, supply_delta),
            ))

            change = self.position_ledger.compute(order.buyer_id, order.issuer_id, snapshot.position,
                                                  order.side, order.quantity, order.price_per_unit)
            await self.position_ledger.apply(self.store, change)
        except (SettlementEngineException, ValueError) as error:
            return await self._abort(record, completed, error)

        return Settled(transaction_id=record.id, message=f"{order.side.value} of {order.quantity} settled")

    async def _apply_cash(self, snapshot: LedgerSnapshot, delta: Decimal) -> None:
        account = snapshot.cash_account
        new_balance = account.balance + delta
        if new_balance < 0:
            raise InvariantViolation(f"Cash account {account.owner_id} balance would be {new_balance}",
                                     invariant="non_negative_balance", observed=new_balance)
        await self.store.write_cash_account(account.owner_id, new_balance, account.version)

    async def _apply_supply(self, snapshot: LedgerSnapshot, delta: int) -> None:
        supply = snapshot.issuer_supply
        new_available = supply.available_shares + delta
        if not 0 <= new_available <= supply.total_shares:
            raise InvariantViolation(
                f"Issuer {supply.issuer_id} available_shares would be {new_available} of {supply.total_shares}",
                invariant="supply_bounds", observed=new_available,
            )
        await self.store.write_issuer_supply(supply.issuer_id, new_available, supply.version)

    async def _abort(self, record: TransactionRecord, completed: List[CompensationStep],
                     error: Exception) -> SettlementOutcome:
        """Compensate completed steps newest first and classify the failure."""
        self.logger.warning("Settlement step failed, rolling back",
                            **create_error_context(error, "settle", {
                                "transaction_id": record.id,
                                "completed_steps": [step.record.record_type for step in completed],
                            }))

        inconsistent: List[RecordRef] = []
        errors: List[str] = [f"{type(error).__name__}: {error}"]
        for step in reversed(completed):
            failure = await self._compensate(step)
            if failure is not None:
                inconsistent.append(step.record)
                errors.append(failure)

        if inconsistent:
            return PartialFailure(
                transaction_id=record.id,
                inconsistent_records=inconsistent,
                errors=errors,
                message=f"Rollback of {record.id} incomplete; run the invariant auditor",
            )

        if isinstance(error, ConcurrencyConflict):
            raise error

        if isinstance(error, (InvariantViolation, ValueError)):
            self.error_logger.error("Settlement aborted on invariant violation",
                                    transaction_id=record.id, error=str(error))
            return SettlementFailed(reason_code=FailureReason.INVARIANT_VIOLATION,
                                    transaction_id=record.id, message=str(error))

        return SettlementFailed(reason_code=FailureReason.STORAGE_FAILURE, transaction_id=record.id,
                                retryable=not isinstance(error, PermanentError),
                                message=f"Settlement rolled back: {error}")

    async def _compensate(self, step: CompensationStep) -> Optional[str]:
        """Run one compensation with bounded retries. Returns an error description on failure."""
        last_error: Optional[Exception] = None
        for attempt in range(1, self.compensation_attempts + 1):
            try:
                await step.undo()
                self.logger.info("Compensated settlement step",
                                 record_type=step.record.record_type, key=step.record.key, attempt=attempt)
                return None
            except (SettlementEngineException, ValueError) as e:
                last_error = e
                self.logger.warning("Compensating write failed",
                                    record_type=step.record.record_type, key=step.record.key,
                                    attempt=attempt, error=str(e))

        if self.metrics:
            self.metrics.record_compensation_failure(step.record.record_type)
        self.error_logger.error("Compensation exhausted",
                                record_type=step.record.record_type, key=step.record.key,
                                attempts=self.compensation_attempts, error=str(last_error))
        return f"{step.record.record_type} {step.record.key}: {type(last_error).__name__}: {last_error}"

    # --- Compensating writes: re-read, apply the inverse delta, compare-and-swap ---

    async def _undo_append(self, transaction_id: str) -> None:
        try:
            await self.store.delete_transaction(transaction_id)
        except RecordNotFoundError:
            self.logger.debug("Transaction already absent during rollback", transaction_id=transaction_id)

    async def _undo_cash(self, owner_id: str, applied_delta: Decimal) -> None:
        account = await self.store.read_cash_account(owner_id)
        if account is None:
            raise RecordNotFoundError(f"Cash account {owner_id} vanished during rollback",
                                      record_type="cash_account", record_key=owner_id)
        await self.store.write_cash_account(owner_id, account.balance - applied_delta, account.version)

    async def _undo_supply(self, issuer_id: str, applied_delta: int) -> None:
        supply = await self.store.read_issuer_supply(issuer_id)
        if supply is None:
            raise RecordNotFoundError(f"Issuer {issuer_id} vanished during rollback",
                                      record_type="issuer_supply", record_key=issuer_id)
        await self.store.write_issuer_supply(issuer_id, supply.available_shares - applied_delta, supply.version)
