from typing import Dict, Optional

from core.logging import get_audit_logger_safe, get_error_logger_safe
from core.monitoring.prometheus_metrics import SettlementMetrics
from core.utils.exceptions import (
    RecordNotFoundError,
    SettlementEngineException,
    VersionConflictError,
)
from services.ledger.interfaces.ledger_store import LedgerStore
from services.ledger.locks import IssuerLockManager
from services.ledger.models import TradeSide
from .models import (
    AuditReport,
    AuditSweep,
    IssuerAuditFailure,
    IssuerHolding,
    OwnerTradingSummary,
    RepairResult,
)


class InvariantAuditor:
    """Reconciles issuer supply counters against the transaction log.

    The log is the source of truth: expected available shares are
    ``total_shares - sum(buys) + sum(sells)``. Audits and repairs take the
    issuer's write lock so they never interleave with a live settlement.
    """

    def __init__(self, store: LedgerStore, lock_manager: IssuerLockManager,
                 metrics: Optional[SettlementMetrics] = None, repair_attempts: int = 3):
        self.store = store
        self.lock_manager = lock_manager
        self.metrics = metrics
        self.repair_attempts = repair_attempts
        self.logger = get_audit_logger_safe("auditor")
        self.error_logger = get_error_logger_safe("auditor")

    async def audit(self, issuer_id: str) -> AuditReport:
        async with self.lock_manager.hold(issuer_id):
            report = await self._audit_unlocked(issuer_id)

        if report.consistent:
            self.logger.debug("Issuer supply consistent", issuer_id=issuer_id,
                              available=report.actual_available)
        else:
            if self.metrics:
                self.metrics.record_audit_discrepancy()
            self.logger.warning("Issuer supply discrepancy",
                                issuer_id=issuer_id,
                                expected=report.expected_available,
                                actual=report.actual_available,
                                delta=report.delta,
                                transaction_count=report.transaction_count)
        return report

    async def _audit_unlocked(self, issuer_id: str) -> AuditReport:
        supply = await self.store.read_issuer_supply(issuer_id)
        if supply is None:
            raise RecordNotFoundError(f"Issuer {issuer_id} not found",
                                      record_type="issuer_supply", record_key=issuer_id)

        transactions = await self.store.list_transactions(issuer_id=issuer_id)
        net_issued = sum(t.signed_quantity for t in transactions)
        return AuditReport(
            issuer_id=issuer_id,
            total_shares=supply.total_shares,
            net_issued=net_issued,
            expected_available=supply.total_shares - net_issued,
            actual_available=supply.available_shares,
            transaction_count=len(transactions),
            supply_version=supply.version,
        )

    async def repair(self, issuer_id: str) -> RepairResult:
        """Overwrite the stored counter with the log-derived value. Idempotent."""
        async with self.lock_manager.hold(issuer_id):
            for attempt in range(1, self.repair_attempts + 1):
                report = await self._audit_unlocked(issuer_id)
                if report.consistent:
                    return RepairResult(issuer_id=issuer_id,
                                        previous_available=report.actual_available,
                                        new_available=report.actual_available)

                try:
                    await self.store.write_issuer_supply(issuer_id, report.expected_available,
                                                         report.supply_version)
                except VersionConflictError:
                    # A writer outside this process's lock got in first
                    self.logger.info("Repair write lost a version race", issuer_id=issuer_id, attempt=attempt)
                    continue

                if self.metrics:
                    self.metrics.record_repair()
                self.logger.warning("Repaired issuer supply",
                                    issuer_id=issuer_id,
                                    previous_available=report.actual_available,
                                    new_available=report.expected_available,
                                    delta=report.delta)
                return RepairResult(issuer_id=issuer_id,
                                    previous_available=report.actual_available,
                                    new_available=report.expected_available)

        raise VersionConflictError(
            f"Issuer {issuer_id} kept changing during repair",
            record_type="issuer_supply", record_key=issuer_id,
            expected_version=None, actual_version=None,
            retry_count=self.repair_attempts, max_retries=self.repair_attempts,
        )

    async def audit_all(self) -> AuditSweep:
        return await self._sweep(repair=False)

    async def repair_all(self) -> AuditSweep:
        return await self._sweep(repair=True)

    async def _sweep(self, repair: bool) -> AuditSweep:
        sweep = AuditSweep()
        issuers = await self.store.list_issuers()
        for supply in issuers:
            issuer_id = supply.issuer_id
            try:
                report = await self.audit(issuer_id)
                sweep.reports.append(report)
                if repair and not report.consistent:
                    sweep.repairs.append(await self.repair(issuer_id))
            except SettlementEngineException as e:
                self.error_logger.error("Issuer audit failed", issuer_id=issuer_id,
                                        error_type=type(e).__name__, error=str(e))
                sweep.failures.append(IssuerAuditFailure(issuer_id=issuer_id,
                                                         error_type=type(e).__name__, error=str(e)))

        self.logger.info("Audit sweep complete",
                         issuers=len(issuers),
                         discrepancies=len(sweep.discrepancies),
                         repairs=len(sweep.repairs),
                         failures=len(sweep.failures))
        return sweep

    async def summarize_owner(self, owner_id: str) -> OwnerTradingSummary:
        """Per-issuer bought/sold totals from the log next to the stored positions."""
        account = await self.store.read_cash_account(owner_id)
        transactions = await self.store.list_transactions(owner_id=owner_id)
        positions = await self.store.list_positions(owner_id=owner_id)

        holdings: Dict[str, IssuerHolding] = {}
        for t in transactions:
            holding = holdings.setdefault(t.issuer_id, IssuerHolding(issuer_id=t.issuer_id))
            if t.side == TradeSide.BUY:
                holding.shares_bought += t.quantity
                holding.amount_spent += t.total_amount
            else:
                holding.shares_sold += t.quantity
                holding.amount_received += t.total_amount

        for p in positions:
            holding = holdings.setdefault(p.issuer_id, IssuerHolding(issuer_id=p.issuer_id))
            holding.position_quantity = p.quantity
            holding.average_cost = p.average_cost

        summary = OwnerTradingSummary(
            owner_id=owner_id,
            cash_balance=account.balance if account else None,
            transaction_count=len(transactions),
            holdings=sorted(holdings.values(), key=lambda h: h.issuer_id),
        )
        if summary.mismatched_holdings:
            self.logger.warning("Owner positions disagree with transaction log",
                                owner_id=owner_id,
                                issuers=[h.issuer_id for h in summary.mismatched_holdings])
        return summary
