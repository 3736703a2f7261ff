from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field


class AuditReport(BaseModel):
    """Stored supply counter compared with the value derived from the log."""
    issuer_id: str
    total_shares: int
    net_issued: int
    expected_available: int
    actual_available: int
    transaction_count: int
    supply_version: int
    audited_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def consistent(self) -> bool:
        return self.expected_available == self.actual_available

    @property
    def delta(self) -> int:
        """Stored minus expected; positive means the counter over-reports supply."""
        return self.actual_available - self.expected_available

    def to_dict(self) -> dict:
        data = self.model_dump(mode="json")
        data.update(consistent=self.consistent, delta=self.delta)
        return data


class RepairResult(BaseModel):
    issuer_id: str
    previous_available: int
    new_available: int

    @property
    def repaired(self) -> bool:
        return self.previous_available != self.new_available

    def to_dict(self) -> dict:
        data = self.model_dump(mode="json")
        data["repaired"] = self.repaired
        return data


class IssuerAuditFailure(BaseModel):
    issuer_id: str
    error_type: str
    error: str


class AuditSweep(BaseModel):
    """Result of auditing (and optionally repairing) every issuer."""
    reports: List[AuditReport] = Field(default_factory=list)
    repairs: List[RepairResult] = Field(default_factory=list)
    failures: List[IssuerAuditFailure] = Field(default_factory=list)

    @property
    def discrepancies(self) -> List[AuditReport]:
        return [r for r in self.reports if not r.consistent]

    @property
    def clean(self) -> bool:
        return not self.discrepancies and not self.failures

    def to_dict(self) -> dict:
        return {
            "issuers_audited": len(self.reports),
            "discrepancies": [r.to_dict() for r in self.discrepancies],
            "repairs": [r.to_dict() for r in self.repairs],
            "failures": [f.model_dump() for f in self.failures],
        }


class IssuerHolding(BaseModel):
    """One owner's activity against one issuer."""
    issuer_id: str
    shares_bought: int = 0
    shares_sold: int = 0
    amount_spent: Decimal = Decimal("0")
    amount_received: Decimal = Decimal("0")
    position_quantity: int = 0
    average_cost: Optional[Decimal] = None

    @property
    def net_shares(self) -> int:
        return self.shares_bought - self.shares_sold

    @property
    def consistent(self) -> bool:
        return self.net_shares == self.position_quantity


class OwnerTradingSummary(BaseModel):
    owner_id: str
    cash_balance: Optional[Decimal] = None
    transaction_count: int = 0
    holdings: List[IssuerHolding] = Field(default_factory=list)

    @property
    def total_shares_bought(self) -> int:
        return sum(h.shares_bought for h in self.holdings)

    @property
    def total_shares_sold(self) -> int:
        return sum(h.shares_sold for h in self.holdings)

    @property
    def net_shares(self) -> int:
        return self.total_shares_bought - self.total_shares_sold

    @property
    def mismatched_holdings(self) -> List[IssuerHolding]:
        return [h for h in self.holdings if not h.consistent]

    def to_dict(self) -> dict:
        return {
            "owner_id": self.owner_id,
            "cash_balance": str(self.cash_balance) if self.cash_balance is not None else None,
            "transaction_count": self.transaction_count,
            "total_shares_bought": self.total_shares_bought,
            "total_shares_sold": self.total_shares_sold,
            "net_shares": self.net_shares,
            "holdings": [
                {**h.model_dump(mode="json"), "net_shares": h.net_shares, "consistent": h.consistent}
                for h in self.holdings
            ],
            "mismatched_issuers": [h.issuer_id for h in self.mismatched_holdings],
        }
