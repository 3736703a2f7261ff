# Database models for ledger state
from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.sql import func

from .connection import Base


class CashAccountRow(Base):
    """Cash balance per user. Never deleted."""
    __tablename__ = "cash_accounts"

    owner_id = Column(String, primary_key=True)
    balance = Column(Numeric(14, 2), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_cash_accounts_balance_non_negative"),
    )


class IssuerSupplyRow(Base):
    """Share supply counters per issuer"""
    __tablename__ = "issuer_supply"

    issuer_id = Column(String, primary_key=True)
    total_shares = Column(Integer, nullable=False)
    available_shares = Column(Integer, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("total_shares > 0", name="ck_issuer_supply_total_positive"),
        CheckConstraint(
            "available_shares >= 0 AND available_shares <= total_shares",
            name="ck_issuer_supply_available_bounds",
        ),
    )


class PositionRow(Base):
    """(owner, issuer) holding; removed when quantity reaches zero"""
    __tablename__ = "share_positions"

    owner_id = Column(String, primary_key=True)
    issuer_id = Column(String, primary_key=True)
    quantity = Column(Integer, nullable=False)
    average_cost = Column(Numeric(20, 8), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_share_positions_quantity_positive"),
        CheckConstraint("average_cost >= 0", name="ck_share_positions_cost_non_negative"),
        Index("idx_share_positions_issuer", "issuer_id"),
    )


class TransactionRow(Base):
    """Append-only settlement log"""
    __tablename__ = "ledger_transactions"

    # Monotonic sequence gives a stable log order for equal timestamps
    sequence = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, unique=True, nullable=False, index=True)
    buyer_id = Column(String, nullable=False)
    issuer_id = Column(String, nullable=False)
    side = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    price_per_unit = Column(Numeric(20, 8), nullable=False)
    total_amount = Column(Numeric(14, 2), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("side IN ('buy', 'sell')", name="ck_ledger_transactions_side"),
        CheckConstraint("quantity > 0", name="ck_ledger_transactions_quantity_positive"),
        CheckConstraint("price_per_unit > 0", name="ck_ledger_transactions_price_positive"),
        Index("idx_ledger_transactions_issuer_time", "issuer_id", "timestamp"),
        Index("idx_ledger_transactions_buyer_time", "buyer_id", "timestamp"),
    )
