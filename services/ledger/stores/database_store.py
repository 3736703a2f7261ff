from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, List, Optional

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.database.connection import DatabaseManager
from core.database.models import CashAccountRow, IssuerSupplyRow, PositionRow, TransactionRow
from core.logging import get_database_logger_safe, get_error_logger_safe
from core.utils.exceptions import (
    DatabaseError,
    DuplicateRecordError,
    InvariantViolation,
    RecordNotFoundError,
    SettlementEngineException,
    VersionConflictError,
)
from ..interfaces.ledger_store import LedgerStore
from ..models import CashAccount, IssuerSupply, Position, TradeSide, TransactionRecord

# PostgreSQL SQLSTATE for a row rejected by a CHECK constraint
CHECK_VIOLATION = "23514"


class DatabaseLedgerStore(LedgerStore):
    """PostgreSQL ledger store.

    Each operation runs in its own short transaction. Compare-and-swap writes
    are ``UPDATE ... WHERE version = :expected``; a statement that touches no
    row is resolved into VersionConflictError or RecordNotFoundError by
    re-reading the record.
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager
        self.logger = get_database_logger_safe("ledger_store")
        self.error_logger = get_error_logger_safe("ledger_store")

    @asynccontextmanager
    async def _session(self, operation: str, table: str) -> AsyncIterator[AsyncSession]:
        """Session scope translating driver errors into DatabaseError."""
        try:
            async with self.db_manager.get_session() as session:
                yield session
        except SettlementEngineException:
            raise
        except SQLAlchemyError as e:
            violation = self._check_violation(e, table) if isinstance(e, IntegrityError) else None
            if violation is not None:
                self.error_logger.error("Ledger row rejected by constraint",
                                        operation=operation, table=table, error=str(e.orig))
                raise violation from e
            self.error_logger.error("Ledger store operation failed",
                                    operation=operation, table=table, error=str(e))
            raise DatabaseError(f"{operation} failed: {e}", operation=operation, table=table) from e

    # --- Row conversion ---

    @staticmethod
    def _to_cash_account(row) -> CashAccount:
        return CashAccount(owner_id=row.owner_id, balance=Decimal(row.balance), version=row.version)

    @staticmethod
    def _to_issuer_supply(row) -> IssuerSupply:
        return IssuerSupply(issuer_id=row.issuer_id, total_shares=row.total_shares,
                            available_shares=row.available_shares, version=row.version)

    @staticmethod
    def _to_position(row) -> Position:
        return Position(owner_id=row.owner_id, issuer_id=row.issuer_id, quantity=row.quantity,
                        average_cost=Decimal(row.average_cost), version=row.version)

    @staticmethod
    def _to_transaction(row) -> TransactionRecord:
        return TransactionRecord(
            id=row.id,
            buyer_id=row.buyer_id,
            issuer_id=row.issuer_id,
            side=TradeSide(row.side),
            quantity=row.quantity,
            price_per_unit=Decimal(row.price_per_unit),
            total_amount=Decimal(row.total_amount),
            timestamp=row.timestamp,
        )

    @staticmethod
    def _check_violation(error: IntegrityError, table: str) -> Optional[InvariantViolation]:
        sqlstate = getattr(error.orig, "sqlstate", None) or getattr(error.orig, "pgcode", None)
        if sqlstate != CHECK_VIOLATION:
            return None
        return InvariantViolation(f"{table} row rejected by a CHECK constraint: {error.orig}",
                                  invariant=f"{table}_check", observed=str(error.orig))

    @staticmethod
    def _stale_write(record_type: str, key: str, expected: Optional[int],
                     actual: Optional[int]) -> VersionConflictError:
        return VersionConflictError(
            f"Stale {record_type} write for {key}: expected v{expected}, found v{actual}",
            record_type=record_type, record_key=key,
            expected_version=expected, actual_version=actual,
        )

    # --- Cash accounts ---

    async def read_cash_account(self, owner_id: str) -> Optional[CashAccount]:
        async with self._session("read_cash_account", "cash_accounts") as session:
            row = await session.get(CashAccountRow, owner_id)
            return self._to_cash_account(row) if row else None

    async def write_cash_account(self, owner_id: str, new_balance: Decimal,
                                 expected_version: int) -> CashAccount:
        if new_balance < 0:
            raise InvariantViolation(f"Cash account {owner_id} balance would be {new_balance}",
                                     invariant="non_negative_balance", observed=new_balance)
        async with self._session("write_cash_account", "cash_accounts") as session:
            stmt = (
                update(CashAccountRow)
                .where(CashAccountRow.owner_id == owner_id,
                       CashAccountRow.version == expected_version)
                .values(balance=new_balance, version=CashAccountRow.version + 1)
                .returning(CashAccountRow.version)
            )
            new_version = (await session.execute(stmt)).scalar_one_or_none()
            if new_version is None:
                current = await session.get(CashAccountRow, owner_id)
                if current is None:
                    raise RecordNotFoundError(f"Cash account {owner_id} not found",
                                              record_type="cash_account", record_key=owner_id)
                raise self._stale_write("cash_account", owner_id, expected_version, current.version)
            await session.commit()
            return CashAccount(owner_id=owner_id, balance=new_balance, version=new_version)

    async def create_cash_account(self, owner_id: str, balance: Decimal) -> CashAccount:
        async with self._session("create_cash_account", "cash_accounts") as session:
            try:
                await session.execute(insert(CashAccountRow).values(owner_id=owner_id, balance=balance, version=1))
                await session.commit()
            except IntegrityError as e:
                raise (self._check_violation(e, "cash_accounts")
                       or DuplicateRecordError(f"Cash account {owner_id} already exists",
                                               record_type="cash_account", record_key=owner_id)) from e
            self.logger.info("Created cash account", owner_id=owner_id, balance=str(balance))
            return CashAccount(owner_id=owner_id, balance=balance)

    # --- Issuer supply ---

    async def read_issuer_supply(self, issuer_id: str) -> Optional[IssuerSupply]:
        async with self._session("read_issuer_supply", "issuer_supply") as session:
            row = await session.get(IssuerSupplyRow, issuer_id)
            return self._to_issuer_supply(row) if row else None

    async def write_issuer_supply(self, issuer_id: str, new_available: int,
                                  expected_version: int) -> IssuerSupply:
        async with self._session("write_issuer_supply", "issuer_supply") as session:
            current = await session.get(IssuerSupplyRow, issuer_id)
            if current is None:
                raise RecordNotFoundError(f"Issuer {issuer_id} not found",
                                          record_type="issuer_supply", record_key=issuer_id)
            if not 0 <= new_available <= current.total_shares:
                raise InvariantViolation(
                    f"Issuer {issuer_id} available_shares {new_available} outside 0..{current.total_shares}",
                    invariant="supply_bounds", observed=new_available,
                )
            stmt = (
                update(IssuerSupplyRow)
                .where(IssuerSupplyRow.issuer_id == issuer_id,
                       IssuerSupplyRow.version == expected_version)
                .values(available_shares=new_available, version=IssuerSupplyRow.version + 1)
                .returning(IssuerSupplyRow.total_shares, IssuerSupplyRow.version)
            )
            updated = (await session.execute(stmt)).first()
            if updated is None:
                raise self._stale_write("issuer_supply", issuer_id, expected_version, current.version)
            await session.commit()
            return IssuerSupply(issuer_id=issuer_id, total_shares=updated.total_shares,
                                available_shares=new_available, version=updated.version)

    async def create_issuer_supply(self, issuer_id: str, total_shares: int) -> IssuerSupply:
        async with self._session("create_issuer_supply", "issuer_supply") as session:
            try:
                await session.execute(insert(IssuerSupplyRow).values(
                    issuer_id=issuer_id, total_shares=total_shares,
                    available_shares=total_shares, version=1,
                ))
                await session.commit()
            except IntegrityError as e:
                raise (self._check_violation(e, "issuer_supply")
                       or DuplicateRecordError(f"Issuer {issuer_id} already exists",
                                               record_type="issuer_supply", record_key=issuer_id)) from e
            self.logger.info("Created issuer supply", issuer_id=issuer_id, total_shares=total_shares)
            return IssuerSupply(issuer_id=issuer_id, total_shares=total_shares,
                                available_shares=total_shares)

    async def list_issuers(self) -> List[IssuerSupply]:
        async with self._session("list_issuers", "issuer_supply") as session:
            result = await session.execute(select(IssuerSupplyRow).order_by(IssuerSupplyRow.issuer_id))
            return [self._to_issuer_supply(row) for row in result.scalars().all()]

    # --- Positions ---

    async def read_position(self, owner_id: str, issuer_id: str) -> Optional[Position]:
        async with self._session("read_position", "share_positions") as session:
            row = await session.get(PositionRow, (owner_id, issuer_id))
            return self._to_position(row) if row else None

    async def upsert_position(self, owner_id: str, issuer_id: str, quantity: int,
                              average_cost: Decimal,
                              expected_version: Optional[int]) -> Position:
        record_key = f"{owner_id}/{issuer_id}"
        async with self._session("upsert_position", "share_positions") as session:
            if expected_version is None:
                try:
                    await session.execute(insert(PositionRow).values(
                        owner_id=owner_id, issuer_id=issuer_id, quantity=quantity,
                        average_cost=average_cost, version=1,
                    ))
                    await session.commit()
                except IntegrityError as e:
                    raise (self._check_violation(e, "share_positions")
                           or self._stale_write("position", record_key, None, None)) from e
                return Position(owner_id=owner_id, issuer_id=issuer_id, quantity=quantity,
                                average_cost=average_cost, version=1)

            stmt = (
                update(PositionRow)
                .where(PositionRow.owner_id == owner_id,
                       PositionRow.issuer_id == issuer_id,
                       PositionRow.version == expected_version)
                .values(quantity=quantity, average_cost=average_cost, version=PositionRow.version + 1)
                .returning(PositionRow.version)
            )
            new_version = (await session.execute(stmt)).scalar_one_or_none()
            if new_version is None:
                current = await session.get(PositionRow, (owner_id, issuer_id))
                raise self._stale_write("position", record_key, expected_version,
                                        current.version if current else None)
            await session.commit()
            return Position(owner_id=owner_id, issuer_id=issuer_id, quantity=quantity,
                            average_cost=average_cost, version=new_version)

    async def delete_position(self, owner_id: str, issuer_id: str,
                              expected_version: int) -> None:
        async with self._session("delete_position", "share_positions") as session:
            result = await session.execute(
                delete(PositionRow).where(PositionRow.owner_id == owner_id,
                                          PositionRow.issuer_id == issuer_id,
                                          PositionRow.version == expected_version)
            )
            if result.rowcount == 0:
                current = await session.get(PositionRow, (owner_id, issuer_id))
                raise self._stale_write("position", f"{owner_id}/{issuer_id}", expected_version,
                                        current.version if current else None)
            await session.commit()

    async def list_positions(self, owner_id: Optional[str] = None,
                             issuer_id: Optional[str] = None) -> List[Position]:
        async with self._session("list_positions", "share_positions") as session:
            stmt = select(PositionRow)
            if owner_id is not None:
                stmt = stmt.where(PositionRow.owner_id == owner_id)
            if issuer_id is not None:
                stmt = stmt.where(PositionRow.issuer_id == issuer_id)
            result = await session.execute(stmt.order_by(PositionRow.owner_id, PositionRow.issuer_id))
            return [self._to_position(row) for row in result.scalars().all()]

    # --- Transaction log ---

    async def append_transaction(self, record: TransactionRecord) -> str:
        async with self._session("append_transaction", "ledger_transactions") as session:
            try:
                await session.execute(insert(TransactionRow).values(
                    id=record.id,
                    buyer_id=record.buyer_id,
                    issuer_id=record.issuer_id,
                    side=record.side.value,
                    quantity=record.quantity,
                    price_per_unit=record.price_per_unit,
                    total_amount=record.total_amount,
                    timestamp=record.timestamp,
                ))
                await session.commit()
            except IntegrityError as e:
                raise (self._check_violation(e, "ledger_transactions")
                       or DuplicateRecordError(f"Transaction {record.id} already recorded",
                                               record_type="transaction", record_key=record.id)) from e
            return record.id

    async def delete_transaction(self, transaction_id: str) -> None:
        async with self._session("delete_transaction", "ledger_transactions") as session:
            result = await session.execute(delete(TransactionRow).where(TransactionRow.id == transaction_id))
            if result.rowcount == 0:
                raise RecordNotFoundError(f"Transaction {transaction_id} not found",
                                          record_type="transaction", record_key=transaction_id)
            await session.commit()

    async def list_transactions(self, issuer_id: Optional[str] = None,
                                owner_id: Optional[str] = None,
                                since: Optional[datetime] = None) -> List[TransactionRecord]:
        async with self._session("list_transactions", "ledger_transactions") as session:
            stmt = select(TransactionRow)
            if issuer_id is not None:
                stmt = stmt.where(TransactionRow.issuer_id == issuer_id)
            if owner_id is not None:
                stmt = stmt.where(TransactionRow.buyer_id == owner_id)
            if since is not None:
                stmt = stmt.where(TransactionRow.timestamp >= since)
            result = await session.execute(stmt.order_by(TransactionRow.sequence))
            return [self._to_transaction(row) for row in result.scalars().all()]
