import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from core.logging import get_database_logger_safe
from core.utils.exceptions import (
    DuplicateRecordError,
    InvariantViolation,
    RecordNotFoundError,
    VersionConflictError,
)
from ..interfaces.ledger_store import LedgerStore
from ..models import CashAccount, IssuerSupply, Position, TransactionRecord


class InMemoryLedgerStore(LedgerStore):
    """Dict-backed ledger store with version-checked writes.

    Intended for tests and single-process deployments; state is lost on exit.
    """

    def __init__(self):
        self._cash: Dict[str, CashAccount] = {}
        self._supply: Dict[str, IssuerSupply] = {}
        self._positions: Dict[Tuple[str, str], Position] = {}
        # Insertion order is the log order
        self._transactions: Dict[str, TransactionRecord] = {}
        self._lock = asyncio.Lock()
        self.logger = get_database_logger_safe("memory_ledger_store")

    @staticmethod
    def _check_version(record_type: str, key: str, current_version: int,
                       expected_version: int) -> None:
        if current_version != expected_version:
            raise VersionConflictError(
                f"Stale {record_type} write for {key}: expected v{expected_version}, found v{current_version}",
                record_type=record_type,
                record_key=key,
                expected_version=expected_version,
                actual_version=current_version,
            )

    # --- Cash accounts ---

    async def read_cash_account(self, owner_id: str) -> Optional[CashAccount]:
        return self._cash.get(owner_id)

    async def write_cash_account(self, owner_id: str, new_balance: Decimal,
                                 expected_version: int) -> CashAccount:
        async with self._lock:
            current = self._cash.get(owner_id)
            if current is None:
                raise RecordNotFoundError(f"Cash account {owner_id} not found",
                                          record_type="cash_account", record_key=owner_id)
            self._check_version("cash_account", owner_id, current.version, expected_version)
            if new_balance < 0:
                raise InvariantViolation(f"Cash account {owner_id} balance would be {new_balance}",
                                         invariant="non_negative_balance", observed=new_balance)
            updated = CashAccount(owner_id=owner_id, balance=new_balance,
                                  version=current.version + 1)
            self._cash[owner_id] = updated
            return updated

    async def create_cash_account(self, owner_id: str, balance: Decimal) -> CashAccount:
        async with self._lock:
            if owner_id in self._cash:
                raise DuplicateRecordError(f"Cash account {owner_id} already exists",
                                           record_type="cash_account", record_key=owner_id)
            account = CashAccount(owner_id=owner_id, balance=balance)
            self._cash[owner_id] = account
            self.logger.debug("Created cash account", owner_id=owner_id, balance=str(balance))
            return account

    # --- Issuer supply ---

    async def read_issuer_supply(self, issuer_id: str) -> Optional[IssuerSupply]:
        return self._supply.get(issuer_id)

    async def write_issuer_supply(self, issuer_id: str, new_available: int,
                                  expected_version: int) -> IssuerSupply:
        async with self._lock:
            current = self._supply.get(issuer_id)
            if current is None:
                raise RecordNotFoundError(f"Issuer {issuer_id} not found",
                                          record_type="issuer_supply", record_key=issuer_id)
            self._check_version("issuer_supply", issuer_id, current.version, expected_version)
            if not 0 <= new_available <= current.total_shares:
                raise InvariantViolation(
                    f"Issuer {issuer_id} available_shares {new_available} outside 0..{current.total_shares}",
                    invariant="supply_bounds", observed=new_available,
                )
            updated = IssuerSupply(
                issuer_id=issuer_id,
                total_shares=current.total_shares,
                available_shares=new_available,
                version=current.version + 1,
            )
            self._supply[issuer_id] = updated
            return updated

    async def create_issuer_supply(self, issuer_id: str, total_shares: int) -> IssuerSupply:
        async with self._lock:
            if issuer_id in self._supply:
                raise DuplicateRecordError(f"Issuer {issuer_id} already exists",
                                           record_type="issuer_supply", record_key=issuer_id)
            supply = IssuerSupply(issuer_id=issuer_id, total_shares=total_shares,
                                  available_shares=total_shares)
            self._supply[issuer_id] = supply
            self.logger.debug("Created issuer supply", issuer_id=issuer_id, total_shares=total_shares)
            return supply

    async def list_issuers(self) -> List[IssuerSupply]:
        return list(self._supply.values())

    # --- Positions ---

    async def read_position(self, owner_id: str, issuer_id: str) -> Optional[Position]:
        return self._positions.get((owner_id, issuer_id))

    async def upsert_position(self, owner_id: str, issuer_id: str, quantity: int,
                              average_cost: Decimal,
                              expected_version: Optional[int]) -> Position:
        key = (owner_id, issuer_id)
        record_key = f"{owner_id}/{issuer_id}"
        async with self._lock:
            current = self._positions.get(key)
            if expected_version is None:
                if current is not None:
                    raise VersionConflictError(
                        f"Position {record_key} was created concurrently",
                        record_type="position", record_key=record_key,
                        expected_version=None, actual_version=current.version,
                    )
                version = 1
            else:
                if current is None:
                    raise VersionConflictError(
                        f"Position {record_key} was removed concurrently",
                        record_type="position", record_key=record_key,
                        expected_version=expected_version, actual_version=None,
                    )
                self._check_version("position", record_key, current.version, expected_version)
                version = current.version + 1

            position = Position(owner_id=owner_id, issuer_id=issuer_id, quantity=quantity,
                                average_cost=average_cost, version=version)
            self._positions[key] = position
            return position

    async def delete_position(self, owner_id: str, issuer_id: str,
                              expected_version: int) -> None:
        key = (owner_id, issuer_id)
        record_key = f"{owner_id}/{issuer_id}"
        async with self._lock:
            current = self._positions.get(key)
            if current is None:
                raise VersionConflictError(
                    f"Position {record_key} was removed concurrently",
                    record_type="position", record_key=record_key,
                    expected_version=expected_version, actual_version=None,
                )
            self._check_version("position", record_key, current.version, expected_version)
            del self._positions[key]

    async def list_positions(self, owner_id: Optional[str] = None,
                             issuer_id: Optional[str] = None) -> List[Position]:
        return [
            p for p in self._positions.values()
            if (owner_id is None or p.owner_id == owner_id)
            and (issuer_id is None or p.issuer_id == issuer_id)
        ]

    # --- Transaction log ---

    async def append_transaction(self, record: TransactionRecord) -> str:
        async with self._lock:
            if record.id in self._transactions:
                raise DuplicateRecordError(f"Transaction {record.id} already recorded",
                                           record_type="transaction", record_key=record.id)
            self._transactions[record.id] = record
            return record.id

    async def delete_transaction(self, transaction_id: str) -> None:
        async with self._lock:
            if self._transactions.pop(transaction_id, None) is None:
                raise RecordNotFoundError(f"Transaction {transaction_id} not found",
                                          record_type="transaction", record_key=transaction_id)

    async def list_transactions(self, issuer_id: Optional[str] = None,
                                owner_id: Optional[str] = None,
                                since: Optional[datetime] = None) -> List[TransactionRecord]:
        return [
            t for t in self._transactions.values()
            if (issuer_id is None or t.issuer_id == issuer_id)
            and (owner_id is None or t.buyer_id == owner_id)
            and (since is None or t.timestamp >= since)
        ]
