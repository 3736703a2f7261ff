from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from ..models import CashAccount, IssuerSupply, Position, TransactionRecord


class LedgerStore(ABC):
    """Abstract contract for durable ledger storage.

    Every mutable record carries a version stamp. Writes take the version the
    caller read and raise ``VersionConflictError`` when it is stale; the new
    record (with its bumped version) is returned on success. Driver failures
    surface as ``StorageFailure`` subclasses.
    """

    # --- Cash accounts ---

    @abstractmethod
    async def read_cash_account(self, owner_id: str) -> Optional[CashAccount]:
        """Return the owner's cash account, or None if it does not exist."""
        pass

    @abstractmethod
    async def write_cash_account(self, owner_id: str, new_balance: Decimal,
                                 expected_version: int) -> CashAccount:
        """Compare-and-swap the balance."""
        pass

    @abstractmethod
    async def create_cash_account(self, owner_id: str, balance: Decimal) -> CashAccount:
        """Provision a cash account; raises DuplicateRecordError if present."""
        pass

    # --- Issuer supply ---

    @abstractmethod
    async def read_issuer_supply(self, issuer_id: str) -> Optional[IssuerSupply]:
        pass

    @abstractmethod
    async def write_issuer_supply(self, issuer_id: str, new_available: int,
                                  expected_version: int) -> IssuerSupply:
        """Compare-and-swap available_shares. total_shares is never changed."""
        pass

    @abstractmethod
    async def create_issuer_supply(self, issuer_id: str, total_shares: int) -> IssuerSupply:
        """Provision an issuer with all shares available."""
        pass

    @abstractmethod
    async def list_issuers(self) -> List[IssuerSupply]:
        pass

    # --- Positions ---

    @abstractmethod
    async def read_position(self, owner_id: str, issuer_id: str) -> Optional[Position]:
        pass

    @abstractmethod
    async def upsert_position(self, owner_id: str, issuer_id: str, quantity: int,
                              average_cost: Decimal,
                              expected_version: Optional[int]) -> Position:
        """Insert when expected_version is None (must not exist), else compare-and-swap."""
        pass

    @abstractmethod
    async def delete_position(self, owner_id: str, issuer_id: str,
                              expected_version: int) -> None:
        pass

    @abstractmethod
    async def list_positions(self, owner_id: Optional[str] = None,
                             issuer_id: Optional[str] = None) -> List[Position]:
        pass

    # --- Transaction log ---

    @abstractmethod
    async def append_transaction(self, record: TransactionRecord) -> str:
        """Append a log entry and return its id."""
        pass

    @abstractmethod
    async def delete_transaction(self, transaction_id: str) -> None:
        """Remove a log entry. Compensation of an uncommitted settlement only."""
        pass

    @abstractmethod
    async def list_transactions(self, issuer_id: Optional[str] = None,
                                owner_id: Optional[str] = None,
                                since: Optional[datetime] = None) -> List[TransactionRecord]:
        """Log entries in append order, filtered by issuer and/or owner."""
        pass
