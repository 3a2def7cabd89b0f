from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import AsyncContextManager, AsyncIterator, Dict, List, Optional, Protocol, Tuple

from services.normalize import normalize_key


@dataclass
class BankRecord:
    id: int
    name: str


@dataclass
class TransactionRecord:
    transaction_date: Optional[date] = None
    credit_amount: Optional[Decimal] = None
    debit_amount: Optional[Decimal] = None
    description: Optional[str] = None
    balance: Optional[Decimal] = None
    page_number: Optional[str] = None
    entity_name: Optional[str] = None
    sequence: int = 0
    category: Optional[str] = None
    classification_confidence: Optional[float] = None
    id: Optional[int] = None

    def dedupe_key(self) -> Tuple[Optional[date], Optional[Decimal], Optional[Decimal], str]:
        return (self.transaction_date, self.credit_amount, self.debit_amount, normalize_key(self.description))


@dataclass
class StatementRecord:
    bank_name: str
    account_number: str
    bank_id: Optional[int] = None
    account_type: Optional[str] = None
    account_currency: Optional[str] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    starting_balance: Optional[Decimal] = None
    ending_balance: Optional[Decimal] = None
    file_name: Optional[str] = None
    file_url: Optional[str] = None
    raw_text: Optional[str] = None
    submitted_by: Optional[str] = None
    locked: bool = False
    validated: bool = False
    validation_status: str = "pending"
    validation_notes: Optional[str] = None
    validated_at: Optional[datetime] = None
    tenor: Optional[str] = None
    available_limit: Optional[Decimal] = None
    interest_rate: Optional[str] = None
    id: Optional[int] = None


@dataclass
class BankView:
    bank: BankRecord
    statements: List[StatementRecord] = field(default_factory=list)


class StatementRepository(Protocol):
    """Record-store operations available inside one unit of work."""

    async def find_bank_by_name(self, name: str) -> Optional[BankRecord]: ...

    async def create_bank(self, name: str) -> BankRecord: ...

    async def get_bank(self, bank_id: int) -> Optional[BankView]: ...

    async def find_statements_by_bank_and_account(
        self, bank_name: str, account_number: str
    ) -> List[StatementRecord]: ...

    async def get_statement(self, statement_id: int) -> Optional[StatementRecord]: ...

    async def create_statement(
        self, statement: StatementRecord, transactions: List[TransactionRecord]
    ) -> StatementRecord: ...

    async def update_statement(self, statement_id: int, **fields) -> None: ...

    async def list_transactions(self, statement_id: int) -> List[TransactionRecord]: ...

    async def append_transactions(self, statement_id: int, transactions: List[TransactionRecord]) -> int: ...

    async def count_transactions(self, statement_id: int) -> int: ...

    async def update_validation(
        self,
        statement_id: int,
        validated: bool,
        status: str,
        notes: str,
        validated_at: Optional[datetime],
    ) -> None: ...

    async def update_transaction_categories(
        self, updates: List[Tuple[int, str, float]]
    ) -> None: ...


class StatementStore(Protocol):
    def unit_of_work(self, lock_key: Optional[str] = None) -> AsyncContextManager[StatementRepository]:
        """
        Open an atomic read-modify-write scope. Work under the same lock_key is
        serialized; everything commits on clean exit and rolls back on error.
        """
        ...


def account_lock_key(bank_name: str, account_number: str) -> str:
    return f"account:{normalize_key(bank_name)}|{normalize_key(account_number)}"


def statement_lock_key(statement_id: int) -> str:
    return f"statement:{statement_id}"


class KeyedLocks:
    """One asyncio.Lock per key, dropped again once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: Optional[str]) -> AsyncIterator[None]:
        if key is None:
            yield
            return
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]
