import os
import sys

# Keep tests off real services
os.environ.setdefault("ENV", "test")
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("CLASSIFICATION_BACKEND", "inline")

# Ensure project root is on sys.path so `services` and `schemas` resolve
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if project_root not in sys.path:
    sys.path.insert(0, project_root)


# --- Test utilities: fake structuring model and in-memory record store ---
import asyncio
import copy
import json
import re
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pytest
import pytest_asyncio

from services.debug_sink import MemoryDebugSink
from services.retry import RetryPolicy
from services.store import BankRecord, BankView, KeyedLocks, StatementRecord, TransactionRecord

_CHUNK_NUMBER = re.compile(r"Here is chunk (\d+) of the bank statement")


def chunk_number_of(prompt: str) -> int:
    match = _CHUNK_NUMBER.search(prompt)
    return int(match.group(1)) if match else 0


def statement_json(
    account_number: str = "123",
    bank_name: str = "Bank X",
    start: str = "2024-01-01",
    end: str = "2024-01-31",
    starting_balance: str = "1000.00",
    ending_balance: str = "1400.00",
    transactions: Optional[List[Dict[str, Any]]] = None,
    **extra: Any,
) -> Dict[str, Any]:
    return {
        "bank_name": bank_name,
        "account_number": account_number,
        "statement_period": {"start_date": start, "end_date": end},
        "account_type": extra.pop("account_type", "Current Account"),
        "account_currency": extra.pop("account_currency", "EGP"),
        "starting_balance": starting_balance,
        "ending_balance": ending_balance,
        "transactions": transactions if transactions is not None else [],
        **extra,
    }


def txn(date: str, credit: str = "", debit: str = "", description: str = "", balance: str = "") -> Dict[str, Any]:
    return {
        "date": date,
        "credit_amount": credit,
        "debit_amount": debit,
        "description": description,
        "balance": balance,
        "page_number": "1",
        "entity_name": "",
    }


def model_response(*statements: Dict[str, Any]) -> str:
    return json.dumps({"account_statements": list(statements)})


Outcome = Union[str, BaseException]


class FakeStructuringClient:
    """
    Stands in for the model API. Either replays `script` in call order or asks
    `responder(model_id, prompt)` for each reply; exceptions are raised.
    """

    def __init__(
        self,
        script: Optional[List[Outcome]] = None,
        responder: Optional[Callable[[str, str], Outcome]] = None,
    ) -> None:
        self.script = list(script or [])
        self.responder = responder
        self.calls: List[Tuple[str, str]] = []

    async def generate(self, model_id: str, prompt: str, options: Optional[Dict[str, Any]] = None) -> str:
        self.calls.append((model_id, prompt))
        await asyncio.sleep(0)
        if self.responder is not None:
            outcome = self.responder(model_id, prompt)
        elif self.script:
            outcome = self.script.pop(0)
        else:
            raise AssertionError("FakeStructuringClient ran out of scripted responses")
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class InMemoryStatementRepository:
    def __init__(self, state: Dict[str, Any]) -> None:
        self._s = state

    def _next_id(self, kind: str) -> int:
        self._s["ids"][kind] += 1
        return self._s["ids"][kind]

    async def find_bank_by_name(self, name: str) -> Optional[BankRecord]:
        await asyncio.sleep(0)
        for bank in self._s["banks"].values():
            if bank.name.lower() == name.strip().lower():
                return replace(bank)
        return None

    async def create_bank(self, name: str) -> BankRecord:
        bank = BankRecord(id=self._next_id("bank"), name=name.strip())
        self._s["banks"][bank.id] = bank
        return replace(bank)

    async def get_bank(self, bank_id: int) -> Optional[BankView]:
        bank = self._s["banks"].get(bank_id)
        if bank is None:
            return None
        statements = [replace(s) for s in self._s["statements"].values() if s.bank_id == bank_id]
        return BankView(bank=replace(bank), statements=statements)

    async def find_statements_by_bank_and_account(self, bank_name: str, account_number: str) -> List[StatementRecord]:
        # Yield so unsynchronized callers would interleave here
        await asyncio.sleep(0)
        return [
            replace(s)
            for s in self._s["statements"].values()
            if s.bank_name.lower() == bank_name.strip().lower() and s.account_number == account_number.strip()
        ]

    async def get_statement(self, statement_id: int) -> Optional[StatementRecord]:
        record = self._s["statements"].get(statement_id)
        return replace(record) if record else None

    async def create_statement(self, statement: StatementRecord, transactions: List[TransactionRecord]) -> StatementRecord:
        await asyncio.sleep(0)
        record = replace(statement, id=self._next_id("statement"))
        self._s["statements"][record.id] = record
        self._s["transactions"][record.id] = []
        await self.append_transactions(record.id, transactions)
        return replace(record)

    async def update_statement(self, statement_id: int, **fields: Any) -> None:
        record = self._s["statements"][statement_id]
        for name, value in fields.items():
            if not hasattr(record, name):
                raise AttributeError(name)
            setattr(record, name, value)

    async def list_transactions(self, statement_id: int) -> List[TransactionRecord]:
        rows = self._s["transactions"].get(statement_id, [])
        return [replace(t) for t in sorted(rows, key=lambda t: (t.sequence, t.id))]

    async def append_transactions(self, statement_id: int, transactions: List[TransactionRecord]) -> int:
        for item in transactions:
            self._s["transactions"][statement_id].append(replace(item, id=self._next_id("transaction")))
        return len(transactions)

    async def count_transactions(self, statement_id: int) -> int:
        return len(self._s["transactions"].get(statement_id, []))

    async def update_validation(self, statement_id, validated, status, notes, validated_at) -> None:
        await self.update_statement(
            statement_id,
            validated=validated,
            validation_status=status,
            validation_notes=notes,
            validated_at=validated_at,
        )

    async def update_transaction_categories(self, updates: List[Tuple[int, str, float]]) -> None:
        by_id = {t.id: t for rows in self._s["transactions"].values() for t in rows}
        for txn_id, category, confidence in updates:
            by_id[txn_id].category = category
            by_id[txn_id].classification_confidence = confidence


class InMemoryStatementStore:
    """Record store with the same locking and rollback behaviour as the SQL one."""

    def __init__(self) -> None:
        self.state: Dict[str, Any] = {
            "ids": {"bank": 0, "statement": 0, "transaction": 0},
            "banks": {},
            "statements": {},
            "transactions": {},
        }
        self._locks = KeyedLocks()
        self.lock_keys: List[Optional[str]] = []

    @asynccontextmanager
    async def unit_of_work(self, lock_key: Optional[str] = None):
        async with self._locks.hold(lock_key):
            self.lock_keys.append(lock_key)
            snapshot = copy.deepcopy(self.state)
            try:
                yield InMemoryStatementRepository(self.state)
            except BaseException:
                self.state.clear()
                self.state.update(snapshot)
                raise

    # Inspection helpers for assertions
    @property
    def statements(self) -> List[StatementRecord]:
        return list(self.state["statements"].values())

    @property
    def banks(self) -> List[BankRecord]:
        return list(self.state["banks"].values())

    def transactions_of(self, statement_id: int) -> List[TransactionRecord]:
        return sorted(self.state["transactions"].get(statement_id, []), key=lambda t: t.sequence)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def retry_policy(sleeper: RecordingSleep) -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay=1.0, sleep=sleeper)


@pytest.fixture
def debug_sink() -> MemoryDebugSink:
    return MemoryDebugSink()


@pytest_asyncio.fixture
async def store():
    # Provide a fresh in-memory store per test function
    yield InMemoryStatementStore()
