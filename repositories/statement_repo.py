from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, List, Optional, Tuple

from sqlalchemy import func, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.models import Bank, BankStatement, Transaction
from services.store import BankRecord, BankView, KeyedLocks, StatementRecord, TransactionRecord

logger = logging.getLogger(__name__)

# StatementRecord field -> BankStatement column, where the names differ
_STATEMENT_COLUMNS = {
    "period_start": "statement_period_start",
    "period_end": "statement_period_end",
}


def _bank_record(bank: Bank) -> BankRecord:
    return BankRecord(id=bank.id, name=bank.name)


def _statement_record(row: BankStatement) -> StatementRecord:
    return StatementRecord(
        id=row.id,
        bank_id=row.bank_id,
        bank_name=row.bank_name,
        account_number=row.account_number,
        account_type=row.account_type,
        account_currency=row.account_currency,
        period_start=row.statement_period_start,
        period_end=row.statement_period_end,
        starting_balance=row.starting_balance,
        ending_balance=row.ending_balance,
        file_name=row.file_name,
        file_url=row.file_url,
        raw_text=row.raw_text,
        submitted_by=row.submitted_by,
        locked=row.locked,
        validated=row.validated,
        validation_status=row.validation_status,
        validation_notes=row.validation_notes,
        validated_at=row.validated_at,
        tenor=row.tenor,
        available_limit=row.available_limit,
        interest_rate=row.interest_rate,
    )


def _transaction_record(row: Transaction) -> TransactionRecord:
    return TransactionRecord(
        id=row.id,
        sequence=row.sequence,
        transaction_date=row.transaction_date,
        credit_amount=row.credit_amount,
        debit_amount=row.debit_amount,
        description=row.description,
        balance=row.balance,
        page_number=row.page_number,
        entity_name=row.entity_name,
        category=row.category,
        classification_confidence=row.classification_confidence,
    )


def _transaction_row(statement_id: int, txn: TransactionRecord) -> Transaction:
    return Transaction(
        bank_statement_id=statement_id,
        sequence=txn.sequence,
        transaction_date=txn.transaction_date,
        credit_amount=txn.credit_amount,
        debit_amount=txn.debit_amount,
        description=txn.description,
        balance=txn.balance,
        page_number=txn.page_number,
        entity_name=txn.entity_name,
    )


class StatementRepositoryPg:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    # Banks
    async def find_bank_by_name(self, name: str) -> Optional[BankRecord]:
        res = await self._session.execute(select(Bank).where(func.lower(Bank.name) == name.strip().lower()))
        bank = res.scalars().first()
        return _bank_record(bank) if bank else None

    async def create_bank(self, name: str) -> BankRecord:
        bank = Bank(name=name.strip())
        self._session.add(bank)
        await self._session.flush()
        logger.info(f"Created bank {bank.id}: {bank.name}")
        return _bank_record(bank)

    async def get_bank(self, bank_id: int) -> Optional[BankView]:
        bank = await self._session.get(Bank, bank_id)
        if bank is None:
            return None
        res = await self._session.execute(
            select(BankStatement)
            .where(BankStatement.bank_id == bank_id)
            .order_by(BankStatement.statement_period_end, BankStatement.id)
        )
        return BankView(bank=_bank_record(bank), statements=[_statement_record(r) for r in res.scalars().all()])

    # Statements
    async def find_statements_by_bank_and_account(
        self, bank_name: str, account_number: str
    ) -> List[StatementRecord]:
        res = await self._session.execute(
            select(BankStatement)
            .where(
                func.lower(BankStatement.bank_name) == bank_name.strip().lower(),
                BankStatement.account_number == account_number.strip(),
            )
            .order_by(BankStatement.id)
        )
        return [_statement_record(r) for r in res.scalars().all()]

    async def get_statement(self, statement_id: int) -> Optional[StatementRecord]:
        row = await self._session.get(BankStatement, statement_id)
        return _statement_record(row) if row else None

    async def create_statement(
        self, statement: StatementRecord, transactions: List[TransactionRecord]
    ) -> StatementRecord:
        row = BankStatement(
            bank_id=statement.bank_id,
            bank_name=statement.bank_name,
            account_number=statement.account_number,
            account_type=statement.account_type,
            account_currency=statement.account_currency,
            statement_period_start=statement.period_start,
            statement_period_end=statement.period_end,
            starting_balance=statement.starting_balance,
            ending_balance=statement.ending_balance,
            file_name=statement.file_name,
            file_url=statement.file_url,
            raw_text=statement.raw_text,
            submitted_by=statement.submitted_by,
            locked=False,
            validated=False,
            validation_status="pending",
        )
        self._session.add(row)
        await self._session.flush()
        self._session.add_all([_transaction_row(row.id, txn) for txn in transactions])
        await self._session.flush()
        logger.info(f"Created bank statement {row.id} with {len(transactions)} transactions")
        return _statement_record(row)

    async def update_statement(self, statement_id: int, **fields) -> None:
        if not fields:
            return
        values = {_STATEMENT_COLUMNS.get(name, name): value for name, value in fields.items()}
        await self._session.execute(update(BankStatement).where(BankStatement.id == statement_id).values(**values))

    # Transactions
    async def list_transactions(self, statement_id: int) -> List[TransactionRecord]:
        res = await self._session.execute(
            select(Transaction)
            .where(Transaction.bank_statement_id == statement_id)
            .order_by(Transaction.sequence, Transaction.id)
        )
        return [_transaction_record(r) for r in res.scalars().all()]

    async def append_transactions(self, statement_id: int, transactions: List[TransactionRecord]) -> int:
        self._session.add_all([_transaction_row(statement_id, txn) for txn in transactions])
        await self._session.flush()
        return len(transactions)

    async def count_transactions(self, statement_id: int) -> int:
        res = await self._session.execute(
            select(func.count()).select_from(Transaction).where(Transaction.bank_statement_id == statement_id)
        )
        return int(res.scalar_one())

    async def update_validation(
        self,
        statement_id: int,
        validated: bool,
        status: str,
        notes: str,
        validated_at: Optional[datetime],
    ) -> None:
        await self.update_statement(
            statement_id,
            validated=validated,
            validation_status=status,
            validation_notes=notes,
            validated_at=validated_at,
        )

    async def update_transaction_categories(self, updates: List[Tuple[int, str, float]]) -> None:
        for txn_id, category, confidence in updates:
            await self._session.execute(
                update(Transaction)
                .where(Transaction.id == txn_id)
                .values(category=category, classification_confidence=confidence)
            )


class SqlStatementStore:
    """
    Units of work over SQLAlchemy sessions. Work sharing a lock key is
    serialized in-process and, on PostgreSQL, across processes with a
    transaction-scoped advisory lock.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._locks = KeyedLocks()

    @asynccontextmanager
    async def unit_of_work(self, lock_key: Optional[str] = None) -> AsyncIterator[StatementRepositoryPg]:
        async with self._locks.hold(lock_key):
            async with self._session_factory() as session:
                async with session.begin():
                    if lock_key is not None and session.get_bind().dialect.name == "postgresql":
                        await session.execute(
                            text("SELECT pg_advisory_xact_lock(hashtext(:key))"), {"key": lock_key}
                        )
                    yield StatementRepositoryPg(session)
