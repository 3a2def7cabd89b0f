from __future__ import annotations

import logging
from collections import Counter
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from schemas.extraction import CanonicalStatement, CanonicalTransaction
from schemas.processing import ProcessingAction, ProcessingResult, StatementOutcome
from services.banks import resolve_display_name
from services.errors import StatementLocked, StatementNotFound
from services.merge import UNKNOWN_BANK
from services.normalize import parse_date, to_decimal
from services.store import (
    StatementRecord,
    StatementRepository,
    StatementStore,
    TransactionRecord,
    account_lock_key,
    statement_lock_key,
)

logger = logging.getLogger(__name__)

IDENTICAL = "identical"
OVERLAP = "overlap"
ADJACENT = "adjacent"
DISJOINT = "disjoint"

# Periods separated by at most this many days are treated as one continuous run
ADJACENT_GAP_DAYS = 1


def period_relation(
    a_start: Optional[date], a_end: Optional[date], b_start: Optional[date], b_end: Optional[date]
) -> str:
    if a_start == b_start and a_end == b_end:
        return IDENTICAL
    if None in (a_start, a_end, b_start, b_end):
        # An unknown bound cannot prove the periods apart
        return OVERLAP
    if b_start <= a_end and a_start <= b_end:  # type: ignore[operator]
        return OVERLAP
    gap = max((b_start - a_end).days, (a_start - b_end).days)  # type: ignore[operator]
    return ADJACENT if gap <= ADJACENT_GAP_DAYS else DISJOINT


def _min_date(a: Optional[date], b: Optional[date]) -> Optional[date]:
    return min(d for d in (a, b) if d is not None) if (a or b) else None


def _max_date(a: Optional[date], b: Optional[date]) -> Optional[date]:
    return max(d for d in (a, b) if d is not None) if (a or b) else None


def to_transaction_records(transactions: Iterable[CanonicalTransaction], first_sequence: int = 0) -> List[TransactionRecord]:
    return [
        TransactionRecord(
            transaction_date=parse_date(txn.date),
            credit_amount=to_decimal(txn.credit_amount),
            debit_amount=to_decimal(txn.debit_amount),
            description=txn.description,
            balance=to_decimal(txn.balance),
            page_number=txn.page_number,
            entity_name=txn.entity_name,
            sequence=first_sequence + offset,
        )
        for offset, txn in enumerate(transactions)
    ]


def to_statement_record(
    statement: CanonicalStatement,
    bank_name: str,
    submitted_by: Optional[str],
    file_name: Optional[str],
    file_url: Optional[str],
    raw_text: Optional[str],
) -> StatementRecord:
    return StatementRecord(
        bank_name=bank_name,
        account_number=statement.account_number.strip(),
        account_type=statement.account_type,
        account_currency=statement.account_currency,
        period_start=parse_date(statement.period_start),
        period_end=parse_date(statement.period_end),
        starting_balance=to_decimal(statement.starting_balance),
        ending_balance=to_decimal(statement.ending_balance),
        file_name=file_name,
        file_url=file_url,
        raw_text=raw_text,
        submitted_by=submitted_by,
    )


def is_duplicate(stored: StatementRecord, incoming: StatementRecord) -> bool:
    return (
        period_relation(stored.period_start, stored.period_end, incoming.period_start, incoming.period_end)
        == IDENTICAL
        and stored.starting_balance == incoming.starting_balance
        and stored.ending_balance == incoming.ending_balance
    )


def _pick_target(
    existing: List[StatementRecord], incoming: StatementRecord
) -> Tuple[Optional[StatementRecord], str]:
    """Prefer a statement whose period overlaps, then one adjacent to it."""
    by_relation = {}
    for record in existing:
        relation = period_relation(record.period_start, record.period_end, incoming.period_start, incoming.period_end)
        by_relation.setdefault(relation, record)
    for relation in (IDENTICAL, OVERLAP, ADJACENT):
        if relation in by_relation:
            return by_relation[relation], relation
    return None, DISJOINT


class StatementPersister:
    """
    Decides, per merged statement, whether to create, append, merge or skip.
    The whole decision runs in one unit of work locked on bank + account, so
    concurrent uploads of the same statement cannot both create it.
    """

    def __init__(self, store: StatementStore) -> None:
        self.store = store

    async def persist(
        self,
        statement: CanonicalStatement,
        submitted_by: Optional[str],
        file_name: Optional[str] = None,
        file_url: Optional[str] = None,
        raw_text: Optional[str] = None,
    ) -> ProcessingResult:
        account_number = (statement.account_number or "").strip()
        if not account_number:
            raise ValueError("Statement has no account number")
        bank_name = (statement.bank_name or "").strip() or file_name or UNKNOWN_BANK
        incoming = to_statement_record(statement, bank_name, submitted_by, file_name, file_url, raw_text)

        async with self.store.unit_of_work(account_lock_key(bank_name, account_number)) as repo:
            existing = await repo.find_statements_by_bank_and_account(bank_name, account_number)

            if not existing:
                bank = await repo.find_bank_by_name(bank_name) or await repo.create_bank(bank_name)
                incoming.bank_id = bank.id
                incoming.bank_name = bank.name
                transactions = to_transaction_records(statement.transactions)
                created = await repo.create_statement(incoming, transactions)
                return ProcessingResult(
                    action=ProcessingAction.CREATE_NEW,
                    bank_statement_id=created.id,
                    transaction_count=len(transactions),
                    message=f"Created new statement for {bank.name} / {account_number}",
                )

            for record in existing:
                if is_duplicate(record, incoming):
                    count = await repo.count_transactions(record.id)
                    logger.info(f"Skipping duplicate upload of statement {record.id} ({bank_name} / {account_number})")
                    return ProcessingResult(
                        action=ProcessingAction.SKIP_DUPLICATE,
                        bank_statement_id=record.id,
                        transaction_count=count,
                        message=(
                            f"Statement for {bank_name} / {account_number} covering "
                            f"{incoming.period_start} to {incoming.period_end} already exists"
                        ),
                    )

            target, relation = _pick_target(existing, incoming)
            if target is None:
                incoming.bank_id = existing[0].bank_id
                transactions = to_transaction_records(statement.transactions)
                created = await repo.create_statement(incoming, transactions)
                return ProcessingResult(
                    action=ProcessingAction.ADD_TO_EXISTING_BANK,
                    bank_statement_id=created.id,
                    transaction_count=len(transactions),
                    message=(
                        f"Created statement for new period {incoming.period_start} to {incoming.period_end} "
                        f"under existing bank {bank_name}"
                    ),
                )

            added = await self._append(repo, target, incoming, statement.transactions)
            if added is None:
                count = await repo.count_transactions(target.id)
                logger.info(f"Upload for {bank_name} / {account_number} is already contained in statement {target.id}")
                return ProcessingResult(
                    action=ProcessingAction.SKIP_DUPLICATE,
                    bank_statement_id=target.id,
                    transaction_count=count,
                    message=f"Statement {target.id} already contains every transaction of this upload",
                )
            action = (
                ProcessingAction.MERGE_DIFFERENT_PERIOD
                if relation == ADJACENT
                else ProcessingAction.ADD_TO_EXISTING_BANK
            )
            return ProcessingResult(
                action=action,
                bank_statement_id=target.id,
                transaction_count=added,
                message=f"Added {added} new transactions to statement {target.id} ({relation} period)",
            )

    async def _append(
        self,
        repo: StatementRepository,
        target: StatementRecord,
        incoming: StatementRecord,
        transactions: List[CanonicalTransaction],
    ) -> Optional[int]:
        """
        Appends the transactions not yet stored and widens the period. Returns
        the number of rows added, or None when the upload changes nothing.
        """
        stored = await repo.list_transactions(target.id)
        # Multiset so genuinely repeated rows (two equal fees on one day) survive
        seen = Counter(txn.dedupe_key() for txn in stored)
        next_sequence = max((txn.sequence for txn in stored), default=-1) + 1
        fresh: List[TransactionRecord] = []
        for txn in to_transaction_records(transactions):
            key = txn.dedupe_key()
            if seen[key] > 0:
                seen[key] -= 1
                continue
            txn.sequence = next_sequence + len(fresh)
            fresh.append(txn)

        changes = {}
        start = _min_date(target.period_start, incoming.period_start)
        end = _max_date(target.period_end, incoming.period_end)
        if start != target.period_start:
            changes["period_start"] = start
            if incoming.starting_balance is not None:
                changes["starting_balance"] = incoming.starting_balance
        if end != target.period_end:
            changes["period_end"] = end
            if incoming.ending_balance is not None:
                changes["ending_balance"] = incoming.ending_balance
        if not fresh and not changes:
            return None
        if target.locked:
            raise StatementLocked(target.id)
        if fresh:
            await repo.append_transactions(target.id, fresh)
        # Content changed; earlier validation no longer holds
        changes.update(validated=False, validation_status="pending", validated_at=None)
        await repo.update_statement(target.id, **changes)
        logger.info(
            f"Appended {len(fresh)} of {len(transactions)} transactions to statement {target.id}"
            f" ({len(transactions) - len(fresh)} already present)"
        )
        return len(fresh)

    async def persist_many(
        self,
        statements: Iterable[CanonicalStatement],
        submitted_by: Optional[str],
        file_name: Optional[str] = None,
        file_url: Optional[str] = None,
        raw_text: Optional[str] = None,
    ) -> List[StatementOutcome]:
        outcomes: List[StatementOutcome] = []
        for statement in statements:
            try:
                result = await self.persist(statement, submitted_by, file_name, file_url, raw_text)
                outcomes.append(
                    StatementOutcome(
                        account_number=statement.account_number, bank_name=statement.bank_name, result=result
                    )
                )
            except Exception as e:
                logger.error(f"Error persisting statement {statement.bank_name} / {statement.account_number}: {e}")
                outcomes.append(
                    StatementOutcome(account_number=statement.account_number, bank_name=statement.bank_name, error=str(e))
                )
        return outcomes

    async def update_bank_affiliation(self, statement_id: int, bank_name: str, submitted_by: Optional[str]) -> StatementRecord:
        name = bank_name.strip()
        if not name:
            raise ValueError("Bank name is required")
        name = resolve_display_name(name) or name
        async with self.store.unit_of_work(statement_lock_key(statement_id)) as repo:
            record = await repo.get_statement(statement_id)
            if record is None:
                raise StatementNotFound(statement_id)
            if record.locked:
                raise StatementLocked(statement_id)
            bank = await repo.find_bank_by_name(name) or await repo.create_bank(name)
            await repo.update_statement(statement_id, bank_id=bank.id, bank_name=bank.name)
            logger.info(f"Statement {statement_id} moved to bank {bank.name} by {submitted_by}")
            record.bank_id = bank.id
            record.bank_name = bank.name
            return record

    async def update_facility_terms(
        self,
        statement_id: int,
        tenor: Optional[str] = None,
        available_limit: Optional[Decimal] = None,
        interest_rate: Optional[str] = None,
    ) -> StatementRecord:
        async with self.store.unit_of_work(statement_lock_key(statement_id)) as repo:
            record = await repo.get_statement(statement_id)
            if record is None:
                raise StatementNotFound(statement_id)
            if record.locked:
                raise StatementLocked(statement_id)
            await repo.update_statement(
                statement_id, tenor=tenor, available_limit=available_limit, interest_rate=interest_rate
            )
            record.tenor = tenor
            record.available_limit = available_limit
            record.interest_rate = interest_rate
            return record
