from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from schemas.extraction import (
    CanonicalStatement,
    ChunkResult,
    ExtractedAccountStatement,
    StructuredData,
    concrete_or_none,
    is_concrete,
)
from services.banks import resolve_display_name
from services.normalize import is_zero_placeholder, parse_date

logger = logging.getLogger(__name__)

UNKNOWN_BANK = "Unknown Bank"

BankResolver = Callable[[Optional[str]], Optional[str]]

# Scalars a later chunk may overwrite; balances follow their own rule
_TEXT_FIELDS = ("account_type", "account_currency", "period_start", "period_end")
_BALANCE_FIELDS = ("starting_balance", "ending_balance")


def _usable_bank_name(value) -> Optional[str]:
    name = concrete_or_none(value)
    if name is None or name.lower() == "unknown":
        return None
    return name


def _usable_account_number(value) -> Optional[str]:
    number = concrete_or_none(value)
    if number is None or number.strip().lower() == "unknown":
        return None
    return number.strip()


def _normalized_bank(name: str, resolver: BankResolver) -> str:
    return resolver(name) or name


def find_document_bank_name(
    results: Iterable[ChunkResult],
    file_name: Optional[str] = None,
    resolver: BankResolver = resolve_display_name,
) -> str:
    """First usable bank name in document order, else the file name, else a placeholder."""
    for result in results:
        for statement in result.account_statements:
            name = _usable_bank_name(statement.bank_name)
            if name:
                resolved = _normalized_bank(name, resolver)
                logger.info(f"Document bank name: {resolved!r} (extracted as {name!r})")
                return resolved
    fallback = file_name or UNKNOWN_BANK
    logger.info(f"No bank name detected in document, using fallback: {fallback!r}")
    return fallback


def _new_canonical(
    statement: ExtractedAccountStatement, key: str, bank_name: str, sequence_number: int
) -> CanonicalStatement:
    return CanonicalStatement(
        bank_name=bank_name,
        account_number=key,
        period_start=concrete_or_none(statement.period_start),
        period_end=concrete_or_none(statement.period_end),
        account_type=concrete_or_none(statement.account_type),
        account_currency=concrete_or_none(statement.account_currency),
        starting_balance=concrete_or_none(statement.starting_balance),
        ending_balance=concrete_or_none(statement.ending_balance),
        transactions=[t.to_canonical(sequence_number) for t in statement.transactions],
    )


def _overwrite_scalars(target: CanonicalStatement, statement: ExtractedAccountStatement) -> None:
    for field in _TEXT_FIELDS:
        value = getattr(statement, field)
        if is_concrete(value):
            setattr(target, field, value)
    for field in _BALANCE_FIELDS:
        value = getattr(statement, field)
        if not is_concrete(value):
            continue
        current = getattr(target, field)
        # A zero never overwrites; it only fills a field that has nothing yet
        if is_zero_placeholder(value):
            if current is None:
                setattr(target, field, value)
            continue
        setattr(target, field, value)


def _longest_period(statements: Iterable[CanonicalStatement]) -> Optional[Tuple[str, str]]:
    longest: Optional[Tuple[str, str]] = None
    longest_days = -1
    for statement in statements:
        start = parse_date(statement.period_start)
        end = parse_date(statement.period_end)
        if start is None or end is None:
            continue
        days = (end - start).days
        if days > longest_days:
            longest_days = days
            longest = (statement.period_start, statement.period_end)  # type: ignore[assignment]
    return longest


def merge_chunk_results(
    results: Iterable[ChunkResult],
    file_name: Optional[str] = None,
    resolver: BankResolver = resolve_display_name,
) -> StructuredData:
    """
    Combine per-chunk extractions into one statement per account number.

    Chunks are visited in sequence order and each chunk's transactions are
    appended after everything merged before, so document order is preserved.
    Inputs are never mutated; merging the same results twice gives equal output.
    """
    ordered: List[ChunkResult] = sorted(results, key=lambda r: r.sequence_number)
    document_bank = find_document_bank_name(ordered, file_name, resolver)
    accounts: Dict[str, CanonicalStatement] = {}

    for result in ordered:
        logger.debug(
            f"Merging chunk {result.sequence_number} with {len(result.account_statements)} account statements"
        )
        for statement in result.account_statements:
            key = _usable_account_number(statement.account_number)
            if key is None:
                logger.warning(
                    f"Skipping statement in chunk {result.sequence_number} with missing account number"
                )
                continue
            own_bank = _usable_bank_name(statement.bank_name)
            bank_name = _normalized_bank(own_bank, resolver) if own_bank else document_bank

            existing = accounts.get(key)
            if existing is None:
                accounts[key] = _new_canonical(statement, key, bank_name, result.sequence_number)
                logger.info(
                    f"Added account {key} from chunk {result.sequence_number} "
                    f"with {len(statement.transactions)} transactions"
                )
                continue

            existing.transactions.extend(t.to_canonical(result.sequence_number) for t in statement.transactions)
            if own_bank:
                existing.bank_name = bank_name
            _overwrite_scalars(existing, statement)
            logger.info(
                f"Merged {len(statement.transactions)} transactions into account {key} "
                f"from chunk {result.sequence_number}, total: {len(existing.transactions)}"
            )

    merged = list(accounts.values())
    for statement in merged:
        if not statement.bank_name:
            statement.bank_name = document_bank

    longest = _longest_period(merged)
    if longest is not None:
        for statement in merged:
            if not statement.period_start or not statement.period_end:
                # Heuristic: the longest statement most likely spans the document period
                logger.warning(
                    f"Applying longest date range {longest[0]}..{longest[1]} to account {statement.account_number}"
                )
                statement.period_start, statement.period_end = longest

    logger.info(f"Merge result: {len(merged)} account statements")
    return StructuredData(account_statements=merged)
