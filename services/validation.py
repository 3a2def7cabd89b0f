from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Optional

from schemas.processing import ValidationResult
from services.errors import StatementNotFound
from services.store import StatementStore, TransactionRecord, statement_lock_key

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = Decimal("0.01")
CENT = Decimal("0.01")

PASSED = "passed"
FAILED = "failed"


def _fmt(amount: Decimal) -> str:
    return str(amount.quantize(CENT))


def validate_balances(
    starting: Optional[Decimal],
    ending: Optional[Decimal],
    transactions: Iterable[TransactionRecord],
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> ValidationResult:
    """starting + credits - debits must land within tolerance of ending."""
    total_credits = Decimal("0")
    total_debits = Decimal("0")
    for txn in transactions:
        if txn.credit_amount is not None:
            total_credits += txn.credit_amount
        if txn.debit_amount is not None:
            total_debits += txn.debit_amount

    if starting is None or ending is None:
        missing = "starting" if starting is None else "ending"
        return ValidationResult(
            status=FAILED,
            calculated_balance="",
            discrepancy="",
            total_credits=_fmt(total_credits),
            total_debits=_fmt(total_debits),
            notes=f"Auto-validation failed during processing. Missing {missing} balance.",
        )

    calculated = starting + total_credits - total_debits
    discrepancy = abs(calculated - ending)
    if discrepancy <= tolerance:
        status = PASSED
        notes = (
            "Auto-validation passed during processing. "
            f"Starting balance ({_fmt(starting)}) + Credits ({_fmt(total_credits)}) "
            f"- Debits ({_fmt(total_debits)}) = Ending balance ({_fmt(ending)})"
        )
    else:
        status = FAILED
        notes = (
            "Auto-validation failed during processing. "
            f"Expected ending balance: {_fmt(calculated)}, Actual: {_fmt(ending)}, "
            f"Discrepancy: {_fmt(discrepancy)}"
        )
    return ValidationResult(
        status=status,
        calculated_balance=_fmt(calculated),
        discrepancy=_fmt(discrepancy),
        total_credits=_fmt(total_credits),
        total_debits=_fmt(total_debits),
        notes=notes,
    )


class AutoValidator:
    def __init__(self, store: StatementStore, tolerance: Decimal = DEFAULT_TOLERANCE) -> None:
        self.store = store
        self.tolerance = tolerance

    async def validate_statement(self, statement_id: int) -> ValidationResult:
        """
        Recompute the balance check for a stored statement and record the outcome.
        A failed check is recorded, not raised.
        """
        async with self.store.unit_of_work(statement_lock_key(statement_id)) as repo:
            statement = await repo.get_statement(statement_id)
            if statement is None:
                raise StatementNotFound(statement_id)
            transactions = await repo.list_transactions(statement_id)
            result = validate_balances(
                statement.starting_balance, statement.ending_balance, transactions, self.tolerance
            )
            validated_at = datetime.now(timezone.utc) if result.passed else None
            await repo.update_validation(statement_id, result.passed, result.status, result.notes, validated_at)
        logger.info(
            f"Validation {result.status} for statement {statement_id}: "
            f"calculated {result.calculated_balance or '-'}, discrepancy {result.discrepancy or '-'}"
        )
        return result
