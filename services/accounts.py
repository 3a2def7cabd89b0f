from __future__ import annotations

from decimal import Decimal
from typing import Optional


def is_facility_account(account_type: Optional[str], balance: Optional[Decimal] = None) -> bool:
    """
    Facility accounts hold the bank's money (overdrafts, credit lines).
    The stated type wins; without one, a negative balance means money owed.
    """
    if account_type:
        kind = account_type.strip().lower()
        if "facility" in kind or "overdraft" in kind or "loan" in kind or "credit line" in kind:
            return True
        if "current" in kind or "saving" in kind:
            return False
    return balance is not None and balance < 0
