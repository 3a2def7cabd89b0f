from __future__ import annotations

import datetime
import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from schemas.extraction import Marker

logger = logging.getLogger(__name__)

_NON_NUMERIC = re.compile(r"[^0-9.\-]")
_ZERO_PLACEHOLDER = re.compile(r"^[-+]?0*(\.0*)?$")

DATE_FORMATS = [
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%Y/%m/%d",
    "%d %b %Y",   # "04 May 2025"
    "%Y %b %d",   # "2025 May 04"
    "%d.%m.%Y",
]


def to_decimal(value: Any) -> Optional[Decimal]:
    """
    Convert an extracted amount to Decimal.
    Returns None for anything unknown; None is never turned into zero.
    """
    if value is None or isinstance(value, Marker) or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    text = str(value).strip()
    if not text or text.lower() == "unknown":
        return None
    # Accounting negatives: "(1,200.00)"
    negative = text.startswith("(") and text.endswith(")")
    cleaned = _NON_NUMERIC.sub("", text)
    if cleaned in ("", "-", ".", "-."):
        return None
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        logger.warning(f"Could not convert value to Decimal: {value!r}")
        return None
    return -abs(amount) if negative else amount


def is_zero_placeholder(value: Optional[str]) -> bool:
    """True for "0", "0.00", "-0" and similar: indistinguishable from "not extracted"."""
    if value is None:
        return False
    return bool(_ZERO_PLACEHOLDER.match(value.replace(",", "").strip()))


def parse_date(value: Any) -> Optional[datetime.date]:
    if value is None or isinstance(value, Marker):
        return None
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return datetime.date.fromisoformat(text[:10])
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    logger.debug(f"Could not parse date string: {text}")
    return None


def normalize_key(value: Optional[str]) -> str:
    """Case- and whitespace-insensitive form used for identity comparisons."""
    if not value:
        return ""
    return re.sub(r"\s+", " ", value).strip().lower()
