from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict

from services.errors import JSONRepairError

logger = logging.getLogger(__name__)

_TRAILING_COMMA = re.compile(r",(\s*[}\]])")
_WHITESPACE = re.compile(r"\s+")


def _strip_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:].strip()
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:].strip()
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3].strip()
    return cleaned


def _matching_brace_end(text: str) -> int:
    """Index just past the `}` closing the first top-level object, or -1."""
    depth = 0
    for i, ch in enumerate(text):
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1
    return -1


def clean_model_json(text: str) -> str:
    """
    Turn a chatty or truncated model response into a best-guess JSON document:
    fences stripped, cut to the first top-level object, trailing commas removed,
    whitespace collapsed.
    """
    cleaned = _strip_fences(text or "")
    start = cleaned.find("{")
    if start > 0:
        cleaned = cleaned[start:]
    end = _matching_brace_end(cleaned)
    if 0 < end < len(cleaned):
        logger.info(f"Truncating JSON at position {end} (original length: {len(cleaned)})")
        cleaned = cleaned[:end]
    cleaned = _TRAILING_COMMA.sub(r"\1", cleaned)
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()
    return cleaned


def _close_braces(text: str) -> str:
    fixed = text
    start = fixed.find("{")
    if start > 0:
        fixed = fixed[start:]
    if not fixed.endswith("}"):
        missing = fixed.count("{") - fixed.count("}")
        if missing > 0:
            fixed += "}" * missing
    return fixed


def parse_model_json(text: str) -> Dict[str, Any]:
    cleaned = clean_model_json(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as first_error:
        logger.warning(f"Initial JSON parse failed ({first_error}); attempting brace repair")
        repaired = _close_braces(cleaned)
        try:
            data = json.loads(repaired)
        except json.JSONDecodeError as e:
            raise JSONRepairError(f"Unable to repair model JSON: {e}", raw_text=text, cleaned_text=cleaned) from e
        logger.info("Parsed model JSON after brace repair")
    if not isinstance(data, dict):
        raise JSONRepairError(
            f"Expected a JSON object, got {type(data).__name__}", raw_text=text, cleaned_text=cleaned
        )
    return data


def normalize_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    """Coerce the shapes models actually return into {"account_statements": [...]}."""
    statements = data.get("account_statements")
    if statements is None:
        if isinstance(data.get("account_statement"), dict):
            return {"account_statements": [data["account_statement"]]}
        if "bank_name" in data or "account_number" in data:
            return {"account_statements": [data]}
        return {"account_statements": []}
    if not isinstance(statements, list):
        return {"account_statements": [statements]}
    return {"account_statements": statements}
