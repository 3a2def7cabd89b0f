from __future__ import annotations

import json
import logging
import os
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


class _JsonEncoder(json.JSONEncoder):
    def default(self, o: Any):  # type: ignore[override]
        if isinstance(o, (date, datetime)):
            return o.isoformat()
        if isinstance(o, Decimal):
            return str(o)
        return super().default(o)


class DebugSink(Protocol):
    """Receives model responses that could not be turned into statements."""

    def record(self, raw_response: str, context: Dict[str, Any]) -> None:
        ...


class LoggingDebugSink:
    def record(self, raw_response: str, context: Dict[str, Any]) -> None:
        logger.error(
            f"Failed model response ({len(raw_response or '')} chars), context="
            f"{json.dumps(context, ensure_ascii=False, cls=_JsonEncoder)}: {raw_response!r}"
        )


class FileDebugSink:
    """
    Filesystem-backed store for failed responses, one text file per failure:
      base_dir/failed-response-<timestamp>-<file name>.txt
    Write errors are logged and never propagate into the pipeline.
    """

    def __init__(self, base_dir: str) -> None:
        self.base_dir = base_dir
        os.makedirs(self.base_dir, exist_ok=True)

    def _path_for(self, context: Dict[str, Any]) -> str:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        name = os.path.basename(str(context.get("file_name") or "unknown"))
        chunk = context.get("sequence_number")
        suffix = f"-chunk{chunk}" if chunk is not None else ""
        return os.path.join(self.base_dir, f"failed-response-{stamp}-{name}{suffix}.txt")

    def record(self, raw_response: str, context: Dict[str, Any]) -> None:
        path = self._path_for(context)
        body = (
            "=== FAILED JSON PARSING DEBUG INFO ===\n"
            f"Timestamp: {datetime.now(timezone.utc).isoformat()}\n"
            f"Context: {json.dumps(context, ensure_ascii=False, indent=2, cls=_JsonEncoder)}\n"
            f"Response Length: {len(raw_response or '')}\n\n"
            "=== RAW RESPONSE ===\n"
            f"{raw_response}\n\n"
            "=== END DEBUG INFO ==="
        )
        try:
            with open(path, "w", encoding="utf-8") as f:
                f.write(body)
            logger.info(f"Debug response saved to: {path}")
        except OSError as e:
            logger.error(f"Failed to save debug response to {path}: {e}")


class MemoryDebugSink:
    """Keeps records in memory; handy for tests and interactive debugging."""

    def __init__(self) -> None:
        self.records: List[Tuple[str, Dict[str, Any]]] = []

    def record(self, raw_response: str, context: Dict[str, Any]) -> None:
        self.records.append((raw_response, dict(context)))


def build_debug_sink(directory: Optional[str]) -> DebugSink:
    if directory:
        return FileDebugSink(directory)
    return LoggingDebugSink()
