from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

logger = logging.getLogger(__name__)

COMPLETE = "complete"
ERROR = "error"
TERMINAL_EVENTS = (COMPLETE, ERROR)


class ProgressReporter:
    """
    One-way event channel from the pipeline to a caller.

    Events queue up whether or not anyone is reading, so an abandoned
    stream never blocks the producer. Exactly one terminal event is emitted.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event_type: str, **payload: Any) -> None:
        if self._closed:
            logger.warning(f"Dropping {event_type!r} event emitted after the stream closed")
            return
        event = {"type": event_type, **payload, "timestamp": datetime.now(timezone.utc).isoformat()}
        if event_type in TERMINAL_EVENTS:
            self._closed = True
        self._queue.put_nowait(event)

    def complete(self, **payload: Any) -> None:
        self.emit(COMPLETE, **payload)

    def fail(self, error: str, technical_error: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"error": error}
        if technical_error is not None:
            payload["technical_error"] = technical_error
        self.emit(ERROR, **payload)

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            event = await self._queue.get()
            yield event
            if event["type"] in TERMINAL_EVENTS:
                return

    async def sse_lines(self) -> AsyncIterator[str]:
        async for event in self.events():
            yield f"data: {json.dumps(event, default=str)}\n\n"
