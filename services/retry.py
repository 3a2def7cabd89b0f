from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """
    Exponential backoff: waits base_delay * 2**attempt between attempts and
    re-raises the last error once max_attempts is exhausted.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt)

    async def run(self, fn: Callable[[], Awaitable[T]], label: str = "call") -> T:
        last_error: Optional[Exception] = None
        attempts = max(1, self.max_attempts)
        for attempt in range(attempts):
            try:
                return await fn()
            except Exception as e:
                last_error = e
                logger.warning(f"{label}: attempt {attempt + 1}/{attempts} failed: {e}")
                if attempt < attempts - 1:
                    delay = self.delay_for(attempt)
                    logger.info(f"{label}: retrying in {delay:.2f}s")
                    await self.sleep(delay)
        assert last_error is not None
        raise last_error
