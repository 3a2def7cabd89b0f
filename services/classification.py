from __future__ import annotations

import asyncio
import logging
import re
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set, Tuple

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings

from services.retry import RetryPolicy
from services.store import StatementStore, statement_lock_key
from settings.config import Settings

logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"
RULE_CONFIDENCE = 0.8

# keyword -> category, checked in order; first match wins
CATEGORY_RULES: Dict[str, str] = {
    "salary": "Payroll",
    "salaries": "Payroll",
    "payroll": "Payroll",
    "social insurance": "Taxes & Government",
    "tax": "Taxes & Government",
    "customs": "Taxes & Government",
    "interest": "Interest & Finance Charges",
    "commission": "Bank Fees",
    "fees": "Bank Fees",
    "charge": "Bank Fees",
    "loan": "Financing",
    "facility": "Financing",
    "installment": "Financing",
    "transfer": "Transfers",
    "swift": "Transfers",
    "ach": "Transfers",
    "cheque": "Cheques",
    "check": "Cheques",
    "chq": "Cheques",
    "cash deposit": "Cash",
    "atm": "Cash",
    "withdrawal": "Cash",
    "rent": "Rent & Utilities",
    "electricity": "Rent & Utilities",
    "water": "Rent & Utilities",
    "telecom": "Rent & Utilities",
    "vodafone": "Rent & Utilities",
    "etisalat": "Rent & Utilities",
    "orange": "Rent & Utilities",
    "invoice": "Supplier Payments",
    "supplier": "Supplier Payments",
    "purchase": "Supplier Payments",
    "pos": "Card Purchases",
    "visa": "Card Purchases",
    "mastercard": "Card Purchases",
}


class RuleBasedClassifier:
    def __init__(self, rules: Optional[Dict[str, str]] = None) -> None:
        self.rules = rules or CATEGORY_RULES
        self._patterns: List[Tuple[re.Pattern[str], str]] = [
            (re.compile(rf"\b{re.escape(keyword)}\b", flags=re.IGNORECASE), category)
            for keyword, category in self.rules.items()
        ]

    def classify(self, description: Optional[str]) -> Tuple[str, float]:
        if not description:
            return UNCATEGORIZED, 0.0
        for pattern, category in self._patterns:
            if pattern.search(description):
                return category, RULE_CONFIDENCE
        return UNCATEGORIZED, 0.0


class StatementClassifier:
    """Writes a category and confidence onto every transaction of a statement."""

    def __init__(self, store: StatementStore, classifier: Optional[RuleBasedClassifier] = None) -> None:
        self.store = store
        self.classifier = classifier or RuleBasedClassifier()

    async def classify(self, statement_id: int) -> Dict[str, int]:
        async with self.store.unit_of_work(statement_lock_key(statement_id)) as repo:
            transactions = await repo.list_transactions(statement_id)
            updates: List[Tuple[int, str, float]] = []
            classified = 0
            for txn in transactions:
                if txn.id is None:
                    continue
                category, confidence = self.classifier.classify(txn.description)
                if category != UNCATEGORIZED:
                    classified += 1
                updates.append((txn.id, category, confidence))
            await repo.update_transaction_categories(updates)
        logger.info(f"Classified {classified}/{len(transactions)} transactions of statement {statement_id}")
        return {"classified_count": classified, "total_transactions": len(transactions)}


ClassifyFn = Callable[[int], Awaitable[Dict[str, Any]]]


class ClassificationDispatcher(Protocol):
    async def submit(self, statement_id: int) -> str:
        """Hand off classification; returns a job id. Never waits for the work."""
        ...

    async def drain(self) -> None:
        ...


class BackgroundClassificationDispatcher:
    """Runs classification as detached asyncio tasks in this process."""

    def __init__(self, classify_fn: ClassifyFn, retry_policy: Optional[RetryPolicy] = None) -> None:
        self.classify_fn = classify_fn
        self.retry_policy = retry_policy or RetryPolicy()
        self._tasks: Set[asyncio.Task] = set()

    async def submit(self, statement_id: int) -> str:
        job_id = f"classify-{statement_id}-{uuid.uuid4().hex[:8]}"
        task = asyncio.create_task(self._run(statement_id, job_id), name=job_id)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job_id

    async def _run(self, statement_id: int, job_id: str) -> None:
        try:
            result = await self.retry_policy.run(
                lambda: self.classify_fn(statement_id), label=f"classification of statement {statement_id}"
            )
            logger.info(f"Classification job {job_id} finished: {result}")
        except Exception as e:
            logger.error(f"Classification job {job_id} for statement {statement_id} failed: {e}")

    async def drain(self) -> None:
        """Wait for every outstanding job; used on shutdown and in tests."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class ArqClassificationDispatcher:
    """Enqueues classify_statement on the arq queue served by workers.classification_worker."""

    def __init__(self, redis_settings: RedisSettings) -> None:
        self.redis_settings = redis_settings
        self._pool: Optional[ArqRedis] = None

    async def submit(self, statement_id: int) -> str:
        if self._pool is None:
            self._pool = await create_pool(self.redis_settings)
        job = await self._pool.enqueue_job("classify_statement", statement_id)
        if job is None:
            # arq returns None when a job with the same id is already queued
            return "queued"
        return str(job.job_id)

    async def drain(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None


def build_dispatcher(settings: Settings, store: StatementStore) -> ClassificationDispatcher:
    if settings.CLASSIFICATION_BACKEND == "arq":
        return ArqClassificationDispatcher(RedisSettings.from_dsn(settings.REDIS_URL or "redis://localhost:6379"))
    return BackgroundClassificationDispatcher(StatementClassifier(store).classify)
