from __future__ import annotations

import logging
from typing import Any

from arq.connections import RedisSettings

from db.postgres import close_postgres, get_session_factory, init_postgres
from repositories.statement_repo import SqlStatementStore
from services.classification import StatementClassifier
from settings.config import settings
from settings.logging_config import configure_logging

logger = logging.getLogger(__name__)


async def startup(ctx: dict[str, Any]) -> None:
    configure_logging(settings.LOG_LEVEL, json_logs=settings.LOG_JSON)
    await init_postgres()
    ctx["classifier"] = StatementClassifier(SqlStatementStore(get_session_factory()))


async def shutdown(ctx: dict[str, Any]) -> None:
    await close_postgres()


async def classify_statement(ctx: dict[str, Any], statement_id: int) -> dict:
    """Categorize every transaction of one bank statement."""
    classifier: StatementClassifier = ctx["classifier"]
    result = await classifier.classify(statement_id)
    logger.info(f"classify_statement({statement_id}) -> {result}")
    return result


class WorkerSettings:
    functions = [classify_statement]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL or "redis://localhost:6379")
