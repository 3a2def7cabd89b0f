from typing import Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import logging
from db.postgres import close_postgres, get_session_factory, init_postgres
from repositories.statement_repo import SqlStatementStore
from services.pipeline import build_pipeline
from settings.config import settings
from settings.logging_config import configure_logging
from statements.routes import banks_router, router as statements_router

logger = logging.getLogger(__name__)


def get_app() -> FastAPI:
    configure_logging(settings.LOG_LEVEL, json_logs=settings.LOG_JSON)
    logger.info("Starting statement ingestion API")
    app = FastAPI(title="Statement Ingestion API")

    # CORS: enable permissive defaults for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # DB + pipeline lifecycle; anything already placed on app.state is kept
    @app.on_event("startup")
    async def on_startup() -> None:
        if getattr(app.state, "pipeline", None) is not None:
            return
        logger.info("Initializing database")
        await init_postgres()
        store = SqlStatementStore(get_session_factory())
        app.state.store = store
        app.state.pipeline = build_pipeline(settings, store)

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        pipeline = getattr(app.state, "pipeline", None)
        if pipeline is not None:
            await pipeline.drain()
            await pipeline.dispatcher.drain()
        logger.info("Closing database")
        await close_postgres()

    # Routers
    app.include_router(statements_router)
    app.include_router(banks_router)
    logger.info("Routers initialized successfully")

    # Health
    @app.get("/health")
    async def health_check() -> Dict[str, str]:
        logger.info("Health check")
        return {"status": "ok"}

    logger.info("API started")
    return app


# ASGI app instance
app = get_app()
