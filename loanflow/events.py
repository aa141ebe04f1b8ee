import logging

from fastapi import FastAPI

from loanflow.core.settings import settings

logger = logging.getLogger(__name__)


def register_event_handlers(app: FastAPI) -> None:
    @app.on_event("startup")
    async def on_startup() -> None:
        logger.info("Application startup (store=%s)", settings.loan_store_backend)
        if settings.loan_store_backend == "sql" and settings.environment == "development":
            from loanflow.db.init_db import init_db

            await init_db()

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        logger.info("Application shutdown")
