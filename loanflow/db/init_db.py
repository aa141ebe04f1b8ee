import asyncio
import logging

from loanflow.db.base import Base
from loanflow.db.session import engine
from loanflow import models  # noqa: F401

logger = logging.getLogger(__name__)


async def init_db() -> None:
    """
    Create the loan tables for local development. Deployed databases are
    managed by alembic.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ensured: %s", ", ".join(sorted(Base.metadata.tables)))


if __name__ == "__main__":
    asyncio.run(init_db())
