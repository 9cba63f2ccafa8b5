"""Create the billing schema."""

from sqlalchemy.ext.asyncio import AsyncEngine

from billflow.core.logging import logger
from billflow.models._base import Base


async def init_db(engine: AsyncEngine) -> None:
    """Create all billing tables that do not exist yet.

    Args:
    ----
        engine (AsyncEngine): The engine bound to the billing database.
    """
    # Register every model on the metadata before creating tables
    import billflow.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Billing tables are in place")
