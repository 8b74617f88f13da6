from typing import Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from booking_engine.core.config import settings

logger = structlog.get_logger(__name__)

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    future=True,
    pool_pre_ping=True,
    pool_recycle=300,
)

AsyncSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)

Base = declarative_base()


async def init_db(db_engine: Optional[AsyncEngine] = None, create_tables: bool = False):
    """Check connectivity and install extensions the appointment constraints need."""
    db_engine = db_engine or engine
    try:
        async with db_engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            # EXCLUDE constraints mix '=' on scalar columns with '&&' on ranges
            await conn.execute(text("CREATE EXTENSION IF NOT EXISTS btree_gist"))
            if create_tables:
                from booking_engine import models  # noqa: F401

                await conn.run_sync(Base.metadata.create_all)

        logger.info("Database connection initialized successfully")
    except Exception as e:
        logger.error("Failed to initialize database", exc_info=e)
        raise

