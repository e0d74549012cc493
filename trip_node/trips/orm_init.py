"""
SQLAlchemy ORM initialization for the trip node
Creates the alert enum and trip tables on first start
"""
import asyncio
import logging

from .sqlalchemy_base import Base, close_sqlalchemy, get_engine, init_sqlalchemy

logger = logging.getLogger(__name__)

_initialized = False


async def init_orm(retry: bool = True):
    """
    Initialize the engine and create trip_current_state, trips, trip_points,
    trip_alerts and message_retry_counts if they don't exist.

    Args:
        retry: If True, retry connection indefinitely with exponential backoff
    """
    global _initialized
    if _initialized:
        return

    await init_sqlalchemy(retry=retry)

    # Register models with Base.metadata
    from . import models, retry_tracker  # noqa: F401

    try:
        engine = get_engine()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all, checkfirst=True)
        logger.info("Database tables verified/created via ORM")
    except (ConnectionError, OSError, TimeoutError, asyncio.TimeoutError) as e:
        # Connection dropped between init and DDL; caller retries
        logger.debug(f"Database connection not available yet: {e}. Will retry.")
        raise
    except Exception as e:
        logger.error(f"Failed to create tables via ORM: {e}", exc_info=True)
        raise

    _initialized = True
    logger.info("SQLAlchemy ORM initialized")


async def close_orm():
    """Close SQLAlchemy engine"""
    global _initialized
    if _initialized:
        await close_sqlalchemy()
        _initialized = False
        logger.info("SQLAlchemy ORM connections closed")
