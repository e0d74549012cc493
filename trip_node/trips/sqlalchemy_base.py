"""
SQLAlchemy 2.0 async base and session management for the trip node
Engine/session factory plus classification of transient PostgreSQL failures
"""
import asyncio
import logging
from typing import Optional
from urllib.parse import quote_plus

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from config import Config

logger = logging.getLogger(__name__)

Base = declarative_base()

_engine = None
_async_session_maker = None
_initialized = False

# Connection error types that indicate the store is unreachable
CONNECTION_ERRORS = (
    ConnectionError,
    ConnectionRefusedError,
    ConnectionResetError,
    BrokenPipeError,
    TimeoutError,
    asyncio.TimeoutError,
    OSError,
)

# PostgreSQL SQLSTATEs that may succeed on retry
TRANSIENT_SQLSTATES = {
    "40001": "serialization",
    "40P01": "deadlock",
    "55P03": "lock_timeout",
    "57014": "statement_timeout",
}

CONNECTION_KEYWORDS = (
    'connection refused',
    'connection reset',
    'connection closed',
    'connection is closed',
    'broken pipe',
    'timeout',
    'connect call failed',
    'server closed the connection',
    'ssl connection has been closed',
    'could not connect',
    'connection timed out',
    'network is unreachable',
    'no route to host',
)


def is_connection_error(error: BaseException) -> bool:
    """Check if an exception indicates a connection problem"""
    if isinstance(error, CONNECTION_ERRORS):
        return True

    if isinstance(error, (DBAPIError, OperationalError, InterfaceError)):
        if getattr(error, 'connection_invalidated', False):
            return True
        error_str = str(error).lower()
        return any(keyword in error_str for keyword in CONNECTION_KEYWORDS)

    return False


def _sqlstate(error: BaseException) -> Optional[str]:
    orig = getattr(error, 'orig', None)
    for candidate in (orig, getattr(orig, '__cause__', None), error):
        if candidate is None:
            continue
        code = getattr(candidate, 'sqlstate', None) or getattr(candidate, 'pgcode', None)
        if code:
            return str(code)
    return None


def transient_reason(error: BaseException) -> Optional[str]:
    """
    Classify a store failure.

    Returns a short reason ('connection', 'serialization', 'deadlock',
    'lock_timeout', 'statement_timeout') when the failure may succeed on
    retry, else None.
    """
    if isinstance(error, DBAPIError):
        reason = TRANSIENT_SQLSTATES.get(_sqlstate(error) or "")
        if reason:
            return reason
    if is_connection_error(error):
        return "connection"
    return None


def _create_engine():
    """Create a new SQLAlchemy async engine"""
    db_config = Config.get_database_config()
    host = db_config.get('host', 'localhost')
    port = db_config.get('port', 5432)
    database = db_config.get('name', 'siscom')
    user = db_config.get('user', 'postgres')
    password = db_config.get('password', '')
    lock_timeout_ms = int(db_config.get('lock_timeout_ms', 5000))

    encoded_password = quote_plus(password) if password else ''
    db_url = f"postgresql+asyncpg://{user}:{encoded_password}@{host}:{port}/{database}"

    engine = create_async_engine(
        db_url,
        echo=False,
        pool_pre_ping=True,
        pool_size=int(db_config.get('pool_size', 10)),
        max_overflow=int(db_config.get('max_overflow', 20)),
        pool_recycle=1800,
        pool_timeout=30,
        connect_args={
            "command_timeout": 30,
            "statement_cache_size": 0,  # Required for pgbouncer transaction pooling
            "server_settings": {
                "application_name": "megatechtrackers_trip_node",
                "timezone": "UTC",
                "lock_timeout": str(lock_timeout_ms),
            }
        }
    )

    logger.info(f"SQLAlchemy async engine created: {host}:{port}/{database}")
    return engine


async def init_sqlalchemy(retry: bool = True):
    """
    Initialize SQLAlchemy async engine and session factory.

    Args:
        retry: If True, retry connection indefinitely with exponential backoff
    """
    global _initialized

    if _initialized:
        return

    async def _init():
        global _engine, _async_session_maker, _initialized

        _engine = _create_engine()
        _async_session_maker = async_sessionmaker(
            _engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        async with _engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

        logger.info("SQLAlchemy async engine initialized and connection verified")
        _initialized = True

    if retry:
        from .retry_handler import TRANSIENT_ERRORS, retry_with_backoff
        await retry_with_backoff(
            _init,
            max_retries=-1,
            initial_delay=1.0,
            max_delay=30.0,
            retry_on=TRANSIENT_ERRORS + (OperationalError, InterfaceError),
        )
    else:
        await _init()


def get_session() -> AsyncSession:
    """
    Get a new async database session.

    Raises:
        RuntimeError: If SQLAlchemy not initialized
    """
    if not _initialized:
        raise RuntimeError("SQLAlchemy not initialized. Call init_sqlalchemy() first.")

    return _async_session_maker()


def get_engine():
    """Get async database engine"""
    if not _initialized:
        raise RuntimeError("SQLAlchemy not initialized. Call init_sqlalchemy() first.")
    return _engine


async def close_sqlalchemy():
    """Close SQLAlchemy engine"""
    global _engine, _async_session_maker, _initialized
    if _engine:
        await _engine.dispose()
        _engine = None
        _async_session_maker = None
        _initialized = False
        logger.info("SQLAlchemy engine closed")
