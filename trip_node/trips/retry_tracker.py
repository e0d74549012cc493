"""
Redelivery counts per broker message, persisted in PostgreSQL.
Survives consumer restarts so a poison message reaches the DLQ instead of
cycling forever.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import DateTime, String, Text, delete, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.orm import Mapped, mapped_column

from .sqlalchemy_base import Base, get_session

logger = logging.getLogger(__name__)


class MessageRetryCount(Base):
    """Retry bookkeeping for messages that failed processing."""
    __tablename__ = 'message_retry_counts'

    message_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    queue_name: Mapped[str] = mapped_column(String(128), nullable=False)
    retry_count: Mapped[int] = mapped_column(default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    first_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    last_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<MessageRetryCount(message_id='{self.message_id}', retry_count={self.retry_count})>"


async def increment_retry_count(message_id: str, queue_name: str, error_message: Optional[str] = None) -> int:
    """Increment retry count in database and return new count (1 when the store is unreachable)"""
    error_text = error_message[:500] if error_message else None
    now = datetime.now(timezone.utc)
    try:
        async with get_session() as session:
            stmt = pg_insert(MessageRetryCount).values(
                message_id=message_id,
                queue_name=queue_name,
                retry_count=1,
                last_error=error_text,
                last_attempt_at=now
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=['message_id'],
                set_={
                    'retry_count': MessageRetryCount.retry_count + 1,
                    'last_error': error_text,
                    'last_attempt_at': now
                }
            ).returning(MessageRetryCount.retry_count)

            result = await session.execute(stmt)
            await session.commit()

            new_count = result.scalar_one_or_none()
            return new_count if new_count is not None else 1
    except Exception as e:
        logger.warning(f"Error incrementing retry count for {message_id}: {e}")
        return 1


async def clear_retry_count(message_id: str) -> None:
    """Clear retry count after the message was settled"""
    try:
        async with get_session() as session:
            await session.execute(
                delete(MessageRetryCount).where(MessageRetryCount.message_id == message_id)
            )
            await session.commit()
    except Exception as e:
        logger.debug(f"Error clearing retry count for {message_id}: {e}")


async def cleanup_old_retry_counts(hours: int = 24) -> int:
    """Clean up retry counts older than specified hours"""
    try:
        async with get_session() as session:
            cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)
            result = await session.execute(
                delete(MessageRetryCount).where(MessageRetryCount.last_attempt_at < cutoff)
            )
            await session.commit()
            return result.rowcount
    except Exception as e:
        logger.warning(f"Error cleaning up old retry counts: {e}")
        return 0
