"""
Unit of work: one database transaction spanning the device, trip, alert and idle activity stores.
Nothing is committed unless commit() is called; leaving the block otherwise rolls back.
Transient PostgreSQL/driver failures leave the block as TransientStoreError.
"""
import logging
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .exceptions import TransientStoreError
from .sqlalchemy_base import get_session, transient_reason
from .stores import AlertLedger, DeviceStateStore, IdleActivityLedger, TripLedger

logger = logging.getLogger(__name__)


class SqlUnitOfWork:

    def __init__(self, session_factory: Callable[[], AsyncSession] = get_session):
        self._session_factory = session_factory
        self.session: Optional[AsyncSession] = None
        self._committed = False

    async def __aenter__(self) -> "SqlUnitOfWork":
        self.session = self._session_factory()
        self._committed = False
        await self.session.begin()
        self.devices = DeviceStateStore(self.session)
        self.trips = TripLedger(self.session)
        self.alerts = AlertLedger(self.session)
        self.idle = IdleActivityLedger(self.session)
        return self

    async def commit(self) -> None:
        await self.session.commit()
        self._committed = True

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        try:
            if not self._committed:
                try:
                    await self.session.rollback()
                except Exception as rollback_error:
                    # Connection already gone; the server aborts the transaction itself
                    logger.warning(f"Rollback failed: {rollback_error}")
        finally:
            await self.session.close()

        if exc is not None and not isinstance(exc, TransientStoreError):
            reason = transient_reason(exc)
            if reason is not None:
                raise TransientStoreError(reason, f"{reason}: {exc}") from exc
        return False
