"""
Durable stores used inside one unit of work: device state, trip ledger, alert ledger,
idle activity log.
Every method runs on the caller's session/transaction; uniqueness conflicts are
absorbed with INSERT ... ON CONFLICT DO NOTHING and reported as False.
"""
import logging
import uuid
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from .decision import AppendPoint, CloseTrip, DeviceSnapshot, OpenTrip, RecordAlert, RecordIdleActivity
from .distance import closing_distance_m
from .models import DeviceIdleActivity, DeviceState, Trip, TripAlert, TripPoint

logger = logging.getLogger(__name__)


class DeviceStateStore:
    """trip_current_state access; lock() is the per-device serialization point."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self._locked: Dict[str, DeviceState] = {}

    async def lock(self, device_id: str) -> DeviceSnapshot:
        """Create the row on first contact, then hold it FOR UPDATE until the transaction ends."""
        await self.session.execute(
            pg_insert(DeviceState)
            .values(device_id=device_id, ignition_on=False)
            .on_conflict_do_nothing(index_elements=['device_id'])
        )
        result = await self.session.execute(
            select(DeviceState)
            .where(DeviceState.device_id == device_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one()
        self._locked[device_id] = row
        return row.to_snapshot()

    async def save(self, snapshot: DeviceSnapshot) -> None:
        row = self._locked.get(snapshot.device_id)
        if row is None:
            raise RuntimeError(f"device {snapshot.device_id} saved without holding its lock")
        row.apply_snapshot(snapshot)
        await self.session.flush()


class TripLedger:
    """trips and trip_points."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def open_trip(self, write: OpenTrip) -> bool:
        result = await self.session.execute(
            pg_insert(Trip)
            .values(
                trip_id=write.trip_id,
                device_id=write.device_id,
                start_time=write.start_time,
                start_lat=write.start_lat,
                start_lng=write.start_lng,
                start_odometer_meters=write.start_odometer_meters,
                distance_m=0.0,
            )
            .on_conflict_do_nothing(index_elements=['trip_id'])
            .returning(Trip.trip_id)
        )
        return result.scalar_one_or_none() is not None

    async def get(self, trip_id: uuid.UUID, for_update: bool = False) -> Optional[Trip]:
        stmt = select(Trip).where(Trip.trip_id == trip_id).execution_options(populate_existing=True)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def close_trip(self, write: CloseTrip) -> Optional[Trip]:
        """
        Close an open trip.

        Returns the closed Trip, or None when the trip is missing or already
        closed (logged, never raised).
        """
        trip = await self.get(write.trip_id, for_update=True)
        if trip is None:
            logger.warning(f"[{write.device_id}] Close requested for missing trip {write.trip_id}, ignoring")
            return None
        if trip.end_time is not None:
            logger.warning(f"[{write.device_id}] Trip {write.trip_id} already closed at {trip.end_time}, ignoring")
            return None

        end_time: datetime = write.end_time
        if end_time < trip.start_time:
            logger.warning(
                f"[{write.device_id}] Ignition off at {end_time} precedes trip start {trip.start_time}; "
                f"closing at start time"
            )
            end_time = trip.start_time

        trip.end_time = end_time
        trip.end_lat = write.end_lat
        trip.end_lng = write.end_lng
        trip.end_odometer_meters = write.end_odometer_meters
        trip.distance_m = closing_distance_m(
            trip.start_odometer_meters, write.end_odometer_meters, trip.distance_m
        )
        await self.session.flush()
        return trip

    async def add_point(self, write: AppendPoint) -> bool:
        result = await self.session.execute(
            pg_insert(TripPoint)
            .values(
                device_id=write.device_id,
                event_time=write.event_time,
                correlation_id=write.correlation_id,
                trip_id=write.trip_id,
                lat=write.lat,
                lng=write.lng,
                speed=write.speed,
                heading=write.heading,
                ignition_on=write.ignition_on,
                odometer_meters=write.odometer_meters,
            )
            .on_conflict_do_nothing(index_elements=['device_id', 'event_time', 'correlation_id'])
            .returning(TripPoint.trip_id)
        )
        inserted = result.scalar_one_or_none() is not None
        if inserted and write.distance_increment_m > 0:
            await self.session.execute(
                update(Trip)
                .where(Trip.trip_id == write.trip_id)
                .values(distance_m=Trip.distance_m + write.distance_increment_m)
            )
        return inserted

    async def point_exists(self, device_id: str, correlation_id: uuid.UUID, event_time: datetime) -> bool:
        result = await self.session.execute(
            select(TripPoint.trip_id)
            .where(
                TripPoint.device_id == device_id,
                TripPoint.correlation_id == correlation_id,
                TripPoint.event_time == event_time,
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None


class AlertLedger:
    """trip_alerts."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def exists(self, device_id: str, correlation_id: uuid.UUID, event_time: datetime) -> bool:
        result = await self.session.execute(
            select(TripAlert.alert_id)
            .where(
                TripAlert.device_id == device_id,
                TripAlert.correlation_id == correlation_id,
                TripAlert.event_time == event_time,
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def record(self, write: RecordAlert) -> bool:
        result = await self.session.execute(
            pg_insert(TripAlert)
            .values(
                alert_id=write.alert_id,
                trip_id=write.trip_id,
                device_id=write.device_id,
                event_time=write.event_time,
                lat=write.lat,
                lon=write.lng,
                alert_type=write.alert_type,
                raw_code=write.raw_code,
                severity=write.severity,
                alert_metadata=write.metadata or None,
                correlation_id=write.correlation_id,
            )
            .on_conflict_do_nothing()
            .returning(TripAlert.alert_id)
        )
        return result.scalar_one_or_none() is not None


class IdleActivityLedger:
    """device_idle_activity."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def exists(self, device_id: str, correlation_id: uuid.UUID, event_time: datetime) -> bool:
        result = await self.session.execute(
            select(DeviceIdleActivity.idle_id)
            .where(
                DeviceIdleActivity.device_id == device_id,
                DeviceIdleActivity.correlation_id == correlation_id,
                DeviceIdleActivity.event_time == event_time,
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def record(self, write: RecordIdleActivity) -> bool:
        result = await self.session.execute(
            pg_insert(DeviceIdleActivity)
            .values(
                idle_id=write.idle_id,
                device_id=write.device_id,
                event_time=write.event_time,
                lat=write.lat,
                lon=write.lng,
                activity_type=write.activity_type,
                raw_code=write.raw_code,
                severity=write.severity,
                activity_metadata=write.metadata or None,
                correlation_id=write.correlation_id,
            )
            .on_conflict_do_nothing()
            .returning(DeviceIdleActivity.idle_id)
        )
        return result.scalar_one_or_none() is not None
