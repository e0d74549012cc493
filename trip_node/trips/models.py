"""
Database models for the trip history using SQLAlchemy 2.0
All timestamps are timezone-aware UTC
"""
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import (
    BigInteger, Boolean, DateTime, Enum as SAEnum, Float, ForeignKey, Index, Integer, SmallInteger,
    String, UniqueConstraint, func, text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from .alert_codes import AlertType
from .decision import DeviceSnapshot
from .sqlalchemy_base import Base


class DeviceState(Base):
    """
    Live state per device (trip_current_state).
    The row is the per-device lock: every event locks it FOR UPDATE before deciding.
    current_trip_id is set iff the referenced trip has end_time NULL.
    """
    __tablename__ = 'trip_current_state'

    device_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    current_trip_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    ignition_on: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text('false'))
    last_point_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    last_lng: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    last_speed: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    last_odometer_meters: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    last_correlation_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    last_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    def to_snapshot(self) -> DeviceSnapshot:
        return DeviceSnapshot(
            device_id=self.device_id,
            current_trip_id=self.current_trip_id,
            ignition_on=bool(self.ignition_on),
            last_point_at=self.last_point_at,
            last_lat=self.last_lat,
            last_lng=self.last_lng,
            last_speed=self.last_speed,
            last_odometer_meters=self.last_odometer_meters,
            last_correlation_id=self.last_correlation_id,
            last_updated_at=self.last_updated_at,
        )

    def apply_snapshot(self, snapshot: DeviceSnapshot) -> None:
        self.current_trip_id = snapshot.current_trip_id
        self.ignition_on = snapshot.ignition_on
        self.last_point_at = snapshot.last_point_at
        self.last_lat = snapshot.last_lat
        self.last_lng = snapshot.last_lng
        self.last_speed = snapshot.last_speed
        self.last_odometer_meters = snapshot.last_odometer_meters
        self.last_correlation_id = snapshot.last_correlation_id
        self.last_updated_at = snapshot.last_updated_at

    def __repr__(self):
        return f"<DeviceState(device_id='{self.device_id}', current_trip_id={self.current_trip_id}, ignition_on={self.ignition_on})>"


class Trip(Base):
    """One ignition-on to ignition-off session. end_time NULL means open."""
    __tablename__ = 'trips'

    trip_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    device_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    start_lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    start_lng: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    end_lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    end_lng: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    start_odometer_meters: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    end_odometer_meters: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    distance_m: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default=text('0'))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index('ix_trips_device_start', 'device_id', 'start_time'),
    )

    def __repr__(self):
        return f"<Trip(trip_id={self.trip_id}, device_id='{self.device_id}', start={self.start_time}, end={self.end_time})>"


class TripPoint(Base):
    """Trajectory sample of an open trip. Key (device_id, event_time, correlation_id) absorbs redelivery."""
    __tablename__ = 'trip_points'

    device_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    event_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), primary_key=True)
    correlation_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    trip_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey('trips.trip_id', ondelete='CASCADE'), nullable=False, index=True
    )
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lng: Mapped[float] = mapped_column(Float, nullable=False)
    speed: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    heading: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ignition_on: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    odometer_meters: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    def __repr__(self):
        return f"<TripPoint(trip_id={self.trip_id}, device_id='{self.device_id}', event_time={self.event_time})>"


class TripAlert(Base):
    """Alert log entry, independent of trips; trip_id links to the trip open (or just closed) at the time."""
    __tablename__ = 'trip_alerts'

    alert_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    trip_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey('trips.trip_id', ondelete='SET NULL'), nullable=True, index=True
    )
    device_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    lon: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    alert_type: Mapped[AlertType] = mapped_column(
        SAEnum(AlertType, name='alert_type_enum', values_callable=lambda members: [m.value for m in members]),
        nullable=False,
    )
    raw_code: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    severity: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=1, server_default=text('1'))
    # 'metadata' is reserved on declarative classes
    alert_metadata: Mapped[Optional[Dict[str, Any]]] = mapped_column('metadata', JSONB, nullable=True)
    correlation_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint('device_id', 'correlation_id', 'event_time', name='uq_trip_alerts_device_corr_time'),
        Index('ix_trip_alerts_device_time', 'device_id', 'event_time'),
    )

    def __repr__(self):
        return f"<TripAlert(alert_id={self.alert_id}, device_id='{self.device_id}', type={self.alert_type})>"


class DeviceIdleActivity(Base):
    """What a device reported while no trip could take it (parked pings, alerts outside trips)."""
    __tablename__ = 'device_idle_activity'

    idle_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    device_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    lon: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    activity_type: Mapped[str] = mapped_column(String(128), nullable=False)
    raw_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    severity: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=1, server_default=text('1'))
    activity_metadata: Mapped[Optional[Dict[str, Any]]] = mapped_column('metadata', JSONB, nullable=True)
    correlation_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint('device_id', 'correlation_id', 'event_time', name='uq_device_idle_activity_device_corr_time'),
        Index('ix_device_idle_activity_device_time', 'device_id', 'event_time'),
    )

    def __repr__(self):
        return f"<DeviceIdleActivity(idle_id={self.idle_id}, device_id='{self.device_id}', type='{self.activity_type}')>"
