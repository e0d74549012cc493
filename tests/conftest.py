"""
Shared fixtures: an in-memory unit of work with the same contract as SqlUnitOfWork
(per-device lock, staged writes, all-or-nothing commit) and event/payload factories.
"""
import asyncio
import copy
import os
import sys
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "trip_node"))

from trips.alert_codes import AlertType  # noqa: E402
from trips.circuit_breaker import CircuitBreaker  # noqa: E402
from trips.decision import (  # noqa: E402
    AppendPoint, CloseTrip, DeviceSnapshot, OpenTrip, RecordAlert, RecordIdleActivity,
)
from trips.decoder import TelemetryEvent  # noqa: E402
from trips.distance import closing_distance_m  # noqa: E402
from trips.exceptions import TransientStoreError  # noqa: E402
from trips.processor import TripProcessor  # noqa: E402

T0 = datetime(2025, 12, 3, 19, 58, 16, tzinfo=timezone.utc)
FIXED_NOW = datetime(2025, 12, 3, 23, 0, 0, tzinfo=timezone.utc)


@dataclass
class TripRecord:
    trip_id: uuid.UUID
    device_id: str
    start_time: datetime
    start_lat: Optional[float] = None
    start_lng: Optional[float] = None
    start_odometer_meters: Optional[int] = None
    end_time: Optional[datetime] = None
    end_lat: Optional[float] = None
    end_lng: Optional[float] = None
    end_odometer_meters: Optional[int] = None
    distance_m: float = 0.0


class MemoryStore:
    """Committed state shared by all in-memory units of work."""

    def __init__(self):
        self.devices: Dict[str, DeviceSnapshot] = {}
        self.trips: Dict[uuid.UUID, TripRecord] = {}
        self.points: Dict[Tuple, AppendPoint] = {}
        self.alerts: Dict[Tuple, RecordAlert] = {}
        self.idle: Dict[Tuple, RecordIdleActivity] = {}
        self.locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.fail_on: Optional[str] = None
        self.delay: float = 0.0
        self.commits = 0
        self.rollbacks = 0

    def open_trips(self, device_id: str):
        return [t for t in self.trips.values() if t.device_id == device_id and t.end_time is None]

    def points_for(self, trip_id: uuid.UUID):
        return [p for p in self.points.values() if p.trip_id == trip_id]

    def alerts_for(self, device_id: str):
        return [a for a in self.alerts.values() if a.device_id == device_id]

    def idle_for(self, device_id: str):
        return [i for i in self.idle.values() if i.device_id == device_id]


class _Devices:
    def __init__(self, uow: "InMemoryUnitOfWork"):
        self.uow = uow

    async def lock(self, device_id: str) -> DeviceSnapshot:
        store = self.uow.store
        lock = store.locks[device_id]
        await lock.acquire()
        self.uow.held.append(lock)
        if store.delay:
            await asyncio.sleep(store.delay)
        self.uow.maybe_fail("lock")
        return store.devices.get(device_id) or DeviceSnapshot(device_id=device_id)

    async def save(self, snapshot: DeviceSnapshot) -> None:
        self.uow.maybe_fail("save")
        self.uow.staged_devices[snapshot.device_id] = snapshot


class _Trips:
    def __init__(self, uow: "InMemoryUnitOfWork"):
        self.uow = uow

    def _get(self, trip_id):
        if trip_id in self.uow.staged_trips:
            return self.uow.staged_trips[trip_id]
        committed = self.uow.store.trips.get(trip_id)
        if committed is None:
            return None
        staged = copy.deepcopy(committed)
        self.uow.staged_trips[trip_id] = staged
        return staged

    async def open_trip(self, write: OpenTrip) -> bool:
        self.uow.maybe_fail("open_trip")
        if write.trip_id in self.uow.staged_trips or write.trip_id in self.uow.store.trips:
            return False
        self.uow.staged_trips[write.trip_id] = TripRecord(
            trip_id=write.trip_id,
            device_id=write.device_id,
            start_time=write.start_time,
            start_lat=write.start_lat,
            start_lng=write.start_lng,
            start_odometer_meters=write.start_odometer_meters,
        )
        return True

    async def close_trip(self, write: CloseTrip):
        self.uow.maybe_fail("close_trip")
        trip = self._get(write.trip_id)
        if trip is None or trip.end_time is not None:
            return None
        trip.end_time = max(write.end_time, trip.start_time)
        trip.end_lat = write.end_lat
        trip.end_lng = write.end_lng
        trip.end_odometer_meters = write.end_odometer_meters
        trip.distance_m = closing_distance_m(trip.start_odometer_meters, write.end_odometer_meters, trip.distance_m)
        return trip

    async def add_point(self, write: AppendPoint) -> bool:
        self.uow.maybe_fail("add_point")
        key = (write.device_id, write.event_time, write.correlation_id)
        if key in self.uow.staged_points or key in self.uow.store.points:
            return False
        self.uow.staged_points[key] = write
        if write.distance_increment_m > 0:
            trip = self._get(write.trip_id)
            trip.distance_m += write.distance_increment_m
        return True

    async def point_exists(self, device_id, correlation_id, event_time) -> bool:
        key = (device_id, event_time, correlation_id)
        return key in self.uow.staged_points or key in self.uow.store.points


class _Alerts:
    def __init__(self, uow: "InMemoryUnitOfWork"):
        self.uow = uow

    async def exists(self, device_id, correlation_id, event_time) -> bool:
        key = (device_id, correlation_id, event_time)
        return key in self.uow.staged_alerts or key in self.uow.store.alerts

    async def record(self, write: RecordAlert) -> bool:
        self.uow.maybe_fail("record_alert")
        key = (write.device_id, write.correlation_id, write.event_time)
        if key in self.uow.staged_alerts or key in self.uow.store.alerts:
            return False
        self.uow.staged_alerts[key] = write
        return True


class _Idle:
    def __init__(self, uow: "InMemoryUnitOfWork"):
        self.uow = uow

    async def exists(self, device_id, correlation_id, event_time) -> bool:
        key = (device_id, correlation_id, event_time)
        return key in self.uow.staged_idle or key in self.uow.store.idle

    async def record(self, write: RecordIdleActivity) -> bool:
        self.uow.maybe_fail("record_idle")
        key = (write.device_id, write.correlation_id, write.event_time)
        if key in self.uow.staged_idle or key in self.uow.store.idle:
            return False
        self.uow.staged_idle[key] = write
        return True


class InMemoryUnitOfWork:
    def __init__(self, store: MemoryStore):
        self.store = store
        self.held = []
        self.staged_devices = {}
        self.staged_trips = {}
        self.staged_points = {}
        self.staged_alerts = {}
        self.staged_idle = {}
        self.committed = False

    def maybe_fail(self, step: str) -> None:
        if self.store.fail_on == step:
            raise TransientStoreError("connection", f"injected failure at {step}")

    async def __aenter__(self):
        return _UowView(self)

    async def commit(self) -> None:
        self.maybe_fail("commit")
        self.store.devices.update(self.staged_devices)
        self.store.trips.update(self.staged_trips)
        self.store.points.update(self.staged_points)
        self.store.alerts.update(self.staged_alerts)
        self.store.idle.update(self.staged_idle)
        self.store.commits += 1
        self.committed = True

    async def __aexit__(self, exc_type, exc, tb):
        if not self.committed:
            self.store.rollbacks += 1
        for lock in self.held:
            lock.release()
        self.held.clear()
        return False


class _UowView:
    """What the processor sees inside `async with`: devices/trips/alerts/idle stores and commit()."""

    def __init__(self, uow: InMemoryUnitOfWork):
        self._uow = uow
        self.devices = _Devices(uow)
        self.trips = _Trips(uow)
        self.alerts = _Alerts(uow)
        self.idle = _Idle(uow)

    async def commit(self) -> None:
        await self._uow.commit()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def breaker():
    return CircuitBreaker(
        failure_threshold=100,
        recovery_timeout=60.0,
        expected_exception=TransientStoreError,
        name="test_store",
    )


@pytest.fixture
def processor(memory_store, breaker):
    return TripProcessor(
        uow_factory=lambda: InMemoryUnitOfWork(memory_store),
        breaker=breaker,
        attempt_timeout=2.0,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def make_event():
    """Factory for TelemetryEvent with sensible defaults."""

    def _make(
        device_id: str = "D1",
        minutes: float = 0,
        alert: Optional[AlertType] = None,
        message_class: Optional[str] = None,
        lat: Optional[float] = 20.6052,
        lng: Optional[float] = -100.3841,
        speed: Optional[float] = 30.0,
        heading: Optional[float] = 128.0,
        odometer_meters: Optional[int] = None,
        correlation_id: Optional[uuid.UUID] = None,
        raw_alert: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> TelemetryEvent:
        if message_class is None:
            message_class = "alert" if alert is not None else "status"
        if raw_alert is None and alert is not None:
            raw_alert = alert.value.replace("_", " ").upper()
        return TelemetryEvent(
            device_id=device_id,
            event_time=T0 + timedelta(minutes=minutes),
            correlation_id=correlation_id or uuid.uuid4(),
            alert_signal=alert,
            raw_alert=raw_alert,
            message_class=message_class,
            lat=lat,
            lng=lng,
            speed=speed,
            heading=heading,
            odometer_meters=odometer_meters,
            metadata=metadata or {},
        )

    return _make
