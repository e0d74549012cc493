"""
Trip state machine decision: (device snapshot, event) -> (snapshot', ledger writes).
Pure, no I/O; the processor locks the snapshot, applies the writes and persists
the post-image in one transaction.

Rule order, all against the locked pre-image:
  1. ignition on  -> open a trip if none is open, confirm ignition_on
  2. ignition off -> close the open trip, clear current_trip_id
  3. status       -> append a point to the trip open after 1-2, else discard
  4. idle log     -> outside a trip (ignition events excepted), or a sample the trip
                     could not take, goes to device_idle_activity
  5. alert        -> record it, linked to the trip open after 1-2 (or just closed)
  6. refresh last-known fields, always
"""
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from .alert_codes import AlertType, severity_for
from .decoder import TRIPS_NAMESPACE, TelemetryEvent
from .distance import MAX_POINT_DISTANCE_KM, point_increment_m

logger = logging.getLogger(__name__)

NOTE_TRIP_OPENED = "trip_opened"
NOTE_IGNITION_ON_IGNORED = "ignition_on_ignored"
NOTE_TRIP_CLOSED = "trip_closed"
NOTE_IGNITION_OFF_IGNORED = "ignition_off_ignored"
NOTE_POINT_APPENDED = "point_appended"
NOTE_POINT_DISCARDED_NO_TRIP = "point_discarded_no_trip"
NOTE_POINT_DISCARDED_NO_FIX = "point_discarded_no_fix"
NOTE_ALERT_RECORDED = "alert_recorded"
NOTE_IDLE_ACTIVITY_RECORDED = "idle_activity_recorded"

IDLE_GPS_POINT = "gps_idle_point"
IDLE_POINT_DISCARDED = "gps_point_discarded"
IDLE_SEVERITY = 1


@dataclass(frozen=True)
class DeviceSnapshot:
    """In-memory image of one trip_current_state row."""

    device_id: str
    current_trip_id: Optional[uuid.UUID] = None
    ignition_on: bool = False
    last_point_at: Optional[datetime] = None
    last_lat: Optional[float] = None
    last_lng: Optional[float] = None
    last_speed: Optional[float] = None
    last_odometer_meters: Optional[int] = None
    last_correlation_id: Optional[uuid.UUID] = None
    last_updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class OpenTrip:
    trip_id: uuid.UUID
    device_id: str
    start_time: datetime
    start_lat: Optional[float]
    start_lng: Optional[float]
    start_odometer_meters: Optional[int]


@dataclass(frozen=True)
class CloseTrip:
    trip_id: uuid.UUID
    device_id: str
    end_time: datetime
    end_lat: Optional[float]
    end_lng: Optional[float]
    end_odometer_meters: Optional[int]


@dataclass(frozen=True)
class AppendPoint:
    trip_id: uuid.UUID
    device_id: str
    event_time: datetime
    correlation_id: uuid.UUID
    lat: float
    lng: float
    speed: Optional[float]
    heading: Optional[float]
    ignition_on: bool
    odometer_meters: Optional[int]
    distance_increment_m: float = 0.0


@dataclass(frozen=True)
class RecordAlert:
    alert_id: uuid.UUID
    trip_id: Optional[uuid.UUID]
    device_id: str
    event_time: datetime
    correlation_id: uuid.UUID
    alert_type: AlertType
    raw_code: Optional[str]
    severity: int
    lat: Optional[float]
    lng: Optional[float]
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RecordIdleActivity:
    """A device_idle_activity row: what the device reported while no trip could take it."""

    idle_id: uuid.UUID
    device_id: str
    event_time: datetime
    correlation_id: uuid.UUID
    activity_type: str
    raw_code: Optional[int]
    severity: int
    lat: Optional[float]
    lng: Optional[float]
    metadata: Dict[str, Any] = field(default_factory=dict)


LedgerWrite = Union[OpenTrip, CloseTrip, AppendPoint, RecordAlert, RecordIdleActivity]


@dataclass
class Decision:
    state: DeviceSnapshot
    writes: List[LedgerWrite] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)


def trip_id_for(device_id: str, correlation_id: uuid.UUID, event_time: datetime) -> uuid.UUID:
    """Trip id minted by an ignition-on event; stable across redeliveries."""
    return uuid.uuid5(TRIPS_NAMESPACE, f"trip:{device_id}:{correlation_id}:{event_time.isoformat()}")


def alert_id_for(device_id: str, correlation_id: uuid.UUID, event_time: datetime) -> uuid.UUID:
    return uuid.uuid5(TRIPS_NAMESPACE, f"alert:{device_id}:{correlation_id}:{event_time.isoformat()}")


def idle_id_for(device_id: str, correlation_id: uuid.UUID, event_time: datetime) -> uuid.UUID:
    return uuid.uuid5(TRIPS_NAMESPACE, f"idle:{device_id}:{correlation_id}:{event_time.isoformat()}")


def _raw_code(event: TelemetryEvent) -> Optional[int]:
    try:
        return int(str(event.metadata.get("raw_code")).strip())
    except ValueError:
        return None


def _idle_activity(event: TelemetryEvent, activity_type: str) -> RecordIdleActivity:
    return RecordIdleActivity(
        idle_id=idle_id_for(event.device_id, event.correlation_id, event.event_time),
        device_id=event.device_id,
        event_time=event.event_time,
        correlation_id=event.correlation_id,
        activity_type=activity_type,
        raw_code=_raw_code(event),
        severity=IDLE_SEVERITY,
        lat=event.lat,
        lng=event.lng,
        metadata=dict(event.metadata),
    )


def _refresh(state: DeviceSnapshot, event: TelemetryEvent, now: datetime) -> DeviceSnapshot:
    return replace(
        state,
        last_point_at=event.event_time,
        last_lat=event.lat if event.lat is not None else state.last_lat,
        last_lng=event.lng if event.lng is not None else state.last_lng,
        last_speed=event.speed if event.speed is not None else state.last_speed,
        last_odometer_meters=(
            event.odometer_meters if event.odometer_meters is not None else state.last_odometer_meters
        ),
        last_correlation_id=event.correlation_id,
        last_updated_at=now,
    )


def _distance_increment(pre: DeviceSnapshot, event: TelemetryEvent, max_jump_km: float) -> float:
    # Only forward in time; late samples join the trip but add no distance
    if pre.last_point_at is None or event.event_time <= pre.last_point_at:
        return 0.0
    return point_increment_m(pre.last_lat, pre.last_lng, event.lat, event.lng, max_jump_km)


def decide(
    pre: DeviceSnapshot,
    event: TelemetryEvent,
    now: Optional[datetime] = None,
    max_jump_km: float = MAX_POINT_DISTANCE_KM,
) -> Decision:
    """
    Decide the ledger writes and the new device state for one event.

    Args:
        pre: locked device state before the event
        event: decoded telemetry event for the same device
        now: wall clock for last_updated_at (defaults to current UTC time)
        max_jump_km: GPS glitch filter for the running distance

    Returns:
        Decision with the post-image, ordered writes and rule notes
    """
    if pre.device_id != event.device_id:
        raise ValueError(f"event for {event.device_id} applied to state of {pre.device_id}")
    if now is None:
        now = datetime.now(timezone.utc)

    state = pre
    decision = Decision(state=pre)
    closed_trip_id: Optional[uuid.UUID] = None
    point_appended = False

    if event.is_ignition_on:
        if state.current_trip_id is None:
            trip_id = trip_id_for(event.device_id, event.correlation_id, event.event_time)
            decision.writes.append(OpenTrip(
                trip_id=trip_id,
                device_id=event.device_id,
                start_time=event.event_time,
                start_lat=event.lat,
                start_lng=event.lng,
                start_odometer_meters=event.odometer_meters,
            ))
            state = replace(state, current_trip_id=trip_id, ignition_on=True)
            decision.notes.append(NOTE_TRIP_OPENED)
        else:
            state = replace(state, ignition_on=True)
            decision.notes.append(NOTE_IGNITION_ON_IGNORED)
    elif event.is_ignition_off:
        if state.current_trip_id is not None:
            closed_trip_id = state.current_trip_id
            decision.writes.append(CloseTrip(
                trip_id=closed_trip_id,
                device_id=event.device_id,
                end_time=event.event_time,
                end_lat=event.lat,
                end_lng=event.lng,
                end_odometer_meters=event.odometer_meters,
            ))
            state = replace(state, current_trip_id=None, ignition_on=False)
            decision.notes.append(NOTE_TRIP_CLOSED)
        else:
            decision.notes.append(NOTE_IGNITION_OFF_IGNORED)

    if event.is_status:
        if state.current_trip_id is None:
            decision.notes.append(NOTE_POINT_DISCARDED_NO_TRIP)
        elif not event.has_position:
            decision.notes.append(NOTE_POINT_DISCARDED_NO_FIX)
        else:
            decision.writes.append(AppendPoint(
                trip_id=state.current_trip_id,
                device_id=event.device_id,
                event_time=event.event_time,
                correlation_id=event.correlation_id,
                lat=event.lat,
                lng=event.lng,
                speed=event.speed,
                heading=event.heading,
                ignition_on=state.ignition_on,
                odometer_meters=event.odometer_meters,
                distance_increment_m=_distance_increment(pre, event, max_jump_km),
            ))
            decision.notes.append(NOTE_POINT_APPENDED)
            point_appended = True

    if not (event.is_ignition_on or event.is_ignition_off):
        if state.current_trip_id is None:
            activity_type = event.raw_alert if event.raw_alert and event.raw_alert.strip() else IDLE_GPS_POINT
            decision.writes.append(_idle_activity(event, activity_type))
            decision.notes.append(NOTE_IDLE_ACTIVITY_RECORDED)
        elif event.alert_signal is None and not point_appended:
            # In-trip sample the trip could not take: no fix, or not a status report
            decision.writes.append(_idle_activity(event, IDLE_POINT_DISCARDED))
            decision.notes.append(NOTE_IDLE_ACTIVITY_RECORDED)

    if event.alert_signal is not None:
        linked_trip = state.current_trip_id or closed_trip_id
        decision.writes.append(RecordAlert(
            alert_id=alert_id_for(event.device_id, event.correlation_id, event.event_time),
            trip_id=linked_trip,
            device_id=event.device_id,
            event_time=event.event_time,
            correlation_id=event.correlation_id,
            alert_type=event.alert_signal,
            raw_code=event.raw_alert,
            severity=severity_for(event.alert_signal),
            lat=event.lat,
            lng=event.lng,
            metadata=dict(event.metadata),
        ))
        decision.notes.append(NOTE_ALERT_RECORDED)

    decision.state = _refresh(state, event, now)
    return decision
