"""
Event decoder: raw gateway payload -> TelemetryEvent.
Pure function, no I/O. Gateway messages look like
{"data": {"DEVICE_ID": ..., "GPS_DATETIME": ..., "ALERT": ..., ...}, "metadata": {...}, "uuid": ...};
numeric fields usually arrive as strings and an empty string means "not reported".
"""
import json
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union

from dateutil import parser as date_parser

from .alert_codes import AlertType, classify_alert
from .exceptions import DecodeError

# Namespace for identifiers derived from idempotency tokens
TRIPS_NAMESPACE = uuid.UUID("6f1c2a4e-8d3b-5c7a-9e21-4b0d3f5a7c19")

MSG_CLASS_STATUS = "status"

LAT_RANGE = (-90.0, 90.0)
LON_RANGE = (-180.0, 180.0)
NO_FIX = (0.0, 0.0)


@dataclass(frozen=True)
class TelemetryEvent:
    """One decoded telemetry message for one device."""

    device_id: str
    event_time: datetime
    correlation_id: uuid.UUID
    alert_signal: Optional[AlertType] = None
    raw_alert: Optional[str] = None
    message_class: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    speed: Optional[float] = None
    heading: Optional[float] = None
    odometer_meters: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_position(self) -> bool:
        return self.lat is not None and self.lng is not None

    @property
    def is_status(self) -> bool:
        # Plain position reports from the gateway carry neither MSG_CLASS nor ALERT
        if self.message_class is None:
            return self.alert_signal is None
        return self.message_class == MSG_CLASS_STATUS

    @property
    def is_ignition_on(self) -> bool:
        return self.alert_signal == AlertType.IGNITION_ON

    @property
    def is_ignition_off(self) -> bool:
        return self.alert_signal == AlertType.IGNITION_OFF


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _parse_float(data: Mapping[str, Any], key: str) -> Optional[float]:
    value = data.get(key)
    if _blank(value):
        return None
    if isinstance(value, bool):
        raise DecodeError(key, f"expected a number, got {value!r}")
    try:
        number = float(value.strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        raise DecodeError(key, f"expected a number, got {value!r}")
    if math.isnan(number) or math.isinf(number):
        raise DecodeError(key, f"expected a finite number, got {value!r}")
    return number


def _parse_event_time(data: Mapping[str, Any]) -> datetime:
    raw = data.get("GPS_DATETIME")
    if isinstance(raw, datetime):
        parsed = raw
    elif not _blank(raw):
        try:
            parsed = date_parser.parse(str(raw).strip())
        except (ValueError, OverflowError):
            raise DecodeError("GPS_DATETIME", f"unparseable timestamp {raw!r}")
    else:
        epoch = _parse_float(data, "GPS_EPOCH")
        if epoch is None:
            raise DecodeError("GPS_DATETIME", "missing timestamp")
        try:
            parsed = datetime.fromtimestamp(epoch, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            raise DecodeError("GPS_EPOCH", f"epoch out of range {epoch!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_device_id(data: Mapping[str, Any], metadata: Mapping[str, Any]) -> str:
    for source in (data, metadata):
        value = source.get("DEVICE_ID")
        if not _blank(value):
            return str(value).strip()
    raise DecodeError("DEVICE_ID", "missing device identifier")


def _parse_correlation_id(payload: Mapping[str, Any], data: Mapping[str, Any],
                          device_id: str, event_time: datetime) -> uuid.UUID:
    token = payload.get("uuid")
    if _blank(token):
        token = data.get("correlation_id")
    if _blank(token):
        # No token on the wire: derive one from the content so redeliveries still collapse
        canonical = json.dumps(data, sort_keys=True, default=str)
        return uuid.uuid5(TRIPS_NAMESPACE, f"{device_id}|{event_time.isoformat()}|{canonical}")
    token = str(token).strip()
    try:
        return uuid.UUID(token)
    except ValueError:
        return uuid.uuid5(TRIPS_NAMESPACE, token)


def _parse_position(data: Mapping[str, Any]):
    lat = _parse_float(data, "LATITUD")
    lng = _parse_float(data, "LONGITUD")
    if lat is None or lng is None:
        return None, None
    if not (LAT_RANGE[0] <= lat <= LAT_RANGE[1]):
        raise DecodeError("LATITUD", f"latitude out of range {lat}")
    if not (LON_RANGE[0] <= lng <= LON_RANGE[1]):
        raise DecodeError("LONGITUD", f"longitude out of range {lng}")
    if (lat, lng) == NO_FIX:
        return None, None
    return lat, lng


def _load_payload(payload: Union[bytes, bytearray, str, Mapping[str, Any]]) -> Mapping[str, Any]:
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(None, f"payload is not UTF-8: {e}")
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as e:
            raise DecodeError(None, f"payload is not JSON: {e}")
    if not isinstance(payload, Mapping):
        raise DecodeError(None, f"payload must be an object, got {type(payload).__name__}")
    return payload


def decode_message(payload: Union[bytes, bytearray, str, Mapping[str, Any]],
                   odometer_scale: float = 1000) -> TelemetryEvent:
    """
    Decode one gateway message.

    Args:
        payload: raw message body (bytes/str JSON) or an already parsed mapping
        odometer_scale: multiplier from the reported ODOMETER unit to meters
            (the gateway reports kilometers)

    Returns:
        TelemetryEvent

    Raises:
        DecodeError: naming the missing or malformed field
    """
    message = _load_payload(payload)
    data = message.get("data", message)
    if not isinstance(data, Mapping):
        raise DecodeError("data", "data section must be an object")
    metadata = message.get("metadata") or {}
    if not isinstance(metadata, Mapping):
        raise DecodeError("metadata", "metadata section must be an object")

    device_id = _parse_device_id(data, metadata)
    event_time = _parse_event_time(data)
    correlation_id = _parse_correlation_id(message, data, device_id, event_time)

    raw_alert = data.get("ALERT")
    raw_alert = None if _blank(raw_alert) else str(raw_alert).strip()
    alert_signal = classify_alert(raw_alert)

    msg_class = data.get("MSG_CLASS")
    message_class = None if _blank(msg_class) else str(msg_class).strip().lower()

    lat, lng = _parse_position(data)

    speed = _parse_float(data, "SPEED")
    if speed is not None and speed < 0:
        raise DecodeError("SPEED", f"negative speed {speed}")
    heading = _parse_float(data, "COURSE")

    odometer = _parse_float(data, "ODOMETER")
    odometer_meters = None
    if odometer is not None:
        if odometer < 0:
            raise DecodeError("ODOMETER", f"negative odometer {odometer}")
        odometer_meters = int(round(odometer * odometer_scale))

    side = dict(metadata)
    if not _blank(data.get("raw_code")):
        side["raw_code"] = data.get("raw_code")

    return TelemetryEvent(
        device_id=device_id,
        event_time=event_time,
        correlation_id=correlation_id,
        alert_signal=alert_signal,
        raw_alert=raw_alert,
        message_class=message_class,
        lat=lat,
        lng=lng,
        speed=speed,
        heading=heading,
        odometer_meters=odometer_meters,
        metadata=side,
    )
