"""
Tests for the pure trip state machine decision.
"""
import uuid
from datetime import timedelta

import pytest

from conftest import FIXED_NOW, T0
from trips.alert_codes import AlertType
from trips.decision import (
    IDLE_GPS_POINT,
    IDLE_POINT_DISCARDED,
    NOTE_IDLE_ACTIVITY_RECORDED,
    NOTE_IGNITION_OFF_IGNORED,
    NOTE_IGNITION_ON_IGNORED,
    NOTE_POINT_APPENDED,
    NOTE_POINT_DISCARDED_NO_FIX,
    NOTE_POINT_DISCARDED_NO_TRIP,
    NOTE_TRIP_CLOSED,
    NOTE_TRIP_OPENED,
    AppendPoint,
    CloseTrip,
    DeviceSnapshot,
    OpenTrip,
    RecordAlert,
    RecordIdleActivity,
    alert_id_for,
    decide,
    idle_id_for,
    trip_id_for,
)


def open_state(trip_id=None, **kwargs):
    return DeviceSnapshot(
        device_id="D1",
        current_trip_id=trip_id or uuid.uuid4(),
        ignition_on=True,
        last_point_at=T0,
        last_lat=20.6052,
        last_lng=-100.3841,
        **kwargs,
    )


class TestIgnitionOn:

    def test_opens_trip_when_none_open(self, make_event):
        event = make_event(alert=AlertType.IGNITION_ON, odometer_meters=121800)
        decision = decide(DeviceSnapshot(device_id="D1"), event, now=FIXED_NOW)

        open_write, alert_write = decision.writes
        assert isinstance(open_write, OpenTrip)
        assert open_write.trip_id == trip_id_for("D1", event.correlation_id, event.event_time)
        assert open_write.start_time == event.event_time
        assert open_write.start_odometer_meters == 121800
        assert isinstance(alert_write, RecordAlert)
        assert alert_write.trip_id == open_write.trip_id
        assert alert_write.alert_type == AlertType.IGNITION_ON

        assert decision.state.current_trip_id == open_write.trip_id
        assert decision.state.ignition_on is True
        assert NOTE_TRIP_OPENED in decision.notes

    def test_does_not_open_second_trip(self, make_event):
        pre = open_state()
        decision = decide(pre, make_event(alert=AlertType.IGNITION_ON, minutes=5), now=FIXED_NOW)

        assert not any(isinstance(w, OpenTrip) for w in decision.writes)
        assert decision.state.current_trip_id == pre.current_trip_id
        assert NOTE_IGNITION_ON_IGNORED in decision.notes
        alert = decision.writes[-1]
        assert isinstance(alert, RecordAlert) and alert.trip_id == pre.current_trip_id

    def test_trip_id_is_stable_for_same_event(self, make_event):
        event = make_event(alert=AlertType.IGNITION_ON)
        first = decide(DeviceSnapshot(device_id="D1"), event, now=FIXED_NOW)
        second = decide(DeviceSnapshot(device_id="D1"), event, now=FIXED_NOW)
        assert first.writes == second.writes

    def test_reused_token_at_new_time_mints_new_trip_id(self, make_event):
        token = uuid.uuid4()
        first = make_event(alert=AlertType.IGNITION_ON, minutes=0, correlation_id=token)
        later = make_event(alert=AlertType.IGNITION_ON, minutes=60, correlation_id=token)
        assert trip_id_for("D1", token, first.event_time) != trip_id_for("D1", token, later.event_time)


class TestIgnitionOff:

    def test_closes_open_trip(self, make_event):
        pre = open_state()
        event = make_event(alert=AlertType.IGNITION_OFF, minutes=30, odometer_meters=135300)
        decision = decide(pre, event, now=FIXED_NOW)

        close_write, alert_write = decision.writes
        assert isinstance(close_write, CloseTrip)
        assert close_write.trip_id == pre.current_trip_id
        assert close_write.end_time == event.event_time
        assert close_write.end_odometer_meters == 135300
        # Closing alert still belongs to the trip it ended
        assert alert_write.trip_id == pre.current_trip_id

        assert decision.state.current_trip_id is None
        assert decision.state.ignition_on is False
        assert NOTE_TRIP_CLOSED in decision.notes

    def test_no_trip_records_unlinked_alert(self, make_event):
        pre = DeviceSnapshot(device_id="D1", ignition_on=True)
        decision = decide(pre, make_event(alert=AlertType.IGNITION_OFF), now=FIXED_NOW)

        (alert_write,) = decision.writes
        assert isinstance(alert_write, RecordAlert)
        assert alert_write.trip_id is None
        assert decision.state.ignition_on is True
        assert NOTE_IGNITION_OFF_IGNORED in decision.notes


class TestStatus:

    def test_appends_point_with_distance_increment(self, make_event):
        pre = open_state()
        event = make_event(minutes=1, lat=20.6152, lng=-100.3841)
        decision = decide(pre, event, now=FIXED_NOW)

        (point,) = decision.writes
        assert isinstance(point, AppendPoint)
        assert point.trip_id == pre.current_trip_id
        assert point.ignition_on is True
        assert point.distance_increment_m == pytest.approx(1112, abs=2)
        assert NOTE_POINT_APPENDED in decision.notes

    def test_late_point_adds_no_distance(self, make_event):
        pre = open_state()
        event = make_event(minutes=-1, lat=20.6152, lng=-100.3841)
        (point,) = decide(pre, event, now=FIXED_NOW).writes
        assert point.distance_increment_m == 0.0

    def test_glitch_jump_adds_no_distance(self, make_event):
        pre = open_state()
        event = make_event(minutes=1, lat=21.6052, lng=-100.3841)
        (point,) = decide(pre, event, now=FIXED_NOW, max_jump_km=10).writes
        assert point.distance_increment_m == 0.0

    def test_discarded_without_trip_goes_to_idle_log(self, make_event):
        event = make_event(lat=20.7, lng=-100.4)
        decision = decide(DeviceSnapshot(device_id="D1"), event, now=FIXED_NOW)

        (idle,) = decision.writes
        assert isinstance(idle, RecordIdleActivity)
        assert idle.activity_type == IDLE_GPS_POINT
        assert idle.idle_id == idle_id_for("D1", event.correlation_id, event.event_time)
        assert (idle.lat, idle.lng) == (20.7, -100.4)
        assert idle.severity == 1
        assert NOTE_POINT_DISCARDED_NO_TRIP in decision.notes
        assert NOTE_IDLE_ACTIVITY_RECORDED in decision.notes

    def test_discarded_without_fix_goes_to_idle_log(self, make_event):
        decision = decide(open_state(), make_event(minutes=1, lat=None, lng=None), now=FIXED_NOW)

        (idle,) = decision.writes
        assert idle.activity_type == IDLE_POINT_DISCARDED
        assert NOTE_POINT_DISCARDED_NO_FIX in decision.notes

    def test_idle_row_carries_raw_code_and_metadata(self, make_event):
        event = make_event(metadata={"raw_code": "35", "server_time": "2025-12-03T19:58:20Z"})
        (idle,) = decide(DeviceSnapshot(device_id="D1"), event, now=FIXED_NOW).writes

        assert idle.raw_code == 35
        assert idle.metadata["server_time"] == "2025-12-03T19:58:20Z"

    def test_non_numeric_raw_code_is_dropped(self, make_event):
        event = make_event(metadata={"raw_code": "A1"})
        (idle,) = decide(DeviceSnapshot(device_id="D1"), event, now=FIXED_NOW).writes
        assert idle.raw_code is None


class TestOtherAlerts:

    def test_alert_linked_to_open_trip(self, make_event):
        pre = open_state()
        event = make_event(alert=AlertType.POWER_CUT, minutes=3)
        (alert,) = decide(pre, event, now=FIXED_NOW).writes

        assert alert.trip_id == pre.current_trip_id
        assert alert.alert_id == alert_id_for("D1", event.correlation_id, event.event_time)
        assert alert.severity == 3

    def test_alert_without_trip(self, make_event):
        event = make_event(alert=AlertType.JAMMING, raw_alert="Jamming")
        idle, alert = decide(DeviceSnapshot(device_id="D1"), event, now=FIXED_NOW).writes

        assert alert.trip_id is None
        # Outside a trip the alert text is also the idle activity type
        assert isinstance(idle, RecordIdleActivity)
        assert idle.activity_type == "Jamming"

    def test_ignition_events_never_go_to_idle_log(self, make_event):
        for alert in (AlertType.IGNITION_ON, AlertType.IGNITION_OFF):
            writes = decide(DeviceSnapshot(device_id="D1"), make_event(alert=alert), now=FIXED_NOW).writes
            assert not any(isinstance(w, RecordIdleActivity) for w in writes)

    def test_alert_in_trip_does_not_go_to_idle_log(self, make_event):
        event = make_event(alert=AlertType.POWER_CUT, lat=None, lng=None)
        writes = decide(open_state(), event, now=FIXED_NOW).writes
        assert [type(w) for w in writes] == [RecordAlert]

    def test_status_class_alert_also_appends_point(self, make_event):
        pre = open_state()
        event = make_event(alert=AlertType.UNKNOWN, message_class="status", minutes=2, raw_alert="Harsh Turn")
        decision = decide(pre, event, now=FIXED_NOW)
        assert [type(w) for w in decision.writes] == [AppendPoint, RecordAlert]


class TestRefresh:

    def test_last_known_fields_follow_event(self, make_event):
        pre = open_state(last_speed=10.0, last_odometer_meters=100)
        event = make_event(minutes=1, lat=20.61, lng=-100.38, speed=42.0, odometer_meters=None)
        state = decide(pre, event, now=FIXED_NOW).state

        assert state.last_point_at == event.event_time
        assert (state.last_lat, state.last_lng) == (20.61, -100.38)
        assert state.last_speed == 42.0
        assert state.last_odometer_meters == 100
        assert state.last_correlation_id == event.correlation_id
        assert state.last_updated_at == FIXED_NOW

    def test_missing_fix_keeps_last_position(self, make_event):
        pre = open_state()
        state = decide(pre, make_event(minutes=1, lat=None, lng=None), now=FIXED_NOW).state
        assert (state.last_lat, state.last_lng) == (pre.last_lat, pre.last_lng)

    def test_refresh_is_unconditional_for_late_events(self, make_event):
        pre = open_state()
        event = make_event(minutes=-10)
        state = decide(pre, event, now=FIXED_NOW).state
        assert state.last_point_at == T0 - timedelta(minutes=10)


def test_rejects_event_for_other_device(make_event):
    with pytest.raises(ValueError):
        decide(DeviceSnapshot(device_id="D2"), make_event(device_id="D1"), now=FIXED_NOW)
