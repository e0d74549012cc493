"""
Trip distance: haversine between consecutive points, odometer delta at close.
Filter: hops of MAX_POINT_DISTANCE_KM or more are GPS glitches and add nothing.
"""
import math
from typing import Optional

EARTH_RADIUS_KM = 6371.0
MAX_POINT_DISTANCE_KM = 10.0


def haversine_km(
    lat1: float, lon1: float, lat2: float, lon2: float
) -> float:
    """Haversine distance in km."""
    lat1, lon1, lat2, lon2 = map(math.radians, (lat1, lon1, lat2, lon2))
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.asin(math.sqrt(min(1.0, a)))
    return EARTH_RADIUS_KM * c


def point_increment_m(
    prev_lat: Optional[float],
    prev_lon: Optional[float],
    lat: Optional[float],
    lon: Optional[float],
    max_jump_km: float = MAX_POINT_DISTANCE_KM,
) -> float:
    """Meters between the previous and current fix; 0 when either is missing or the jump is filtered."""
    if None in (prev_lat, prev_lon, lat, lon):
        return 0.0
    dist_km = haversine_km(prev_lat, prev_lon, lat, lon)
    if dist_km >= max_jump_km:
        return 0.0
    return dist_km * 1000.0


def closing_distance_m(
    start_odometer_m: Optional[int],
    end_odometer_m: Optional[int],
    accumulated_m: Optional[float],
) -> float:
    """
    Final trip distance.

    Odometer delta wins when both readings exist and the counter did not go
    backwards (device reset); otherwise the haversine total accumulated
    from points stands. Never negative.
    """
    if start_odometer_m is not None and end_odometer_m is not None:
        delta = end_odometer_m - start_odometer_m
        if delta >= 0:
            return float(delta)
    return max(0.0, float(accumulated_m or 0.0))
