"""Straight-line distance and arrival-time estimates.

Road routing is deliberately not modelled: every estimate is the haversine
distance driven at an assumed constant average speed.
"""

import math

from sehat.models.geo import Coordinates

EARTH_RADIUS_METERS = 6_371_000.0

UNREACHABLE = math.inf


def distance_meters(a: Coordinates, b: Coordinates) -> float:
    """Great-circle (haversine) distance between two points, in meters."""
    if a.lat == b.lat and a.lng == b.lng:
        return 0.0

    lat1 = math.radians(a.lat)
    lat2 = math.radians(b.lat)
    d_lat = math.radians(b.lat - a.lat)
    d_lng = math.radians(b.lng - a.lng)

    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_METERS * c


def eta_millis_for_distance(meters: float, speed_kmh: float) -> float:
    if speed_kmh <= 0:
        return UNREACHABLE
    speed_ms = speed_kmh * 1000 / 3600
    return float(round(meters / speed_ms * 1000))


def eta_millis(origin: Coordinates, destination: Coordinates, speed_kmh: float) -> float:
    """ETA in milliseconds, or ``UNREACHABLE`` (infinity) for a non-positive speed."""
    return eta_millis_for_distance(distance_meters(origin, destination), speed_kmh)


def format_eta(eta_ms: float) -> str:
    """Render an ETA as "7 mins" or "1 hr 23 mins"."""
    if not math.isfinite(eta_ms):
        return "Unknown"

    total_minutes = round(eta_ms / 60000)
    if total_minutes < 60:
        return f"{total_minutes} min{'' if total_minutes == 1 else 's'}"

    hours, minutes = divmod(total_minutes, 60)
    hours_text = f"{hours} hr{'' if hours == 1 else 's'}"
    if minutes == 0:
        return hours_text
    return f"{hours_text} {minutes} min{'' if minutes == 1 else 's'}"


def offset_point(origin: Coordinates, north_meters: float, east_meters: float) -> Coordinates:
    """Move a point by a small north/east displacement (flat-earth approximation)."""
    d_lat = north_meters / EARTH_RADIUS_METERS
    d_lng = east_meters / (EARTH_RADIUS_METERS * math.cos(math.radians(origin.lat)))
    lat = max(-90.0, min(90.0, origin.lat + math.degrees(d_lat)))
    lng = ((origin.lng + math.degrees(d_lng) + 180.0) % 360.0) - 180.0
    return Coordinates(lat=lat, lng=lng)
