import math

from presence_engine.models import GpsCoordinate

EARTH_RADIUS_KM = 6371.0


def distance_km(a: GpsCoordinate, b: GpsCoordinate) -> float:
    """Great-circle distance between two coordinates (haversine)."""
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    d_lat = math.radians(b.latitude - a.latitude)
    d_lon = math.radians(b.longitude - a.longitude)

    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def distance_meters(a: GpsCoordinate, b: GpsCoordinate) -> float:
    return distance_km(a, b) * 1000.0


def offset_north(origin: GpsCoordinate, meters: float) -> GpsCoordinate:
    """Coordinate `meters` due north of `origin` along the meridian."""
    delta_deg = math.degrees(meters / (EARTH_RADIUS_KM * 1000.0))
    return GpsCoordinate(origin.latitude + delta_deg, origin.longitude)
