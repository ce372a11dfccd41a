import math

EARTH_RADIUS_METERS = 6_371_000.0
METERS_PER_MILE = 1609.344
METERS_PER_FOOT = 0.3048


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two WGS84 points, in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def is_valid_coordinate(latitude: float, longitude: float) -> bool:
    return -90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0


def bounding_box(latitude: float, longitude: float, radius_meters: float) -> tuple[float, float, float, float]:
    """
    Returns (min_lat, max_lat, min_lon, max_lon) enclosing the radius.
    Used as a cheap SQL prefilter before the exact haversine check.
    """
    d_lat = math.degrees(radius_meters / EARTH_RADIUS_METERS)
    cos_lat = max(math.cos(math.radians(latitude)), 1e-6)
    d_lon = math.degrees(radius_meters / (EARTH_RADIUS_METERS * cos_lat))
    return latitude - d_lat, latitude + d_lat, longitude - d_lon, longitude + d_lon
