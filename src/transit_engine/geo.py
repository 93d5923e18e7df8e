"""Great-circle distance helpers."""

import math

# Earth's radius in meters for haversine calculation
EARTH_RADIUS_METERS = 6_371_000

# Average pedestrian speed used for walking legs
WALKING_SPEED_MPS = 1.4


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate the great-circle distance between two points in meters.

    Args:
        lat1, lon1: First point coordinates in degrees.
        lat2, lon2: Second point coordinates in degrees.

    Returns:
        Distance in meters.
    """
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lon = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_lat / 2) ** 2
        + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(delta_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_METERS * c


def bounding_box(lat: float, lon: float, radius_meters: float) -> tuple[float, float, float, float]:
    """Approximate (min_lat, max_lat, min_lon, max_lon) around a point.

    1 degree of latitude ~= 111,000 meters; longitude shrinks with latitude.
    """
    lat_delta = radius_meters / 111_000
    cos_lat = max(math.cos(math.radians(lat)), 1e-6)
    lon_delta = radius_meters / (111_000 * cos_lat)
    return lat - lat_delta, lat + lat_delta, lon - lon_delta, lon + lon_delta


def walking_seconds(distance_meters: float) -> int:
    return int(math.ceil(distance_meters / WALKING_SPEED_MPS))
