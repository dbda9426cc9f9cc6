"""Distance helpers for event coordinates."""
import math
from typing import Tuple

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE = 111.32


def rough_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Approximate distance using a flat-earth projection.

    Only suitable for pre-filtering; never persist this value.

    Args:
        lat1, lon1: First point in decimal degrees
        lat2, lon2: Second point in decimal degrees

    Returns:
        Approximate distance in kilometers
    """
    dlon = abs(lon2 - lon1)
    if dlon > 180:
        dlon = 360 - dlon

    d_lat_km = abs(lat2 - lat1) * KM_PER_DEGREE
    d_lon_km = dlon * KM_PER_DEGREE * math.cos(math.radians((lat1 + lat2) / 2))
    return math.sqrt(d_lat_km * d_lat_km + d_lon_km * d_lon_km)


def precise_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance using the haversine formula.

    Args:
        lat1, lon1: First point in decimal degrees
        lat2, lon2: Second point in decimal degrees

    Returns:
        Distance in kilometers
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = (
        math.sin(dphi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def midpoint(lat1: float, lon1: float, lat2: float, lon2: float) -> Tuple[float, float]:
    """Arithmetic midpoint of two coordinates, used as the meeting point."""
    return (lat1 + lat2) / 2, (lon1 + lon2) / 2
