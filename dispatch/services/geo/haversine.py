"""
Great-Circle Distance

Haversine distance on a spherical Earth (mean radius 6371 km). Straight
line only; no road network or external routing API.
"""

import math
from typing import Iterable, Tuple

EARTH_RADIUS_METERS = 6_371_000.0

Coordinate = Tuple[float, float]


def haversine_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Distance between two coordinates in meters.

    Args:
        lat1: Latitude of point 1 in decimal degrees
        lng1: Longitude of point 1 in decimal degrees
        lat2: Latitude of point 2 in decimal degrees
        lng2: Longitude of point 2 in decimal degrees

    Returns:
        float: Distance in meters

    Example:
        >>> round(haversine_meters(-8.0476, -34.8770, -8.0476, -34.8770))
        0
    """
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    a = min(1.0, a)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def path_length_meters(points: Iterable[Coordinate]) -> float:
    """Sum of consecutive segment distances along ``points``."""
    total = 0.0
    previous = None
    for point in points:
        if previous is not None:
            total += haversine_meters(previous[0], previous[1], point[0], point[1])
        previous = point
    return total
