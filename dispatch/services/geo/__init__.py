"""
Geo Utilities

Distance calculations used by the clusterer and the route builder.

Usage:
    from dispatch.services.geo import haversine_meters

    meters = haversine_meters(-8.0476, -34.8770, -8.0500, -34.8800)
"""

from dispatch.services.geo.haversine import (
    EARTH_RADIUS_METERS,
    Coordinate,
    haversine_meters,
    path_length_meters,
)

__all__ = [
    "EARTH_RADIUS_METERS",
    "Coordinate",
    "haversine_meters",
    "path_length_meters",
]
