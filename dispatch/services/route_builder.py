"""
Route Builder

Turns a group of orders into an ordered route starting at the branch.

Stops are visited in the order given (no resequencing). Distance is the sum
of straight-line segments; time assumes a constant average speed plus a fixed
dwell time at each stop.
"""

import logging
import math
import string
from dataclasses import dataclass
from typing import Optional, Sequence

from dispatch.core.config import Settings
from dispatch.repositories.base import BranchRecord, DeliverableOrder, RoutePoint
from dispatch.services.geo import path_length_meters

logger = logging.getLogger(__name__)

ORIGIN_LABEL = "Branch"


@dataclass(frozen=True)
class RouteOrigin:
    """Where every route of a branch starts."""
    lat: float
    lng: float
    address: str
    is_fallback: bool = False


@dataclass
class RoutePlan:
    """
    A built route with its estimates.

    Attributes:
        points: Origin first, then one point per order
        estimated_distance_meters: Total length, rounded to whole meters
        estimated_time_minutes: Travel plus dwell time, rounded up
        used_fallback_origin: Branch had no coordinates of its own
    """
    points: list[RoutePoint]
    estimated_distance_meters: int
    estimated_time_minutes: int
    used_fallback_origin: bool = False

    @property
    def stops(self) -> int:
        return len(self.points) - 1

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "route": [point.to_dict() for point in self.points],
            "estimated_distance": self.estimated_distance_meters,
            "estimated_time": self.estimated_time_minutes,
            "used_fallback_origin": self.used_fallback_origin,
        }


def resolve_origin(branch: Optional[BranchRecord], settings: Settings) -> RouteOrigin:
    """
    Branch coordinates, else branch address coordinates, else the configured
    fallback coordinate.
    """
    address = (branch.address_street if branch else None) or ORIGIN_LABEL

    if branch is not None and branch.latitude is not None and branch.longitude is not None:
        return RouteOrigin(lat=float(branch.latitude), lng=float(branch.longitude), address=address)

    if branch is not None and branch.address_lat is not None and branch.address_lng is not None:
        return RouteOrigin(lat=float(branch.address_lat), lng=float(branch.address_lng), address=address)

    branch_label = f"#{branch.id}" if branch else "(unknown)"
    logger.warning(
        f"⚠️ Branch {branch_label} has no coordinates, using fallback origin "
        f"({settings.fallback_origin_lat}, {settings.fallback_origin_lng})"
    )
    return RouteOrigin(
        lat=settings.fallback_origin_lat,
        lng=settings.fallback_origin_lng,
        address=address,
        is_fallback=True,
    )


def stop_label(index: int) -> str:
    """Stop A, Stop B, ... Stop Z, Stop AA, Stop AB, ..."""
    letters = ""
    index += 1
    while index > 0:
        index, remainder = divmod(index - 1, 26)
        letters = string.ascii_uppercase[remainder] + letters
    return f"Stop {letters}"


def estimate_minutes(distance_meters: float, stops: int, average_speed_kmh: float, stop_dwell_minutes: float) -> int:
    travel = distance_meters / 1000 / average_speed_kmh * 60
    return math.ceil(travel + stops * stop_dwell_minutes)


def build_route(
    origin: RouteOrigin,
    orders: Sequence[DeliverableOrder],
    average_speed_kmh: float = 30.0,
    stop_dwell_minutes: float = 5.0,
) -> RoutePlan:
    """
    Build the route origin -> orders (given order).

    Args:
        origin: Resolved branch origin
        orders: Orders with coordinates
        average_speed_kmh: Speed used for the travel estimate
        stop_dwell_minutes: Time added per stop

    Returns:
        RoutePlan: Points and estimates, ``len(points) == len(orders) + 1``

    Raises:
        ValueError: If an order has no coordinates
    """
    points = [
        RoutePoint(
            order_id=None,
            lat=origin.lat,
            lng=origin.lng,
            address=origin.address,
            label=ORIGIN_LABEL,
            is_origin=True,
        )
    ]

    for index, order in enumerate(orders):
        if not order.has_coordinates:
            raise ValueError(f"Order #{order.id} has no coordinates")
        points.append(
            RoutePoint(
                order_id=order.id,
                lat=float(order.lat),
                lng=float(order.lng),
                address=", ".join(part for part in (order.address, order.city) if part),
                label=stop_label(index),
            )
        )

    distance = path_length_meters((point.lat, point.lng) for point in points)

    return RoutePlan(
        points=points,
        estimated_distance_meters=round(distance),
        estimated_time_minutes=estimate_minutes(distance, len(orders), average_speed_kmh, stop_dwell_minutes),
        used_fallback_origin=origin.is_fallback,
    )
