"""
Proximity Clustering

Greedy single-pass grouping of delivery orders into trips.

Algorithm:
    1. Take the first remaining order as the seed of a new group
    2. Collect the remaining orders within ``max_distance_meters`` of the seed
    3. Add the first ``max_per_group - 1`` of them (input order) to the group
    4. Repeat until no orders remain

Every order ends up in exactly one group, no group exceeds ``max_per_group``
and every member lies within the radius of its group's seed. Members are not
checked against each other, only against the seed.
"""

import logging
from typing import Sequence

from dispatch.repositories.base import DeliverableOrder
from dispatch.services.geo import haversine_meters

logger = logging.getLogger(__name__)


def cluster_orders(
    orders: Sequence[DeliverableOrder],
    max_per_group: int,
    max_distance_meters: float,
) -> list[list[DeliverableOrder]]:
    """
    Group orders by proximity to a seed order.

    Args:
        orders: Orders with coordinates, in processing order
        max_per_group: Maximum orders per group (>= 1)
        max_distance_meters: Maximum seed-to-member distance (>= 0)

    Returns:
        list[list[DeliverableOrder]]: Groups in creation order, seed first

    Raises:
        ValueError: On invalid limits or an order without coordinates
    """
    if max_per_group < 1:
        raise ValueError(f"max_per_group must be at least 1, got {max_per_group}")
    if max_distance_meters < 0:
        raise ValueError(f"max_distance_meters must not be negative, got {max_distance_meters}")

    missing = [order.id for order in orders if not order.has_coordinates]
    if missing:
        raise ValueError(f"Orders without coordinates cannot be clustered: {missing}")

    groups: list[list[DeliverableOrder]] = []
    remaining = list(orders)

    while remaining:
        seed = remaining.pop(0)

        nearby = [
            order
            for order in remaining
            if haversine_meters(seed.lat, seed.lng, order.lat, order.lng) <= max_distance_meters
        ]
        members = nearby[: max_per_group - 1]

        taken = {id(order) for order in members}
        remaining = [order for order in remaining if id(order) not in taken]

        groups.append([seed, *members])

    logger.debug(f"Clustered {len(orders)} orders into {len(groups)} groups")
    return groups
