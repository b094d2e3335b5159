"""
                        Services Module

Business logic of the delivery dispatch engine. Services depend only on the
repository contracts, never on a concrete store.

Services:
    - policy: per-branch dispatch policy (created with defaults on first use)
    - availability: courier availability rules and pool ordering
    - clustering: greedy proximity grouping of orders into trips
    - route_builder: ordered routes with distance/time estimates
    - assignments: assignment lifecycle and the auto-create batch
    - route_sheets: process-safe Excel route sheet export
"""

from dispatch.services.assignments import (
    AssignmentService,
    AssignmentView,
    AutoCreateResult,
    AutoCreateStats,
    OrderStatusResult,
)
from dispatch.services.clustering import cluster_orders
from dispatch.services.route_builder import RoutePlan, build_route, resolve_origin
from dispatch.services.route_sheets import RouteSheetManager

__all__ = [
    "AssignmentService",
    "AssignmentView",
    "AutoCreateResult",
    "AutoCreateStats",
    "OrderStatusResult",
    "cluster_orders",
    "RoutePlan",
    "build_route",
    "resolve_origin",
    "RouteSheetManager",
]
