"""
Delivery Assignment Service

Business logic for delivery trips:
    - Manual creation from an explicit list of orders
    - Auto-creation: cluster waiting orders and pair each trip with a courier
    - Status lifecycle with the order status cascade
    - Courier (re)assignment and deletion
    - Courier order updates, completing a trip when its last order is delivered

Every method receives the branch of the calling actor and only ever touches
records of that branch; records of other branches are reported as missing.

Each write (assignment row plus the linkage of its orders) runs inside one
``store.transaction()`` block.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Sequence

from dispatch.core.config import Settings
from dispatch.core.errors import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from dispatch.models import AssignmentStatus, DeliveryType, OrderStatus, utcnow
from dispatch.repositories.base import (
    AssignmentDraft,
    AssignmentRecord,
    CourierRecord,
    DISPATCHABLE_STATUSES,
    DeliverableOrder,
    DispatchStore,
    PolicyRecord,
    RoutePoint,
)
from dispatch.services import availability
from dispatch.services.clustering import cluster_orders
from dispatch.services.locks import branch_lock
from dispatch.services.policy import resolve_policy
from dispatch.services.route_builder import RouteOrigin, RoutePlan, build_route, resolve_origin

logger = logging.getLogger(__name__)

Exporter = Callable[[dict], Any]

ALLOWED_TRANSITIONS: dict[AssignmentStatus, frozenset[AssignmentStatus]] = {
    AssignmentStatus.PENDING: frozenset({AssignmentStatus.IN_PROGRESS, AssignmentStatus.CANCELLED}),
    AssignmentStatus.IN_PROGRESS: frozenset({AssignmentStatus.COMPLETED, AssignmentStatus.CANCELLED}),
    AssignmentStatus.COMPLETED: frozenset(),
    AssignmentStatus.CANCELLED: frozenset(),
}

CLOSED_STATUSES = (AssignmentStatus.COMPLETED, AssignmentStatus.CANCELLED)

COURIER_ORDER_STATUSES = (OrderStatus.DELIVERING, OrderStatus.DELIVERED)

ORDER_STATUS_FLOW = [
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.READY,
    OrderStatus.DELIVERING,
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
]


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class AssignmentView:
    """An assignment together with its courier and linked orders."""
    id: int
    branch_id: int
    name: Optional[str]
    status: AssignmentStatus
    courier: Optional[CourierRecord]
    route: list[RoutePoint]
    estimated_distance: Optional[int]
    estimated_time: Optional[int]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    created_at: Optional[datetime]
    orders: list[DeliverableOrder] = field(default_factory=list)

    @classmethod
    def build(
        cls,
        record: AssignmentRecord,
        courier: Optional[CourierRecord],
        orders: Sequence[DeliverableOrder],
    ) -> "AssignmentView":
        return cls(
            id=record.id,
            branch_id=record.branch_id,
            name=record.name,
            status=record.status,
            courier=courier,
            route=list(record.route),
            estimated_distance=record.estimated_distance,
            estimated_time=record.estimated_time,
            started_at=record.started_at,
            completed_at=record.completed_at,
            created_at=record.created_at,
            orders=list(orders),
        )

    @property
    def courier_id(self) -> Optional[int]:
        return self.courier.id if self.courier else None

    @property
    def order_ids(self) -> list[int]:
        return [order.id for order in self.orders]

    def to_export_dict(self) -> dict:
        """JSON-safe payload for the route sheet export task."""
        return {
            "id": self.id,
            "name": self.name,
            "branch_id": self.branch_id,
            "courier_id": self.courier_id,
            "status": self.status.value,
            "route": [point.to_dict() for point in self.route],
            "estimated_distance": self.estimated_distance,
            "estimated_time": self.estimated_time,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class AutoCreateStats:
    total_orders: int = 0
    assigned_orders: int = 0
    unassigned_orders: int = 0
    routes_created: int = 0
    failed_groups: int = 0


@dataclass
class AutoCreateResult:
    success: bool
    message: str
    routes: list[AssignmentView]
    stats: AutoCreateStats


@dataclass
class OrderStatusResult:
    order: DeliverableOrder
    assignment_completed: bool = False


class _CourierUnavailable(Exception):
    """Courier picked up other work between the pool snapshot and the write."""


# =============================================================================
# SERVICE
# =============================================================================

class AssignmentService:
    """
    Delivery assignment operations for one unit of work.

    Example:
        >>> service = AssignmentService(store, get_settings())
        >>> result = await service.auto_create_routes(branch_id=1)
        >>> result.stats.routes_created
        2
    """

    def __init__(
        self,
        store: DispatchStore,
        settings: Settings,
        exporter: Optional[Exporter] = None,
    ):
        self.store = store
        self.settings = settings
        self.exporter = exporter

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _require_assignment(self, branch_id: int, assignment_id: int) -> AssignmentRecord:
        record = await self.store.assignments.get(assignment_id)
        if record is None or record.branch_id != branch_id:
            raise NotFoundError(f"Assignment #{assignment_id} not found")
        return record

    async def _require_courier(self, branch_id: int, courier_id: int) -> CourierRecord:
        courier = await self.store.couriers.find_by_id(branch_id, courier_id)
        if courier is None or not courier.active:
            raise NotFoundError(f"Courier #{courier_id} not found in this branch")
        return courier

    async def _origin(self, branch_id: int) -> RouteOrigin:
        branch = await self.store.branches.get(branch_id)
        if branch is None:
            raise NotFoundError(f"Branch #{branch_id} not found")
        return resolve_origin(branch, self.settings)

    def _plan(self, origin: RouteOrigin, orders: Sequence[DeliverableOrder]) -> RoutePlan:
        return build_route(
            origin,
            orders,
            average_speed_kmh=self.settings.average_speed_kmh,
            stop_dwell_minutes=self.settings.stop_dwell_minutes,
        )

    async def _view(self, record: AssignmentRecord) -> AssignmentView:
        courier = None
        if record.courier_id is not None:
            courier = await self.store.couriers.find_by_id(record.branch_id, record.courier_id)
        orders = await self.store.orders.find_by_assignment(record.id)
        return AssignmentView.build(record, courier, orders)

    async def _validated_orders(self, branch_id: int, order_ids: Sequence[int]) -> list[DeliverableOrder]:
        """Orders for an explicit id list: all present in the branch, all with coordinates."""
        requested = list(dict.fromkeys(order_ids or []))
        if not requested:
            raise BadRequestError("At least one order id is required")

        orders = await self.store.orders.find_in_branch(branch_id, requested)
        if not orders:
            raise BadRequestError("No valid orders found")
        if len(orders) != len(requested):
            raise BadRequestError("Some orders were not found or do not belong to this branch")

        without_coordinates = [order.id for order in orders if not order.has_coordinates]
        if without_coordinates:
            raise BadRequestError(f"Orders without delivery coordinates: {without_coordinates}")

        return orders

    def _export(self, view: AssignmentView) -> None:
        if self.exporter is not None:
            self.exporter(view.to_export_dict())

    @staticmethod
    def default_name() -> str:
        return f"Route {utcnow():%Y-%m-%d %H:%M:%S}"

    # =========================================================================
    # POLICY / LOOKUPS
    # =========================================================================

    async def get_policy(self, branch_id: int) -> PolicyRecord:
        return await resolve_policy(self.store, branch_id, self.settings)

    async def available_couriers(self, branch_id: int) -> list[CourierRecord]:
        """Couriers that may receive work now under the branch's policy."""
        policy = await self.get_policy(branch_id)
        return await availability.available_couriers(
            self.store,
            branch_id,
            policy.availability_rule,
            self.settings.courier_selection,
        )

    async def list_deliverable(self, branch_id: int, delivery_type: str = "DELIVERY") -> list[DeliverableOrder]:
        """Orders waiting for dispatch, filtered by delivery type."""
        try:
            kind = DeliveryType(str(delivery_type).upper())
        except ValueError:
            valid = [t.value for t in DeliveryType]
            raise BadRequestError(f"Invalid delivery type '{delivery_type}'. Must be one of: {valid}")

        return await self.store.orders.find_deliverable(branch_id, delivery_type=kind)

    # =========================================================================
    # READS
    # =========================================================================

    async def list_assignments(self, branch_id: int, status: Optional[str] = None) -> list[AssignmentView]:
        status_filter = None
        if status is not None:
            status_filter = self._parse_status(status)

        records = await self.store.assignments.list_for_branch(branch_id, status_filter)
        return [await self._view(record) for record in records]

    async def get(self, branch_id: int, assignment_id: int) -> AssignmentView:
        return await self._view(await self._require_assignment(branch_id, assignment_id))

    # =========================================================================
    # MANUAL CREATE / PREVIEW
    # =========================================================================

    async def create(
        self,
        branch_id: int,
        order_ids: Sequence[int],
        courier_id: Optional[int] = None,
        name: Optional[str] = None,
    ) -> AssignmentView:
        """
        Create one assignment from explicit orders.

        Raises:
            BadRequestError: Empty, unknown or uncoordinated orders
            ConflictError: An order already belongs to an assignment
            NotFoundError: Courier not active in the branch
        """
        orders = await self._validated_orders(branch_id, order_ids)

        courier = None
        if courier_id is not None:
            courier = await self._require_courier(branch_id, courier_id)

        policy = await self.get_policy(branch_id)
        plan = self._plan(await self._origin(branch_id), orders)

        async with self.store.transaction():
            # Re-read inside the unit of work so a concurrent trip cannot claim the same order
            current = await self.store.orders.find_in_branch(branch_id, [order.id for order in orders])
            linked = [order.id for order in current if order.assignment_id is not None]
            if linked:
                raise ConflictError(f"Orders already assigned to a route: {linked}")

            record = await self._insert(branch_id, name or self.default_name(), courier, orders, plan, policy)

        view = await self._view(record)
        logger.info(
            f"✅ Assignment #{record.id} created for branch #{branch_id} "
            f"({len(orders)} orders, {record.status.value})"
        )
        self._export(view)
        return view

    async def preview_route(self, branch_id: int, order_ids: Sequence[int]) -> RoutePlan:
        """Route and estimates for the given orders; nothing is written."""
        orders = await self._validated_orders(branch_id, order_ids)
        return self._plan(await self._origin(branch_id), orders)

    async def _insert(
        self,
        branch_id: int,
        name: str,
        courier: Optional[CourierRecord],
        orders: Sequence[DeliverableOrder],
        plan: RoutePlan,
        policy: PolicyRecord,
        required_statuses: Optional[Sequence[OrderStatus]] = None,
    ) -> AssignmentRecord:
        """
        Assignment row plus order linkage; caller holds the transaction.

        Raises:
            ConflictError: Some order was claimed by another transaction
        """
        dispatched = policy.auto_dispatch
        courier_id = courier.id if courier else None

        record = await self.store.assignments.create(
            AssignmentDraft(
                branch_id=branch_id,
                name=name,
                courier_id=courier_id,
                status=AssignmentStatus.IN_PROGRESS if dispatched else AssignmentStatus.PENDING,
                route=plan.points,
                estimated_distance=plan.estimated_distance_meters,
                estimated_time=plan.estimated_time_minutes,
                started_at=utcnow() if dispatched else None,
            )
        )
        order_ids = [order.id for order in orders]
        linked = await self.store.orders.link_to_assignment(
            order_ids,
            record.id,
            courier_id,
            OrderStatus.DELIVERING if dispatched else None,
            required_statuses,
        )
        if linked != len(order_ids):
            raise ConflictError(f"Orders already assigned to a route: {order_ids}")
        return record

    # =========================================================================
    # AUTO CREATE
    # =========================================================================

    async def auto_create_routes(
        self,
        branch_id: int,
        order_ids: Optional[Sequence[int]] = None,
    ) -> AutoCreateResult:
        """
        Group waiting orders into trips and give each trip a courier.

        Groups are processed in clustering order and paired with couriers in
        pool order. A courier that stopped qualifying since the pool was read
        is skipped in favour of the next one. A group whose write fails is
        logged and skipped; groups left without a courier stay unassigned.

        Raises:
            BadRequestError: No waiting orders, none with an address, or no
                available courier (nothing is written)
        """
        async with branch_lock("auto-create", branch_id):
            return await self._auto_create(branch_id, order_ids)

    async def _auto_create(self, branch_id: int, order_ids: Optional[Sequence[int]]) -> AutoCreateResult:
        policy = await self.get_policy(branch_id)

        orders = await self.store.orders.find_deliverable(branch_id, order_ids or None)
        if not orders:
            raise BadRequestError("No orders available to create routes")

        routable = [order for order in orders if order.has_coordinates and order.customer_name]
        if not routable:
            raise BadRequestError("No orders with a valid address found")

        pool = deque(
            await availability.available_couriers(
                self.store,
                branch_id,
                policy.availability_rule,
                self.settings.courier_selection,
            )
        )
        if not pool:
            raise BadRequestError("No couriers available")

        groups = cluster_orders(routable, policy.max_per_trip, policy.max_cluster_distance_meters)
        origin = await self._origin(branch_id)

        logger.info(
            f"🚚 Auto-create for branch #{branch_id}: {len(routable)} orders, "
            f"{len(groups)} groups, {len(pool)} couriers"
        )

        stats = AutoCreateStats(total_orders=len(routable))
        routes: list[AssignmentView] = []

        for index, group in enumerate(groups):
            if not pool:
                logger.info(f"No couriers left, {len(groups) - index} groups stay unassigned")
                break

            while pool:
                courier = pool.popleft()
                try:
                    view = await self._create_trip(branch_id, group, courier, origin, policy)
                except _CourierUnavailable:
                    logger.info(f"Courier #{courier.id} no longer available, trying next for group {index}")
                    continue
                except Exception:
                    logger.exception(f"❌ Failed to create route for group {index}")
                    stats.failed_groups += 1
                    break

                routes.append(view)
                stats.routes_created += 1
                stats.assigned_orders += len(group)
                logger.info(f"Group {index}: assignment #{view.id} -> courier #{courier.id} ({len(group)} orders)")
                self._export(view)
                break

        stats.unassigned_orders = stats.total_orders - stats.assigned_orders

        return AutoCreateResult(
            success=True,
            message=f"{stats.routes_created} route(s) created successfully",
            routes=routes,
            stats=stats,
        )

    async def _create_trip(
        self,
        branch_id: int,
        group: list[DeliverableOrder],
        courier: CourierRecord,
        origin: RouteOrigin,
        policy: PolicyRecord,
    ) -> AssignmentView:
        plan = self._plan(origin, group)
        group_ids = [order.id for order in group]

        async with self.store.transaction():
            fresh = await self.store.couriers.find_by_id(branch_id, courier.id)
            if fresh is None or not availability.is_available(fresh, policy.availability_rule):
                raise _CourierUnavailable(courier.id)

            still_waiting = await self.store.orders.find_deliverable(branch_id, group_ids)
            if len(still_waiting) != len(group_ids):
                raise ConflictError(f"Orders of the group were claimed concurrently: {group_ids}")

            record = await self._insert(
                branch_id, self.default_name(), fresh, group, plan, policy, DISPATCHABLE_STATUSES
            )

        return AssignmentView.build(record, fresh, await self.store.orders.find_by_assignment(record.id))

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @staticmethod
    def _parse_status(status: Any) -> AssignmentStatus:
        try:
            return AssignmentStatus(status)
        except ValueError:
            valid = [s.value for s in AssignmentStatus]
            raise BadRequestError(f"Invalid status '{status}'. Must be one of: {valid}")

    async def update_status(self, branch_id: int, assignment_id: int, status: Any) -> AssignmentView:
        """
        Move an assignment through PENDING -> IN_PROGRESS -> COMPLETED, or
        cancel it while open.

        Starting sends its orders to DELIVERING, completing marks them
        DELIVERED. Cancelling releases them back to PREPARING, without
        courier or assignment, and keeps the assignment row.
        """
        target = self._parse_status(status)

        async with self.store.transaction():
            record = await self._require_assignment(branch_id, assignment_id)

            if record.status == target:
                return await self._view(record)

            if target not in ALLOWED_TRANSITIONS[record.status]:
                raise BadRequestError(
                    f"Cannot change assignment status from {record.status.value} to {target.value}"
                )

            values: dict[str, Any] = {"status": target}

            if target == AssignmentStatus.IN_PROGRESS:
                values["started_at"] = record.started_at or utcnow()
                await self.store.orders.set_status(assignment_id, OrderStatus.DELIVERING)

            elif target == AssignmentStatus.COMPLETED:
                values["completed_at"] = record.completed_at or utcnow()
                await self.store.orders.set_status(assignment_id, OrderStatus.DELIVERED)

            elif target == AssignmentStatus.CANCELLED:
                linked = await self.store.orders.find_by_assignment(assignment_id)
                released = await self.store.orders.detach_from_assignment([order.id for order in linked])
                logger.info(f"Assignment #{assignment_id} cancelled, {released} orders released")

            record = await self.store.assignments.update(assignment_id, **values)

        logger.info(f"Assignment #{assignment_id} status -> {target.value}")
        return await self._view(record)

    async def assign_courier(self, branch_id: int, assignment_id: int, courier_id: int) -> AssignmentView:
        """Set the courier of an open assignment and of all its orders."""
        async with self.store.transaction():
            record = await self._require_assignment(branch_id, assignment_id)
            courier = await self._require_courier(branch_id, courier_id)

            if record.status in CLOSED_STATUSES:
                raise BadRequestError(f"Cannot assign a courier to a {record.status.value} assignment")

            record = await self.store.assignments.update(assignment_id, courier_id=courier.id)
            await self.store.orders.set_courier(assignment_id, courier.id)

        logger.info(f"Assignment #{assignment_id} assigned to courier #{courier_id}")
        return await self._view(record)

    async def delete(self, branch_id: int, assignment_id: int) -> int:
        """
        Delete an assignment in any status.

        Linked orders go back to PREPARING without courier or assignment.

        Returns:
            int: Number of orders freed
        """
        async with self.store.transaction():
            await self._require_assignment(branch_id, assignment_id)
            linked = await self.store.orders.find_by_assignment(assignment_id)
            freed = await self.store.orders.detach_from_assignment([order.id for order in linked])
            await self.store.assignments.delete(assignment_id)

        logger.info(f"🗑️ Assignment #{assignment_id} deleted, {freed} orders freed")
        return freed

    # =========================================================================
    # COURIER ORDER FLOW
    # =========================================================================

    async def update_order_status(
        self,
        branch_id: int,
        courier_id: int,
        order_id: int,
        status: Any,
    ) -> OrderStatusResult:
        """
        Courier moves one of their orders to DELIVERING or DELIVERED.

        Statuses only move forward along ORDER_STATUS_FLOW. When the last
        order of an assignment is delivered, the assignment is completed in
        the same transaction.

        Raises:
            BadRequestError: Unknown status value
            ForbiddenError: Status not allowed for couriers, order of another
                courier, or a backward move
            NotFoundError: Order not in the branch
        """
        try:
            target = OrderStatus(status)
        except ValueError:
            valid = [s.value for s in OrderStatus]
            raise BadRequestError(f"Invalid order status '{status}'. Must be one of: {valid}")

        if target not in COURIER_ORDER_STATUSES:
            raise ForbiddenError("Couriers can only set DELIVERING or DELIVERED")

        completed = None
        async with self.store.transaction():
            found = await self.store.orders.find_in_branch(branch_id, [order_id])
            if not found:
                raise NotFoundError(f"Order #{order_id} not found")
            order = found[0]

            if order.courier_id != courier_id:
                raise ForbiddenError(f"Order #{order_id} does not belong to this courier")

            if ORDER_STATUS_FLOW.index(target) < ORDER_STATUS_FLOW.index(order.status):
                raise ForbiddenError(
                    f"Order status cannot move back from {order.status.value} to {target.value}"
                )

            await self.store.orders.set_order_status(order_id, target)

            if target == OrderStatus.DELIVERED and order.assignment_id is not None:
                linked = await self.store.orders.find_by_assignment(order.assignment_id)
                record = await self.store.assignments.get(order.assignment_id)
                if (
                    record is not None
                    and record.status not in CLOSED_STATUSES
                    and all(o.status == OrderStatus.DELIVERED for o in linked)
                ):
                    now = utcnow()
                    completed = await self.store.assignments.update(
                        record.id,
                        status=AssignmentStatus.COMPLETED,
                        started_at=record.started_at or now,
                        completed_at=now,
                    )

            updated = (await self.store.orders.find_in_branch(branch_id, [order_id]))[0]

        logger.info(f"Order #{order_id} -> {target.value} by courier #{courier_id}")
        if completed is not None:
            logger.info(f"🏁 Assignment #{completed.id} completed, all orders delivered")

        return OrderStatusResult(order=updated, assignment_completed=completed is not None)
