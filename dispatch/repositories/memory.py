"""
In-Memory Dispatch Store

Process-local implementation of the repository contracts. Used when
STORAGE_BACKEND=memory (local demos, no database needed) and by the test
suite.

Behavior:
    - Transactions are serialized by a lock and take a snapshot of the whole
      state; an exception inside the block restores the snapshot
    - Records handed out are immutable copies, never live rows
    - Branches, couriers and orders are owned by other services, so they
      are seeded through the add_* helpers
"""

import asyncio
import copy
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import AsyncIterator, Optional, Sequence

from dispatch.models import AssignmentStatus, DeliveryType, OrderStatus
from dispatch.repositories.base import (
    AssignmentDraft,
    AssignmentRecord,
    AssignmentRepository,
    BranchRecord,
    BranchRepository,
    CourierRecord,
    CourierRepository,
    DISPATCHABLE_STATUSES,
    DeliverableOrder,
    DispatchStore,
    OrderRepository,
    PolicyRecord,
    PolicyStore,
)

logger = logging.getLogger(__name__)

OPEN_ASSIGNMENT_STATUSES = (AssignmentStatus.PENDING, AssignmentStatus.IN_PROGRESS)


@dataclass
class _State:
    branches: dict[int, BranchRecord] = field(default_factory=dict)
    couriers: dict[int, CourierRecord] = field(default_factory=dict)
    orders: dict[int, DeliverableOrder] = field(default_factory=dict)
    policies: dict[int, PolicyRecord] = field(default_factory=dict)
    assignments: dict[int, AssignmentRecord] = field(default_factory=dict)
    next_id: dict[str, int] = field(default_factory=dict)

    def allocate_id(self, table: str) -> int:
        value = self.next_id.get(table, 0) + 1
        self.next_id[table] = value
        return value


class _MemoryRepository:
    def __init__(self, store: "MemoryDispatchStore"):
        self._store = store

    @property
    def _state(self) -> _State:
        return self._store._state


class MemoryOrderRepository(_MemoryRepository, OrderRepository):

    async def find_deliverable(
        self,
        branch_id: int,
        order_ids: Optional[Sequence[int]] = None,
        delivery_type: DeliveryType = DeliveryType.DELIVERY,
    ) -> list[DeliverableOrder]:
        wanted = set(order_ids) if order_ids else None
        return [
            order
            for order in sorted(self._state.orders.values(), key=lambda o: o.id)
            if order.branch_id == branch_id
            and order.delivery_type == delivery_type
            and order.assignment_id is None
            and order.status in DISPATCHABLE_STATUSES
            and (wanted is None or order.id in wanted)
        ]

    async def find_in_branch(self, branch_id: int, order_ids: Sequence[int]) -> list[DeliverableOrder]:
        found = []
        for order_id in dict.fromkeys(order_ids):
            order = self._state.orders.get(order_id)
            if order is not None and order.branch_id == branch_id:
                found.append(order)
        return found

    async def find_by_assignment(self, assignment_id: int) -> list[DeliverableOrder]:
        return [
            order
            for order in sorted(self._state.orders.values(), key=lambda o: o.id)
            if order.assignment_id == assignment_id
        ]

    async def link_to_assignment(
        self,
        order_ids: Sequence[int],
        assignment_id: int,
        courier_id: Optional[int],
        new_status: Optional[OrderStatus] = None,
        required_statuses: Optional[Sequence[OrderStatus]] = None,
    ) -> int:
        linked = 0
        for order_id in order_ids:
            order = self._state.orders.get(order_id)
            if order is None or order.assignment_id is not None:
                continue
            if required_statuses is not None and order.status not in required_statuses:
                continue
            self._state.orders[order_id] = replace(
                order,
                assignment_id=assignment_id,
                courier_id=courier_id,
                status=new_status or order.status,
            )
            linked += 1
        return linked

    async def set_order_status(self, order_id: int, status: OrderStatus) -> None:
        self._state.orders[order_id] = replace(self._state.orders[order_id], status=status)

    async def set_courier(self, assignment_id: int, courier_id: Optional[int]) -> None:
        for order in await self.find_by_assignment(assignment_id):
            self._state.orders[order.id] = replace(order, courier_id=courier_id)

    async def set_status(self, assignment_id: int, status: OrderStatus) -> None:
        for order in await self.find_by_assignment(assignment_id):
            self._state.orders[order.id] = replace(order, status=status)

    async def detach_from_assignment(self, order_ids: Sequence[int]) -> int:
        detached = 0
        for order_id in order_ids:
            order = self._state.orders.get(order_id)
            if order is None:
                continue
            self._state.orders[order_id] = replace(
                order,
                assignment_id=None,
                courier_id=None,
                status=OrderStatus.PREPARING,
            )
            detached += 1
        return detached


class MemoryCourierRepository(_MemoryRepository, CourierRepository):

    def _with_workload(self, courier: CourierRecord) -> CourierRecord:
        open_assignments = sum(
            1
            for assignment in self._state.assignments.values()
            if assignment.courier_id == courier.id and assignment.status in OPEN_ASSIGNMENT_STATUSES
        )
        delivering = sum(
            1
            for order in self._state.orders.values()
            if order.courier_id == courier.id and order.status == OrderStatus.DELIVERING
        )
        return replace(courier, open_assignments=open_assignments, delivering_orders=delivering)

    async def find_active_online(self, branch_id: int) -> list[CourierRecord]:
        return [
            self._with_workload(courier)
            for courier in sorted(self._state.couriers.values(), key=lambda c: c.id)
            if courier.branch_id == branch_id and courier.active and courier.online
        ]

    async def find_by_id(self, branch_id: int, courier_id: int) -> Optional[CourierRecord]:
        courier = self._state.couriers.get(courier_id)
        if courier is None or courier.branch_id != branch_id:
            return None
        return self._with_workload(courier)


class MemoryBranchRepository(_MemoryRepository, BranchRepository):

    async def get(self, branch_id: int) -> Optional[BranchRecord]:
        return self._state.branches.get(branch_id)


class MemoryPolicyStore(_MemoryRepository, PolicyStore):

    async def get(self, branch_id: int) -> Optional[PolicyRecord]:
        return self._state.policies.get(branch_id)

    async def upsert(self, defaults: PolicyRecord) -> PolicyRecord:
        return self._state.policies.setdefault(defaults.branch_id, defaults)


class MemoryAssignmentRepository(_MemoryRepository, AssignmentRepository):

    async def create(self, draft: AssignmentDraft) -> AssignmentRecord:
        record = AssignmentRecord(
            id=self._state.allocate_id("assignments"),
            branch_id=draft.branch_id,
            name=draft.name,
            courier_id=draft.courier_id,
            status=draft.status,
            route=list(draft.route),
            estimated_distance=draft.estimated_distance,
            estimated_time=draft.estimated_time,
            started_at=draft.started_at,
            created_at=datetime.now(timezone.utc),
        )
        self._state.assignments[record.id] = record
        return record

    async def get(self, assignment_id: int) -> Optional[AssignmentRecord]:
        return self._state.assignments.get(assignment_id)

    async def list_for_branch(
        self,
        branch_id: int,
        status: Optional[AssignmentStatus] = None,
    ) -> list[AssignmentRecord]:
        records = [
            record
            for record in self._state.assignments.values()
            if record.branch_id == branch_id and (status is None or record.status == status)
        ]
        return sorted(records, key=lambda r: (r.created_at, r.id), reverse=True)

    async def update(self, assignment_id: int, **values) -> AssignmentRecord:
        record = replace(self._state.assignments[assignment_id], **values)
        self._state.assignments[assignment_id] = record
        return record

    async def delete(self, assignment_id: int) -> None:
        self._state.assignments.pop(assignment_id, None)


class MemoryDispatchStore(DispatchStore):
    """
    In-memory implementation of the dispatch store.

    Example:
        >>> store = MemoryDispatchStore()
        >>> branch = store.add_branch("Downtown", latitude=-8.05, longitude=-34.88)
        >>> store.add_courier(branch.id, "Ana")
    """

    def __init__(self):
        self._state = _State()
        self._lock = asyncio.Lock()
        self.orders = MemoryOrderRepository(self)
        self.couriers = MemoryCourierRepository(self)
        self.branches = MemoryBranchRepository(self)
        self.policies = MemoryPolicyStore(self)
        self.assignments = MemoryAssignmentRepository(self)

    @property
    def backend_name(self) -> str:
        return "memory"

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["MemoryDispatchStore"]:
        async with self._lock:
            snapshot = copy.deepcopy(self._state)
            try:
                yield self
            except BaseException:
                self._state = snapshot
                logger.debug("Memory store: transaction rolled back")
                raise

    # =========================================================================
    # SEEDING (records owned by collaborating services)
    # =========================================================================

    def add_branch(
        self,
        name: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        address_street: Optional[str] = None,
        address_lat: Optional[float] = None,
        address_lng: Optional[float] = None,
    ) -> BranchRecord:
        branch = BranchRecord(
            id=self._state.allocate_id("branches"),
            name=name,
            latitude=latitude,
            longitude=longitude,
            address_street=address_street,
            address_lat=address_lat,
            address_lng=address_lng,
        )
        self._state.branches[branch.id] = branch
        return branch

    def add_courier(
        self,
        branch_id: int,
        name: str,
        phone: Optional[str] = None,
        active: bool = True,
        online: bool = True,
    ) -> CourierRecord:
        courier = CourierRecord(
            id=self._state.allocate_id("couriers"),
            branch_id=branch_id,
            name=name,
            phone=phone,
            active=active,
            online=online,
        )
        self._state.couriers[courier.id] = courier
        return courier

    def add_order(
        self,
        branch_id: int,
        customer_name: Optional[str] = "Customer",
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        status: OrderStatus = OrderStatus.READY,
        delivery_type: DeliveryType = DeliveryType.DELIVERY,
        address: str = "",
        city: str = "",
        state: str = "",
        total: float = 0.0,
    ) -> DeliverableOrder:
        order_id = self._state.allocate_id("orders")
        order = DeliverableOrder(
            id=order_id,
            branch_id=branch_id,
            order_number=order_id,
            customer_name=customer_name,
            address=address,
            city=city,
            state=state,
            total=total,
            lat=lat,
            lng=lng,
            status=status,
            delivery_type=delivery_type,
        )
        self._state.orders[order.id] = order
        return order

    def get_order(self, order_id: int) -> DeliverableOrder:
        """Current state of an order (inspection helper)."""
        return self._state.orders[order_id]
