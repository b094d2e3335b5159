"""
Repository Abstract Base Classes

Defines the record types and storage contracts the dispatch services depend
on. Both the SQL store and the in-memory store implement these.

Every write the services perform happens inside ``store.transaction()``; the
writes inside one block are committed together or not at all.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence

from dispatch.models import AssignmentStatus, AvailabilityRule, DeliveryType, OrderStatus

DISPATCHABLE_STATUSES = (OrderStatus.PREPARING, OrderStatus.READY)


# =============================================================================
# RECORDS
# =============================================================================

@dataclass(frozen=True)
class DeliverableOrder:
    """
    Read-only snapshot of an order used while planning trips.

    Coordinates and customer name may be missing; the planner filters those
    orders out before clustering.
    """
    id: int
    branch_id: int
    order_number: Optional[int]
    customer_name: Optional[str]
    address: str
    city: str
    state: str
    total: float
    lat: Optional[float]
    lng: Optional[float]
    status: OrderStatus
    delivery_type: DeliveryType = DeliveryType.DELIVERY
    assignment_id: Optional[int] = None
    courier_id: Optional[int] = None

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lng is not None


@dataclass(frozen=True)
class CourierRecord:
    """Courier with its current workload counters."""
    id: int
    branch_id: int
    name: str
    phone: Optional[str]
    active: bool
    online: bool
    open_assignments: int = 0
    delivering_orders: int = 0


@dataclass(frozen=True)
class BranchRecord:
    id: int
    name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address_street: Optional[str] = None
    address_lat: Optional[float] = None
    address_lng: Optional[float] = None


@dataclass(frozen=True)
class PolicyRecord:
    branch_id: int
    auto_dispatch: bool
    max_per_trip: int
    max_cluster_distance_meters: int
    max_cluster_time_minutes: int
    availability_rule: AvailabilityRule


@dataclass(frozen=True)
class RoutePoint:
    """One stop of a route. The branch origin has no order id."""
    order_id: Optional[int]
    lat: float
    lng: float
    address: str
    label: str
    is_origin: bool = False

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "order_id": self.order_id,
            "lat": self.lat,
            "lng": self.lng,
            "address": self.address,
            "label": self.label,
            "is_origin": self.is_origin,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RoutePoint":
        return cls(
            order_id=data.get("order_id"),
            lat=float(data["lat"]),
            lng=float(data["lng"]),
            address=data.get("address") or "",
            label=data.get("label") or "",
            is_origin=bool(data.get("is_origin", False)),
        )


@dataclass(frozen=True)
class AssignmentDraft:
    """Values for a new assignment row."""
    branch_id: int
    name: Optional[str]
    courier_id: Optional[int]
    status: AssignmentStatus
    route: list[RoutePoint]
    estimated_distance: Optional[int]
    estimated_time: Optional[int]
    started_at: Optional[datetime] = None


@dataclass(frozen=True)
class AssignmentRecord:
    id: int
    branch_id: int
    name: Optional[str]
    courier_id: Optional[int]
    status: AssignmentStatus
    route: list[RoutePoint] = field(default_factory=list)
    estimated_distance: Optional[int] = None
    estimated_time: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


# =============================================================================
# CONTRACTS
# =============================================================================

class OrderRepository(ABC):
    """Order collaborator: reads projections and writes dispatch linkage."""

    @abstractmethod
    async def find_deliverable(
        self,
        branch_id: int,
        order_ids: Optional[Sequence[int]] = None,
        delivery_type: DeliveryType = DeliveryType.DELIVERY,
    ) -> list[DeliverableOrder]:
        """
        Orders waiting for dispatch: status PREPARING or READY, of the given
        delivery type, not linked to any assignment, ordered by id.
        """

    @abstractmethod
    async def find_in_branch(self, branch_id: int, order_ids: Sequence[int]) -> list[DeliverableOrder]:
        """Orders of the branch among ``order_ids``, in the requested order."""

    @abstractmethod
    async def find_by_assignment(self, assignment_id: int) -> list[DeliverableOrder]:
        pass

    @abstractmethod
    async def link_to_assignment(
        self,
        order_ids: Sequence[int],
        assignment_id: int,
        courier_id: Optional[int],
        new_status: Optional[OrderStatus] = None,
        required_statuses: Optional[Sequence[OrderStatus]] = None,
    ) -> int:
        """
        Link orders that are not on any assignment yet (and, if given, whose
        status is one of ``required_statuses``). Orders already claimed are
        left untouched.

        Returns:
            int: Number of orders linked
        """

    @abstractmethod
    async def set_order_status(self, order_id: int, status: OrderStatus) -> None:
        """Set the status of a single order."""

    @abstractmethod
    async def set_courier(self, assignment_id: int, courier_id: Optional[int]) -> None:
        """Propagate a courier to every order linked to the assignment."""

    @abstractmethod
    async def set_status(self, assignment_id: int, status: OrderStatus) -> None:
        """Set the status of every order linked to the assignment."""

    @abstractmethod
    async def detach_from_assignment(self, order_ids: Sequence[int]) -> int:
        """
        Clear assignment and courier linkage and reset status to PREPARING.

        Returns:
            int: Number of orders detached
        """


class CourierRepository(ABC):

    @abstractmethod
    async def find_active_online(self, branch_id: int) -> list[CourierRecord]:
        """Active and online couriers of the branch with workload counters, by id."""

    @abstractmethod
    async def find_by_id(self, branch_id: int, courier_id: int) -> Optional[CourierRecord]:
        """Courier of the branch with fresh workload counters, or None."""


class BranchRepository(ABC):

    @abstractmethod
    async def get(self, branch_id: int) -> Optional[BranchRecord]:
        pass


class PolicyStore(ABC):

    @abstractmethod
    async def get(self, branch_id: int) -> Optional[PolicyRecord]:
        pass

    @abstractmethod
    async def upsert(self, defaults: PolicyRecord) -> PolicyRecord:
        """
        Insert ``defaults`` unless the branch already has a policy.

        Returns:
            PolicyRecord: The stored policy (existing one wins)
        """


class AssignmentRepository(ABC):

    @abstractmethod
    async def create(self, draft: AssignmentDraft) -> AssignmentRecord:
        pass

    @abstractmethod
    async def get(self, assignment_id: int) -> Optional[AssignmentRecord]:
        pass

    @abstractmethod
    async def list_for_branch(
        self,
        branch_id: int,
        status: Optional[AssignmentStatus] = None,
    ) -> list[AssignmentRecord]:
        """Assignments of the branch, newest first."""

    @abstractmethod
    async def update(self, assignment_id: int, **values) -> AssignmentRecord:
        """Update columns (status, courier_id, started_at, completed_at)."""

    @abstractmethod
    async def delete(self, assignment_id: int) -> None:
        pass


class DispatchStore(ABC):
    """
    Bundle of repositories sharing one unit of work.

    Attributes:
        orders, couriers, branches, policies, assignments: Repositories
    """

    orders: OrderRepository
    couriers: CourierRepository
    branches: BranchRepository
    policies: PolicyStore
    assignments: AssignmentRepository

    @property
    @abstractmethod
    def backend_name(self) -> str:
        """Return the backend name (e.g. "sql", "memory")."""

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager["DispatchStore"]:
        """
        Atomic unit of work.

        Example:
            >>> async with store.transaction():
            ...     record = await store.assignments.create(draft)
            ...     await store.orders.link_to_assignment(ids, record.id, None)
        """
