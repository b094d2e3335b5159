"""
SQLAlchemy Dispatch Store

Async SQLAlchemy implementation of the repository contracts, bound to one
AsyncSession per request.

Writes are flushed inside ``transaction()`` and committed when the block
exits; any exception rolls the whole block back.
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch.models import (
    AssignmentStatus,
    Branch,
    Courier,
    DeliveryAssignment,
    DeliveryType,
    DispatchPolicy,
    Order,
    OrderStatus,
    utcnow,
)
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
    RoutePoint,
)

logger = logging.getLogger(__name__)

OPEN_ASSIGNMENT_STATUSES = (AssignmentStatus.PENDING, AssignmentStatus.IN_PROGRESS)


def _order_record(row: Order) -> DeliverableOrder:
    return DeliverableOrder(
        id=row.id,
        branch_id=row.branch_id,
        order_number=row.order_number,
        customer_name=row.customer_name,
        address=row.delivery_address or "",
        city=row.city or "",
        state=row.state or "",
        total=float(row.total_amount or 0.0),
        lat=float(row.latitude) if row.latitude is not None else None,
        lng=float(row.longitude) if row.longitude is not None else None,
        status=row.status,
        delivery_type=row.delivery_type,
        assignment_id=row.assignment_id,
        courier_id=row.courier_id,
    )


def _policy_record(row: DispatchPolicy) -> PolicyRecord:
    return PolicyRecord(
        branch_id=row.branch_id,
        auto_dispatch=row.auto_dispatch,
        max_per_trip=row.max_per_trip,
        max_cluster_distance_meters=row.max_cluster_distance_meters,
        max_cluster_time_minutes=row.max_cluster_time_minutes,
        availability_rule=row.availability_rule,
    )


def _assignment_record(row: DeliveryAssignment) -> AssignmentRecord:
    route = [RoutePoint.from_dict(point) for point in json.loads(row.route)] if row.route else []
    return AssignmentRecord(
        id=row.id,
        branch_id=row.branch_id,
        name=row.name,
        courier_id=row.courier_id,
        status=row.status,
        route=route,
        estimated_distance=row.estimated_distance,
        estimated_time=row.estimated_time,
        started_at=row.started_at,
        completed_at=row.completed_at,
        created_at=row.created_at,
    )


class _SqlRepository:
    def __init__(self, session: AsyncSession):
        self.session = session


class SqlOrderRepository(_SqlRepository, OrderRepository):

    async def find_deliverable(
        self,
        branch_id: int,
        order_ids: Optional[Sequence[int]] = None,
        delivery_type: DeliveryType = DeliveryType.DELIVERY,
    ) -> list[DeliverableOrder]:
        query = (
            select(Order)
            .where(
                Order.branch_id == branch_id,
                Order.delivery_type == delivery_type,
                Order.assignment_id.is_(None),
                Order.status.in_(DISPATCHABLE_STATUSES),
            )
            .order_by(Order.id)
            .execution_options(populate_existing=True)
        )
        if order_ids:
            query = query.where(Order.id.in_(list(order_ids)))

        result = await self.session.execute(query)
        return [_order_record(row) for row in result.scalars().all()]

    async def find_in_branch(self, branch_id: int, order_ids: Sequence[int]) -> list[DeliverableOrder]:
        requested = list(dict.fromkeys(order_ids))
        result = await self.session.execute(
            select(Order)
            .where(Order.branch_id == branch_id, Order.id.in_(requested))
            .execution_options(populate_existing=True)
        )
        by_id = {row.id: _order_record(row) for row in result.scalars().all()}
        return [by_id[order_id] for order_id in requested if order_id in by_id]

    async def find_by_assignment(self, assignment_id: int) -> list[DeliverableOrder]:
        result = await self.session.execute(
            select(Order)
            .where(Order.assignment_id == assignment_id)
            .order_by(Order.id)
            .execution_options(populate_existing=True)
        )
        return [_order_record(row) for row in result.scalars().all()]

    async def link_to_assignment(
        self,
        order_ids: Sequence[int],
        assignment_id: int,
        courier_id: Optional[int],
        new_status: Optional[OrderStatus] = None,
        required_statuses: Optional[Sequence[OrderStatus]] = None,
    ) -> int:
        values = {"assignment_id": assignment_id, "courier_id": courier_id, "updated_at": utcnow()}
        if new_status is not None:
            values["status"] = new_status

        # Orders claimed by a concurrent transaction match no row here
        statement = update(Order).where(Order.id.in_(list(order_ids)), Order.assignment_id.is_(None))
        if required_statuses is not None:
            statement = statement.where(Order.status.in_(list(required_statuses)))

        result = await self.session.execute(
            statement.values(**values).execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def set_order_status(self, order_id: int, status: OrderStatus) -> None:
        await self.session.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(status=status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    async def set_courier(self, assignment_id: int, courier_id: Optional[int]) -> None:
        await self.session.execute(
            update(Order)
            .where(Order.assignment_id == assignment_id)
            .values(courier_id=courier_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    async def set_status(self, assignment_id: int, status: OrderStatus) -> None:
        await self.session.execute(
            update(Order)
            .where(Order.assignment_id == assignment_id)
            .values(status=status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    async def detach_from_assignment(self, order_ids: Sequence[int]) -> int:
        if not order_ids:
            return 0
        result = await self.session.execute(
            update(Order)
            .where(Order.id.in_(list(order_ids)))
            .values(
                assignment_id=None,
                courier_id=None,
                status=OrderStatus.PREPARING,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0


class SqlCourierRepository(_SqlRepository, CourierRepository):

    def _workload_query(self):
        open_assignments = (
            select(func.count(DeliveryAssignment.id))
            .where(
                DeliveryAssignment.courier_id == Courier.id,
                DeliveryAssignment.status.in_(OPEN_ASSIGNMENT_STATUSES),
            )
            .correlate(Courier)
            .scalar_subquery()
        )
        delivering = (
            select(func.count(Order.id))
            .where(Order.courier_id == Courier.id, Order.status == OrderStatus.DELIVERING)
            .correlate(Courier)
            .scalar_subquery()
        )
        return select(
            Courier,
            open_assignments.label("open_assignments"),
            delivering.label("delivering_orders"),
        )

    @staticmethod
    def _record(row: Courier, open_assignments: int, delivering: int) -> CourierRecord:
        return CourierRecord(
            id=row.id,
            branch_id=row.branch_id,
            name=row.name,
            phone=row.phone,
            active=row.active,
            online=row.is_online,
            open_assignments=int(open_assignments or 0),
            delivering_orders=int(delivering or 0),
        )

    async def find_active_online(self, branch_id: int) -> list[CourierRecord]:
        query = (
            self._workload_query()
            .where(
                Courier.branch_id == branch_id,
                Courier.active.is_(True),
                Courier.is_online.is_(True),
            )
            .order_by(Courier.id)
        )
        result = await self.session.execute(query)
        return [self._record(*row) for row in result.all()]

    async def find_by_id(self, branch_id: int, courier_id: int) -> Optional[CourierRecord]:
        query = self._workload_query().where(
            Courier.id == courier_id,
            Courier.branch_id == branch_id,
        )
        row = (await self.session.execute(query)).first()
        return self._record(*row) if row else None


class SqlBranchRepository(_SqlRepository, BranchRepository):

    async def get(self, branch_id: int) -> Optional[BranchRecord]:
        row = await self.session.get(Branch, branch_id)
        if row is None:
            return None
        return BranchRecord(
            id=row.id,
            name=row.name,
            latitude=row.latitude,
            longitude=row.longitude,
            address_street=row.address_street,
            address_lat=row.address_lat,
            address_lng=row.address_lng,
        )


class SqlPolicyStore(_SqlRepository, PolicyStore):

    async def get(self, branch_id: int) -> Optional[PolicyRecord]:
        result = await self.session.execute(
            select(DispatchPolicy).where(DispatchPolicy.branch_id == branch_id)
        )
        row = result.scalar_one_or_none()
        return _policy_record(row) if row else None

    async def upsert(self, defaults: PolicyRecord) -> PolicyRecord:
        existing = await self.get(defaults.branch_id)
        if existing is not None:
            return existing

        row = DispatchPolicy(
            branch_id=defaults.branch_id,
            auto_dispatch=defaults.auto_dispatch,
            max_per_trip=defaults.max_per_trip,
            max_cluster_distance_meters=defaults.max_cluster_distance_meters,
            max_cluster_time_minutes=defaults.max_cluster_time_minutes,
            availability_rule=defaults.availability_rule,
        )
        self.session.add(row)
        try:
            await self.session.flush()
        except IntegrityError:
            # Another process created it first; the unique branch_id wins
            await self.session.rollback()
            logger.info(f"Policy for branch {defaults.branch_id} created concurrently, re-reading")
            existing = await self.get(defaults.branch_id)
            if existing is None:
                raise
            return existing
        return _policy_record(row)


class SqlAssignmentRepository(_SqlRepository, AssignmentRepository):

    async def create(self, draft: AssignmentDraft) -> AssignmentRecord:
        row = DeliveryAssignment(
            name=draft.name,
            branch_id=draft.branch_id,
            courier_id=draft.courier_id,
            status=draft.status,
            route=json.dumps([point.to_dict() for point in draft.route]),
            estimated_distance=draft.estimated_distance,
            estimated_time=draft.estimated_time,
            started_at=draft.started_at,
            created_at=utcnow(),
        )
        self.session.add(row)
        await self.session.flush()
        return _assignment_record(row)

    async def get(self, assignment_id: int) -> Optional[AssignmentRecord]:
        result = await self.session.execute(
            select(DeliveryAssignment)
            .where(DeliveryAssignment.id == assignment_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return _assignment_record(row) if row else None

    async def list_for_branch(
        self,
        branch_id: int,
        status: Optional[AssignmentStatus] = None,
    ) -> list[AssignmentRecord]:
        query = (
            select(DeliveryAssignment)
            .where(DeliveryAssignment.branch_id == branch_id)
            .order_by(DeliveryAssignment.created_at.desc(), DeliveryAssignment.id.desc())
            .execution_options(populate_existing=True)
        )
        if status is not None:
            query = query.where(DeliveryAssignment.status == status)

        result = await self.session.execute(query)
        return [_assignment_record(row) for row in result.scalars().all()]

    async def update(self, assignment_id: int, **values) -> AssignmentRecord:
        await self.session.execute(
            update(DeliveryAssignment)
            .where(DeliveryAssignment.id == assignment_id)
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        record = await self.get(assignment_id)
        if record is None:
            raise LookupError(f"Assignment #{assignment_id} disappeared during update")
        return record

    async def delete(self, assignment_id: int) -> None:
        await self.session.execute(
            delete(DeliveryAssignment)
            .where(DeliveryAssignment.id == assignment_id)
            .execution_options(synchronize_session=False)
        )


class SqlDispatchStore(DispatchStore):
    """Repositories bound to a single AsyncSession."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.orders = SqlOrderRepository(session)
        self.couriers = SqlCourierRepository(session)
        self.branches = SqlBranchRepository(session)
        self.policies = SqlPolicyStore(session)
        self.assignments = SqlAssignmentRepository(session)

    @property
    def backend_name(self) -> str:
        return "sql"

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["SqlDispatchStore"]:
        try:
            yield self
            await self.session.commit()
        except BaseException:
            await self.session.rollback()
            raise
