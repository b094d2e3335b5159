"""
SQLAlchemy Database Models

Tables touched by the delivery dispatch engine:
- branches / couriers / orders: owned by collaborating services, read here
  (orders and couriers also receive the assignment linkage written here)
- dispatch_policies: per-branch dispatch configuration (1:1 with branches)
- delivery_assignments: trips built by the engine
"""

from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Float, DateTime, Text, Enum, Boolean, ForeignKey
from dispatch.core.config import AvailabilityRule
from dispatch.database import Base
import enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, enum.Enum):
    """Order status workflow (dispatch-relevant subset plus collaborator values)."""
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PREPARING = "PREPARING"
    READY = "READY"
    DELIVERING = "DELIVERING"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class DeliveryType(str, enum.Enum):
    """How the order leaves the restaurant. Only DELIVERY needs a courier."""
    DELIVERY = "DELIVERY"
    PICKUP = "PICKUP"
    DINE_IN = "DINE_IN"


class AssignmentStatus(str, enum.Enum):
    """Delivery assignment (trip) lifecycle."""
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class Branch(Base):
    """
    Restaurant branch (tenant).

    Coordinates are resolved in order: branch lat/lng, then address lat/lng.
    """
    __tablename__ = "branches"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(100), nullable=False)

    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    # =========================================================================
    # ADDRESS
    # =========================================================================
    address_street = Column(String(255), nullable=True)
    address_city = Column(String(50), nullable=True)
    address_lat = Column(Float, nullable=True)
    address_lng = Column(Float, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)

    def __repr__(self):
        return f"<Branch #{self.id} - {self.name}>"


class Courier(Base):
    """Delivery person attached to one branch."""
    __tablename__ = "couriers"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    phone = Column(String(20), nullable=True)
    email = Column(String(255), nullable=True)
    active = Column(Boolean, default=True, nullable=False)
    is_online = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow)

    def __repr__(self):
        return f"<Courier #{self.id} - {self.name}>"


class Order(Base):
    """
    Order as seen by the dispatch engine.

    Only assignment_id, courier_id and status are written here.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, index=True)
    order_number = Column(Integer, nullable=True)

    delivery_type = Column(
        Enum(DeliveryType),
        default=DeliveryType.DELIVERY,
        nullable=False,
        index=True
    )
    status = Column(
        Enum(OrderStatus),
        default=OrderStatus.PENDING,
        nullable=False,
        index=True
    )

    # =========================================================================
    # CUSTOMER / DELIVERY ADDRESS
    # =========================================================================
    customer_name = Column(String(100), nullable=True)
    customer_phone = Column(String(20), nullable=True)
    delivery_address = Column(String(255), nullable=True)
    city = Column(String(50), nullable=True)
    state = Column(String(50), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    total_amount = Column(Float, nullable=False, default=0.0)

    # =========================================================================
    # DISPATCH LINKAGE
    # =========================================================================
    assignment_id = Column(Integer, ForeignKey("delivery_assignments.id"), nullable=True, index=True)
    courier_id = Column(Integer, ForeignKey("couriers.id"), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow)

    def __repr__(self):
        return f"<Order #{self.id} - {self.delivery_type.value} - {self.status.value}>"


class DispatchPolicy(Base):
    """Per-branch dispatch configuration, created with defaults on first access."""
    __tablename__ = "dispatch_policies"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, unique=True)

    auto_dispatch = Column(Boolean, default=False, nullable=False)
    max_per_trip = Column(Integer, default=5, nullable=False)
    max_cluster_distance_meters = Column(Integer, default=3000, nullable=False)
    max_cluster_time_minutes = Column(Integer, default=30, nullable=False)
    availability_rule = Column(
        Enum(AvailabilityRule),
        default=AvailabilityRule.AFTER_ALL_DELIVERED,
        nullable=False
    )

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow)

    def __repr__(self):
        return f"<DispatchPolicy branch={self.branch_id} max_per_trip={self.max_per_trip}>"


class DeliveryAssignment(Base):
    """
    A delivery trip: one courier, an ordered route and its linked orders.

    The route is stored as a JSON list of route points, branch origin first.
    """
    __tablename__ = "delivery_assignments"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(100), nullable=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, index=True)
    courier_id = Column(Integer, ForeignKey("couriers.id"), nullable=True, index=True)

    status = Column(
        Enum(AssignmentStatus),
        default=AssignmentStatus.PENDING,
        nullable=False,
        index=True
    )

    route = Column(Text, nullable=True)
    estimated_distance = Column(Integer, nullable=True)  # meters
    estimated_time = Column(Integer, nullable=True)  # minutes

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow)

    def __repr__(self):
        return f"<DeliveryAssignment #{self.id} - {self.status.value}>"
