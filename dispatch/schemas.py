"""
Pydantic Schemas for Request/Response Validation

Request bodies never carry a branch id: the branch always comes from the
authenticated actor (see dispatch.main.get_actor).
"""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime

from dispatch.models import AssignmentStatus, AvailabilityRule, DeliveryType, OrderStatus


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class AssignmentCreate(BaseModel):
    """Request schema for creating an assignment from explicit orders."""
    order_ids: List[int] = Field(..., examples=[[101, 102]])
    courier_id: Optional[int] = Field(None, examples=[7])
    name: Optional[str] = Field(None, max_length=100, examples=["Evening route"])


class AutoCreateRequest(BaseModel):
    """Optional restriction of the auto-create batch to some orders."""
    order_ids: Optional[List[int]] = Field(None, examples=[[101, 102, 103]])


class RoutePreviewRequest(BaseModel):
    order_ids: List[int] = Field(..., examples=[[101, 102]])


class StatusUpdateRequest(BaseModel):
    status: str = Field(..., examples=["IN_PROGRESS"])


class CourierAssignRequest(BaseModel):
    courier_id: int = Field(..., examples=[7])


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class RoutePointResponse(BaseModel):
    """One stop; the branch origin has no order id."""
    order_id: Optional[int]
    lat: float
    lng: float
    address: str
    label: str
    is_origin: bool = False

    class Config:
        from_attributes = True


class CourierSummary(BaseModel):
    id: int
    name: str
    phone: Optional[str]
    active: bool
    online: bool

    class Config:
        from_attributes = True


class CourierResponse(CourierSummary):
    """Courier with current workload."""
    open_assignments: int
    delivering_orders: int


class CourierListResponse(BaseModel):
    total: int
    couriers: List[CourierResponse]


class AssignmentOrderResponse(BaseModel):
    """Order as shown inside an assignment or a pending list."""
    id: int
    order_number: Optional[int]
    customer_name: Optional[str]
    address: str
    city: str
    state: str
    total: float
    lat: Optional[float]
    lng: Optional[float]
    status: OrderStatus
    delivery_type: DeliveryType
    courier_id: Optional[int]

    class Config:
        from_attributes = True


class PendingOrderListResponse(BaseModel):
    total: int
    orders: List[AssignmentOrderResponse]


class CourierOrderStatusResponse(BaseModel):
    """Result of a courier moving one of their orders forward."""
    success: bool
    message: str
    order: AssignmentOrderResponse
    assignment_completed: bool


class AssignmentResponse(BaseModel):
    """Response schema for a single assignment."""
    id: int
    branch_id: int
    name: Optional[str]
    status: AssignmentStatus
    courier: Optional[CourierSummary]
    route: List[RoutePointResponse]
    estimated_distance: Optional[int]
    estimated_time: Optional[int]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    created_at: Optional[datetime]
    order_ids: List[int]
    orders: List[AssignmentOrderResponse]

    class Config:
        from_attributes = True


class AssignmentListResponse(BaseModel):
    total: int
    assignments: List[AssignmentResponse]


class AssignmentActionResponse(BaseModel):
    """Response after creating or changing an assignment."""
    success: bool
    message: str
    assignment: AssignmentResponse


class AssignmentDeleteResponse(BaseModel):
    success: bool
    message: str
    orders_freed: int


class AutoCreateStatsResponse(BaseModel):
    total_orders: int
    assigned_orders: int
    unassigned_orders: int
    routes_created: int
    failed_groups: int

    class Config:
        from_attributes = True


class AutoCreateResponse(BaseModel):
    """Result of the auto-create batch, also when some groups failed."""
    success: bool
    message: str
    routes: List[AssignmentResponse]
    stats: AutoCreateStatsResponse


class RoutePreviewResponse(BaseModel):
    success: bool
    message: str
    route: List[RoutePointResponse]
    estimated_distance: int
    estimated_time: int
    orders_count: int
    used_fallback_origin: bool


class DispatchPolicyResponse(BaseModel):
    branch_id: int
    auto_dispatch: bool
    max_per_trip: int
    max_cluster_distance_meters: int
    max_cluster_time_minutes: int
    availability_rule: AvailabilityRule

    class Config:
        from_attributes = True


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    storage: str
    database: str
    redis: str
    timestamp: datetime
