"""
FastAPI Application Entry Point

Restaurant Delivery Dispatch - assignment and auto-routing engine.
Runs against PostgreSQL (STORAGE_BACKEND=sql) or a process-local in-memory
store (STORAGE_BACKEND=memory).

Endpoints:
    - GET /api/dispatch-policy: Branch dispatch policy (created on first use)
    - GET /api/delivery-assignments: List assignments
    - GET /api/delivery-assignments/pending-orders: Orders waiting for dispatch
    - GET /api/delivery-assignments/available-couriers: Couriers free for work
    - POST /api/delivery-assignments: Create from explicit orders
    - POST /api/delivery-assignments/auto-create: Cluster and dispatch
    - POST /api/delivery-assignments/preview: Route preview, no writes
    - GET/DELETE /api/delivery-assignments/{id}
    - PATCH /api/delivery-assignments/{id}/status
    - PUT /api/delivery-assignments/{id}/courier
    - PATCH /api/delivery/orders/{id}/status: Courier order progress
    - GET /health: System health check

The branch of every call comes from the X-Branch-Id header set by the API
gateway after authentication. Courier calls also carry X-Courier-Id.
"""

import asyncio
import sys
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, Query, Request, Header
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import select
import redis

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from dispatch.core.config import get_settings, setup_logging
from dispatch.core.errors import DispatchError, ForbiddenError
from dispatch.repositories import DispatchStore, get_store
from dispatch.schemas import (
    AssignmentActionResponse,
    AssignmentCreate,
    AssignmentDeleteResponse,
    AssignmentListResponse,
    AssignmentOrderResponse,
    AssignmentResponse,
    AutoCreateRequest,
    AutoCreateResponse,
    AutoCreateStatsResponse,
    CourierAssignRequest,
    CourierOrderStatusResponse,
    CourierListResponse,
    CourierResponse,
    DispatchPolicyResponse,
    HealthResponse,
    PendingOrderListResponse,
    RoutePointResponse,
    RoutePreviewRequest,
    RoutePreviewResponse,
    StatusUpdateRequest,
)
from dispatch.services.assignments import AssignmentService, Exporter
from dispatch.tasks import queue_route_sheet_export

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Storage: {settings.storage_backend.value}")
    logger.info(f"   Courier selection: {settings.courier_selection.value}")
    logger.info("=" * 60)

    if not settings.uses_memory_store:
        from dispatch.database import init_db

        await init_db()
        logger.info("✅ Database initialized")

    logger.info("✅ Application ready!")
    logger.info("=" * 60)

    yield

    logger.info("Shutting down...")
    if not settings.uses_memory_store:
        from dispatch.database import engine

        await engine.dispose()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Delivery assignment and auto-routing engine: groups ready orders into "
        "trips, picks available couriers and tracks each trip's lifecycle."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# DEPENDENCIES
# =============================================================================

@dataclass(frozen=True)
class Actor:
    """Authenticated caller as forwarded by the gateway."""
    branch_id: int
    user_id: Optional[str] = None


async def get_actor(
    x_branch_id: Optional[str] = Header(None, alias="X-Branch-Id"),
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
) -> Actor:
    """Resolve the caller's branch; callers without one are rejected."""
    if not x_branch_id:
        raise ForbiddenError("User is not associated with a branch")
    try:
        branch_id = int(x_branch_id)
    except ValueError:
        raise ForbiddenError("User is not associated with a branch")
    if branch_id < 1:
        raise ForbiddenError("User is not associated with a branch")
    return Actor(branch_id=branch_id, user_id=x_user_id)


async def get_courier_id(
    x_courier_id: Optional[str] = Header(None, alias="X-Courier-Id"),
) -> int:
    """Courier identity for the courier app endpoints."""
    try:
        courier_id = int(x_courier_id or "")
    except ValueError:
        raise ForbiddenError("Caller is not a courier")
    if courier_id < 1:
        raise ForbiddenError("Caller is not a courier")
    return courier_id


def get_route_sheet_exporter() -> Optional[Exporter]:
    return queue_route_sheet_export if settings.export_route_sheets else None


async def get_assignment_service(
    store: DispatchStore = Depends(get_store),
    exporter: Optional[Exporter] = Depends(get_route_sheet_exporter),
) -> AssignmentService:
    return AssignmentService(store, get_settings(), exporter=exporter)


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"🚚 Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check() -> HealthResponse:
    """Verify all system components are operational."""

    db_status = "not used"
    if not settings.uses_memory_store:
        from dispatch.database import async_session_maker

        db_status = "healthy"
        try:
            async with async_session_maker() as session:
                await session.execute(select(1))
        except Exception as e:
            db_status = f"unhealthy: {str(e)}"
            logger.error(f"Database health check failed: {e}")

    redis_status = "healthy"
    try:
        r = redis.Redis.from_url(settings.redis_url, socket_timeout=2)
        r.ping()
        r.close()
    except Exception as e:
        redis_status = f"unhealthy: {str(e)}"
        logger.error(f"Redis health check failed: {e}")

    overall = "operational" if all(
        s in ("healthy", "not used") for s in [db_status, redis_status]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        storage=settings.storage_backend.value,
        database=db_status,
        redis=redis_status,
        timestamp=datetime.now(),
    )


# =============================================================================
# DISPATCH POLICY
# =============================================================================

@app.get(
    "/api/dispatch-policy",
    response_model=DispatchPolicyResponse,
    tags=["Dispatch Policy"],
)
async def get_dispatch_policy(
    actor: Actor = Depends(get_actor),
    service: AssignmentService = Depends(get_assignment_service),
) -> DispatchPolicyResponse:
    """Current dispatch policy of the caller's branch."""
    policy = await service.get_policy(actor.branch_id)
    return DispatchPolicyResponse.model_validate(policy)


# =============================================================================
# DELIVERY ASSIGNMENT ENDPOINTS
# =============================================================================

@app.get(
    "/api/delivery-assignments",
    response_model=AssignmentListResponse,
    tags=["Delivery Assignments"],
    summary="List Assignments",
)
async def list_assignments(
    status: Optional[str] = Query(None),
    actor: Actor = Depends(get_actor),
    service: AssignmentService = Depends(get_assignment_service),
) -> AssignmentListResponse:
    """Assignments of the branch, newest first."""
    views = await service.list_assignments(actor.branch_id, status)
    return AssignmentListResponse(
        total=len(views),
        assignments=[AssignmentResponse.model_validate(view) for view in views],
    )


@app.get(
    "/api/delivery-assignments/pending-orders",
    response_model=PendingOrderListResponse,
    tags=["Delivery Assignments"],
)
async def list_pending_orders(
    delivery_type: str = Query("DELIVERY"),
    actor: Actor = Depends(get_actor),
    service: AssignmentService = Depends(get_assignment_service),
) -> PendingOrderListResponse:
    """Orders in PREPARING or READY that are not on a route yet."""
    orders = await service.list_deliverable(actor.branch_id, delivery_type)
    return PendingOrderListResponse(
        total=len(orders),
        orders=[AssignmentOrderResponse.model_validate(order) for order in orders],
    )


@app.get(
    "/api/delivery-assignments/available-couriers",
    response_model=CourierListResponse,
    tags=["Delivery Assignments"],
)
async def list_available_couriers(
    actor: Actor = Depends(get_actor),
    service: AssignmentService = Depends(get_assignment_service),
) -> CourierListResponse:
    """Couriers that may receive a new route under the branch policy."""
    couriers = await service.available_couriers(actor.branch_id)
    return CourierListResponse(
        total=len(couriers),
        couriers=[CourierResponse.model_validate(courier) for courier in couriers],
    )


@app.post(
    "/api/delivery-assignments",
    response_model=AssignmentActionResponse,
    status_code=201,
    tags=["Delivery Assignments"],
    summary="Create Assignment",
)
async def create_assignment(
    payload: AssignmentCreate,
    actor: Actor = Depends(get_actor),
    service: AssignmentService = Depends(get_assignment_service),
) -> AssignmentActionResponse:
    """Create one route from an explicit list of orders."""
    view = await service.create(
        actor.branch_id,
        payload.order_ids,
        courier_id=payload.courier_id,
        name=payload.name,
    )
    return AssignmentActionResponse(
        success=True,
        message="Route created successfully",
        assignment=AssignmentResponse.model_validate(view),
    )


@app.post(
    "/api/delivery-assignments/auto-create",
    response_model=AutoCreateResponse,
    tags=["Delivery Assignments"],
    summary="Auto-Create Routes",
)
async def auto_create_routes(
    payload: Optional[AutoCreateRequest] = None,
    actor: Actor = Depends(get_actor),
    service: AssignmentService = Depends(get_assignment_service),
) -> AutoCreateResponse:
    """Cluster waiting orders and give each trip an available courier."""
    order_ids = payload.order_ids if payload else None
    result = await service.auto_create_routes(actor.branch_id, order_ids)
    return AutoCreateResponse(
        success=result.success,
        message=result.message,
        routes=[AssignmentResponse.model_validate(view) for view in result.routes],
        stats=AutoCreateStatsResponse.model_validate(result.stats),
    )


@app.post(
    "/api/delivery-assignments/preview",
    response_model=RoutePreviewResponse,
    tags=["Delivery Assignments"],
    summary="Preview Route",
)
async def preview_route(
    payload: RoutePreviewRequest,
    actor: Actor = Depends(get_actor),
    service: AssignmentService = Depends(get_assignment_service),
) -> RoutePreviewResponse:
    """Build the route for some orders without creating anything."""
    plan = await service.preview_route(actor.branch_id, payload.order_ids)
    return RoutePreviewResponse(
        success=True,
        message="Route built successfully",
        route=[RoutePointResponse.model_validate(point) for point in plan.points],
        estimated_distance=plan.estimated_distance_meters,
        estimated_time=plan.estimated_time_minutes,
        orders_count=plan.stops,
        used_fallback_origin=plan.used_fallback_origin,
    )


@app.get(
    "/api/delivery-assignments/{assignment_id}",
    response_model=AssignmentResponse,
    tags=["Delivery Assignments"],
)
async def get_assignment(
    assignment_id: int,
    actor: Actor = Depends(get_actor),
    service: AssignmentService = Depends(get_assignment_service),
) -> AssignmentResponse:
    """Get a specific assignment by ID."""
    view = await service.get(actor.branch_id, assignment_id)
    return AssignmentResponse.model_validate(view)


@app.patch(
    "/api/delivery-assignments/{assignment_id}/status",
    response_model=AssignmentActionResponse,
    tags=["Delivery Assignments"],
)
async def update_assignment_status(
    assignment_id: int,
    payload: StatusUpdateRequest,
    actor: Actor = Depends(get_actor),
    service: AssignmentService = Depends(get_assignment_service),
) -> AssignmentActionResponse:
    """Start, complete or cancel a route."""
    view = await service.update_status(actor.branch_id, assignment_id, payload.status)
    return AssignmentActionResponse(
        success=True,
        message="Status updated successfully",
        assignment=AssignmentResponse.model_validate(view),
    )


@app.put(
    "/api/delivery-assignments/{assignment_id}/courier",
    response_model=AssignmentActionResponse,
    tags=["Delivery Assignments"],
)
async def assign_courier(
    assignment_id: int,
    payload: CourierAssignRequest,
    actor: Actor = Depends(get_actor),
    service: AssignmentService = Depends(get_assignment_service),
) -> AssignmentActionResponse:
    """Hand a route (and its orders) to another courier."""
    view = await service.assign_courier(actor.branch_id, assignment_id, payload.courier_id)
    return AssignmentActionResponse(
        success=True,
        message="Courier assigned to route successfully",
        assignment=AssignmentResponse.model_validate(view),
    )


@app.delete(
    "/api/delivery-assignments/{assignment_id}",
    response_model=AssignmentDeleteResponse,
    tags=["Delivery Assignments"],
)
async def delete_assignment(
    assignment_id: int,
    actor: Actor = Depends(get_actor),
    service: AssignmentService = Depends(get_assignment_service),
) -> AssignmentDeleteResponse:
    """Delete a route and send its orders back to PREPARING."""
    freed = await service.delete(actor.branch_id, assignment_id)
    return AssignmentDeleteResponse(
        success=True,
        message="Route deleted successfully",
        orders_freed=freed,
    )


# =============================================================================
# COURIER ENDPOINTS
# =============================================================================

@app.patch(
    "/api/delivery/orders/{order_id}/status",
    response_model=CourierOrderStatusResponse,
    tags=["Courier"],
    summary="Update Order Status (courier)",
)
async def update_courier_order_status(
    order_id: int,
    payload: StatusUpdateRequest,
    actor: Actor = Depends(get_actor),
    courier_id: int = Depends(get_courier_id),
    service: AssignmentService = Depends(get_assignment_service),
) -> CourierOrderStatusResponse:
    """Mark an order DELIVERING or DELIVERED; the last delivery completes the route."""
    result = await service.update_order_status(actor.branch_id, courier_id, order_id, payload.status)
    return CourierOrderStatusResponse(
        success=True,
        message="Order status updated successfully",
        order=AssignmentOrderResponse.model_validate(result.order),
        assignment_completed=result.assignment_completed,
    )


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(DispatchError)
async def dispatch_exception_handler(request: Request, exc: DispatchError) -> JSONResponse:
    """Expected domain failures: 400/403/404/409."""
    logger.info(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.message}")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.error,
            "detail": exc.message,
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "dispatch.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.is_development,
    )
