"""
FastAPI Application Entry Point

Group Ordering Service - shared carts for a table of diners.
Supports both Mock services (development) and Real APIs (production).

Endpoints:
    - POST /api/group-orders: Open a group order
    - GET /api/group-orders: List open group orders of a restaurant
    - GET /api/group-orders/{session_id}: Session view
    - GET /api/group-orders/code/{join_code}: Resolve a join code
    - POST /api/group-orders/join/{join_code}: Join
    - POST /api/group-orders/{session_id}/items: Add items
    - PATCH/DELETE /api/group-orders/{session_id}/items/{item_id}: Edit / remove an item
    - POST /api/group-orders/{session_id}/participants/{participant_id}/leave: Leave
    - DELETE /api/group-orders/{session_id}/participants/{participant_id}: Remove (host)
    - PUT /api/group-orders/{session_id}/payment-split: Change split (host)
    - PUT /api/group-orders/{session_id}/participants/{participant_id}/spending-limit (host)
    - POST /api/group-orders/{session_id}/lock | /place | /cancel
    - GET /health: System health check

The acting participant (or host user id) is passed in the X-Actor-Id header,
as set by the authentication gateway in front of this service.

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import sys
import logging
from datetime import datetime
from typing import Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, Query, Request, Header
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Internal imports
from group_ordering.core.config import get_settings, setup_logging
from group_ordering.core.errors import GroupOrderError, InvariantViolation
from group_ordering.schemas import (
    AddItemsRequest,
    CancelRequest,
    ErrorResponse,
    HealthResponse,
    ItemsResponse,
    ItemUpdate,
    JoinRequest,
    JoinResponse,
    LineItemResponse,
    ParticipantResponse,
    PaymentSplitIn,
    PlacementResponse,
    SessionCreate,
    SessionListResponse,
    SessionResponse,
    SpendingLimitUpdate,
)
from group_ordering.services.group_orders import GroupOrderingService, get_group_ordering_service

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)

ERROR_RESPONSES = {
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    429: {"model": ErrorResponse},
}


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    # Startup
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    if settings.use_database:
        from group_ordering.database import init_db

        await init_db()
        logger.info("✅ Database initialized")

    service = get_group_ordering_service()
    app.state.group_orders = service
    restored = await service.start()

    logger.info(f"✅ Payment Service: {service.payment.provider_name}")
    logger.info(f"✅ Notification Service: {service.notifications.provider_name}")
    logger.info(f"✅ Restored group orders: {restored}")

    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"⚠️ Missing production config: {missing}")

    logger.info("=" * 60)
    logger.info("✅ Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    await service.stop()
    if settings.use_database:
        from group_ordering.database import engine

        await engine.dispose()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Group ordering engine: one shared cart per table, join codes, "
        "spending limits and split payments."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# ERROR HANDLING
# =============================================================================

@app.exception_handler(GroupOrderError)
async def group_order_error_handler(request: Request, exc: GroupOrderError) -> JSONResponse:
    logger.info(f"{request.method} {request.url.path} → {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(InvariantViolation)
async def invariant_violation_handler(request: Request, exc: InvariantViolation) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "internal_error", "detail": "Request refused"},
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={"success": False, "error": "invalid_request", "detail": str(exc)},
    )


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_service(request: Request) -> GroupOrderingService:
    return request.app.state.group_orders


def get_actor(x_actor_id: str = Header(..., alias="X-Actor-Id")) -> str:
    """Participant id or host user id of the caller."""
    return x_actor_id


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"🍽️ Welcome to {settings.app_name}",
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
async def health_check(service: GroupOrderingService = Depends(get_service)) -> HealthResponse:
    """Verify all system components are operational."""
    payment_status = "healthy" if await service.payment.health_check() else "unhealthy"
    notification_status = "healthy" if await service.notifications.health_check() else "unhealthy"
    scheduler_status = "running" if service.registry.scheduler.running else "stopped"

    overall = "operational" if (
        payment_status == "healthy"
        and notification_status == "healthy"
        and scheduler_status == "running"
    ) else "degraded"

    return HealthResponse(
        status=overall,
        payment_service=payment_status,
        notification_service=notification_status,
        scheduler=scheduler_status,
        open_sessions=sum(1 for s in service.registry.sessions() if s.status.is_open),
        timestamp=datetime.now(),
    )


# =============================================================================
# GROUP ORDER SESSIONS
# =============================================================================

@app.post(
    "/api/group-orders",
    response_model=SessionResponse,
    status_code=201,
    responses=ERROR_RESPONSES,
    tags=["Group Orders"],
    summary="Open Group Order",
)
async def create_group_order(
    body: SessionCreate,
    service: GroupOrderingService = Depends(get_service),
) -> SessionResponse:
    """Open a new group order and get its join code."""
    logger.info(f"Opening group order for restaurant {body.restaurant_id} ({body.creator.name})")
    view = await service.create_session(
        body.restaurant_id,
        body.creator.to_identity(),
        table_id=body.table_id,
        expiration_minutes=body.expiration_minutes,
        payment_split=body.payment_split.to_split() if body.payment_split else None,
        spending_limits=body.spending_limits,
    )
    return SessionResponse.from_view(view)


@app.get(
    "/api/group-orders",
    response_model=SessionListResponse,
    tags=["Group Orders"],
    summary="List Open Group Orders",
)
async def list_group_orders(
    restaurant_id: str = Query(..., min_length=1),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    service: GroupOrderingService = Depends(get_service),
) -> SessionListResponse:
    """Open (active or locked) group orders of a restaurant, newest first."""
    listing = service.list_active_sessions(restaurant_id, page=page, limit=limit)
    return SessionListResponse(
        sessions=[SessionResponse.from_view(v) for v in listing["sessions"]],
        pagination=listing["pagination"],
    )


@app.get(
    "/api/group-orders/code/{join_code}",
    response_model=SessionResponse,
    responses=ERROR_RESPONSES,
    tags=["Group Orders"],
)
async def get_group_order_by_code(
    join_code: str,
    service: GroupOrderingService = Depends(get_service),
) -> SessionResponse:
    return SessionResponse.from_view(service.get_session_by_code(join_code))


@app.get(
    "/api/group-orders/{session_id}",
    response_model=SessionResponse,
    responses=ERROR_RESPONSES,
    tags=["Group Orders"],
)
async def get_group_order(
    session_id: str,
    service: GroupOrderingService = Depends(get_service),
) -> SessionResponse:
    return SessionResponse.from_view(service.get_session(session_id))


# =============================================================================
# PARTICIPANTS
# =============================================================================

@app.post(
    "/api/group-orders/join/{join_code}",
    response_model=JoinResponse,
    status_code=201,
    responses=ERROR_RESPONSES,
    tags=["Participants"],
)
async def join_group_order(
    join_code: str,
    body: JoinRequest,
    service: GroupOrderingService = Depends(get_service),
) -> JoinResponse:
    view, participant = await service.join_session(join_code, body.identity.to_identity())
    return JoinResponse(
        session=SessionResponse.from_view(view),
        participant=ParticipantResponse.from_participant(participant),
    )


@app.post(
    "/api/group-orders/{session_id}/participants/{participant_id}/leave",
    response_model=SessionResponse,
    responses=ERROR_RESPONSES,
    tags=["Participants"],
)
async def leave_group_order(
    session_id: str,
    participant_id: str,
    actor: str = Depends(get_actor),
    service: GroupOrderingService = Depends(get_service),
) -> SessionResponse:
    """A participant leaves (or the host takes them off); their items drop out of the total."""
    return SessionResponse.from_view(await service.leave_session(session_id, participant_id, actor))


@app.delete(
    "/api/group-orders/{session_id}/participants/{participant_id}",
    response_model=SessionResponse,
    responses=ERROR_RESPONSES,
    tags=["Participants"],
)
async def remove_participant(
    session_id: str,
    participant_id: str,
    actor: str = Depends(get_actor),
    service: GroupOrderingService = Depends(get_service),
) -> SessionResponse:
    """Host removes a participant; their items drop out of the total."""
    return SessionResponse.from_view(
        await service.remove_participant(session_id, participant_id, actor)
    )


@app.put(
    "/api/group-orders/{session_id}/participants/{participant_id}/spending-limit",
    response_model=SessionResponse,
    responses=ERROR_RESPONSES,
    tags=["Participants"],
)
async def set_spending_limit(
    session_id: str,
    participant_id: str,
    body: SpendingLimitUpdate,
    actor: str = Depends(get_actor),
    service: GroupOrderingService = Depends(get_service),
) -> SessionResponse:
    return SessionResponse.from_view(
        await service.set_spending_limit(session_id, participant_id, body.limit, actor)
    )


# =============================================================================
# ITEMS
# =============================================================================

@app.post(
    "/api/group-orders/{session_id}/items",
    response_model=ItemsResponse,
    status_code=201,
    responses=ERROR_RESPONSES,
    tags=["Items"],
)
async def add_items(
    session_id: str,
    body: AddItemsRequest,
    actor: str = Depends(get_actor),
    service: GroupOrderingService = Depends(get_service),
) -> ItemsResponse:
    """Add items to a participant's tab. Only they or the host may do so."""
    added = await service.add_items(
        session_id,
        body.participant_id,
        [item.to_entry() for item in body.items],
        requested_by=actor,
    )
    return ItemsResponse(
        items=[LineItemResponse.from_item(i) for i in added],
        total_amount=service.get_session(session_id).total_amount,
    )


@app.patch(
    "/api/group-orders/{session_id}/items/{item_id}",
    response_model=LineItemResponse,
    responses=ERROR_RESPONSES,
    tags=["Items"],
)
async def update_item(
    session_id: str,
    item_id: str,
    body: ItemUpdate,
    actor: str = Depends(get_actor),
    service: GroupOrderingService = Depends(get_service),
) -> LineItemResponse:
    """Optimistic edit; a stale expected_version answers 409 version_conflict."""
    updated = await service.update_item(
        session_id, item_id, body.expected_version, body.to_patch(), actor
    )
    return LineItemResponse.from_item(updated)


@app.delete(
    "/api/group-orders/{session_id}/items/{item_id}",
    response_model=LineItemResponse,
    responses=ERROR_RESPONSES,
    tags=["Items"],
)
async def remove_item(
    session_id: str,
    item_id: str,
    actor: str = Depends(get_actor),
    service: GroupOrderingService = Depends(get_service),
) -> LineItemResponse:
    return LineItemResponse.from_item(await service.remove_item(session_id, item_id, actor))


# =============================================================================
# PAYMENT & LIFECYCLE
# =============================================================================

@app.put(
    "/api/group-orders/{session_id}/payment-split",
    response_model=SessionResponse,
    responses=ERROR_RESPONSES,
    tags=["Lifecycle"],
)
async def set_payment_split(
    session_id: str,
    body: PaymentSplitIn,
    actor: str = Depends(get_actor),
    service: GroupOrderingService = Depends(get_service),
) -> SessionResponse:
    return SessionResponse.from_view(
        await service.set_payment_split(session_id, body.to_split(), actor)
    )


@app.post(
    "/api/group-orders/{session_id}/lock",
    response_model=SessionResponse,
    responses=ERROR_RESPONSES,
    tags=["Lifecycle"],
)
async def lock_group_order(
    session_id: str,
    actor: str = Depends(get_actor),
    service: GroupOrderingService = Depends(get_service),
) -> SessionResponse:
    return SessionResponse.from_view(await service.lock_session(session_id, actor))


@app.post(
    "/api/group-orders/{session_id}/place",
    response_model=PlacementResponse,
    responses=ERROR_RESPONSES,
    tags=["Lifecycle"],
)
async def place_group_order(
    session_id: str,
    actor: str = Depends(get_actor),
    service: GroupOrderingService = Depends(get_service),
) -> PlacementResponse:
    """
    Charge every participant and place the order.

    A declined or timed-out charge cancels the whole group order; the
    response lists who was charged (and will be refunded) and who failed.
    """
    result = await service.place_order(session_id, actor)
    return PlacementResponse.from_result(result)


@app.post(
    "/api/group-orders/{session_id}/cancel",
    response_model=SessionResponse,
    responses=ERROR_RESPONSES,
    tags=["Lifecycle"],
)
async def cancel_group_order(
    session_id: str,
    body: Optional[CancelRequest] = None,
    actor: str = Depends(get_actor),
    service: GroupOrderingService = Depends(get_service),
) -> SessionResponse:
    reason = body.reason if body else None
    return SessionResponse.from_view(await service.cancel_session(session_id, actor, reason))


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "group_ordering.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
