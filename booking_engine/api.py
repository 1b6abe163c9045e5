"""
Booking Engine - API Routes
===========================

Thin HTTP layer over the booking engine. Caller identity comes from the
X-User-Id header; authentication happens upstream.

Error mapping:
- InvalidAmount: 400
- Forbidden: 403
- NotFound: 404
- InvalidTransition, PropertyUnavailable, ConcurrentModification: 409
- ExternalServiceFailure: 502
"""

from contextlib import asynccontextmanager
from typing import Annotated, Dict, Optional, Type
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, Request, status
from fastapi.responses import JSONResponse

from .config import settings
from .container import BookingEngine, build_engine
from .exceptions import (
    BookingEngineError,
    ConcurrentModification,
    ExternalServiceFailure,
    Forbidden,
    InvalidAmount,
    InvalidTransition,
    NotFound,
    PropertyUnavailable,
)
from .logging_setup import configure_logging
from .schemas import (
    BookingRequest,
    BookingResponse,
    CancelRequest,
    CancelResult,
    DetailedFeeBreakdown,
    FeeQuoteRequest,
    JobRunResult,
    JobStatus,
    PaymentRequest,
    RejectRequest,
)

logger = structlog.get_logger(__name__)

ERROR_STATUS: Dict[Type[BookingEngineError], int] = {
    InvalidAmount: status.HTTP_400_BAD_REQUEST,
    Forbidden: status.HTTP_403_FORBIDDEN,
    NotFound: status.HTTP_404_NOT_FOUND,
    InvalidTransition: status.HTTP_409_CONFLICT,
    PropertyUnavailable: status.HTTP_409_CONFLICT,
    ConcurrentModification: status.HTTP_409_CONFLICT,
    ExternalServiceFailure: status.HTTP_502_BAD_GATEWAY,
}


async def booking_error_handler(request: Request, exc: BookingEngineError) -> JSONResponse:
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    body = {"error": type(exc).__name__, "detail": exc.message}
    if isinstance(exc, ConcurrentModification):
        body["retryable"] = True
    if status_code >= 500:
        logger.error("Booking request failed", path=request.url.path, error=exc.message)
    return JSONResponse(status_code=status_code, content=body)


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_engine(request: Request) -> BookingEngine:
    return request.app.state.engine


Engine = Annotated[BookingEngine, Depends(get_engine)]
UserId = Annotated[UUID, Header(alias="X-User-Id")]


# =============================================================================
# ROUTER
# =============================================================================

router = APIRouter(prefix="/api/v1", tags=["Booking Engine"])


@router.post("/bookings", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(request: BookingRequest, user_id: UserId, engine: Engine):
    """
    Create a pending booking.

    Returns 409 if the dates overlap a pending or confirmed booking.
    """
    return await engine.bookings.create_booking(user_id, request)


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
async def get_booking(booking_id: UUID, user_id: UserId, engine: Engine):
    return await engine.bookings.get_booking(booking_id, user_id)


@router.post("/bookings/{booking_id}/confirm", response_model=BookingResponse)
async def confirm_booking(booking_id: UUID, user_id: UserId, engine: Engine):
    return await engine.bookings.confirm(booking_id, user_id)


@router.post("/bookings/{booking_id}/reject", response_model=BookingResponse)
async def reject_booking(
    booking_id: UUID,
    user_id: UserId,
    engine: Engine,
    body: Optional[RejectRequest] = None,
):
    return await engine.bookings.reject(booking_id, user_id, body.reason if body else None)


@router.post("/bookings/{booking_id}/cancel", response_model=CancelResult)
async def cancel_booking(
    booking_id: UUID,
    user_id: UserId,
    engine: Engine,
    body: Optional[CancelRequest] = None,
):
    """Cancel as requester or owner; a completed payment is refunded."""
    return await engine.bookings.cancel(booking_id, user_id, body.reason if body else None)


@router.post("/bookings/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(booking_id: UUID, user_id: UserId, engine: Engine):
    return await engine.bookings.complete(booking_id, user_id)


@router.post("/bookings/{booking_id}/payments", response_model=BookingResponse)
async def record_payment(booking_id: UUID, body: PaymentRequest, engine: Engine):
    return await engine.bookings.record_payment(booking_id, body.amount, body.reference)


@router.post("/fees/quote", response_model=DetailedFeeBreakdown)
async def quote_fees(body: FeeQuoteRequest, engine: Engine):
    return await engine.fees.calculate_detailed_fees(body.base_price, body.property_type)


@router.get("/jobs", response_model=list[JobStatus])
async def list_jobs(engine: Engine):
    return await engine.jobs.status()


@router.post("/jobs/{name}/run", response_model=JobRunResult)
async def run_job(name: str, engine: Engine):
    """Run a scheduled job now; a run already in flight makes this a skip."""
    return await engine.jobs.run_now(name)


# =============================================================================
# APPLICATION
# =============================================================================

def create_app(engine: Optional[BookingEngine] = None) -> FastAPI:
    owns_engine = engine is None
    if engine is None:
        configure_logging(settings)
        engine = build_engine(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_engine:
            await engine.close()

    app = FastAPI(title="Booking Engine", version="1.0.0", lifespan=lifespan)
    app.state.engine = engine
    app.include_router(router)
    app.add_exception_handler(BookingEngineError, booking_error_handler)
    return app
