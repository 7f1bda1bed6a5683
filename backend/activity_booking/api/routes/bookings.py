"""
Booking endpoints with concurrency-safe slot reservation.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from activity_booking.api.deps import get_catalog, get_payment_gateway
from activity_booking.core.security import Caller, get_current_caller
from activity_booking.db.session import get_db
from activity_booking.infrastructure.payment_gateway import PaymentGateway
from activity_booking.schemas.booking import (
    BookingCancelRequest,
    BookingCancelResponse,
    BookingCreate,
    BookingListResponse,
    BookingResponse,
    BookingReviewCreate,
    BookingStatusUpdate,
)
from activity_booking.services import booking_service
from activity_booking.services.interfaces.catalog import CatalogProvider

router = APIRouter(prefix="/bookings", tags=["Bookings"])


@router.post("/", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    booking_data: BookingCreate,
    caller: Caller = Depends(get_current_caller),
    catalog: CatalogProvider = Depends(get_catalog),
    db: AsyncSession = Depends(get_db),
):
    """
    Book a slot of an activity.

    The booking starts `pending` with its price frozen; it is confirmed once
    its payment is paid. Concurrent requests for the last seats of a slot get
    a 409 SlotFull rather than overbooking it.
    """
    return await booking_service.create_booking(db, catalog, caller, booking_data)


@router.get("/", response_model=BookingListResponse)
async def list_bookings(
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    caller: Caller = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
):
    """Get the authenticated user's bookings, newest first."""
    bookings, total = await booking_service.list_bookings(
        db, caller, booking_service.parse_status_filter(status_filter), page, page_size
    )
    return BookingListResponse(
        bookings=[BookingResponse.model_validate(b) for b in bookings],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/{reference}", response_model=BookingResponse)
async def get_booking(
    reference: str,
    caller: Caller = Depends(get_current_caller),
    catalog: CatalogProvider = Depends(get_catalog),
    db: AsyncSession = Depends(get_db),
):
    return await booking_service.get_booking(db, catalog, caller, reference)


@router.post("/{reference}/cancel", response_model=BookingCancelResponse)
async def cancel_booking(
    reference: str,
    body: Optional[BookingCancelRequest] = None,
    caller: Caller = Depends(get_current_caller),
    catalog: CatalogProvider = Depends(get_catalog),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    db: AsyncSession = Depends(get_db),
):
    """
    Cancel a booking. More than 48h before start refunds 100% of a paid
    booking, 24-48h refunds 50%, within 24h cancellation is refused.
    """
    booking, refund_amount = await booking_service.cancel_booking(
        db, catalog, gateway, caller, reference, body.reason if body else None
    )
    return BookingCancelResponse(
        message="Booking cancelled successfully",
        reference=booking.reference,
        status=booking.status,
        refund_amount=refund_amount,
    )


@router.patch("/{reference}/status", response_model=BookingResponse)
async def update_booking_status(
    reference: str,
    body: BookingStatusUpdate,
    caller: Caller = Depends(get_current_caller),
    catalog: CatalogProvider = Depends(get_catalog),
    db: AsyncSession = Depends(get_db),
):
    """Vendor or admin moves a booking along its lifecycle."""
    return await booking_service.update_status(db, catalog, caller, reference, body.status, body.notes)


@router.post("/{reference}/review", response_model=BookingResponse)
async def review_booking(
    reference: str,
    body: BookingReviewCreate,
    caller: Caller = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
):
    return await booking_service.add_review(db, caller, reference, body.rating, body.comment)
