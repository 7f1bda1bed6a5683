"""
Payment endpoints: initiate a payment for a booking, refresh its status.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from activity_booking.api.deps import get_payment_gateway
from activity_booking.core.security import Caller, get_current_caller
from activity_booking.db.session import get_db
from activity_booking.infrastructure.payment_gateway import PaymentGateway
from activity_booking.schemas.payment import PaymentInitiate, PaymentResponse
from activity_booking.services import payment_service

router = APIRouter(prefix="/payments", tags=["Payments"])


def _to_response(result: payment_service.PaymentResult) -> PaymentResponse:
    return PaymentResponse(
        reference=result.booking.reference,
        gateway_payment_id=result.gateway_payment_id,
        payment_status=result.booking.payment_status,
        booking_status=result.booking.status,
        transaction_url=result.transaction_url,
    )


@router.post("/{reference}", response_model=PaymentResponse)
async def initiate_payment(
    reference: str,
    body: PaymentInitiate,
    caller: Caller = Depends(get_current_caller),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    db: AsyncSession = Depends(get_db),
):
    """
    Pay for a pending booking.

    `paid` confirms the booking immediately. 3-D Secure and STC Pay return a
    `transaction_url` and settle later through the webhook. On a 504 the
    outcome is unknown: retry the same request, it reuses the attempt.
    """
    result = await payment_service.initiate_payment(
        db, gateway, caller, reference, body.method, body.source.to_source()
    )
    return _to_response(result)


@router.post("/{reference}/refresh", response_model=PaymentResponse)
async def refresh_payment(
    reference: str,
    caller: Caller = Depends(get_current_caller),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    db: AsyncSession = Depends(get_db),
):
    """Poll the processor and reconcile the booking's payment."""
    result = await payment_service.refresh_payment(db, gateway, caller, reference)
    return _to_response(result)
