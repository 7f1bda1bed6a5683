"""
Inbound payment processor notifications.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from activity_booking.api.deps import get_payment_gateway
from activity_booking.db.session import get_db
from activity_booking.infrastructure.payment_gateway import SIGNATURE_HEADER, PaymentGateway
from activity_booking.schemas.payment import WebhookAck
from activity_booking.services import reconciliation_service

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/payments", response_model=WebhookAck)
async def payment_webhook(
    request: Request,
    gateway: PaymentGateway = Depends(get_payment_gateway),
    db: AsyncSession = Depends(get_db),
):
    """
    Signed notification from the processor. The signature is checked against
    the raw body before anything is parsed or stored.
    """
    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    return await reconciliation_service.handle_webhook(db, gateway, raw_body, signature)
