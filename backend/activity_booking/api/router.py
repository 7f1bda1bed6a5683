"""
Central API router that aggregates all route modules.
"""

from fastapi import APIRouter
from activity_booking.api.routes import bookings, payments, ratings, webhooks

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(bookings.router)
api_router.include_router(payments.router)
api_router.include_router(webhooks.router)
api_router.include_router(ratings.router)
