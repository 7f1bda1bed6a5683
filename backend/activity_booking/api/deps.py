"""
Request dependencies for collaborators constructed at startup.
"""

from fastapi import Request

from activity_booking.infrastructure.payment_gateway import PaymentGateway
from activity_booking.services.interfaces.catalog import CatalogProvider


def get_payment_gateway(request: Request) -> PaymentGateway:
    return request.app.state.payment_gateway


def get_catalog(request: Request) -> CatalogProvider:
    return request.app.state.catalog
