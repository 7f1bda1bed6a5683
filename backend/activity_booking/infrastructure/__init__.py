"""
Infrastructure layer - external system integrations.
Keeps business logic clean from implementation details.
"""

from .catalog_client import HttpCatalog
from .payment_gateway import PaymentGateway
from .redis_client import close_redis, get_redis

__all__ = ['HttpCatalog', 'PaymentGateway', 'close_redis', 'get_redis']
