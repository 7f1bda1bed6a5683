"""
Service interfaces for dependency inversion.
Allows swapping implementations without changing business logic.
"""

from .catalog import CatalogProvider
from .static_catalog import StaticCatalog

__all__ = ['CatalogProvider', 'StaticCatalog']
