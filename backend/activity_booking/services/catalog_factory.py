"""
Catalog provider factory.
Configures which catalog source the engine reads activities and vendors from.
"""

from activity_booking.core.config import Settings
from activity_booking.infrastructure.catalog_client import HttpCatalog
from activity_booking.services.interfaces.catalog import CatalogProvider
from activity_booking.services.interfaces.static_catalog import StaticCatalog


def build_catalog(settings: Settings) -> CatalogProvider:
    """
    Build the configured catalog provider.

    Selection:
    - CATALOG_SERVICE_URL set: HttpCatalog (production)
    - CATALOG_FIXTURE_PATH set: StaticCatalog loaded from the fixture
    - Neither: empty StaticCatalog
    """
    if settings.CATALOG_SERVICE_URL:
        return HttpCatalog(settings.CATALOG_SERVICE_URL, timeout=settings.CATALOG_TIMEOUT)
    if settings.CATALOG_FIXTURE_PATH:
        return StaticCatalog.from_file(settings.CATALOG_FIXTURE_PATH)
    return StaticCatalog()
