"""
Catalog provider interface.
Allows swapping the catalog source without changing booking logic.
"""

from abc import ABC, abstractmethod
from typing import Optional

from activity_booking.schemas.catalog import ActivitySnapshot, VendorSnapshot


class CatalogProvider(ABC):
    """
    Read-only access to activities and vendors.

    Implementations:
    - StaticCatalog: in-memory snapshots, optionally loaded from a JSON fixture
    - HttpCatalog: fetches snapshots from the catalog service over HTTP
    """

    @abstractmethod
    async def get_activity(self, activity_id: str) -> Optional[ActivitySnapshot]:
        """
        Look up an activity.

        Returns:
            The activity snapshot, or None if the catalog does not know it.
        """

    @abstractmethod
    async def get_vendor(self, vendor_id: str) -> Optional[VendorSnapshot]:
        """Look up a vendor. Returns None if unknown."""

    async def close(self) -> None:
        """Release any held connections."""
