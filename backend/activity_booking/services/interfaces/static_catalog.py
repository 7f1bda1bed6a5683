"""
In-memory catalog provider.
Serves snapshots from a dict, optionally loaded from a JSON fixture file.
"""

import json
from pathlib import Path
from typing import Iterable, Optional

from activity_booking.core.logging import get_logger
from activity_booking.schemas.catalog import ActivitySnapshot, VendorSnapshot
from activity_booking.services.interfaces.catalog import CatalogProvider

logger = get_logger(__name__)


class StaticCatalog(CatalogProvider):
    """
    Catalog backed by local data.

    Use when:
    - Running tests or local development without the catalog service
    - Seeding a load-test environment from a fixture file
    """

    def __init__(
        self,
        activities: Iterable[ActivitySnapshot] = (),
        vendors: Iterable[VendorSnapshot] = (),
    ):
        self._activities = {a.id: a for a in activities}
        self._vendors = {v.id: v for v in vendors}

    @classmethod
    def from_file(cls, path: str) -> "StaticCatalog":
        """
        Load a fixture shaped like {"activities": [...], "vendors": [...]}.
        """
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        catalog = cls(
            activities=[ActivitySnapshot.model_validate(a) for a in raw.get("activities", [])],
            vendors=[VendorSnapshot.model_validate(v) for v in raw.get("vendors", [])],
        )
        logger.info(
            "catalog_fixture_loaded",
            path=path,
            activities=len(catalog._activities),
            vendors=len(catalog._vendors),
        )
        return catalog

    def add_activity(self, activity: ActivitySnapshot) -> None:
        self._activities[activity.id] = activity

    def add_vendor(self, vendor: VendorSnapshot) -> None:
        self._vendors[vendor.id] = vendor

    async def get_activity(self, activity_id: str) -> Optional[ActivitySnapshot]:
        return self._activities.get(activity_id)

    async def get_vendor(self, vendor_id: str) -> Optional[VendorSnapshot]:
        return self._vendors.get(vendor_id)
