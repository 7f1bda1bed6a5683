"""
HTTP client for the catalog service.
Activities and vendors are fetched as JSON and validated into snapshots.
"""

from typing import Optional

import httpx
from pydantic import ValidationError as SchemaValidationError

from activity_booking.core.exceptions import CatalogUnavailableError
from activity_booking.core.logging import get_logger
from activity_booking.schemas.catalog import ActivitySnapshot, VendorSnapshot
from activity_booking.services.interfaces.catalog import CatalogProvider

logger = get_logger(__name__)


class HttpCatalog(CatalogProvider):
    """
    Catalog provider for the remote catalog service.

    GET {base_url}/activities/{id} and GET {base_url}/vendors/{id};
    a 404 means the entity does not exist.
    """

    def __init__(self, base_url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers={"Accept": "application/json"},
        )

    async def _fetch(self, path: str) -> Optional[dict]:
        try:
            response = await self._client.get(path)
        except httpx.HTTPError as e:
            logger.error("catalog_request_failed", path=path, error=str(e))
            raise CatalogUnavailableError() from e

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            logger.error("catalog_request_rejected", path=path, status_code=response.status_code)
            raise CatalogUnavailableError()
        return response.json()

    async def get_activity(self, activity_id: str) -> Optional[ActivitySnapshot]:
        data = await self._fetch(f"/activities/{activity_id}")
        if data is None:
            return None
        try:
            return ActivitySnapshot.model_validate(data)
        except SchemaValidationError as e:
            logger.error("catalog_activity_malformed", activity_id=activity_id, error=str(e))
            raise CatalogUnavailableError() from e

    async def get_vendor(self, vendor_id: str) -> Optional[VendorSnapshot]:
        data = await self._fetch(f"/vendors/{vendor_id}")
        if data is None:
            return None
        try:
            return VendorSnapshot.model_validate(data)
        except SchemaValidationError as e:
            logger.error("catalog_vendor_malformed", vendor_id=vendor_id, error=str(e))
            raise CatalogUnavailableError() from e

    async def close(self) -> None:
        await self._client.aclose()
