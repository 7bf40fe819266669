import httpx
from typing import Optional

from commerce_core.core import get_logger
from commerce_core.core_settings import get_settings

logger = get_logger(__name__)


class CatalogClient:
    """Read-only product lookups used for title snapshots on new orders."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        settings = get_settings()
        self.base_url = (base_url or settings.PRODUCTS_SERVICE_URL or "").rstrip("/")
        self.timeout = timeout if timeout is not None else settings.CATALOG_TIMEOUT_SECONDS

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    def fetch_product(self, product_id: str) -> Optional[dict]:
        """Product data from the catalog, or None when it cannot be fetched."""
        if not self.enabled:
            return None
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.get(f"{self.base_url}/products/{product_id}")
                if response.status_code == 200:
                    return response.json()
        except httpx.HTTPError as exc:
            logger.warning(f"Catalog lookup failed for product {product_id}: {exc}")
        return None

    def fetch_variant(self, product_id: str, variant_id: str) -> Optional[dict]:
        if not self.enabled:
            return None
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.get(f"{self.base_url}/products/{product_id}/variants/{variant_id}")
                if response.status_code == 200:
                    return response.json()
        except httpx.HTTPError as exc:
            logger.warning(f"Catalog lookup failed for variant {variant_id}: {exc}")
        return None
