"""HTTP clients for the catalog, cart and address-book services."""

from typing import Any, Dict, List, Optional

import httpx

from app.core_settings import Settings
from app.domain.errors import UpstreamServiceError
from shared.core import get_logger

logger = get_logger(__name__)


class ServiceClient:
    def __init__(self, base_url: str, timeout: float = 5.0,
                 transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            with httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
                response = client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"{method} {self.base_url}{path} failed: {e}")
            raise UpstreamServiceError(f"{type(self).__name__} unavailable: {e}") from e
        if response.status_code >= 500:
            raise UpstreamServiceError(f"{type(self).__name__} returned {response.status_code}")
        return response


class ProductCatalogClient(ServiceClient):
    @classmethod
    def from_settings(cls, settings: Settings) -> "ProductCatalogClient":
        return cls(settings.PRODUCTS_SERVICE_URL, settings.HTTP_TIMEOUT_SECONDS)

    def find_by_id(self, product_id: str) -> Optional[Dict[str, Any]]:
        """Current product record, ``None`` if the catalog does not know it."""
        response = self._request("GET", f"/products/{product_id}")
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise UpstreamServiceError(f"Product lookup failed with {response.status_code}")
        return response.json()


class CartClient(ServiceClient):
    @classmethod
    def from_settings(cls, settings: Settings) -> "CartClient":
        return cls(settings.CART_SERVICE_URL, settings.HTTP_TIMEOUT_SECONDS)

    def get_items(self, user_id: str) -> List[Dict[str, Any]]:
        response = self._request("GET", f"/carts/{user_id}")
        if response.status_code == 404:
            return []
        if response.status_code >= 400:
            raise UpstreamServiceError(f"Cart lookup failed with {response.status_code}")
        body = response.json()
        items = body.get("items", []) if isinstance(body, dict) else body
        return list(items or [])

    def clear(self, user_id: str) -> None:
        response = self._request("DELETE", f"/carts/{user_id}")
        if response.status_code >= 400 and response.status_code != 404:
            raise UpstreamServiceError(f"Cart clear failed with {response.status_code}")


class AddressClient(ServiceClient):
    @classmethod
    def from_settings(cls, settings: Settings) -> "AddressClient":
        return cls(settings.ADDRESS_SERVICE_URL, settings.HTTP_TIMEOUT_SECONDS)

    def get_by_id(self, address_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        """Saved address owned by ``user_id``; ``None`` if missing or owned by someone else."""
        response = self._request("GET", f"/addresses/{address_id}", params={"user_id": user_id})
        if response.status_code in (403, 404):
            return None
        if response.status_code >= 400:
            raise UpstreamServiceError(f"Address lookup failed with {response.status_code}")
        return response.json()

    def create(self, user_id: str, details: Dict[str, Any]) -> Dict[str, Any]:
        response = self._request("POST", "/addresses/", json={**details, "userId": user_id})
        if response.status_code >= 400:
            raise UpstreamServiceError(f"Address save failed with {response.status_code}")
        return response.json()
