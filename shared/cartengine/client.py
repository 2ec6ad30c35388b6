"""
Commerce API Client

HTTP client for the commerce backend: catalog, coupons and the
server-held cart used for cross-device sync.
"""

import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from .errors import CatalogError, MergeError, SyncAuthError, SyncTransportError
from .models import Coupon, IdentityContext, Product, ServerCartData, normalize_coupon_code

logger = logging.getLogger(__name__)


class CommerceClient:
    """
    Client for the commerce backend REST API.

    Implements the catalog lookup, coupon lookup and cart transport
    contracts used by the cart service.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize commerce client.

        Args:
            base_url: Base URL of the commerce API
            timeout: Request timeout in seconds
            http_client: Pre-configured client to use instead of creating one
        """
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        """Close HTTP client"""
        if self._owns_client:
            await self._http_client.aclose()

    async def __aenter__(self) -> "CommerceClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _headers(self, access_token: Optional[str] = None) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        body: Optional[dict[str, Any]] = None,
        access_token: Optional[str] = None,
    ) -> httpx.Response:
        """Make an HTTP request and return the raw response"""
        url = f"{self.base_url}{path}"
        logger.debug(f"{method} {url}")

        response = await self._http_client.request(
            method=method,
            url=url,
            headers=self._headers(access_token),
            json=body,
        )

        if response.status_code >= 400 and response.status_code != 404:
            logger.error(f"Request failed: {response.status_code} - {response.text}")

        return response

    # ==================== Auth ====================

    async def authenticate(self, user_id: str, email: Optional[str] = None) -> IdentityContext:
        """Obtain a bearer token for a user and build its identity context"""
        try:
            response = await self._request("POST", "/api/auth/token", body={"user_id": user_id, "email": email})
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise SyncAuthError(f"Authentication failed for user {user_id}: {e}") from e

        return IdentityContext(
            user_id=user_id,
            is_authenticated=True,
            email=email,
            access_token=data["access_token"],
        )

    # ==================== Catalog ====================

    async def fetch_product(self, product_id: str) -> Optional[Product]:
        """Get current product data, or None when it does not exist"""
        try:
            response = await self._request("GET", f"/api/products/{product_id}")
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return Product.model_validate(response.json())
        except httpx.HTTPError as e:
            raise CatalogError(f"Could not fetch product {product_id}: {e}") from e
        except ValueError as e:
            raise CatalogError(f"Malformed product {product_id}: {e}", retryable=False) from e

    async def fetch_coupon(self, code: str) -> Optional[Coupon]:
        """Get current coupon data, or None when it does not exist"""
        code = normalize_coupon_code(code)
        try:
            response = await self._request("GET", f"/api/coupons/{code}")
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return Coupon.model_validate(response.json())
        except httpx.HTTPError as e:
            raise CatalogError(f"Could not fetch coupon {code}: {e}") from e
        except ValueError as e:
            raise CatalogError(f"Malformed coupon {code}: {e}", retryable=False) from e

    # ==================== Server cart ====================

    def _cart_path(self, identity: IdentityContext) -> str:
        if not identity.is_authenticated or not identity.user_id:
            raise SyncAuthError("User must be authenticated for cart synchronization")
        return f"/api/cart/sync/{identity.user_id}"

    def _check_cart_response(self, response: httpx.Response, identity: IdentityContext) -> None:
        if response.status_code in (401, 403):
            raise SyncAuthError(
                f"Server rejected cart access for user {identity.user_id}",
                details={"status_code": response.status_code},
            )
        response.raise_for_status()

    async def get_server_cart(self, identity: IdentityContext) -> Optional[ServerCartData]:
        """Fetch the server-held cart, or None when the user has none"""
        path = self._cart_path(identity)
        try:
            response = await self._request("GET", path, access_token=identity.access_token)
            if response.status_code == 404:
                return None
            self._check_cart_response(response, identity)
            payload = response.json()
        except httpx.HTTPError as e:
            raise SyncTransportError(f"Failed to fetch server cart: {e}") from e
        except ValueError as e:
            raise MergeError(f"Server cart is not valid JSON: {e}") from e

        try:
            return ServerCartData.model_validate(payload)
        except ValidationError as e:
            raise MergeError(f"Server cart has an unexpected shape: {e}") from e

    async def put_server_cart(self, identity: IdentityContext, data: ServerCartData) -> None:
        """Upload the cart snapshot for the user"""
        path = self._cart_path(identity)
        try:
            response = await self._request(
                "PUT",
                path,
                body=data.model_dump(mode="json"),
                access_token=identity.access_token,
            )
            self._check_cart_response(response, identity)
        except httpx.HTTPError as e:
            raise SyncTransportError(f"Failed to upload cart: {e}") from e

    async def delete_server_cart(self, identity: IdentityContext) -> None:
        """Remove the server-held cart for the user"""
        path = self._cart_path(identity)
        try:
            response = await self._request("DELETE", path, access_token=identity.access_token)
            if response.status_code == 404:
                return
            self._check_cart_response(response, identity)
        except httpx.HTTPError as e:
            raise SyncTransportError(f"Failed to delete server cart: {e}") from e
