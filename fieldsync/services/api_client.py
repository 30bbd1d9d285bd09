"""Remote field-data API client.

Thin async wrapper over httpx. Every failure is mapped onto the RemoteError
hierarchy so the sync queue can tell a rejected payload (terminal) from an
unreachable server (worth retrying):
- 4xx -> RemoteValidationError, except 401/408/429 which may succeed later
- 5xx, timeouts, connection errors -> RemoteUnavailableError
"""

from typing import Any, Dict, List, Optional

import httpx

from fieldsync.core.config import Settings
from fieldsync.core.exceptions import RemoteUnavailableError, RemoteValidationError
from fieldsync.core.logging import get_logger

logger = get_logger(__name__)

_TRANSIENT_CLIENT_ERRORS = frozenset([401, 408, 429])


class FieldApiClient:
    """Farmers, farms and clusters endpoints."""

    def __init__(self, settings: Settings,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = settings.api_base_url
        self.timeout = settings.api_timeout
        self.token = settings.api_token
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def startup(self) -> None:
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=headers,
                transport=self._transport,
            )
            logger.info("API client initialized", base_url=self.base_url)

    async def shutdown(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("API client closed")

    def set_token(self, token: Optional[str]) -> None:
        """Swap the bearer token after login or logout."""
        self.token = token
        if self._client is not None:
            if token:
                self._client.headers["Authorization"] = f"Bearer {token}"
            else:
                self._client.headers.pop("Authorization", None)

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        if self._client is None:
            await self.startup()
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("API request failed", method=method, path=path, error=str(e))
            raise RemoteUnavailableError(f"{method} {path}: {e}") from e

        if response.status_code >= 400:
            message = _error_message(response)
            logger.warning("API error response", method=method, path=path,
                           status_code=response.status_code, error=message)
            if response.status_code >= 500 or response.status_code in _TRANSIENT_CLIENT_ERRORS:
                raise RemoteUnavailableError(message, response.status_code)
            raise RemoteValidationError(message, response.status_code)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    # -------------------------------------------------------------------------
    # Farmers
    # -------------------------------------------------------------------------

    async def get_farmers(self, **params) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/api/farmers", params=params or None)
        return _unwrap(data, "farmers")

    async def create_farmer(self, payload: Dict[str, Any]) -> Any:
        return await self._request("POST", "/api/farmers", json=payload)

    async def update_farmer(self, payload: Dict[str, Any]) -> Any:
        farmer_id = _require_id(payload)
        return await self._request("PUT", f"/api/farmers/{farmer_id}", json=payload)

    async def delete_farmer(self, payload: Dict[str, Any]) -> Any:
        return await self._request("DELETE", f"/api/farmers/{_require_id(payload)}")

    # -------------------------------------------------------------------------
    # Farms
    # -------------------------------------------------------------------------

    async def get_farms_for_farmer(self, farmer_id: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"/api/farmers/{farmer_id}/farms")
        return _unwrap(data, "farms")

    async def get_all_farms(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/api/farms")
        return _unwrap(data, "farms")

    async def create_farm(self, payload: Dict[str, Any]) -> Any:
        return await self._request("POST", "/api/farms", json=payload)

    async def update_farm(self, payload: Dict[str, Any]) -> Any:
        farm_id = _require_id(payload)
        return await self._request("PUT", f"/api/farms/{farm_id}", json=payload)

    async def delete_farm(self, payload: Dict[str, Any]) -> Any:
        return await self._request("DELETE", f"/api/farms/{_require_id(payload)}")

    # -------------------------------------------------------------------------
    # Clusters
    # -------------------------------------------------------------------------

    async def get_clusters(self, **params) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/api/clusters", params=params or None)
        return _unwrap(data, "clusters")

    async def create_cluster(self, payload: Dict[str, Any]) -> Any:
        return await self._request("POST", "/api/clusters", json=payload)

    async def update_cluster(self, payload: Dict[str, Any]) -> Any:
        cluster_id = _require_id(payload)
        return await self._request("PUT", f"/api/clusters/{cluster_id}", json=payload)


def _unwrap(data: Any, field: str) -> List[Dict[str, Any]]:
    """Accept both ``{"<field>": [...]}`` and bare list responses."""
    if isinstance(data, dict):
        data = data.get(field, data.get("data"))
    return data if isinstance(data, list) else []


def _require_id(payload: Dict[str, Any]) -> str:
    entity_id = payload.get("id")
    if not entity_id:
        raise RemoteValidationError("payload has no id")
    return str(entity_id)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for field in ("message", "error", "detail"):
            if body.get(field):
                return str(body[field])
    return f"HTTP {response.status_code}"
