from typing import Any, Dict, List, Optional

import backoff
import httpx
from loguru import logger

from vapview.config import PolicyViewerConfig
from vapview.exceptions import ClusterApiError, ResourceNotFoundError


POLICY_GROUP = "admissionregistration.k8s.io"
POLICY_VERSION = "v1"
POLICY_PLURAL = "validatingadmissionpolicies"


def collection_path(group: str, version: str, plural: str, name: Optional[str] = None) -> str:
    """
    Build the API path of a collection, or of one object in it.

    Examples:
        ("", "v1", "configmaps") -> /api/v1/configmaps
        ("example.com", "v1", "foos") -> /apis/example.com/v1/foos
    """
    if group:
        path = f"/apis/{group}/{version}/{plural}"
    else:
        path = f"/api/{version}/{plural}"
    if name:
        path = f"{path}/{name}"
    return path


class ClusterClient:
    """Read-only client for the Kubernetes API server."""

    def __init__(self, config: PolicyViewerConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config

        headers = {"Accept": "application/json"}
        token = config.read_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        else:
            logger.warning("No service account token found, calling the API server anonymously")

        client_kwargs = {
            "base_url": config.kube_api_url,
            "headers": headers,
            "timeout": httpx.Timeout(config.kube_timeout),
        }
        if transport is not None:
            client_kwargs["transport"] = transport
        else:
            client_kwargs["verify"] = config.tls_verify()

        self.http_client = httpx.AsyncClient(**client_kwargs)

    async def aclose(self):
        await self.http_client.aclose()

    async def get_policy(self, name: str) -> Dict[str, Any]:
        """Fetch a single ValidatingAdmissionPolicy by name."""
        return await self._get(collection_path(POLICY_GROUP, POLICY_VERSION, POLICY_PLURAL, name))

    async def list_policies(self) -> List[Dict[str, Any]]:
        """List all ValidatingAdmissionPolicy objects."""
        result = await self._get(collection_path(POLICY_GROUP, POLICY_VERSION, POLICY_PLURAL))
        return result.get("items") or []

    async def get_first_item(self, group: str, version: str, plural: str) -> Optional[Dict[str, Any]]:
        """Return the first object of a collection, or None if it is empty."""
        result = await self._get(collection_path(group, version, plural), params={"limit": 1})
        items = result.get("items") or []
        return items[0] if items else None

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            return await self._get_with_retry(path, params)
        except httpx.ConnectError as e:
            logger.error(f"API server unreachable for {path}: {e}")
            raise ClusterApiError(f"API server unreachable: {e}")

    @backoff.on_exception(
        backoff.expo,
        httpx.ConnectError,
        max_tries=3,
        max_time=10,
    )
    async def _get_with_retry(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        logger.debug(f"GET {path}")
        try:
            response = await self.http_client.get(path, params=params)
        except httpx.ConnectError:
            logger.warning(f"Connection to API server failed for {path}")
            raise
        except httpx.HTTPError as e:
            logger.error(f"Request to API server failed for {path}: {e}")
            raise ClusterApiError(f"Request to {path} failed: {e}")

        if response.status_code == 404:
            raise ResourceNotFoundError(f"{path} not found")
        if response.status_code >= 400:
            logger.error(f"API server returned {response.status_code} for {path}: {response.text}")
            raise ClusterApiError(
                f"API server returned {response.status_code} for {path}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise ClusterApiError(f"Invalid JSON from API server for {path}: {e}")
