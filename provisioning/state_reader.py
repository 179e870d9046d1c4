"""
Provider State Reader

Read-only queries of live API Management state through Azure Resource
Manager. Tolerates read-after-write latency: a service that is not yet
visible is polled with bounded exponential backoff.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

import httpx
from pydantic import BaseModel, Field

from .credentials import CredentialsError, ProviderCredentials
from .settings import ReadRetryPolicy

logger = logging.getLogger(__name__)

API_VERSION = "2022-08-01"

# Retried: not visible yet, throttled, or provider-side trouble
RETRYABLE_STATUS = {404, 408, 429, 500, 502, 503, 504}

CredentialsProvider = Callable[[], Awaitable[ProviderCredentials]]


class StateReadError(RuntimeError):
    """Live state could not be read."""
    pass


class ReadTimeoutError(StateReadError):
    """The resource did not become visible within the retry budget."""
    pass


class ResourceSnapshot(BaseModel):
    """Read-only view of a live API Management service."""
    id: str
    name: str
    resource_group: str
    location: str = ""
    sku_name: str = ""
    publisher_name: str = ""
    publisher_email: str = ""
    gateway_url: str | None = None
    portal_url: str | None = None
    virtual_network_type: str | None = None
    public_ip_addresses: list[str] = Field(default_factory=list)
    private_ip_addresses: list[str] = Field(default_factory=list)
    product_ids: list[str] = Field(default_factory=list)
    api_ids: list[str] = Field(default_factory=list)
    provisioning_state: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_arm(
        cls,
        resource_group: str,
        service: dict[str, Any],
        products: list[dict[str, Any]],
        apis: list[dict[str, Any]]
    ) -> "ResourceSnapshot":
        """Build a snapshot from ARM response bodies."""
        props = service.get("properties", {})
        sku = service.get("sku", {})
        vnet_type = props.get("virtualNetworkType")

        return cls(
            id=service.get("id", ""),
            name=service.get("name", ""),
            resource_group=resource_group,
            location=service.get("location", ""),
            sku_name=f"{sku.get('name', '')}_{sku.get('capacity', 0)}" if sku else "",
            publisher_name=props.get("publisherName", ""),
            publisher_email=props.get("publisherEmail", ""),
            gateway_url=props.get("gatewayUrl"),
            portal_url=props.get("portalUrl") or props.get("developerPortalUrl"),
            virtual_network_type=vnet_type if vnet_type and vnet_type != "None" else None,
            public_ip_addresses=props.get("publicIPAddresses") or [],
            private_ip_addresses=props.get("privateIPAddresses") or [],
            product_ids=[p["name"] for p in products if "name" in p],
            api_ids=[a["name"] for a in apis if "name" in a],
            provisioning_state=props.get("provisioningState"),
            tags=service.get("tags") or {},
        )


class ApiManagementStateReader:
    """
    Reads API Management services and their products/APIs.

    A 401 triggers one call to refresh_credentials (when given) and one
    retry of the request with the new token.

    Usage:
        reader = ApiManagementStateReader(credentials)
        try:
            snapshot = await reader.read("apim-test-abc", "rg-apim-test-abc")
        finally:
            await reader.close()
    """

    def __init__(
        self,
        credentials: ProviderCredentials,
        policy: ReadRetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
        refresh_credentials: CredentialsProvider | None = None
    ):
        self.credentials = credentials
        self.policy = policy or ReadRetryPolicy()
        self.timeout = timeout_seconds
        self.refresh_credentials = refresh_credentials
        self._http_client = client
        self._refresh_lock = asyncio.Lock()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def _service_url(self, resource_name: str, resource_group: str) -> str:
        return (
            f"{self.credentials.arm_endpoint}/subscriptions/{self.credentials.subscription_id}"
            f"/resourceGroups/{resource_group}/providers/Microsoft.ApiManagement"
            f"/service/{resource_name}"
        )

    async def _get(self, url: str, params: dict[str, str] | None = None) -> httpx.Response:
        client = await self._get_client()
        credentials = self.credentials
        response = await client.get(
            url,
            params=params,
            headers={"Authorization": f"Bearer {credentials.access_token}"}
        )
        if response.status_code != 401 or self.refresh_credentials is None:
            return response

        # Expired token; refresh once and retry
        await self._refresh(credentials)
        return await client.get(
            url,
            params=params,
            headers={"Authorization": f"Bearer {self.credentials.access_token}"}
        )

    async def _refresh(self, stale: ProviderCredentials) -> None:
        """Fetch a new token once, however many reads saw the old one rejected."""
        async with self._refresh_lock:
            if self.credentials is not stale:
                return
            logger.info("ARM rejected the access token, refreshing credentials")
            try:
                self.credentials = await self.refresh_credentials()
            except CredentialsError as e:
                raise StateReadError(f"Access token expired and could not be refreshed: {e}") from e

    async def _list(self, url: str) -> list[dict[str, Any]]:
        """GET a collection, following nextLink."""
        items = []
        next_url: str | None = url
        params: dict[str, str] | None = {"api-version": API_VERSION}

        while next_url:
            response = await self._get(next_url, params=params)
            if response.status_code in RETRYABLE_STATUS:
                raise httpx.HTTPStatusError(
                    f"GET {next_url} returned {response.status_code}",
                    request=response.request,
                    response=response
                )
            if response.status_code != 200:
                raise StateReadError(
                    f"GET {next_url} returned {response.status_code}: {response.text[:200]}"
                )
            data = response.json()
            items.extend(data.get("value", []))
            next_url = data.get("nextLink")
            params = None  # nextLink already carries the query string

        return items

    async def describe(self, resource_name: str, resource_group: str) -> ResourceSnapshot | None:
        """
        Single read of live state.

        Returns:
            ResourceSnapshot, or None if the service does not exist (yet)

        Raises:
            StateReadError: On non-retryable errors (auth, bad request)
            httpx.HTTPStatusError: On throttling or provider-side errors
            httpx.TransportError: On network failure
        """
        url = self._service_url(resource_name, resource_group)
        response = await self._get(url, params={"api-version": API_VERSION})

        if response.status_code == 404:
            return None
        if response.status_code in RETRYABLE_STATUS:
            raise httpx.HTTPStatusError(
                f"GET {url} returned {response.status_code}",
                request=response.request,
                response=response
            )
        if response.status_code != 200:
            raise StateReadError(
                f"GET {url} returned {response.status_code}: {response.text[:200]}"
            )

        products = await self._list(f"{url}/products")
        apis = await self._list(f"{url}/apis")
        return ResourceSnapshot.from_arm(resource_group, response.json(), products, apis)

    async def read(self, resource_name: str, resource_group: str) -> ResourceSnapshot:
        """
        Read live state, retrying until visible or the policy timeout is spent.

        Raises:
            ReadTimeoutError: If the service never became visible
            StateReadError: On non-retryable errors
        """
        delays = self.policy.delays()
        attempt = 0

        while True:
            attempt += 1
            try:
                snapshot = await self.describe(resource_name, resource_group)
                if snapshot is None:
                    reason = "not found"
                elif snapshot.provisioning_state not in (None, "Succeeded"):
                    reason = f"provisioning state {snapshot.provisioning_state}"
                else:
                    logger.info(f"Read {resource_name} (attempt {attempt})")
                    return snapshot
            except (httpx.TransportError, httpx.HTTPStatusError) as e:
                reason = str(e)

            delay = next(delays, None)
            if delay is None:
                raise ReadTimeoutError(
                    f"{resource_name} not readable after {attempt} attempts "
                    f"({self.policy.timeout_seconds}s): {reason}"
                )

            logger.warning(
                f"Read {resource_name} attempt {attempt}: {reason}, retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)
