"""ChirpStack v4 REST API client.

Architecture Overview:
---------------------
This client wraps the ChirpStack REST API (the grpc-gateway in front of the
network server), providing:
- Async HTTP communication via httpx
- Retry with exponential backoff (tenacity) for 429 Too Many Requests
- A tagged error taxonomy: every failure is a RegistryError subclass whose
  ``kind`` tells callers what happened, so nothing matches message text
- Device level operations composed from the raw endpoints (migrate,
  change profile, tag updates)

Authentication:
--------------
ChirpStack API tokens are sent in the ``Grpc-Metadata-Authorization``
header as ``Bearer <token>``. Tokens do not expire during a run, so a 401 or
403 means the credential is unusable and is reported as Unreachable.

Pagination:
----------
List endpoints take ``limit``/``offset`` and return ``totalCount`` plus a
``result`` page. ``_get_all_pages`` walks them until the count is reached.

HTTP to error kind:
------------------
- 404           -> NotFound      (ResourceNotFoundError / DeviceNotFoundError)
- 409           -> Conflict      (ConflictError)
- 400, 422      -> Invalid       (InvalidRequestError)
- 401, 403      -> Unreachable   (RegistryUnreachableError)
- 429           -> retried 3 times, then Unreachable (RegistryRateLimitError)
- 5xx, network  -> Unreachable   (RegistryUnreachableError)
- timeout       -> Timeout       (RegistryTimeoutError)

Timeouts:
--------
Every HTTP request is bounded by ``call_timeout`` seconds of wall clock time
on top of httpx's own connect and read timeouts. The limit applies to one
request, never to a sequence of them, so a slow call fails on its own
instead of cutting a half-finished mutation short.
"""

import asyncio
from typing import Any

import httpx
import structlog
from pydantic import ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config import RegistryConfig
from ..constants import DEFAULT_CALL_TIMEOUT, DEFAULT_PAGE_SIZE, MAX_PAGES
from ..observability.metrics import get_global_collector
from ..utils.exceptions import (
    ConflictError,
    DeviceNotFoundError,
    InvalidRequestError,
    RegistryRateLimitError,
    RegistryTimeoutError,
    RegistryUnreachableError,
    ResourceNotFoundError,
    TargetInvalidError,
)
from .endpoints import ChirpStackEndpoints
from .response_models import (
    Device,
    DeviceKeys,
    DeviceListItem,
    ErrorResponse,
    PaginatedResponse,
)

logger = structlog.get_logger(__name__)

RATE_LIMIT_ATTEMPTS = 3


class ChirpStackClient:
    """
    ChirpStack REST API client.

    Features:
    - Bearer token authentication via gRPC metadata header
    - Rate limit retries with exponential backoff
    - Tagged registry errors
    - Connection pooling via httpx.AsyncClient

    The client is created by the caller and handed to every component that
    needs the registry; there is no module level instance.
    """

    def __init__(
        self, config: RegistryConfig, call_timeout: float = DEFAULT_CALL_TIMEOUT
    ) -> None:
        """
        Initialize ChirpStack client.

        Args:
            config: Registry configuration with connection details
            call_timeout: Seconds allowed for a single HTTP request
        """
        if call_timeout <= 0:
            raise ValueError(f"call_timeout must be positive, got {call_timeout}")

        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.call_timeout = call_timeout

        # HTTP client management
        self._client: httpx.AsyncClient | None = None  # Lazy-loaded

        # Metrics
        self.collector = get_global_collector()

    async def __aenter__(self) -> "ChirpStackClient":
        """Context manager entry."""
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Context manager exit."""
        await self.close()

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """
        Get HTTP client with lazy initialization.

        Connection Pool Configuration:
        - max_connections: Total concurrent connections to ChirpStack
        - max_keepalive: Reused connections for efficiency
        """
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                verify=self.config.verify_ssl,
                timeout=self.config.timeout,
                headers={
                    "Accept": "application/json",
                    "Grpc-Metadata-Authorization": f"Bearer {self.config.api_token}",
                },
                limits=httpx.Limits(
                    max_connections=self.config.max_connections,
                    max_keepalive_connections=self.config.max_keepalive,
                ),
            )
        return self._client

    # =========================================================================
    # Transport
    # =========================================================================

    @retry(
        retry=retry_if_exception_type(RegistryRateLimitError),
        stop=stop_after_attempt(RATE_LIMIT_ATTEMPTS),
        wait=wait_exponential(multiplier=0.2, max=5),
        reraise=True,
    )
    async def request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        """
        Make an authenticated request to the ChirpStack API.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            endpoint: API endpoint relative to the base URL
            params: Query parameters
            json: JSON body

        Returns:
            Parsed JSON response, or None for empty bodies

        Raises:
            ResourceNotFoundError: For 404 Not Found
            ConflictError: For 409 Conflict
            InvalidRequestError: For 400/422 and other client errors
            RegistryUnreachableError: For 401/403, 5xx and transport failures
            RegistryRateLimitError: For 429 after all retries
            RegistryTimeoutError: When the HTTP call times out
        """
        start_time = asyncio.get_running_loop().time()
        request_status = "error"

        try:
            response = await asyncio.wait_for(
                self.client.request(method, endpoint, params=params, json=json),
                timeout=self.call_timeout,
            )
            request_status = str(response.status_code)
        except httpx.TimeoutException as e:
            request_status = "timeout"
            raise RegistryTimeoutError(f"Timed out calling {method} {endpoint}") from e
        except asyncio.TimeoutError as e:
            request_status = "timeout"
            raise RegistryTimeoutError(
                f"{method} {endpoint} exceeded {self.call_timeout:g}s timeout"
            ) from e
        except httpx.HTTPError as e:
            logger.warning("Registry transport failure", endpoint=endpoint, error=str(e))
            raise RegistryUnreachableError(
                f"ChirpStack unreachable at {self.base_url}: {e}"
            ) from e
        finally:
            self.collector.record_request(
                method,
                request_status,
                (asyncio.get_running_loop().time() - start_time) * 1000,
            )

        status = response.status_code

        if status == 429:
            logger.warning("Rate limited by registry", endpoint=endpoint)
            raise RegistryRateLimitError(endpoint)

        if response.is_error:
            message = self._error_message(response)
            logger.debug("Registry error response", endpoint=endpoint, status=status)

            if status == 404:
                raise ResourceNotFoundError(message)
            if status == 409:
                raise ConflictError(message)
            if status in (401, 403):
                raise RegistryUnreachableError(
                    f"Authentication refused ({status}): {message}", status_code=status
                )
            if status >= 500:
                raise RegistryUnreachableError(
                    f"Registry unavailable ({status}): {message}", status_code=status
                )
            raise InvalidRequestError(message, status_code=status)

        if status == 204 or not response.content:
            return None
        return response.json()

    def _error_message(self, response: httpx.Response) -> str:
        """Extract the error message from a grpc-gateway error body."""
        try:
            data = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"

        if isinstance(data, dict):
            try:
                return ErrorResponse.model_validate(data).get_message()
            except ValidationError:
                pass
        return response.text or f"HTTP {response.status_code}"

    async def get(self, endpoint: str, params: dict[str, Any] | None = None) -> Any:
        """Helper for GET requests."""
        return await self.request("GET", endpoint, params=params)

    async def post(self, endpoint: str, json: dict[str, Any]) -> Any:
        """Helper for POST requests."""
        return await self.request("POST", endpoint, json=json)

    async def put(self, endpoint: str, json: dict[str, Any]) -> Any:
        """Helper for PUT requests."""
        return await self.request("PUT", endpoint, json=json)

    async def _get_all_pages(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> list[dict[str, Any]]:
        """
        Fetch every page of a limit/offset listing.

        Args:
            endpoint: List endpoint
            params: Filter parameters (tenantId, applicationId, ...)
            page_size: Items per request

        Returns:
            All items across all pages
        """
        items: list[dict[str, Any]] = []
        offset = 0

        for _ in range(MAX_PAGES):
            request_params = dict(params or {})
            request_params.update({"limit": page_size, "offset": offset})

            page = PaginatedResponse.model_validate(await self.get(endpoint, request_params) or {})
            items.extend(page.result)
            offset += len(page.result)

            if not page.result or offset >= page.total_count:
                break
        else:
            logger.warning("Pagination limit reached", endpoint=endpoint, items=len(items))

        return items

    # =========================================================================
    # Tenants, applications, device profiles
    # =========================================================================

    async def list_tenants(self) -> list[dict[str, Any]]:
        """List every tenant visible to the token."""
        return await self._get_all_pages(ChirpStackEndpoints.TENANTS)

    async def list_applications(self, tenant_id: str) -> list[dict[str, Any]]:
        """List applications of a tenant."""
        return await self._get_all_pages(
            ChirpStackEndpoints.APPLICATIONS, params={"tenantId": tenant_id}
        )

    async def list_device_profiles(self, tenant_id: str) -> list[dict[str, Any]]:
        """List device profiles of a tenant."""
        return await self._get_all_pages(
            ChirpStackEndpoints.DEVICE_PROFILES, params={"tenantId": tenant_id}
        )

    async def get_application(self, application_id: str) -> dict[str, Any]:
        """
        Get an application.

        Raises:
            TargetInvalidError: If the application does not exist
        """
        try:
            data = await self.get(
                ChirpStackEndpoints.APPLICATION_BY_ID.format(application_id=application_id)
            )
        except ResourceNotFoundError as e:
            raise TargetInvalidError("application", application_id) from e
        return (data or {}).get("application", {})

    async def get_device_profile(self, device_profile_id: str) -> dict[str, Any]:
        """
        Get a device profile.

        Raises:
            TargetInvalidError: If the device profile does not exist
        """
        try:
            data = await self.get(
                ChirpStackEndpoints.DEVICE_PROFILE_BY_ID.format(
                    device_profile_id=device_profile_id
                )
            )
        except ResourceNotFoundError as e:
            raise TargetInvalidError("device profile", device_profile_id) from e
        return (data or {}).get("deviceProfile", {})

    # =========================================================================
    # Devices
    # =========================================================================

    async def list_devices(self, application_id: str) -> list[DeviceListItem]:
        """
        List the devices of an application.

        Args:
            application_id: Application to list

        Returns:
            DeviceListItem per device
        """
        items = await self._get_all_pages(
            ChirpStackEndpoints.DEVICES, params={"applicationId": application_id}
        )
        return [DeviceListItem.model_validate(item) for item in items]

    async def list_device_ids(self, application_id: str | None = None) -> frozenset[str]:
        """
        Snapshot the DevEUIs known to the registry.

        Args:
            application_id: Restrict to one application. When None, every
                application of the configured tenant (or of every tenant) is
                listed.

        Returns:
            Upper-case DevEUIs
        """
        if application_id:
            application_ids = [application_id]
        else:
            if self.config.tenant_id:
                tenant_ids = [self.config.tenant_id]
            else:
                tenant_ids = [t["id"] for t in await self.list_tenants() if t.get("id")]

            application_ids = []
            for tenant_id in tenant_ids:
                apps = await self.list_applications(tenant_id)
                application_ids.extend(a["id"] for a in apps if a.get("id"))

        ids: set[str] = set()
        for app_id in application_ids:
            ids.update(d.dev_eui for d in await self.list_devices(app_id))

        logger.info(
            "Registry snapshot loaded", applications=len(application_ids), devices=len(ids)
        )
        return frozenset(ids)

    async def get_device(self, dev_eui: str) -> Device:
        """
        Get a device.

        Raises:
            DeviceNotFoundError: If the device does not exist
        """
        try:
            data = await self.get(ChirpStackEndpoints.DEVICE_BY_EUI.format(dev_eui=dev_eui))
        except ResourceNotFoundError as e:
            raise DeviceNotFoundError(dev_eui) from e
        return Device.model_validate((data or {}).get("device", {"devEui": dev_eui}))

    async def create_device(self, device: Device) -> str:
        """
        Create a device.

        Args:
            device: Device to create; application and profile must be set

        Returns:
            DevEUI of the created device

        Raises:
            ConflictError: If the device already exists
            InvalidRequestError: If the payload is rejected
        """
        await self.post(ChirpStackEndpoints.DEVICES, json=device.to_request())
        logger.debug("Device created", dev_eui=device.dev_eui, application=device.application_id)
        return device.dev_eui

    async def update_device(self, device: Device) -> None:
        """
        Replace a device record.

        Raises:
            DeviceNotFoundError: If the device does not exist
        """
        try:
            await self.put(
                ChirpStackEndpoints.DEVICE_BY_EUI.format(dev_eui=device.dev_eui),
                json=device.to_request(),
            )
        except ResourceNotFoundError as e:
            raise DeviceNotFoundError(device.dev_eui) from e

    async def delete_device(self, dev_eui: str) -> None:
        """
        Delete a device.

        Raises:
            DeviceNotFoundError: If the device does not exist
        """
        try:
            await self.request("DELETE", ChirpStackEndpoints.DEVICE_BY_EUI.format(dev_eui=dev_eui))
        except ResourceNotFoundError as e:
            raise DeviceNotFoundError(dev_eui) from e
        logger.debug("Device deleted", dev_eui=dev_eui)

    async def get_device_keys(self, dev_eui: str) -> DeviceKeys | None:
        """
        Get the OTAA keys of a device.

        Returns:
            DeviceKeys, or None when the device has no keys (ABP devices)
        """
        try:
            data = await self.get(ChirpStackEndpoints.DEVICE_KEYS.format(dev_eui=dev_eui))
        except ResourceNotFoundError:
            return None
        return DeviceKeys.model_validate((data or {}).get("deviceKeys", {}))

    async def create_device_keys(
        self, dev_eui: str, app_key: str, nwk_key: str | None = None
    ) -> None:
        """
        Provision OTAA keys.

        The key is sent as nwkKey (LoRaWAN 1.0.x) and appKey (LoRaWAN 1.1).

        Args:
            dev_eui: Device to provision
            app_key: 32 hex character root key
            nwk_key: Distinct network key, defaults to app_key
        """
        keys = {"devEui": dev_eui, "nwkKey": nwk_key or app_key, "appKey": app_key}
        await self.post(
            ChirpStackEndpoints.DEVICE_KEYS.format(dev_eui=dev_eui), json={"deviceKeys": keys}
        )

    async def set_application(self, dev_eui: str, application_id: str) -> None:
        """
        Move a device to another application.

        ChirpStack cannot change a device's application in place, so the device
        is read, deleted and created again under the destination with its keys.

        Raises:
            DeviceNotFoundError: If the device does not exist
            TargetInvalidError: If the destination application does not exist
        """
        device = await self.get_device(dev_eui)
        keys = await self.get_device_keys(dev_eui)
        await self.get_application(application_id)

        if device.application_id == application_id:
            logger.debug("Device already in application", dev_eui=dev_eui)
            return

        await self.delete_device(dev_eui)
        # The source record is gone; caller cancellation must not stop the re-create
        await asyncio.shield(
            self._recreate(device.model_copy(update={"application_id": application_id}), keys)
        )

    async def _recreate(self, device: Device, keys: DeviceKeys | None) -> None:
        """Second half of a migration: create the device and restore its keys."""
        try:
            await self.create_device(device)
        except (Exception, asyncio.CancelledError):
            logger.error(
                "Device deleted from source application but not re-created",
                dev_eui=device.dev_eui,
                destination=device.application_id,
            )
            raise

        if keys and (keys.nwk_key or keys.app_key):
            try:
                await self.create_device_keys(
                    device.dev_eui,
                    keys.app_key or keys.nwk_key,
                    nwk_key=keys.nwk_key or None,
                )
            except (Exception, asyncio.CancelledError):
                logger.error(
                    "Device re-created without its keys",
                    dev_eui=device.dev_eui,
                    destination=device.application_id,
                )
                raise

        logger.debug("Device migrated", dev_eui=device.dev_eui, destination=device.application_id)

    async def set_profile(self, dev_eui: str, device_profile_id: str) -> None:
        """
        Assign a device profile.

        Raises:
            DeviceNotFoundError: If the device does not exist
            TargetInvalidError: If the device profile does not exist
        """
        device = await self.get_device(dev_eui)
        await self.get_device_profile(device_profile_id)
        await self.update_device(device.model_copy(update={"device_profile_id": device_profile_id}))

    async def set_tags(self, dev_eui: str, tags: dict[str, str], replace: bool = False) -> None:
        """
        Update device tags.

        Args:
            dev_eui: Device to update
            tags: Tags to apply
            replace: Replace the whole tag set instead of merging supplied keys

        Raises:
            DeviceNotFoundError: If the device does not exist
        """
        device = await self.get_device(dev_eui)
        new_tags = dict(tags) if replace else {**device.tags, **tags}
        await self.update_device(device.model_copy(update={"tags": new_tags}))
