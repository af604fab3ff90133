"""Pytest configuration and shared fixtures.

This module provides reusable fixtures for testing the ChirpStack importer.
Fixtures are organized by category:
- Fake registry: an in-memory stand-in for ChirpStackClient
- Mock fixtures: AsyncMock clients for call-level assertions
- Data fixtures: profiles, targets and upload builders
"""

import asyncio
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock

import pytest

from chirpstack_importer.config import RegistryConfig
from chirpstack_importer.models.profiles import ImportProfile
from chirpstack_importer.models.results import ImportTarget
from chirpstack_importer.observability.metrics import reset_global_collector
from chirpstack_importer.registry.client import ChirpStackClient
from chirpstack_importer.registry.response_models import Device, DeviceKeys, DeviceListItem
from chirpstack_importer.utils.exceptions import (
    ConflictError,
    DeviceNotFoundError,
    TargetInvalidError,
)

# =============================================================================
# Fake Registry
# =============================================================================


class FakeRegistry:
    """
    In-memory registry exposing the ChirpStackClient surface used by the engines.

    Failures are injected per DevEUI through ``failures``: the mapped exception
    is raised by create/delete/set_* calls for that device. ``op_failures``
    narrows this to one operation, keyed by (operation, DevEUI); key
    provisioning is operation "keys".
    """

    def __init__(
        self,
        applications: tuple[str, ...] = ("app-1", "app-2"),
        device_profiles: tuple[str, ...] = ("dp-1", "dp-2"),
    ) -> None:
        self.applications = set(applications)
        self.device_profiles = set(device_profiles)
        self.devices: dict[str, Device] = {}
        self.keys: dict[str, DeviceKeys] = {}
        self.failures: dict[str, Exception] = {}
        self.op_failures: dict[tuple[str, str], Exception] = {}
        self.last_seen: dict[str, str] = {}
        self.calls: list[tuple[str, str]] = []
        self.delay: float = 0.0
        self.in_flight = 0
        self.peak_in_flight = 0

    def add_device(
        self,
        dev_eui: str,
        application_id: str = "app-1",
        device_profile_id: str = "dp-1",
        tags: dict[str, str] | None = None,
        name: str = "",
        app_key: str | None = None,
    ) -> Device:
        device = Device(
            dev_eui=dev_eui,
            name=name or dev_eui,
            application_id=application_id,
            device_profile_id=device_profile_id,
            tags=tags or {},
        )
        self.devices[device.dev_eui] = device
        if app_key:
            self.keys[device.dev_eui] = DeviceKeys(nwk_key=app_key, app_key=app_key)
        return device

    async def _enter(self, operation: str, dev_eui: str) -> None:
        self.calls.append((operation, dev_eui))
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            else:
                await asyncio.sleep(0)
        finally:
            self.in_flight -= 1
        failure = self.op_failures.get((operation, dev_eui)) or self.failures.get(dev_eui)
        if failure is not None:
            raise failure

    async def list_device_ids(self, application_id: str | None = None) -> frozenset[str]:
        return frozenset(
            d.dev_eui
            for d in self.devices.values()
            if application_id is None or d.application_id == application_id
        )

    async def list_devices(self, application_id: str) -> list[DeviceListItem]:
        return [
            DeviceListItem(
                dev_eui=d.dev_eui,
                name=d.name,
                description=d.description,
                device_profile_id=d.device_profile_id,
                device_profile_name=f"Profile {d.device_profile_id}",
                last_seen_at=self.last_seen.get(d.dev_eui),
                tags=dict(d.tags),
            )
            for d in self.devices.values()
            if d.application_id == application_id
        ]

    async def get_device(self, dev_eui: str) -> Device:
        device = self.devices.get(dev_eui)
        if device is None:
            raise DeviceNotFoundError(dev_eui)
        return device

    async def create_device(self, device: Device) -> str:
        await self._enter("create", device.dev_eui)
        if device.dev_eui in self.devices:
            raise ConflictError(f"object already exists: {device.dev_eui}")
        self.devices[device.dev_eui] = device
        return device.dev_eui

    async def create_device_keys(
        self, dev_eui: str, app_key: str, nwk_key: str | None = None
    ) -> None:
        await asyncio.sleep(0)
        failure = self.op_failures.get(("keys", dev_eui))
        if failure is not None:
            raise failure
        self.keys[dev_eui] = DeviceKeys(nwk_key=nwk_key or app_key, app_key=app_key)

    async def get_device_keys(self, dev_eui: str) -> DeviceKeys | None:
        return self.keys.get(dev_eui)

    async def delete_device(self, dev_eui: str) -> None:
        await self._enter("delete", dev_eui)
        if self.devices.pop(dev_eui, None) is None:
            raise DeviceNotFoundError(dev_eui)
        self.keys.pop(dev_eui, None)

    async def set_application(self, dev_eui: str, application_id: str) -> None:
        await self._enter("migrate", dev_eui)
        device = await self.get_device(dev_eui)
        if application_id not in self.applications:
            raise TargetInvalidError("application", application_id)
        self.devices[dev_eui] = device.model_copy(update={"application_id": application_id})

    async def set_profile(self, dev_eui: str, device_profile_id: str) -> None:
        await self._enter("change_profile", dev_eui)
        device = await self.get_device(dev_eui)
        if device_profile_id not in self.device_profiles:
            raise TargetInvalidError("device profile", device_profile_id)
        self.devices[dev_eui] = device.model_copy(
            update={"device_profile_id": device_profile_id}
        )

    async def set_tags(self, dev_eui: str, tags: dict[str, str], replace: bool = False) -> None:
        await self._enter("set_tags", dev_eui)
        device = await self.get_device(dev_eui)
        new_tags = dict(tags) if replace else {**device.tags, **tags}
        self.devices[dev_eui] = device.model_copy(update={"tags": new_tags})

    async def close(self) -> None:
        pass

    async def __aenter__(self) -> "FakeRegistry":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


# =============================================================================
# Global state
# =============================================================================


@pytest.fixture(autouse=True)
def fresh_metrics():
    """Give every test its own global metrics collector."""
    reset_global_collector()
    yield
    reset_global_collector()


# =============================================================================
# Registry Fixtures
# =============================================================================


@pytest.fixture
def registry() -> FakeRegistry:
    """Empty in-memory registry with applications app-1/app-2 and profiles dp-1/dp-2."""
    return FakeRegistry()


@pytest.fixture
def registry_config() -> RegistryConfig:
    """Registry configuration pointing at a test host."""
    return RegistryConfig(
        base_url="https://chirpstack.test",
        api_token="test-token",
        tenant_id="tenant-1",
        timeout=5.0,
    )


@pytest.fixture
def mock_client() -> AsyncMock:
    """AsyncMock restricted to the ChirpStackClient interface.

    Example:
        def test_something(mock_client):
            mock_client.create_device.return_value = "0004A30B001C0530"
    """
    client = AsyncMock(spec=ChirpStackClient)
    client.list_device_ids.return_value = frozenset()
    return client


# =============================================================================
# Data Fixtures
# =============================================================================


@pytest.fixture
def profile() -> ImportProfile:
    """Profile requiring a 'site' tag."""
    return ImportProfile(id="profile-1", name="Sensors", required_tags={"site"})


@pytest.fixture
def open_profile() -> ImportProfile:
    """Profile without required tags."""
    return ImportProfile(id="profile-open", name="Anything")


@pytest.fixture
def target() -> ImportTarget:
    """Import into app-1 with default device profile dp-1."""
    return ImportTarget(application_id="app-1", device_profile_id="dp-1")


@pytest.fixture
def make_csv() -> Callable[..., bytes]:
    """Build delimited upload bytes from a header and rows.

    Example:
        data = make_csv(["devEui", "tag_site"], [["0004A30B001C0530", "north"]])
    """

    def _make(header: list[str], rows: list[list[str]], sep: str = ",") -> bytes:
        lines = [sep.join(header)] + [sep.join(row) for row in rows]
        return ("\n".join(lines) + "\n").encode("utf-8")

    return _make
