"""Unit tests for the ChirpStack REST client."""

import asyncio
import json

import httpx
import pytest
import respx

from chirpstack_importer.observability.metrics import get_global_collector
from chirpstack_importer.registry.client import ChirpStackClient
from chirpstack_importer.registry.response_models import Device
from chirpstack_importer.utils.exceptions import (
    ConflictError,
    DeviceNotFoundError,
    InvalidRequestError,
    RegistryErrorKind,
    RegistryRateLimitError,
    RegistryTimeoutError,
    RegistryUnreachableError,
    TargetInvalidError,
)

BASE_URL = "https://chirpstack.test"
EUI = "0004A30B001C0530"


def _device_body(**overrides):
    device = {
        "devEui": EUI,
        "name": "Meter 1",
        "description": "",
        "applicationId": "app-1",
        "deviceProfileId": "dp-1",
        "isDisabled": False,
        "tags": {"site": "north"},
        "variables": {},
    }
    device.update(overrides)
    return {"device": device}


def _sent_json(route) -> dict:
    return json.loads(route.calls.last.request.content)


class TestRequestErrorMapping:
    """Test HTTP status to registry error kind mapping."""

    @pytest.mark.asyncio
    async def test_get_device(self, registry_config):
        """Test a device is read from its envelope with the token header."""
        async with ChirpStackClient(registry_config) as client:
            with respx.mock(base_url=BASE_URL) as mock:
                route = mock.get(f"/api/devices/{EUI}").mock(
                    return_value=httpx.Response(200, json=_device_body())
                )
                device = await client.get_device(EUI)

        assert device.dev_eui == EUI
        assert device.application_id == "app-1"
        assert device.tags == {"site": "north"}
        headers = route.calls.last.request.headers
        assert headers["Grpc-Metadata-Authorization"] == "Bearer test-token"

    @pytest.mark.asyncio
    async def test_not_found(self, registry_config):
        """Test 404 on a device."""
        async with ChirpStackClient(registry_config) as client:
            with respx.mock(base_url=BASE_URL) as mock:
                mock.get(f"/api/devices/{EUI}").mock(
                    return_value=httpx.Response(
                        404, json={"code": 5, "message": "Object does not exist"}
                    )
                )
                with pytest.raises(DeviceNotFoundError) as exc_info:
                    await client.get_device(EUI)

        assert exc_info.value.kind == RegistryErrorKind.NOT_FOUND
        assert exc_info.value.dev_eui == EUI

    @pytest.mark.asyncio
    async def test_conflict(self, registry_config):
        """Test 409 on create."""
        async with ChirpStackClient(registry_config) as client:
            with respx.mock(base_url=BASE_URL) as mock:
                mock.post("/api/devices").mock(
                    return_value=httpx.Response(
                        409, json={"code": 6, "message": "Object already exists"}
                    )
                )
                with pytest.raises(ConflictError) as exc_info:
                    await client.create_device(Device(dev_eui=EUI, application_id="app-1"))

        assert exc_info.value.kind == RegistryErrorKind.CONFLICT
        assert "Object already exists" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_bad_request(self, registry_config):
        """Test 400 maps to Invalid with the gateway message."""
        async with ChirpStackClient(registry_config) as client:
            with respx.mock(base_url=BASE_URL) as mock:
                mock.post("/api/devices").mock(
                    return_value=httpx.Response(400, json={"code": 3, "message": "invalid dev_eui"})
                )
                with pytest.raises(InvalidRequestError) as exc_info:
                    await client.create_device(Device(dev_eui=EUI))

        assert exc_info.value.kind == RegistryErrorKind.INVALID
        assert exc_info.value.status_code == 400
        assert str(exc_info.value) == "invalid dev_eui"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403, 500, 503])
    async def test_unreachable_statuses(self, registry_config, status):
        """Test auth refusal and server errors map to Unreachable."""
        async with ChirpStackClient(registry_config) as client:
            with respx.mock(base_url=BASE_URL) as mock:
                mock.get(f"/api/devices/{EUI}").mock(
                    return_value=httpx.Response(status, text="nope")
                )
                with pytest.raises(RegistryUnreachableError) as exc_info:
                    await client.get_device(EUI)

        assert exc_info.value.kind == RegistryErrorKind.UNREACHABLE
        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    async def test_connect_error(self, registry_config):
        """Test transport failures map to Unreachable."""
        async with ChirpStackClient(registry_config) as client:
            with respx.mock(base_url=BASE_URL) as mock:
                mock.get(f"/api/devices/{EUI}").mock(side_effect=httpx.ConnectError("refused"))
                with pytest.raises(RegistryUnreachableError):
                    await client.get_device(EUI)

    @pytest.mark.asyncio
    async def test_timeout(self, registry_config):
        """Test HTTP timeouts map to Timeout."""
        async with ChirpStackClient(registry_config) as client:
            with respx.mock(base_url=BASE_URL) as mock:
                mock.get(f"/api/devices/{EUI}").mock(side_effect=httpx.ReadTimeout("slow"))
                with pytest.raises(RegistryTimeoutError) as exc_info:
                    await client.get_device(EUI)

        assert exc_info.value.kind == RegistryErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_empty_body_returns_none(self, registry_config):
        """Test a successful call without body."""
        async with ChirpStackClient(registry_config) as client:
            with respx.mock(base_url=BASE_URL) as mock:
                mock.delete(f"/api/devices/{EUI}").mock(return_value=httpx.Response(200))
                assert await client.request("DELETE", f"api/devices/{EUI}") is None


class TestCallTimeout:
    """Test the per-request timeout."""

    @pytest.mark.parametrize("value", [0, -1.5])
    def test_rejects_non_positive_timeout(self, registry_config, value):
        """Test the timeout must be positive."""
        with pytest.raises(ValueError, match="call_timeout must be positive"):
            ChirpStackClient(registry_config, call_timeout=value)

    @pytest.mark.asyncio
    async def test_slow_request_times_out(self, registry_config):
        """Test a request outliving call_timeout raises Timeout and is counted."""

        async def stalled(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(1)
            return httpx.Response(200, json=_device_body())

        async with ChirpStackClient(registry_config, call_timeout=0.05) as client:
            client._client = httpx.AsyncClient(
                base_url=BASE_URL, transport=httpx.MockTransport(stalled)
            )
            with pytest.raises(RegistryTimeoutError) as exc_info:
                await client.get_device(EUI)

        assert exc_info.value.kind == RegistryErrorKind.TIMEOUT
        assert str(exc_info.value) == f"GET api/devices/{EUI} exceeded 0.05s timeout"
        counters = get_global_collector().get_summary()["counters"]
        assert counters["registry_requests_total[method=GET,status=timeout]"] == 1

    @pytest.mark.asyncio
    async def test_timeout_applies_per_request(self, registry_config):
        """Test several requests may together take longer than call_timeout."""

        async def slowish(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(0.03)
            return httpx.Response(200, json=_device_body())

        async with ChirpStackClient(registry_config, call_timeout=0.1) as client:
            client._client = httpx.AsyncClient(
                base_url=BASE_URL, transport=httpx.MockTransport(slowish)
            )
            for _ in range(5):
                device = await client.get_device(EUI)

        assert device.dev_eui == EUI


class TestRateLimitRetry:
    """Test 429 handling."""

    @pytest.mark.asyncio
    async def test_retried_then_succeeds(self, registry_config):
        """Test a single 429 is retried."""
        async with ChirpStackClient(registry_config) as client:
            with respx.mock(base_url=BASE_URL) as mock:
                route = mock.get(f"/api/devices/{EUI}").mock(
                    side_effect=[
                        httpx.Response(429),
                        httpx.Response(200, json=_device_body()),
                    ]
                )
                device = await client.get_device(EUI)

        assert device.dev_eui == EUI
        assert route.call_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_three_attempts(self, registry_config):
        """Test persistent 429 surfaces as an Unreachable rate limit error."""
        async with ChirpStackClient(registry_config) as client:
            with respx.mock(base_url=BASE_URL) as mock:
                route = mock.get(f"/api/devices/{EUI}").mock(return_value=httpx.Response(429))
                with pytest.raises(RegistryRateLimitError) as exc_info:
                    await client.get_device(EUI)

        assert route.call_count == 3
        assert exc_info.value.kind == RegistryErrorKind.UNREACHABLE


class TestListings:
    """Test paginated listings and the registry snapshot."""

    @pytest.mark.asyncio
    async def test_list_devices_walks_pages(self, registry_config):
        """Test limit/offset pagination until totalCount is reached."""
        page_one = {
            "totalCount": 3,
            "result": [{"devEui": "0004a30b001c0530"}, {"devEui": "0004A30B001C0531"}],
        }
        page_two = {"totalCount": 3, "result": [{"devEui": "0004A30B001C0532"}]}

        async with ChirpStackClient(registry_config) as client:
            with respx.mock(base_url=BASE_URL) as mock:
                route = mock.get("/api/devices").mock(
                    side_effect=[
                        httpx.Response(200, json=page_one),
                        httpx.Response(200, json=page_two),
                    ]
                )
                devices = await client.list_devices("app-1")

        assert [d.dev_eui for d in devices] == [
            "0004A30B001C0530",
            "0004A30B001C0531",
            "0004A30B001C0532",
        ]
        assert route.call_count == 2
        params = route.calls.last.request.url.params
        assert params["applicationId"] == "app-1"
        assert params["offset"] == "2"

    @pytest.mark.asyncio
    async def test_list_device_ids_for_tenant(self, registry_config):
        """Test the snapshot covers every application of the tenant."""
        async with ChirpStackClient(registry_config) as client:
            with respx.mock(base_url=BASE_URL) as mock:
                apps = mock.get("/api/applications", params={"tenantId": "tenant-1"}).mock(
                    return_value=httpx.Response(
                        200, json={"totalCount": 2, "result": [{"id": "app-1"}, {"id": "app-2"}]}
                    )
                )
                mock.get("/api/devices", params={"applicationId": "app-1"}).mock(
                    return_value=httpx.Response(
                        200, json={"totalCount": 1, "result": [{"devEui": EUI}]}
                    )
                )
                mock.get("/api/devices", params={"applicationId": "app-2"}).mock(
                    return_value=httpx.Response(
                        200, json={"totalCount": 1, "result": [{"devEui": "0004A30B001C0599"}]}
                    )
                )
                ids = await client.list_device_ids()

        assert ids == frozenset({EUI, "0004A30B001C0599"})
        assert apps.called

    @pytest.mark.asyncio
    async def test_empty_listing(self, registry_config):
        """Test an application without devices."""
        async with ChirpStackClient(registry_config) as client:
            with respx.mock(base_url=BASE_URL) as mock:
                mock.get("/api/devices").mock(
                    return_value=httpx.Response(200, json={"totalCount": 0, "result": []})
                )
                assert await client.list_device_ids("app-1") == frozenset()


class TestDeviceOperations:
    """Test composite device operations."""

    @pytest.mark.asyncio
    async def test_create_device_sends_envelope(self, registry_config):
        """Test the create payload."""
        device = Device(
            dev_eui=EUI, name="Meter", application_id="app-1", device_profile_id="dp-1"
        )
        async with ChirpStackClient(registry_config) as client:
            with respx.mock(base_url=BASE_URL) as mock:
                route = mock.post("/api/devices").mock(return_value=httpx.Response(200, json={}))
                assert await client.create_device(device) == EUI

        body = _sent_json(route)
        assert body["device"]["devEui"] == EUI
        assert body["device"]["applicationId"] == "app-1"
        assert body["device"]["deviceProfileId"] == "dp-1"

    @pytest.mark.asyncio
    async def test_create_device_keys(self, registry_config):
        """Test the key is sent as both nwkKey and appKey."""
        key = "2B7E151628AED2A6ABF7158809CF4F3C"
        async with ChirpStackClient(registry_config) as client:
            with respx.mock(base_url=BASE_URL) as mock:
                route = mock.post(f"/api/devices/{EUI}/keys").mock(
                    return_value=httpx.Response(200, json={})
                )
                await client.create_device_keys(EUI, key)

        assert _sent_json(route) == {"deviceKeys": {"devEui": EUI, "nwkKey": key, "appKey": key}}

    @pytest.mark.asyncio
    async def test_get_device_keys(self, registry_config):
        """Test keys of a LoRaWAN 1.0.x device and of an ABP device."""
        async with ChirpStackClient(registry_config) as client:
            with respx.mock(base_url=BASE_URL) as mock:
                mock.get(f"/api/devices/{EUI}/keys").mock(
                    return_value=httpx.Response(
                        200,
                        json={
                            "deviceKeys": {
                                "nwkKey": "2b7e151628aed2a6abf7158809cf4f3c",
                                "appKey": "00000000000000000000000000000000",
                            }
                        },
                    )
                )
                mock.get("/api/devices/0004A30B001C0599/keys").mock(
                    return_value=httpx.Response(404, json={"message": "Object does not exist"})
                )
                keys = await client.get_device_keys(EUI)
                missing = await client.get_device_keys("0004A30B001C0599")

        assert keys.effective_key == "2B7E151628AED2A6ABF7158809CF4F3C"
        assert missing is None

    @pytest.mark.asyncio
    async def test_set_tags_merge(self, registry_config):
        """Test merge keeps existing tags and replaces supplied keys."""
        async with ChirpStackClient(registry_config) as client:
            with respx.mock(base_url=BASE_URL) as mock:
                mock.get(f"/api/devices/{EUI}").mock(
                    return_value=httpx.Response(
                        200, json=_device_body(tags={"site": "north", "floor": "1"})
                    )
                )
                put = mock.put(f"/api/devices/{EUI}").mock(return_value=httpx.Response(200))
                await client.set_tags(EUI, {"floor": "2", "room": "12"})

        assert _sent_json(put)["device"]["tags"] == {"site": "north", "floor": "2", "room": "12"}

    @pytest.mark.asyncio
    async def test_set_tags_replace(self, registry_config):
        """Test replace drops tags that were not supplied."""
        async with ChirpStackClient(registry_config) as client:
            with respx.mock(base_url=BASE_URL) as mock:
                mock.get(f"/api/devices/{EUI}").mock(
                    return_value=httpx.Response(200, json=_device_body())
                )
                put = mock.put(f"/api/devices/{EUI}").mock(return_value=httpx.Response(200))
                await client.set_tags(EUI, {"room": "12"}, replace=True)

        assert _sent_json(put)["device"]["tags"] == {"room": "12"}

    @pytest.mark.asyncio
    async def test_set_profile_unknown_target(self, registry_config):
        """Test an unknown device profile is TargetInvalid."""
        async with ChirpStackClient(registry_config) as client:
            with respx.mock(base_url=BASE_URL, assert_all_called=False) as mock:
                mock.get(f"/api/devices/{EUI}").mock(
                    return_value=httpx.Response(200, json=_device_body())
                )
                mock.get("/api/device-profiles/dp-x").mock(
                    return_value=httpx.Response(404, json={"message": "Object does not exist"})
                )
                put = mock.put(f"/api/devices/{EUI}")
                with pytest.raises(TargetInvalidError) as exc_info:
                    await client.set_profile(EUI, "dp-x")

        assert exc_info.value.kind == RegistryErrorKind.TARGET_INVALID
        assert not put.called

    @pytest.mark.asyncio
    async def test_set_application_recreates_device(self, registry_config):
        """Test migration deletes and re-creates the device with its keys."""
        key = "2B7E151628AED2A6ABF7158809CF4F3C"
        async with ChirpStackClient(registry_config) as client:
            with respx.mock(base_url=BASE_URL) as mock:
                mock.get(f"/api/devices/{EUI}").mock(
                    return_value=httpx.Response(200, json=_device_body())
                )
                mock.get(f"/api/devices/{EUI}/keys").mock(
                    return_value=httpx.Response(
                        200, json={"deviceKeys": {"nwkKey": key, "appKey": key}}
                    )
                )
                mock.get("/api/applications/app-2").mock(
                    return_value=httpx.Response(200, json={"application": {"id": "app-2"}})
                )
                delete = mock.delete(f"/api/devices/{EUI}").mock(return_value=httpx.Response(200))
                create = mock.post("/api/devices").mock(return_value=httpx.Response(200, json={}))
                keys = mock.post(f"/api/devices/{EUI}/keys").mock(
                    return_value=httpx.Response(200, json={})
                )
                await client.set_application(EUI, "app-2")

        assert delete.called
        body = _sent_json(create)["device"]
        assert body["applicationId"] == "app-2"
        assert body["tags"] == {"site": "north"}
        assert _sent_json(keys)["deviceKeys"]["appKey"] == key

    @pytest.mark.asyncio
    async def test_set_application_same_application(self, registry_config):
        """Test a device already in the destination is left alone."""
        async with ChirpStackClient(registry_config) as client:
            with respx.mock(base_url=BASE_URL, assert_all_called=False) as mock:
                mock.get(f"/api/devices/{EUI}").mock(
                    return_value=httpx.Response(200, json=_device_body())
                )
                mock.get(f"/api/devices/{EUI}/keys").mock(return_value=httpx.Response(404))
                mock.get("/api/applications/app-1").mock(
                    return_value=httpx.Response(200, json={"application": {"id": "app-1"}})
                )
                delete = mock.delete(f"/api/devices/{EUI}")
                await client.set_application(EUI, "app-1")

        assert not delete.called

    @pytest.mark.asyncio
    async def test_set_application_unknown_target(self, registry_config):
        """Test an unknown destination application is TargetInvalid."""
        async with ChirpStackClient(registry_config) as client:
            with respx.mock(base_url=BASE_URL) as mock:
                mock.get(f"/api/devices/{EUI}").mock(
                    return_value=httpx.Response(200, json=_device_body())
                )
                mock.get(f"/api/devices/{EUI}/keys").mock(return_value=httpx.Response(404))
                mock.get("/api/applications/app-x").mock(return_value=httpx.Response(404))
                with pytest.raises(TargetInvalidError):
                    await client.set_application(EUI, "app-x")

    @pytest.mark.asyncio
    async def test_set_application_recreate_survives_cancellation(self, registry_config):
        """Test cancelling a migration after the delete still re-creates the device."""
        started, finished = asyncio.Event(), asyncio.Event()
        created = []

        async def slow_create(device: Device) -> str:
            started.set()
            await asyncio.sleep(0.05)
            created.append(device)
            finished.set()
            return device.dev_eui

        async with ChirpStackClient(registry_config) as client:
            client.create_device = slow_create
            with respx.mock(base_url=BASE_URL) as mock:
                mock.get(f"/api/devices/{EUI}").mock(
                    return_value=httpx.Response(200, json=_device_body())
                )
                mock.get(f"/api/devices/{EUI}/keys").mock(return_value=httpx.Response(404))
                mock.get("/api/applications/app-2").mock(
                    return_value=httpx.Response(200, json={"application": {"id": "app-2"}})
                )
                mock.delete(f"/api/devices/{EUI}").mock(return_value=httpx.Response(200))

                task = asyncio.create_task(client.set_application(EUI, "app-2"))
                await started.wait()
                task.cancel()
                with pytest.raises(asyncio.CancelledError):
                    await task
                await asyncio.wait_for(finished.wait(), timeout=1)

        assert [d.application_id for d in created] == ["app-2"]
        assert created[0].tags == {"site": "north"}
