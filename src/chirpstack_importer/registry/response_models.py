"""Pydantic models for ChirpStack REST API payloads.

ChirpStack's REST API is a grpc-gateway over the gRPC services, so payloads
use camelCase names and wrap single resources in an envelope
(``{"device": {...}}``, ``{"deviceKeys": {...}}``). Models accept both the
camelCase alias and the snake_case field name, and keep unknown fields.

Usage:
    data = response.json()
    device = Device.model_validate(data["device"])
    body = {"device": device.model_dump(by_alias=True, exclude_none=True)}
"""

from typing import Any

from pydantic import BaseModel, Field, field_validator


class Device(BaseModel):
    """A device as created, read and updated through /api/devices.

    Attributes:
        dev_eui: DevEUI, upper-case hex
        name: Device name
        description: Free text description
        application_id: Owning application
        device_profile_id: Assigned device profile
        is_disabled: Whether the device is disabled
        tags: User tags
    """

    dev_eui: str = Field(..., alias="devEui", description="DevEUI")
    name: str = Field("", description="Device name")
    description: str = Field("", description="Device description")
    application_id: str = Field("", alias="applicationId", description="Application ID")
    device_profile_id: str = Field("", alias="deviceProfileId", description="Device profile ID")
    is_disabled: bool = Field(False, alias="isDisabled")
    tags: dict[str, str] = Field(default_factory=dict, description="Device tags")

    model_config = {"extra": "allow", "populate_by_name": True}

    @field_validator("dev_eui")
    @classmethod
    def normalize_dev_eui(cls, v: str) -> str:
        """Registry identifiers are compared upper-case."""
        return v.strip().upper()

    def to_request(self) -> dict[str, Any]:
        """Build the request envelope for create/update."""
        return {"device": self.model_dump(by_alias=True, exclude_none=True)}


class DeviceListItem(BaseModel):
    """One entry of the device listing.

    The listing carries the profile name and last activity but not the
    application id.
    """

    dev_eui: str = Field(..., alias="devEui")
    name: str = ""
    description: str = ""
    device_profile_id: str = Field("", alias="deviceProfileId")
    device_profile_name: str = Field("", alias="deviceProfileName")
    last_seen_at: str | None = Field(None, alias="lastSeenAt")
    tags: dict[str, str] = Field(default_factory=dict)

    model_config = {"extra": "allow", "populate_by_name": True}

    @field_validator("dev_eui")
    @classmethod
    def normalize_dev_eui(cls, v: str) -> str:
        return v.strip().upper()


class DeviceKeys(BaseModel):
    """OTAA root keys of a device.

    LoRaWAN 1.0.x devices only use nwkKey; the appKey is then all zeros.
    """

    nwk_key: str = Field("", alias="nwkKey")
    app_key: str = Field("", alias="appKey")

    model_config = {"extra": "allow", "populate_by_name": True}

    @property
    def effective_key(self) -> str:
        """The key a 1.0.x or 1.1 device actually joins with."""
        if self.app_key and set(self.app_key) != {"0"}:
            return self.app_key.upper()
        return self.nwk_key.upper()


class PaginatedResponse(BaseModel):
    """Response from limit/offset list endpoints.

    Attributes:
        total_count: Items across all pages
        result: Items of this page
    """

    total_count: int = Field(0, alias="totalCount", ge=0)
    result: list[dict[str, Any]] = Field(default_factory=list)

    model_config = {"extra": "allow", "populate_by_name": True}


class ErrorResponse(BaseModel):
    """Error body returned by the grpc-gateway.

    Attributes:
        code: gRPC status code
        message: Primary error message
        details: Additional error details
    """

    code: int | str | None = Field(None, description="gRPC status code")
    message: str | None = Field(None, description="Primary error message")
    error: str | None = Field(None, description="Legacy error field")
    details: list[Any] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    def get_message(self) -> str:
        """Get the most relevant error message."""
        return self.message or self.error or "Unknown error"
