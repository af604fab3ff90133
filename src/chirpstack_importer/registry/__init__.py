"""ChirpStack device registry access."""

from .client import ChirpStackClient
from .endpoints import ChirpStackEndpoints
from .response_models import Device, DeviceKeys, DeviceListItem

__all__ = ["ChirpStackClient", "ChirpStackEndpoints", "Device", "DeviceKeys", "DeviceListItem"]
