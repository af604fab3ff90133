"""Centralized endpoint paths for the ChirpStack v4 REST API.

Usage:
    from chirpstack_importer.registry.endpoints import ChirpStackEndpoints

    endpoint = ChirpStackEndpoints.DEVICE_BY_EUI.format(dev_eui="0011223344556677")
    # Returns: "api/devices/0011223344556677"
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class ChirpStackEndpoints:
    """
    ChirpStack REST API endpoint constants.

    All endpoints are relative to the configured base URL.
    Use .format() method to substitute path parameters.
    """

    # -------------------------------------------------------------------------
    # Tenants
    # -------------------------------------------------------------------------
    TENANTS: str = "api/tenants"

    # -------------------------------------------------------------------------
    # Applications
    # -------------------------------------------------------------------------
    APPLICATIONS: str = "api/applications"
    APPLICATION_BY_ID: str = "api/applications/{application_id}"

    # -------------------------------------------------------------------------
    # Device profiles
    # -------------------------------------------------------------------------
    DEVICE_PROFILES: str = "api/device-profiles"
    DEVICE_PROFILE_BY_ID: str = "api/device-profiles/{device_profile_id}"

    # -------------------------------------------------------------------------
    # Devices
    # -------------------------------------------------------------------------
    DEVICES: str = "api/devices"
    DEVICE_BY_EUI: str = "api/devices/{dev_eui}"
    DEVICE_KEYS: str = "api/devices/{dev_eui}/keys"
