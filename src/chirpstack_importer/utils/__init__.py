"""Utility functions and exceptions."""

from .exceptions import (
    ConfigurationError,
    ConflictError,
    DeviceNotFoundError,
    FormatError,
    ImporterError,
    InvalidRequestError,
    ProfileNotFoundError,
    RegistryError,
    RegistryErrorKind,
    RegistryRateLimitError,
    RegistryTimeoutError,
    RegistryUnreachableError,
    ResourceNotFoundError,
    RunNotFoundError,
    TargetInvalidError,
    UploadTooLargeError,
    ValidationError,
)

__all__ = [
    "ImporterError",
    "FormatError",
    "UploadTooLargeError",
    "ValidationError",
    "ConfigurationError",
    "ProfileNotFoundError",
    "RunNotFoundError",
    "RegistryError",
    "RegistryErrorKind",
    "ConflictError",
    "InvalidRequestError",
    "DeviceNotFoundError",
    "TargetInvalidError",
    "RegistryTimeoutError",
    "RegistryUnreachableError",
    "RegistryRateLimitError",
    "ResourceNotFoundError",
]
