"""Custom exceptions for the ChirpStack device importer.

Exception Hierarchy:
-------------------
ImporterError (base)
├── FormatError                     # Upload cannot be decoded, no header row
│   └── UploadTooLargeError         # Payload over the configured size limit
├── ValidationError                 # Row-level rule violation
├── ConfigurationError              # Bad config file, missing credentials
│   └── ProfileNotFoundError        # Unknown import profile
├── RunNotFoundError                # Undo of an unknown or expired run
└── RegistryError (base for registry failures, carries a RegistryErrorKind)
    ├── ConflictError               # HTTP 409, device already exists
    ├── InvalidRequestError         # HTTP 400/422, payload rejected
    ├── ResourceNotFoundError       # HTTP 404
    │   └── DeviceNotFoundError     # HTTP 404 on the device itself
    ├── TargetInvalidError          # Destination application/profile unknown
    ├── RegistryTimeoutError        # Call exceeded its timeout
    └── RegistryUnreachableError    # Transport failure, 5xx, auth refused
        └── RegistryRateLimitError  # HTTP 429 still returned after retries

Propagation Policy:
------------------
1. FormatError, ConfigurationError and RunNotFoundError abort the call before
   any registry mutation and are surfaced to the caller.

2. RegistryError subclasses are raised by the client only. The executor and
   the bulk engine capture them into the row's outcome; a run always returns
   a report.

3. Callers distinguish failures by ``RegistryError.kind``, never by
   matching message text.
"""

from enum import Enum


class RegistryErrorKind(str, Enum):
    """Tag carried by every registry failure."""

    CONFLICT = "Conflict"
    INVALID = "Invalid"
    NOT_FOUND = "NotFound"
    TARGET_INVALID = "TargetInvalid"
    TIMEOUT = "Timeout"
    UNREACHABLE = "Unreachable"


class ImporterError(Exception):
    """Base exception for all importer errors."""

    pass


class FormatError(ImporterError):
    """Raised when an upload cannot be parsed into rows."""

    def __init__(self, message: str, line_number: int | None = None) -> None:
        """
        Initialize FormatError.

        Args:
            message: Error message.
            line_number: Optional 1-based line (or sheet row) where parsing failed.
        """
        super().__init__(message)
        self.line_number = line_number

    def __str__(self) -> str:
        if self.line_number:
            return f"Line {self.line_number}: {self.args[0]}"
        return str(self.args[0]) if self.args else "Format error"


class UploadTooLargeError(FormatError):
    """Raised when an upload exceeds the configured maximum size."""

    def __init__(self, size: int, max_bytes: int) -> None:
        super().__init__(f"Upload of {size} bytes exceeds the {max_bytes} byte limit")
        self.size = size
        self.max_bytes = max_bytes


class ValidationError(ImporterError):
    """Raised when a row violates a validation rule."""

    def __init__(self, message: str, field: str, row_index: int | None = None) -> None:
        """
        Initialize ValidationError.

        Args:
            message: Error message.
            field: Logical field that failed.
            row_index: Optional 0-based row index.
        """
        super().__init__(message)
        self.field = field
        self.row_index = row_index


class ConfigurationError(ImporterError):
    """Raised when configuration or an import profile is unusable."""

    pass


class ProfileNotFoundError(ConfigurationError):
    """Raised when an import profile id is unknown."""

    def __init__(self, profile_id: str) -> None:
        super().__init__(f"Import profile not found: {profile_id}")
        self.profile_id = profile_id


class RunNotFoundError(ImporterError):
    """Raised when undo is requested for an unknown or expired run."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Import run not found or expired: {run_id}")
        self.run_id = run_id


class RegistryError(ImporterError):
    """Base exception for device registry failures."""

    kind: RegistryErrorKind = RegistryErrorKind.INVALID

    def __init__(self, message: str, status_code: int | None = None) -> None:
        """
        Initialize RegistryError.

        Args:
            message: Error message.
            status_code: Optional HTTP status code.
        """
        super().__init__(message)
        self.status_code = status_code


class ConflictError(RegistryError):
    """Raised when the device already exists (409 Conflict)."""

    kind = RegistryErrorKind.CONFLICT

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=409)


class InvalidRequestError(RegistryError):
    """Raised when the registry rejects a request payload."""

    kind = RegistryErrorKind.INVALID


class ResourceNotFoundError(RegistryError):
    """Raised when a registry resource cannot be found."""

    kind = RegistryErrorKind.NOT_FOUND

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=404)


class DeviceNotFoundError(ResourceNotFoundError):
    """Raised when the addressed device does not exist."""

    def __init__(self, dev_eui: str, message: str | None = None) -> None:
        super().__init__(message or f"Device not found: {dev_eui}")
        self.dev_eui = dev_eui


class TargetInvalidError(RegistryError):
    """Raised when a destination application or device profile is unknown."""

    kind = RegistryErrorKind.TARGET_INVALID

    def __init__(self, target_type: str, target_id: str) -> None:
        super().__init__(f"Unknown {target_type}: {target_id}", status_code=404)
        self.target_type = target_type
        self.target_id = target_id


class RegistryTimeoutError(RegistryError):
    """Raised when a registry call exceeds its timeout."""

    kind = RegistryErrorKind.TIMEOUT


class RegistryUnreachableError(RegistryError):
    """Raised when the registry cannot serve requests at all."""

    kind = RegistryErrorKind.UNREACHABLE


class RegistryRateLimitError(RegistryUnreachableError):
    """Raised when the registry keeps answering 429 Too Many Requests."""

    def __init__(self, endpoint: str) -> None:
        """
        Initialize RegistryRateLimitError.

        Args:
            endpoint: Endpoint that was rate limited.
        """
        super().__init__(f"Rate limit exceeded on {endpoint}", status_code=429)
        self.endpoint = endpoint
