"""Row-level types produced by the parser and the validator."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class ParsedRow:
    """
    One data row of an upload.

    Attributes:
        index: 0-based position among the emitted data rows
        fields: Column name -> stripped raw cell value
    """

    index: int
    fields: dict[str, str]

    def get(self, column: str, default: str = "") -> str:
        """Return a cell value by column name."""
        return self.fields.get(column, default)


class FieldErrorCode(str, Enum):
    """Machine-readable reason a row failed validation."""

    INVALID_FORMAT = "InvalidFormat"
    MISSING_REQUIRED = "MissingRequired"
    MISSING_TAG = "MissingTag"
    ALREADY_REGISTERED = "AlreadyRegistered"
    DUPLICATE_IN_BATCH = "DuplicateInBatch"


@dataclass(frozen=True)
class FieldError:
    """A single validation failure on a row."""

    field: str
    message: str
    code: FieldErrorCode

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message, "code": self.code.value}


@dataclass(frozen=True)
class NormalizedDevice:
    """
    Device fields extracted from a row, in the form sent to the registry.

    Attributes:
        dev_eui: Upper-case 16 hex character DevEUI
        app_key: Upper-case 32 hex character AppKey, or None when not supplied
        name: Device name (falls back to the DevEUI when blank)
        description: Free text description
        device_profile_id: Per-row device profile, overriding the run target
        tags: Tag name -> value
    """

    dev_eui: str
    app_key: str | None = None
    name: str = ""
    description: str = ""
    device_profile_id: str | None = None
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.name or self.dev_eui


@dataclass
class ValidationVerdict:
    """
    Validation result for one parsed row.

    Attributes:
        row_index: Index of the source ParsedRow
        valid: True when the row may be submitted to the registry
        device: Normalized fields (None when the DevEUI itself is unusable)
        errors: Failures in the order the checks found them
        warnings: Non-blocking remarks
        exists_in_registry: DevEUI was present in the registry snapshot
    """

    row_index: int
    valid: bool
    device: NormalizedDevice | None = None
    errors: list[FieldError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    exists_in_registry: bool = False

    @property
    def error_summary(self) -> str:
        """All errors joined into one line."""
        return "; ".join(str(e) for e in self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rowIndex": self.row_index,
            "valid": self.valid,
            "devEui": self.device.dev_eui if self.device else None,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": list(self.warnings),
            "existsInRegistry": self.exists_in_registry,
        }
