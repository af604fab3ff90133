"""
Row validation against an import profile and a registry snapshot.

Checks run per row in this order:

1. Structural - devEui is 16 hex characters, appKey (optional) is 32 hex
   characters. Both are normalized to upper case.
2. Profile compliance - every required tag has a non-empty value.
3. Registry conflict - devEui is not in the snapshot.
4. Intra-file uniqueness - later occurrences of a devEui are rejected.

Structural and profile checks accumulate every error. Once any of them failed
the snapshot and duplicate checks are skipped for the row. Validation is pure:
it never calls the registry and never mutates its inputs.
"""

from collections.abc import Iterable

import structlog

from ..constants import (
    APP_KEY_FIELD,
    APP_KEY_LENGTH,
    DESCRIPTION_FIELD,
    DEV_EUI_FIELD,
    DEV_EUI_LENGTH,
    DEVICE_PROFILE_FIELD,
    HEX_DIGITS,
    NAME_FIELD,
    TAG_COLUMN_PREFIX,
)
from ..core.column_mapping import ColumnMapping
from ..models.profiles import ImportProfile
from ..models.rows import (
    FieldError,
    FieldErrorCode,
    NormalizedDevice,
    ParsedRow,
    ValidationVerdict,
)

logger = structlog.get_logger(__name__)

# Identifiers present in the registry when the run started, upper-case
RegistrySnapshot = frozenset[str]


def build_snapshot(device_ids: Iterable[str]) -> RegistrySnapshot:
    """Freeze a collection of registry identifiers into a snapshot."""
    return frozenset(d.strip().upper() for d in device_ids if d and d.strip())


def check_hex(value: str, field: str, label: str, length: int) -> FieldError | None:
    """
    Check a hex identifier of fixed length.

    Args:
        value: Stripped cell value
        field: Logical field name reported in the error
        label: Name used in the message (DevEUI, AppKey)
        length: Required number of hex characters

    Returns:
        FieldError, or None when the value is well-formed
    """
    if len(value) != length:
        return FieldError(
            field,
            f"{label} must be {length} hex characters, got length {len(value)}",
            FieldErrorCode.INVALID_FORMAT,
        )
    if not set(value) <= HEX_DIGITS:
        return FieldError(
            field,
            f"{label} must contain only hexadecimal characters",
            FieldErrorCode.INVALID_FORMAT,
        )
    return None


class RowValidator:
    """
    Produce one ValidationVerdict per ParsedRow.

    The profile and the snapshot are read once at construction and treated
    as immutable for the lifetime of the validator.
    """

    def __init__(
        self,
        profile: ImportProfile,
        snapshot: RegistrySnapshot,
        mapping: dict[str, str] | None = None,
        allow_existing: bool = False,
    ) -> None:
        """
        Initialize validator.

        Args:
            profile: Import profile listing required tags
            snapshot: Identifiers already registered
            mapping: Optional header -> logical field overrides
            allow_existing: Downgrade registry conflicts to warnings (overwrite mode)
        """
        self.profile = profile
        self.snapshot = frozenset(snapshot)
        self.explicit_mapping = mapping
        self.allow_existing = allow_existing

    def validate(self, rows: list[ParsedRow]) -> list[ValidationVerdict]:
        """
        Validate every row.

        Args:
            rows: Parsed upload rows

        Returns:
            Verdicts in row order
        """
        if not rows:
            return []

        columns = ColumnMapping.from_headers(rows[0].fields.keys(), self.explicit_mapping)
        if DEV_EUI_FIELD not in columns.fields:
            logger.warning("No devEui column found in upload", headers=list(rows[0].fields))

        claimed: dict[str, int] = {}
        verdicts = [self._validate_row(row, columns, claimed) for row in rows]

        valid = sum(1 for v in verdicts if v.valid)
        logger.info(
            "Validation complete",
            profile_id=self.profile.id,
            rows=len(verdicts),
            valid=valid,
            invalid=len(verdicts) - valid,
        )
        return verdicts

    def _validate_row(
        self, row: ParsedRow, columns: ColumnMapping, claimed: dict[str, int]
    ) -> ValidationVerdict:
        errors: list[FieldError] = []
        warnings: list[str] = []

        # 1. Structural
        dev_eui = columns.value(row, DEV_EUI_FIELD).upper()
        if not dev_eui:
            errors.append(
                FieldError(DEV_EUI_FIELD, "DevEUI is required", FieldErrorCode.MISSING_REQUIRED)
            )
            dev_eui_ok = False
        else:
            error = check_hex(dev_eui, DEV_EUI_FIELD, "DevEUI", DEV_EUI_LENGTH)
            if error:
                errors.append(error)
            dev_eui_ok = error is None

        app_key = columns.value(row, APP_KEY_FIELD).upper() or None
        if app_key:
            error = check_hex(app_key, APP_KEY_FIELD, "AppKey", APP_KEY_LENGTH)
            if error:
                errors.append(error)

        # 2. Profile compliance
        tags = columns.tag_values(row)
        for tag in sorted(self.profile.required_tags):
            if not tags.get(tag):
                errors.append(
                    FieldError(
                        f"{TAG_COLUMN_PREFIX}{tag}",
                        f"Required tag '{tag}' is missing or empty",
                        FieldErrorCode.MISSING_TAG,
                    )
                )

        device = None
        if dev_eui_ok:
            device = NormalizedDevice(
                dev_eui=dev_eui,
                app_key=app_key,
                name=columns.value(row, NAME_FIELD),
                description=columns.value(row, DESCRIPTION_FIELD),
                device_profile_id=columns.value(row, DEVICE_PROFILE_FIELD) or None,
                tags=tags,
            )

        if errors:
            logger.debug("Row rejected", row_index=row.index, errors=[str(e) for e in errors])
            return ValidationVerdict(
                row_index=row.index, valid=False, device=device, errors=errors
            )

        # 3. Registry conflict
        exists = dev_eui in self.snapshot
        if exists:
            if self.allow_existing:
                warnings.append(f"Device {dev_eui} already exists and will be overwritten")
            else:
                errors.append(
                    FieldError(
                        DEV_EUI_FIELD,
                        f"Device {dev_eui} is already registered",
                        FieldErrorCode.ALREADY_REGISTERED,
                    )
                )

        # 4. Intra-file uniqueness; the first structurally valid occurrence claims the id
        if dev_eui in claimed:
            if not errors:
                errors.append(
                    FieldError(
                        DEV_EUI_FIELD,
                        f"DevEUI {dev_eui} already appears in row {claimed[dev_eui]}",
                        FieldErrorCode.DUPLICATE_IN_BATCH,
                    )
                )
        else:
            claimed[dev_eui] = row.index

        if not errors and device is not None and not device.name:
            warnings.append("Name is empty, the DevEUI will be used as device name")

        return ValidationVerdict(
            row_index=row.index,
            valid=not errors,
            device=device,
            errors=errors,
            warnings=warnings,
            exists_in_registry=exists,
        )


def validate(
    rows: list[ParsedRow],
    profile: ImportProfile,
    snapshot: RegistrySnapshot,
    *,
    mapping: dict[str, str] | None = None,
    allow_existing: bool = False,
) -> list[ValidationVerdict]:
    """
    Validate rows against a profile and a registry snapshot.

    Args:
        rows: Parsed upload rows
        profile: Import profile
        snapshot: Identifiers already registered
        mapping: Optional header -> logical field overrides
        allow_existing: Treat registered devices as overwrite candidates

    Returns:
        One verdict per row, in row order
    """
    return RowValidator(profile, snapshot, mapping, allow_existing).validate(rows)
