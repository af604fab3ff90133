"""Result types for import runs and bulk operations."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class RowStatus(str, Enum):
    """Final status of one row or identifier."""

    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"


class RowAction(str, Enum):
    """Registry side effect recorded for a succeeded row."""

    CREATED = "Created"
    REPLACED = "Replaced"
    DELETED = "Deleted"
    MIGRATED = "Migrated"
    PROFILE_CHANGED = "ProfileChanged"
    TAGS_UPDATED = "TagsUpdated"


class SkipReason(str, Enum):
    """Error codes for rows that were never dispatched."""

    CANCELLED = "Cancelled"
    UPSTREAM_UNAVAILABLE = "UpstreamUnavailable"


class BulkOperationKind(str, Enum):
    """Mutation applied by a bulk operation."""

    DELETE = "Delete"
    MIGRATE = "Migrate"
    CHANGE_PROFILE = "ChangeProfile"
    UPDATE_TAGS = "UpdateTags"
    UNDO = "Undo"


class DuplicateAction(str, Enum):
    """What the executor does with rows already present in the registry."""

    SKIP = "skip"
    OVERWRITE = "overwrite"


class TagUpdateMode(str, Enum):
    """How supplied tags combine with a device's current tags."""

    MERGE = "merge"  # Supplied keys replaced, other keys untouched
    REPLACE = "replace"  # Supplied tags become the whole tag set


# Error code for exceptions that are not registry failures
UNEXPECTED_ERROR_CODE = "Error"


@dataclass
class RowOutcome:
    """
    Result of one unit of work.

    Attributes:
        row_index: Position of the row or identifier in the input
        status: Succeeded, Failed or Skipped
        registry_device_id: DevEUI the registry knows the device by
        error: Human readable failure or skip reason
        error_code: RegistryErrorKind, FieldErrorCode or SkipReason value
        action: Side effect left in the registry. A Failed row carries Created
            when its device was created but could not be removed again.
    """

    row_index: int
    status: RowStatus
    registry_device_id: str | None = None
    error: str | None = None
    error_code: str | None = None
    action: RowAction | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == RowStatus.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the result payload shape, omitting empty fields."""
        data: dict[str, Any] = {"rowIndex": self.row_index, "status": self.status.value}
        if self.registry_device_id is not None:
            data["registryDeviceId"] = self.registry_device_id
        if self.error is not None:
            data["error"] = self.error
        if self.error_code is not None:
            data["errorCode"] = self.error_code
        if self.action is not None:
            data["action"] = self.action.value
        return data


@dataclass(frozen=True)
class UndoEntry:
    """One reversible registry side effect of an import run."""

    registry_device_id: str
    action: RowAction = RowAction.CREATED


@dataclass
class ImportTarget:
    """
    Where an import run puts its devices.

    Attributes:
        application_id: Application receiving every created device
        device_profile_id: Default device profile for rows without one
        additional_tags: Tags merged into every row (row values win)
        duplicate_action: skip (reject) or overwrite (delete then create)
    """

    application_id: str
    device_profile_id: str
    additional_tags: dict[str, str] = field(default_factory=dict)
    duplicate_action: DuplicateAction = DuplicateAction.SKIP


def _count(outcomes: list[RowOutcome], status: RowStatus) -> int:
    return sum(1 for o in outcomes if o.status == status)


@dataclass
class ImportRun:
    """
    Overall result of an import run.

    Attributes:
        run_id: Unique run identifier, the key for undo
        profile_id: Import profile the rows were validated against
        created_at: Start timestamp
        outcomes: One outcome per verdict, in input order
        undo_log: Creations that undo will delete
        completed_at: Completion timestamp
    """

    run_id: str
    profile_id: str
    created_at: datetime
    outcomes: list[RowOutcome] = field(default_factory=list)
    undo_log: list[UndoEntry] = field(default_factory=list)
    completed_at: datetime | None = None

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return _count(self.outcomes, RowStatus.SUCCEEDED)

    @property
    def failed(self) -> int:
        return _count(self.outcomes, RowStatus.FAILED)

    @property
    def skipped(self) -> int:
        return _count(self.outcomes, RowStatus.SKIPPED)

    @property
    def duration_seconds(self) -> float:
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.created_at).total_seconds()

    def to_payload(self) -> dict[str, Any]:
        """
        Build the result payload returned to callers.

        Returns:
            dict: {runId, total, succeeded, failed, skipped, outcomes}
        """
        return {
            "runId": self.run_id,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }

    def get_summary(self) -> str:
        """
        Get a human-readable summary.

        Returns:
            str: Summary string with run ID and counts.
        """
        return (
            f"Run {self.run_id}: "
            f"{self.succeeded}/{self.total} succeeded, "
            f"{self.failed} failed, {self.skipped} skipped"
        )


@dataclass
class BulkOperationResult:
    """
    Result of a bulk mutation or an undo.

    Attributes:
        operation_kind: Mutation that was applied
        outcomes: One outcome per input identifier, in input order
    """

    operation_kind: BulkOperationKind
    outcomes: list[RowOutcome] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return _count(self.outcomes, RowStatus.SUCCEEDED)

    @property
    def failed(self) -> int:
        return _count(self.outcomes, RowStatus.FAILED)

    @property
    def skipped(self) -> int:
        return _count(self.outcomes, RowStatus.SKIPPED)

    def to_payload(self) -> dict[str, Any]:
        """
        Build the result payload returned to callers.

        Returns:
            dict: {operationKind, total, succeeded, failed, outcomes}
        """
        return {
            "operationKind": self.operation_kind.value,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }

    def get_summary(self) -> str:
        return (
            f"{self.operation_kind.value}: {self.succeeded}/{self.total} succeeded, "
            f"{self.failed} failed, {self.skipped} skipped"
        )
