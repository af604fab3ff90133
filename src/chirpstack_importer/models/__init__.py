"""Data models for the ChirpStack device importer."""

from .profiles import ImportProfile
from .results import (
    UNEXPECTED_ERROR_CODE,
    BulkOperationKind,
    BulkOperationResult,
    DuplicateAction,
    ImportRun,
    ImportTarget,
    RowAction,
    RowOutcome,
    RowStatus,
    SkipReason,
    TagUpdateMode,
    UndoEntry,
)
from .rows import FieldError, FieldErrorCode, NormalizedDevice, ParsedRow, ValidationVerdict

__all__ = [
    # Rows
    "ParsedRow",
    "FieldError",
    "FieldErrorCode",
    "NormalizedDevice",
    "ValidationVerdict",
    # Profiles
    "ImportProfile",
    # Results
    "RowStatus",
    "RowAction",
    "RowOutcome",
    "SkipReason",
    "UndoEntry",
    "ImportRun",
    "ImportTarget",
    "DuplicateAction",
    "TagUpdateMode",
    "BulkOperationKind",
    "BulkOperationResult",
    "UNEXPECTED_ERROR_CODE",
]
