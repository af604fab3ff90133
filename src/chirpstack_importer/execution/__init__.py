"""Execution engine for running device work against ChirpStack."""

from .bulk import BulkMutationEngine, normalize_ids
from .dispatcher import CancellationToken, UnitDispatcher, UnreachableBreaker
from .executor import ImportExecutor, build_device
from .runner import ImportRunner, PreparedUpload, check_upload_size
from .throttle import RegistryThrottle

__all__ = [
    "BulkMutationEngine",
    "CancellationToken",
    "ImportExecutor",
    "ImportRunner",
    "PreparedUpload",
    "RegistryThrottle",
    "UnitDispatcher",
    "UnreachableBreaker",
    "build_device",
    "check_upload_size",
    "normalize_ids",
]
