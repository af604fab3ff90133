"""Validation of parsed rows before any registry mutation."""

from .validator import RegistrySnapshot, RowValidator, build_snapshot, validate

__all__ = ["RowValidator", "RegistrySnapshot", "build_snapshot", "validate"]
