"""Import profile storage."""

from .store import ImportProfileStore

__all__ = ["ImportProfileStore"]
