"""Persistence layer for undo logs and the run changelog."""

from .changelog import ChangeLog, RunRecord
from .undo_log import StoredUndoLog, UndoLogStore

__all__ = ["ChangeLog", "RunRecord", "StoredUndoLog", "UndoLogStore"]
