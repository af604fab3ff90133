"""Bounded retention of import undo logs.

Retention Policy:
----------------
Undo logs are kept in memory keyed by run id, for at most
``retention_seconds`` (default 24 hours) and at most ``max_runs`` runs
(default 100, oldest evicted first). Expired logs are purged lazily on every
access.

When a ChangeLog is attached, every stored run is also written to SQLite and
lookups that miss the memory cache fall back to it, subject to the same
retention window. This is what lets ``chirpstack-import undo`` reverse a run
started by an earlier process.
"""

from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog

from ..constants import DEFAULT_UNDO_MAX_RUNS, DEFAULT_UNDO_RETENTION_SECONDS
from ..models.results import ImportRun, UndoEntry
from ..utils.exceptions import RunNotFoundError
from .changelog import ChangeLog

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class StoredUndoLog:
    """Undo log retained after a run."""

    run_id: str
    profile_id: str
    created_at: datetime
    entries: tuple[UndoEntry, ...]


class UndoLogStore:
    """
    Store of undo logs with TTL and size bounds.

    Usage:
        store = UndoLogStore(retention_seconds=3600, max_runs=10)
        store.put(run)
        entries = store.get(run.run_id)
    """

    def __init__(
        self,
        retention_seconds: int = DEFAULT_UNDO_RETENTION_SECONDS,
        max_runs: int = DEFAULT_UNDO_MAX_RUNS,
        changelog: ChangeLog | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """
        Initialize store.

        Args:
            retention_seconds: Lifetime of an undo log
            max_runs: Maximum number of logs kept in memory
            changelog: Optional SQLite changelog mirroring every run
            clock: Source of the current UTC time
        """
        self.retention = timedelta(seconds=retention_seconds)
        self.max_runs = max_runs
        self.changelog = changelog
        self._clock = clock
        self._logs: OrderedDict[str, StoredUndoLog] = OrderedDict()

    def __len__(self) -> int:
        self.purge_expired()
        return len(self._logs)

    def __contains__(self, run_id: object) -> bool:
        self.purge_expired()
        return run_id in self._logs

    def put(self, run: ImportRun) -> None:
        """
        Retain the undo log of a completed run.

        Args:
            run: Import run; its outcomes are mirrored to the changelog if any
        """
        self.purge_expired()

        self._logs[run.run_id] = StoredUndoLog(
            run_id=run.run_id,
            profile_id=run.profile_id,
            created_at=run.created_at,
            entries=tuple(run.undo_log),
        )
        self._logs.move_to_end(run.run_id)

        while len(self._logs) > self.max_runs:
            evicted, _ = self._logs.popitem(last=False)
            logger.debug("Undo log evicted", run_id=evicted, max_runs=self.max_runs)

        if self.changelog is not None:
            self.changelog.record_import(run)

        logger.debug("Undo log stored", run_id=run.run_id, entries=len(run.undo_log))

    def get(self, run_id: str) -> list[UndoEntry]:
        """
        Get the undo log of a run.

        Args:
            run_id: Run identifier

        Returns:
            Undo entries in row order

        Raises:
            RunNotFoundError: If the run is unknown or its log has expired
        """
        self.purge_expired()

        stored = self._logs.get(run_id)
        if stored is not None:
            return list(stored.entries)

        if self.changelog is not None:
            record = self.changelog.get_run(run_id)
            if record is not None and record.created_at >= self._cutoff():
                return self.changelog.get_undo_entries(run_id)

        raise RunNotFoundError(run_id)

    def discard(self, run_id: str) -> None:
        """Forget a run's undo log (memory only)."""
        self._logs.pop(run_id, None)

    def purge_expired(self) -> int:
        """
        Drop logs older than the retention window.

        Returns:
            Number of logs dropped from memory
        """
        cutoff = self._cutoff()
        expired = [run_id for run_id, log in self._logs.items() if log.created_at < cutoff]
        for run_id in expired:
            del self._logs[run_id]
        if expired:
            logger.debug("Undo logs expired", runs=len(expired))
        return len(expired)

    def _cutoff(self) -> datetime:
        return self._clock() - self.retention
