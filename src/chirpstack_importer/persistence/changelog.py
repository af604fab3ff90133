"""Changelog for auditing import runs and bulk operations.

Purpose:
-------
The ChangeLog records every run executed against ChirpStack together with the
outcome of each row. Import runs are also the durable copy of the undo log:
the rows carrying action Created are exactly what undo deletes (normally
Succeeded rows, plus a Failed row whose device could not be cleaned up),
which lets the CLI undo a run from another process.

Database Schema:
---------------
```
runs (
    run_id          TEXT PRIMARY KEY,    -- Import run id or bulk operation id
    operation_kind  TEXT NOT NULL,       -- Import, Delete, Migrate, ...
    profile_id      TEXT,                -- Import profile (imports only)
    created_at      TEXT NOT NULL,       -- ISO format timestamp (UTC)
    completed_at    TEXT,
    total           INTEGER NOT NULL,
    succeeded       INTEGER NOT NULL,
    failed          INTEGER NOT NULL,
    skipped         INTEGER NOT NULL,
    undone_at       TEXT                 -- Last undo of this run
)

outcomes (
    id                  INTEGER PRIMARY KEY,
    run_id              TEXT NOT NULL,
    row_index           INTEGER NOT NULL,
    status              TEXT NOT NULL,   -- Succeeded, Failed, Skipped
    registry_device_id  TEXT,
    action              TEXT,            -- Created, Replaced, Deleted, ...
    error               TEXT,
    error_code          TEXT
)
```

Usage:
-----
```python
with ChangeLog(".changelogs/changelog.db") as changelog:
    changelog.record_import(run)
    entries = changelog.get_undo_entries(run.run_id)
```
"""

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from types import TracebackType
from typing import Any

import structlog

from ..models.results import (
    BulkOperationResult,
    ImportRun,
    RowAction,
    RowOutcome,
    RowStatus,
    UndoEntry,
)

logger = structlog.get_logger(__name__)

IMPORT_KIND = "Import"


@dataclass
class RunRecord:
    """Summary row of a recorded run."""

    run_id: str
    operation_kind: str
    profile_id: str | None
    created_at: datetime
    completed_at: datetime | None
    total: int
    succeeded: int
    failed: int
    skipped: int
    undone_at: datetime | None


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ChangeLog:
    """
    SQLite-based changelog for auditing and cross-process undo.

    Features:
    - Persistent storage of runs and per-row outcomes
    - Undo entries derived from Succeeded creations
    - Run history with summary counts
    """

    def __init__(self, db_path: str | Path) -> None:
        """
        Initialize ChangeLog.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn: sqlite3.Connection = self._initialize_db()

    def _initialize_db(self) -> sqlite3.Connection:
        """Initialize database schema."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                operation_kind TEXT NOT NULL,
                profile_id TEXT,
                created_at TEXT NOT NULL,
                completed_at TEXT,
                total INTEGER NOT NULL,
                succeeded INTEGER NOT NULL,
                failed INTEGER NOT NULL,
                skipped INTEGER NOT NULL,
                undone_at TEXT
            )
        """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS outcomes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                row_index INTEGER NOT NULL,
                status TEXT NOT NULL,
                registry_device_id TEXT,
                action TEXT,
                error TEXT,
                error_code TEXT
            )
        """
        )

        # Create indexes
        conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_run_id_outcomes
            ON outcomes(run_id)
        """
        )

        conn.commit()
        return conn

    def record_import(self, run: ImportRun) -> None:
        """
        Record an import run and its outcomes.

        Args:
            run: Completed import run
        """
        self._record(
            run_id=run.run_id,
            operation_kind=IMPORT_KIND,
            profile_id=run.profile_id,
            created_at=run.created_at,
            completed_at=run.completed_at,
            counts=(run.total, run.succeeded, run.failed, run.skipped),
            outcomes=run.outcomes,
        )

    def record_bulk(
        self,
        run_id: str,
        result: BulkOperationResult,
        created_at: datetime | None = None,
    ) -> None:
        """
        Record a bulk operation.

        Args:
            run_id: Identifier chosen by the caller
            result: Bulk operation result
            created_at: Start timestamp (now if None)
        """
        now = datetime.now(timezone.utc)
        self._record(
            run_id=run_id,
            operation_kind=result.operation_kind.value,
            profile_id=None,
            created_at=created_at or now,
            completed_at=now,
            counts=(result.total, result.succeeded, result.failed, result.skipped),
            outcomes=result.outcomes,
        )

    def _record(
        self,
        run_id: str,
        operation_kind: str,
        profile_id: str | None,
        created_at: datetime,
        completed_at: datetime | None,
        counts: tuple[int, int, int, int],
        outcomes: list[RowOutcome],
    ) -> None:
        with self.conn:
            self.conn.execute("DELETE FROM outcomes WHERE run_id = ?", (run_id,))
            self.conn.execute(
                """
                INSERT OR REPLACE INTO runs (
                    run_id, operation_kind, profile_id, created_at, completed_at,
                    total, succeeded, failed, skipped
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run_id,
                    operation_kind,
                    profile_id,
                    created_at.isoformat(),
                    completed_at.isoformat() if completed_at else None,
                    *counts,
                ),
            )
            self.conn.executemany(
                """
                INSERT INTO outcomes (
                    run_id, row_index, status, registry_device_id, action, error, error_code
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        run_id,
                        o.row_index,
                        o.status.value,
                        o.registry_device_id,
                        o.action.value if o.action else None,
                        o.error,
                        o.error_code,
                    )
                    for o in outcomes
                ],
            )

        logger.debug("Run recorded", run_id=run_id, kind=operation_kind, outcomes=len(outcomes))

    def get_run(self, run_id: str) -> RunRecord | None:
        """
        Get a run summary.

        Args:
            run_id: Run identifier

        Returns:
            RunRecord, or None when the run is unknown
        """
        row = self.conn.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,)).fetchone()
        return self._row_to_record(row) if row else None

    def get_runs(self, limit: int = 10) -> list[RunRecord]:
        """
        Get recent runs, newest first.

        Args:
            limit: Maximum number of runs to return
        """
        cursor = self.conn.execute(
            "SELECT * FROM runs ORDER BY created_at DESC LIMIT ?",
            (limit,),
        )
        return [self._row_to_record(row) for row in cursor.fetchall()]

    def get_outcomes(self, run_id: str) -> list[RowOutcome]:
        """Get the recorded outcomes of a run in row order."""
        cursor = self.conn.execute(
            "SELECT * FROM outcomes WHERE run_id = ? ORDER BY row_index ASC",
            (run_id,),
        )
        return [
            RowOutcome(
                row_index=row["row_index"],
                status=RowStatus(row["status"]),
                registry_device_id=row["registry_device_id"],
                error=row["error"],
                error_code=row["error_code"],
                action=RowAction(row["action"]) if row["action"] else None,
            )
            for row in cursor.fetchall()
        ]

    def get_undo_entries(self, run_id: str) -> list[UndoEntry]:
        """
        Rebuild the undo log of an import run.

        Args:
            run_id: Import run identifier

        Returns:
            One entry per row that left a created device behind, in row order
        """
        cursor = self.conn.execute(
            """
            SELECT registry_device_id FROM outcomes
            WHERE run_id = ? AND action = ?
            ORDER BY row_index ASC
            """,
            (run_id, RowAction.CREATED.value),
        )
        return [UndoEntry(registry_device_id=row["registry_device_id"]) for row in cursor]

    def mark_undone(self, run_id: str) -> None:
        """Stamp the time a run was undone."""
        with self.conn:
            self.conn.execute(
                "UPDATE runs SET undone_at = ? WHERE run_id = ?",
                (datetime.now(timezone.utc).isoformat(), run_id),
            )

    def purge_before(self, cutoff: datetime) -> int:
        """
        Delete import runs created before a cutoff.

        Args:
            cutoff: Oldest creation time to keep

        Returns:
            Number of runs deleted
        """
        expired = [
            record.run_id
            for record in self.get_runs(limit=-1)
            if record.operation_kind == IMPORT_KIND and record.created_at < cutoff
        ]
        with self.conn:
            for run_id in expired:
                self.conn.execute("DELETE FROM outcomes WHERE run_id = ?", (run_id,))
                self.conn.execute("DELETE FROM runs WHERE run_id = ?", (run_id,))
        if expired:
            logger.info("Expired runs purged from changelog", runs=len(expired))
        return len(expired)

    def _row_to_record(self, row: sqlite3.Row) -> RunRecord:
        """
        Convert SQLite row to RunRecord.

        Args:
            row: SQLite row

        Returns:
            RunRecord object
        """
        created_at = _parse_ts(row["created_at"])
        assert created_at is not None, "created_at is NOT NULL"
        return RunRecord(
            run_id=row["run_id"],
            operation_kind=row["operation_kind"],
            profile_id=row["profile_id"],
            created_at=created_at,
            completed_at=_parse_ts(row["completed_at"]),
            total=row["total"],
            succeeded=row["succeeded"],
            failed=row["failed"],
            skipped=row["skipped"],
            undone_at=_parse_ts(row["undone_at"]),
        )

    def to_summary(self, record: RunRecord) -> dict[str, Any]:
        """Render a run record for tables and JSON output."""
        return {
            "run_id": record.run_id,
            "kind": record.operation_kind,
            "profile_id": record.profile_id,
            "created_at": record.created_at.isoformat(),
            "total": record.total,
            "succeeded": record.succeeded,
            "failed": record.failed,
            "skipped": record.skipped,
            "undone": record.undone_at is not None,
        }

    def close(self) -> None:
        """Close database connection."""
        if self.conn:
            self.conn.close()

    def __enter__(self) -> "ChangeLog":
        """Context manager entry."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Context manager exit."""
        self.close()
