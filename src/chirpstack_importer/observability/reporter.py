"""Run Report Generator.

Writes JSON reports for import runs and bulk operations. A report wraps the
result payload returned to callers with run metadata and an error breakdown.
"""

import json
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

from ..models.results import BulkOperationResult, ImportRun, RowOutcome, RowStatus
from ..persistence.changelog import ChangeLog

logger = structlog.get_logger(__name__)


@dataclass
class RunReport:
    """
    Structured report data for a run.

    Attributes:
        run_id: Run identifier
        kind: Import, or the bulk operation kind
        status: completed, partial or failed
        created_at: Start timestamp
        completed_at: End timestamp
        duration_seconds: Total duration
        source_file: Upload or identifier file, when there was one
        error_codes: Count of Failed/Skipped outcomes per error code
        metrics: Metrics summary at the time of the report
        payload: Result payload ({runId, total, ...} or {operationKind, ...})
    """

    run_id: str
    kind: str
    status: str
    created_at: str
    completed_at: str
    duration_seconds: float
    source_file: str | None
    error_codes: dict[str, int] = field(default_factory=dict)
    metrics: dict[str, Any] = field(default_factory=dict)
    payload: dict[str, Any] = field(default_factory=dict)


def _status(outcomes: list[RowOutcome]) -> str:
    succeeded = sum(1 for o in outcomes if o.status == RowStatus.SUCCEEDED)
    if succeeded == len(outcomes):
        return "completed"
    return "partial" if succeeded else "failed"


def _error_codes(outcomes: list[RowOutcome]) -> dict[str, int]:
    counts = Counter(o.error_code for o in outcomes if o.error_code)
    return dict(sorted(counts.items()))


class ReportGenerator:
    """
    Generate reports for import runs and bulk operations.

    Features:
    - JSON report generation (machine readable)
    - Run lookups from the changelog for the history command
    """

    def __init__(self, changelog: ChangeLog | None = None) -> None:
        """
        Initialize Report Generator.

        Args:
            changelog: Optional ChangeLog instance for historical data lookup
        """
        self.changelog = changelog

    def import_report(
        self,
        run: ImportRun,
        source_file: Path | None = None,
        metrics: dict[str, Any] | None = None,
    ) -> RunReport:
        """
        Build the report of an import run.

        Args:
            run: Completed import run
            source_file: Uploaded file
            metrics: Metrics summary

        Returns:
            RunReport
        """
        completed_at = run.completed_at or datetime.now(timezone.utc)
        return RunReport(
            run_id=run.run_id,
            kind="Import",
            status=_status(run.outcomes),
            created_at=run.created_at.isoformat(),
            completed_at=completed_at.isoformat(),
            duration_seconds=(completed_at - run.created_at).total_seconds(),
            source_file=str(source_file) if source_file else None,
            error_codes=_error_codes(run.outcomes),
            metrics=metrics or {},
            payload=run.to_payload(),
        )

    def bulk_report(
        self,
        run_id: str,
        result: BulkOperationResult,
        started_at: datetime,
        source_file: Path | None = None,
        metrics: dict[str, Any] | None = None,
    ) -> RunReport:
        """
        Build the report of a bulk operation or undo.

        Args:
            run_id: Identifier chosen by the caller
            result: Bulk operation result
            started_at: Start timestamp
            source_file: Identifier file, if any
            metrics: Metrics summary

        Returns:
            RunReport
        """
        completed_at = datetime.now(timezone.utc)
        return RunReport(
            run_id=run_id,
            kind=result.operation_kind.value,
            status=_status(result.outcomes),
            created_at=started_at.isoformat(),
            completed_at=completed_at.isoformat(),
            duration_seconds=(completed_at - started_at).total_seconds(),
            source_file=str(source_file) if source_file else None,
            error_codes=_error_codes(result.outcomes),
            metrics=metrics or {},
            payload=result.to_payload(),
        )

    def write_json_report(self, report: RunReport, output_path: Path) -> None:
        """
        Write report as JSON.

        Args:
            report: Run report
            output_path: Output file path
        """
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(asdict(report), f, indent=2, default=str)

        logger.info("JSON report written", path=str(output_path), run_id=report.run_id)

    def get_run_summary(self, run_id: str) -> dict[str, Any] | None:
        """
        Get summary for a specific run from changelog.

        Args:
            run_id: Run identifier

        Returns:
            Summary dictionary or None
        """
        if not self.changelog:
            return None

        record = self.changelog.get_run(run_id)
        if record is None:
            return None

        summary = self.changelog.to_summary(record)
        summary["error_codes"] = _error_codes(self.changelog.get_outcomes(run_id))
        return summary
