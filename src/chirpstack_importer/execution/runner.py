"""
Import Runner - Encapsulates the orchestration of import runs for the CLI.

It handles:
1. Upload size check
2. Parsing and column mapping
3. Registry snapshot (one listing per run)
4. Validation against the import profile
5. Execution and undo-log retention
6. Reporting
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import structlog
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from ..config import ImporterConfig
from ..core.parser import TabularParser, format_from_filename
from ..models.profiles import ImportProfile
from ..models.results import BulkOperationResult, DuplicateAction, ImportRun, ImportTarget
from ..models.rows import ParsedRow, ValidationVerdict
from ..observability.metrics import get_global_collector
from ..observability.reporter import ReportGenerator
from ..persistence.changelog import ChangeLog
from ..persistence.undo_log import UndoLogStore
from ..registry.client import ChirpStackClient
from ..utils.exceptions import ConfigurationError, UploadTooLargeError
from ..validation.validator import RowValidator, build_snapshot
from .dispatcher import CancellationToken
from .executor import ImportExecutor
from .throttle import RegistryThrottle

logger = structlog.get_logger(__name__)


def check_upload_size(payload: bytes, max_bytes: int) -> None:
    """
    Reject an upload above the size limit before it is parsed.

    Raises:
        UploadTooLargeError: If the payload is larger than max_bytes
    """
    if len(payload) > max_bytes:
        raise UploadTooLargeError(len(payload), max_bytes)


@dataclass
class PreparedUpload:
    """Parsed and validated upload, ready for execution."""

    source: Path
    rows: list[ParsedRow]
    verdicts: list[ValidationVerdict]
    snapshot_size: int
    warnings: list[str] = field(default_factory=list)

    @property
    def valid_count(self) -> int:
        return sum(1 for v in self.verdicts if v.valid)


class ImportRunner:
    """
    Executes import runs from start to finish.

    The registry client and undo store may be injected; otherwise they are
    built from the configuration and owned by the runner.
    """

    def __init__(
        self,
        config: ImporterConfig,
        console: Console,
        client: ChirpStackClient | None = None,
        undo_store: UndoLogStore | None = None,
    ) -> None:
        """
        Initialize ImportRunner.

        Args:
            config: Importer configuration
            console: Rich console for output
            client: Optional registry client
            undo_store: Optional undo log store
        """
        self.config = config
        self.console = console
        self._client = client
        self._owns_client = client is None
        self.changelog: ChangeLog | None = None
        if undo_store is None:
            if config.undo.changelog_path is not None:
                self.changelog = ChangeLog(config.undo.changelog_path)
            undo_store = UndoLogStore(
                retention_seconds=config.undo.retention_seconds,
                max_runs=config.undo.max_runs,
                changelog=self.changelog,
            )
        else:
            self.changelog = undo_store.changelog
        self.undo_store = undo_store
        self.throttle = RegistryThrottle(config.execution.max_concurrency)

    @property
    def client(self) -> ChirpStackClient:
        if self._client is None:
            if self.config.registry is None:
                raise ConfigurationError(
                    "No ChirpStack connection configured. "
                    "Set CHIRPSTACK_URL and CHIRPSTACK_API_TOKEN or pass --config."
                )
            self._client = ChirpStackClient(
                self.config.registry, call_timeout=self.config.execution.call_timeout
            )
        return self._client

    async def close(self) -> None:
        """Close resources owned by the runner."""
        if self._owns_client and self._client is not None:
            await self._client.close()
            self._client = None
        if self.changelog is not None:
            self.changelog.close()

    def _progress(self) -> Progress:
        return Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            TimeElapsedColumn(),
            console=self.console,
            transient=False,
        )

    async def prepare(
        self,
        upload: Path,
        profile: ImportProfile,
        target: ImportTarget | None = None,
        mapping: dict[str, str] | None = None,
    ) -> PreparedUpload:
        """
        Size check, parse, snapshot and validate an upload.

        Args:
            upload: Path to a CSV or XLSX file
            profile: Import profile
            target: Run target (its duplicate action decides overwrite mode)
            mapping: Optional header -> logical field overrides

        Returns:
            PreparedUpload

        Raises:
            FormatError: If the upload is too large or cannot be parsed
        """
        payload = upload.read_bytes()
        check_upload_size(payload, self.config.upload.max_upload_bytes)

        overwrite = (
            target is not None
            and DuplicateAction(target.duplicate_action) == DuplicateAction.OVERWRITE
        )

        with self._progress() as progress:
            task = progress.add_task("[cyan]Parsing upload...", total=None)
            parser = TabularParser(ragged_rows=self.config.upload.ragged_rows)
            rows = parser.parse(payload, format_from_filename(upload))
            progress.update(
                task, completed=True, description=f"[green]DONE: Parsed {len(rows)} rows"
            )

            task = progress.add_task("[cyan]Fetching registry snapshot...", total=None)
            snapshot = build_snapshot(await self.client.list_device_ids())
            progress.update(
                task,
                completed=True,
                description=f"[green]DONE: {len(snapshot)} devices already registered",
            )

            task = progress.add_task("[cyan]Validating rows...", total=None)
            validator = RowValidator(profile, snapshot, mapping, allow_existing=overwrite)
            verdicts = validator.validate(rows)
            progress.update(
                task,
                completed=True,
                description=f"[green]DONE: {sum(1 for v in verdicts if v.valid)} valid rows",
            )

        warnings = []
        if parser.ragged_count:
            warnings.append(f"{parser.ragged_count} row(s) did not match the header width")

        logger.info(
            "Upload prepared",
            source=str(upload),
            rows=len(rows),
            valid=sum(1 for v in verdicts if v.valid),
            snapshot_size=len(snapshot),
        )
        return PreparedUpload(
            source=upload,
            rows=rows,
            verdicts=verdicts,
            snapshot_size=len(snapshot),
            warnings=warnings,
        )

    async def run_import(
        self,
        upload: Path,
        profile: ImportProfile,
        target: ImportTarget,
        mapping: dict[str, str] | None = None,
        report_dir: Path | None = None,
        cancel: CancellationToken | None = None,
    ) -> ImportRun:
        """
        Run an import end to end.

        Args:
            upload: Path to a CSV or XLSX file
            profile: Import profile
            target: Application, default device profile, extra tags, duplicate action
            mapping: Optional header -> logical field overrides
            report_dir: Directory for a JSON report (none written if None)
            cancel: Optional cancellation token

        Returns:
            Completed ImportRun
        """
        prepared = await self.prepare(upload, profile, target, mapping)
        for warning in prepared.warnings:
            self.console.print(f"[yellow]Warning: {warning}[/yellow]")

        executor = ImportExecutor(
            self.client,
            self.undo_store,
            execution=self.config.execution,
            throttle=self.throttle,
        )

        with self._progress() as progress:
            task = progress.add_task(
                f"[cyan]Importing {prepared.valid_count} devices...", total=None
            )
            run = await executor.execute(prepared.verdicts, profile, target, cancel=cancel)
            progress.update(
                task,
                completed=True,
                description=f"[green]DONE: {run.succeeded}/{run.total} rows imported",
            )

        get_global_collector().log_summary(run_id=run.run_id)

        if report_dir is not None:
            reporter = ReportGenerator(self.changelog)
            report = reporter.import_report(
                run, source_file=upload, metrics=get_global_collector().get_summary()
            )
            reporter.write_json_report(report, report_dir / f"{run.run_id}.json")

        return run

    async def run_undo(
        self, run_id: str, cancel: CancellationToken | None = None
    ) -> BulkOperationResult:
        """
        Undo an import run.

        Raises:
            RunNotFoundError: If the run is unknown or expired
        """
        executor = ImportExecutor(
            self.client,
            self.undo_store,
            execution=self.config.execution,
            throttle=self.throttle,
        )
        started_at = datetime.now(timezone.utc)
        result = await executor.undo(run_id, cancel=cancel)
        if self.changelog is not None:
            self.changelog.record_bulk(f"undo_{run_id}", result, created_at=started_at)
        return result
