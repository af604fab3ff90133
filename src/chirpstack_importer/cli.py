"""Command-line interface for the ChirpStack device importer."""

import asyncio
import signal
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TypeVar

import structlog
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import ImporterConfig, load_config
from .constants import DEV_EUI_FIELD
from .core.column_mapping import ColumnMapping
from .core.exporter import ActivityFilter, ExportFormat, export_devices
from .core.parser import TabularParser, format_from_filename
from .execution.bulk import BulkMutationEngine
from .execution.dispatcher import CancellationToken
from .execution.runner import ImportRunner, check_upload_size
from .models.profiles import ImportProfile
from .models.results import (
    BulkOperationResult,
    DuplicateAction,
    ImportRun,
    ImportTarget,
    RowOutcome,
    RowStatus,
    TagUpdateMode,
)
from .models.rows import ParsedRow, ValidationVerdict
from .observability import configure_logging
from .observability.metrics import get_global_collector
from .observability.reporter import ReportGenerator
from .persistence.changelog import ChangeLog
from .profiles.store import ImportProfileStore
from .registry.client import ChirpStackClient
from .utils.exceptions import ConfigurationError, ImporterError

app = typer.Typer(
    name="chirpstack-import",
    help="ChirpStack device importer - bulk import, migration and undo for LoRaWAN devices",
    add_completion=False,
)
bulk_app = typer.Typer(help="Apply one mutation to a list of devices", add_completion=False)
profiles_app = typer.Typer(help="Manage import profiles", add_completion=False)
app.add_typer(bulk_app, name="bulk")
app.add_typer(profiles_app, name="profiles")

console = Console()
logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Failed rows are reported with their own exit code so scripts can tell
# "nothing happened" (1) from "partially applied" (2)
EXIT_FATAL = 1
EXIT_ROW_FAILURES = 2

MAX_ROWS_SHOWN = 50


@dataclass
class CLIState:
    """Global options shared by every command."""

    config_file: Path | None = None
    log_level: str | None = None
    log_filter: str | None = None
    json_logs: bool = False


@app.callback()
def main(
    ctx: typer.Context,
    config_file: Path | None = typer.Option(
        None, "--config", "-c", help="YAML configuration file (default: environment)"
    ),
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        help="Log verbosity: TRACE, DEBUG, VERBOSE, INFO, WARNING, ERROR",
    ),
    log_filter: str | None = typer.Option(
        None,
        "--log-filter",
        help="Filter logs by component (comma-separated, e.g., 'executor,client')",
    ),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON"),
) -> None:
    """ChirpStack device importer."""
    ctx.obj = CLIState(
        config_file=config_file,
        log_level=log_level,
        log_filter=log_filter,
        json_logs=json_logs,
    )


def _state(ctx: typer.Context) -> CLIState:
    return ctx.obj if isinstance(ctx.obj, CLIState) else CLIState()


def _load_config(ctx: typer.Context) -> ImporterConfig:
    """Load configuration and configure logging from it and the global options."""
    state = _state(ctx)
    config = load_config(state.config_file)
    configure_logging(
        level=state.log_level or config.logging.level,
        json_logs=state.json_logs or config.logging.format == "json",
        log_file=config.logging.file,
        log_filter=state.log_filter,
    )
    return config


def _fail(error: Exception) -> typer.Exit:
    console.print(f"\n[bold red]ERROR:[/bold red] {error}")
    return typer.Exit(code=EXIT_FATAL)


def _run(coro_fn: Callable[[CancellationToken], Awaitable[T]]) -> T:
    """
    Run a coroutine with Ctrl-C wired to a CancellationToken.

    The first interrupt stops dispatching new rows; rows already in flight
    complete and the partial result is still reported.
    """
    cancel = CancellationToken()

    async def runner() -> T:
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, cancel.cancel)
            installed = True
        except (NotImplementedError, RuntimeError):
            installed = False
        try:
            return await coro_fn(cancel)
        finally:
            if installed:
                loop.remove_signal_handler(signal.SIGINT)

    return asyncio.run(runner())


def _parse_tags(values: list[str] | None) -> dict[str, str]:
    """Parse repeated ``key=value`` options."""
    tags: dict[str, str] = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Tags must look like key=value, got {item!r}")
        tags[key.strip()] = value.strip()
    return tags


def _print_outcomes(title: str, outcomes: list[RowOutcome]) -> None:
    """Print a table of the rows that did not succeed."""
    problems = [o for o in outcomes if o.status != RowStatus.SUCCEEDED]
    if not problems:
        return

    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Row", justify="right")
    table.add_column("Status")
    table.add_column("DevEUI", style="cyan")
    table.add_column("Code")
    table.add_column("Error")

    for outcome in problems[:MAX_ROWS_SHOWN]:
        style = "red" if outcome.status == RowStatus.FAILED else "yellow"
        table.add_row(
            str(outcome.row_index),
            f"[{style}]{outcome.status.value}[/{style}]",
            outcome.registry_device_id or "",
            outcome.error_code or "",
            outcome.error or "",
        )

    console.print(table)
    if len(problems) > MAX_ROWS_SHOWN:
        console.print(f"[dim]... and {len(problems) - MAX_ROWS_SHOWN} more[/dim]")


def _print_summary(succeeded: int, failed: int, skipped: int, total: int) -> None:
    console.print(
        f"Rows: [green]{succeeded} succeeded[/green], [red]{failed} failed[/red], "
        f"[yellow]{skipped} skipped[/yellow] (of {total})"
    )


def _finish_bulk(
    result: BulkOperationResult,
    config: ImporterConfig,
    started_at: datetime,
    source_file: Path | None,
    report_dir: Path | None,
) -> None:
    """Record, report and print a bulk result; exit 2 on failed rows."""
    run_id = f"bulk_{uuid.uuid4().hex[:8]}"
    get_global_collector().log_summary(run_id=run_id, kind=result.operation_kind.value)

    if config.undo.changelog_path is not None:
        with ChangeLog(config.undo.changelog_path) as changelog:
            changelog.record_bulk(run_id, result, created_at=started_at)

    if report_dir is not None:
        reporter = ReportGenerator()
        report = reporter.bulk_report(
            run_id,
            result,
            started_at,
            source_file=source_file,
            metrics=get_global_collector().get_summary(),
        )
        reporter.write_json_report(report, report_dir / f"{run_id}.json")

    _print_outcomes(f"{result.operation_kind.value} problems", result.outcomes)
    _print_summary(result.succeeded, result.failed, result.skipped, result.total)
    console.print(f"Operation ID: [cyan]{run_id}[/cyan]")

    if result.failed:
        raise typer.Exit(code=EXIT_ROW_FAILURES)


def _read_ids_file(path: Path, config: ImporterConfig) -> list[str]:
    """
    Read device identifiers from a file.

    A file whose header maps onto devEui is read as a table; any other file
    is one identifier per line.
    """
    payload = path.read_bytes()
    check_upload_size(payload, config.upload.max_upload_bytes)
    rows = TabularParser(ragged_rows=config.upload.ragged_rows).parse(
        payload, format_from_filename(path)
    )
    if rows:
        mapping = ColumnMapping.from_headers(rows[0].fields.keys())
        header = mapping.fields.get(DEV_EUI_FIELD)
        if header is not None:
            return [row.get(header) for row in rows]

    text = payload.decode("utf-8-sig", errors="replace")
    return [line.strip() for line in text.splitlines() if line.strip()]


def _read_rows(path: Path, config: ImporterConfig) -> list[ParsedRow]:
    payload = path.read_bytes()
    check_upload_size(payload, config.upload.max_upload_bytes)
    return TabularParser(ragged_rows=config.upload.ragged_rows).parse(
        payload, format_from_filename(path)
    )


def _collect_ids(ids: list[str] | None, ids_file: Path | None, config: ImporterConfig) -> list[str]:
    collected = list(ids or [])
    if ids_file is not None:
        collected.extend(_read_ids_file(ids_file, config))
    if not collected:
        raise ValueError("Provide device identifiers with --id or --file")
    return collected


def _profile_store(config: ImporterConfig) -> ImportProfileStore:
    return ImportProfileStore(config.profiles.store_path)


def _client(config: ImporterConfig) -> ChirpStackClient:
    if config.registry is None:
        raise ConfigurationError(
            "No ChirpStack connection configured. "
            "Set CHIRPSTACK_URL and CHIRPSTACK_API_TOKEN or pass --config."
        )
    return ChirpStackClient(config.registry, call_timeout=config.execution.call_timeout)


@app.command()
def validate(
    ctx: typer.Context,
    upload: Path = typer.Argument(..., help="CSV or XLSX file to validate", exists=True),
    profile_id: str = typer.Option(..., "--profile", "-p", help="Import profile id"),
    overwrite: bool = typer.Option(
        False, "--overwrite", help="Treat registered devices as overwrite candidates"
    ),
) -> None:
    """
    Validate an upload without creating any device.

    Fetches one snapshot of registered devices and checks every row against
    the import profile.

    Examples:
        chirpstack-import validate devices.csv --profile 3f2c9a...
        chirpstack-import validate devices.xlsx -p 3f2c9a... --overwrite
    """
    console.print(f"\n[bold blue]Validating upload:[/bold blue] {upload}\n")

    try:
        config = _load_config(ctx)
        profile = _profile_store(config).get(profile_id)
        target = ImportTarget(
            application_id="",
            device_profile_id="",
            duplicate_action=DuplicateAction.OVERWRITE if overwrite else DuplicateAction.SKIP,
        )

        async def run_validate(cancel: CancellationToken) -> list[ValidationVerdict]:
            runner = ImportRunner(config, console)
            try:
                prepared = await runner.prepare(upload, profile, target)
            finally:
                await runner.close()
            for warning in prepared.warnings:
                console.print(f"[yellow]Warning: {warning}[/yellow]")
            return prepared.verdicts

        verdicts = _run(run_validate)
    except (ImporterError, OSError) as e:
        raise _fail(e) from e

    invalid = [v for v in verdicts if not v.valid]
    if invalid:
        table = Table(title="Invalid rows", show_header=True, header_style="bold cyan")
        table.add_column("Row", justify="right")
        table.add_column("Field", style="cyan")
        table.add_column("Code")
        table.add_column("Message")
        for verdict in invalid[:MAX_ROWS_SHOWN]:
            for error in verdict.errors:
                table.add_row(
                    str(verdict.row_index), error.field, error.code.value, error.message
                )
        console.print(table)

    warned = sum(1 for v in verdicts if v.warnings)
    console.print(
        f"\nRows: [green]{len(verdicts) - len(invalid)} valid[/green], "
        f"[red]{len(invalid)} invalid[/red], [yellow]{warned} with warnings[/yellow]"
    )

    if invalid:
        raise typer.Exit(code=EXIT_ROW_FAILURES)
    console.print("[green]SUCCESS: Upload is valid[/green]")


@app.command()
def apply(
    ctx: typer.Context,
    upload: Path = typer.Argument(..., help="CSV or XLSX file to import", exists=True),
    profile_id: str = typer.Option(..., "--profile", "-p", help="Import profile id"),
    application_id: str = typer.Option(
        ..., "--application", "-a", help="Application receiving the devices"
    ),
    device_profile_id: str = typer.Option(
        ..., "--device-profile", "-d", help="Default device profile"
    ),
    tags: list[str] | None = typer.Option(
        None, "--tag", "-t", help="Extra tag for every device (key=value, repeatable)"
    ),
    overwrite: bool = typer.Option(
        False, "--overwrite", help="Delete and re-create devices that already exist"
    ),
    report_dir: Path | None = typer.Option(
        None, "--report-dir", help="Write a JSON report into this directory"
    ),
) -> None:
    """
    Import devices from a CSV or XLSX file into ChirpStack.

    Invalid rows are skipped, each valid row is created independently, and the
    run can be reversed with 'chirpstack-import undo <run_id>'.

    Examples:
        chirpstack-import apply devices.csv -p 3f2c9a... -a <app-id> -d <profile-id>
        chirpstack-import apply devices.xlsx -p 3f2c9a... -a <app-id> -d <profile-id> -t site=north
    """
    try:
        config = _load_config(ctx)
        profile = _profile_store(config).get(profile_id)
        target = ImportTarget(
            application_id=application_id,
            device_profile_id=device_profile_id,
            additional_tags=_parse_tags(tags),
            duplicate_action=DuplicateAction.OVERWRITE if overwrite else DuplicateAction.SKIP,
        )
    except (ImporterError, ValueError) as e:
        raise _fail(e) from e

    console.print(
        Panel.fit(
            f"[bold blue]ChirpStack Device Import[/bold blue]\n\n"
            f"Upload: {upload}\n"
            f"Profile: [cyan]{profile.name}[/cyan] ({profile.id})\n"
            f"Application: [cyan]{application_id}[/cyan]\n"
            f"Duplicates: [yellow]{target.duplicate_action.value}[/yellow]",
            border_style="blue",
        )
    )

    async def run_apply(cancel: CancellationToken) -> ImportRun:
        runner = ImportRunner(config, console)
        try:
            return await runner.run_import(
                upload, profile, target, report_dir=report_dir, cancel=cancel
            )
        finally:
            await runner.close()

    try:
        run = _run(run_apply)
    except (ImporterError, OSError) as e:
        raise _fail(e) from e

    _print_outcomes("Rows not imported", run.outcomes)

    if run.failed == 0:
        console.print("\n[bold green]SUCCESS: Import completed[/bold green]\n")
    else:
        console.print("\n[bold yellow]WARNING: Import completed with errors[/bold yellow]\n")

    console.print(f"Duration: {run.duration_seconds:.2f} seconds")
    console.print(f"Run ID: [cyan]{run.run_id}[/cyan]")
    _print_summary(run.succeeded, run.failed, run.skipped, run.total)
    if run.undo_log:
        console.print(
            f"[dim]To undo: chirpstack-import undo {run.run_id} "
            f"({len(run.undo_log)} devices)[/dim]"
        )

    if run.failed:
        raise typer.Exit(code=EXIT_ROW_FAILURES)


@app.command()
def undo(
    ctx: typer.Context,
    run_id: str = typer.Argument(..., help="Run ID printed by 'apply'"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """
    Delete every device an import run created.

    Devices that are already gone count as undone, so undo can be repeated.
    Devices replaced with --overwrite are not deleted.
    """
    console.print(f"\n[bold red]Undo Import[/bold red] [cyan]{run_id}[/cyan]\n")

    if not yes and not typer.confirm("WARNING: This will DELETE the devices the run created."):
        raise typer.Abort()

    try:
        config = _load_config(ctx)

        async def run_undo(cancel: CancellationToken) -> BulkOperationResult:
            runner = ImportRunner(config, console)
            try:
                return await runner.run_undo(run_id, cancel=cancel)
            finally:
                await runner.close()

        result = _run(run_undo)
    except (ImporterError, OSError) as e:
        raise _fail(e) from e

    _print_outcomes("Devices not removed", result.outcomes)
    _print_summary(result.succeeded, result.failed, result.skipped, result.total)

    if result.failed:
        raise typer.Exit(code=EXIT_ROW_FAILURES)


@app.command()
def history(
    ctx: typer.Context,
    limit: int = typer.Option(10, help="Number of recent runs to show"),
) -> None:
    """
    List recent import runs and bulk operations from the changelog.

    Examples:
        chirpstack-import history
        chirpstack-import history --limit 20
    """
    try:
        config = _load_config(ctx)
    except ImporterError as e:
        raise _fail(e) from e

    changelog_db = config.undo.changelog_path
    console.print(f"\n[bold blue]Recent Runs[/bold blue] (last {limit})\n")

    if changelog_db is None or not changelog_db.exists():
        console.print("[yellow]WARNING: No changelog database found[/yellow]")
        console.print(f"Path: {changelog_db}")
        return

    with ChangeLog(changelog_db) as changelog:
        records = changelog.get_runs(limit=limit)

        if not records:
            console.print("[yellow]No runs found[/yellow]")
            return

        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Run ID", style="cyan")
        table.add_column("Kind")
        table.add_column("Start Time")
        table.add_column("Total", justify="right")
        table.add_column("Succeeded", justify="right", style="green")
        table.add_column("Failed", justify="right", style="red")
        table.add_column("Skipped", justify="right", style="yellow")
        table.add_column("Undone")

        for record in records:
            summary = changelog.to_summary(record)
            table.add_row(
                summary["run_id"],
                summary["kind"],
                summary["created_at"][:19],
                str(summary["total"]),
                str(summary["succeeded"]),
                str(summary["failed"]),
                str(summary["skipped"]),
                "yes" if summary["undone"] else "",
            )

        console.print(table)


@app.command()
def export(
    ctx: typer.Context,
    application_id: str = typer.Argument(..., help="Application to export"),
    output: Path = typer.Option(..., "--output", "-o", help="Output file"),
    fmt: ExportFormat | None = typer.Option(
        None, "--format", "-f", help="csv or xlsx (default: from the output suffix)"
    ),
    include_keys: bool = typer.Option(False, "--include-keys", help="Add an app_key column"),
    filter_profile: str | None = typer.Option(
        None, "--filter-profile", help="Only devices with this device profile id"
    ),
    filter_tag: str | None = typer.Option(
        None, "--filter-tag", help="Only devices carrying this tag (key=value)"
    ),
    activity: ActivityFilter | None = typer.Option(
        None,
        "--activity",
        help="Only devices seen in the last 24h (active), before that (inactive), or never",
    ),
) -> None:
    """
    Export the devices of an application to CSV or XLSX.

    The columns match the import aliases, so the file can be re-imported.

    Examples:
        chirpstack-import export <app-id> -o devices.csv
        chirpstack-import export <app-id> -o devices.xlsx --include-keys
        chirpstack-import export <app-id> -o silent.csv --activity never_seen
    """
    if fmt is None:
        fmt = ExportFormat.XLSX if output.suffix.lower() in (".xlsx", ".xlsm") else ExportFormat.CSV

    try:
        config = _load_config(ctx)
        client = _client(config)

        async def run_export(cancel: CancellationToken) -> bytes:
            async with client:
                return await export_devices(
                    client,
                    application_id,
                    include_keys=include_keys,
                    fmt=fmt,
                    filter_profile=filter_profile,
                    filter_tag=filter_tag,
                    filter_activity=activity,
                )

        data = _run(run_export)
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(data)
    except (ImporterError, OSError, ValueError) as e:
        raise _fail(e) from e

    console.print(f"[green]SUCCESS: Exported devices to {output}[/green]")


def _bulk_command(
    ctx: typer.Context,
    ids: list[str] | None,
    ids_file: Path | None,
    report_dir: Path | None,
    operation: Callable[
        [BulkMutationEngine, list[str], CancellationToken], Awaitable[BulkOperationResult]
    ],
) -> None:
    try:
        config = _load_config(ctx)
        device_ids = _collect_ids(ids, ids_file, config)
        client = _client(config)
        started_at = datetime.now(timezone.utc)

        async def run_bulk(cancel: CancellationToken) -> BulkOperationResult:
            async with client:
                engine = BulkMutationEngine(client, config.execution)
                return await operation(engine, device_ids, cancel)

        result = _run(run_bulk)
    except (ImporterError, OSError, ValueError) as e:
        raise _fail(e) from e

    _finish_bulk(result, config, started_at, ids_file, report_dir)


_IDS_OPTION = typer.Option(None, "--id", help="Device DevEUI (repeatable)")
_IDS_FILE_OPTION = typer.Option(
    None, "--file", help="File of DevEUIs (one per line, or a table with a devEui column)"
)
_REPORT_OPTION = typer.Option(None, "--report-dir", help="Write a JSON report into this directory")


@bulk_app.command("delete")
def bulk_delete(
    ctx: typer.Context,
    ids: list[str] | None = _IDS_OPTION,
    ids_file: Path | None = _IDS_FILE_OPTION,
    report_dir: Path | None = _REPORT_OPTION,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete devices. Devices that are already gone count as deleted."""
    if not yes and not typer.confirm("WARNING: This will DELETE devices. Are you sure?"):
        raise typer.Abort()

    _bulk_command(
        ctx,
        ids,
        ids_file,
        report_dir,
        lambda engine, device_ids, cancel: engine.delete(device_ids, cancel=cancel),
    )


@bulk_app.command("migrate")
def bulk_migrate(
    ctx: typer.Context,
    application_id: str = typer.Option(
        ..., "--application", "-a", help="Destination application"
    ),
    ids: list[str] | None = _IDS_OPTION,
    ids_file: Path | None = _IDS_FILE_OPTION,
    report_dir: Path | None = _REPORT_OPTION,
) -> None:
    """Move devices to another application, keeping their keys."""
    _bulk_command(
        ctx,
        ids,
        ids_file,
        report_dir,
        lambda engine, device_ids, cancel: engine.migrate(
            device_ids, application_id, cancel=cancel
        ),
    )


@bulk_app.command("change-profile")
def bulk_change_profile(
    ctx: typer.Context,
    device_profile_id: str = typer.Option(
        ..., "--device-profile", "-d", help="Device profile to assign"
    ),
    ids: list[str] | None = _IDS_OPTION,
    ids_file: Path | None = _IDS_FILE_OPTION,
    report_dir: Path | None = _REPORT_OPTION,
) -> None:
    """Assign a device profile to devices."""
    _bulk_command(
        ctx,
        ids,
        ids_file,
        report_dir,
        lambda engine, device_ids, cancel: engine.change_profile(
            device_ids, device_profile_id, cancel=cancel
        ),
    )


@bulk_app.command("update-tags")
def bulk_update_tags(
    ctx: typer.Context,
    tags: list[str] | None = typer.Option(
        None, "--tag", "-t", help="Tag to apply (key=value, repeatable)"
    ),
    ids: list[str] | None = _IDS_OPTION,
    ids_file: Path | None = _IDS_FILE_OPTION,
    replace: bool = typer.Option(
        False, "--replace", help="Replace the whole tag set instead of merging"
    ),
    report_dir: Path | None = _REPORT_OPTION,
) -> None:
    """
    Update device tags.

    With --tag the same tags go to every device. Without --tag, --file must be
    a table with a devEui column; every other non-empty cell is a tag.

    Examples:
        chirpstack-import bulk update-tags --id 0004A30B001C0530 -t site=north
        chirpstack-import bulk update-tags --file tags.csv --replace
    """
    mode = TagUpdateMode.REPLACE if replace else TagUpdateMode.MERGE
    try:
        parsed_tags = _parse_tags(tags)
    except ValueError as e:
        raise _fail(e) from e

    if parsed_tags:
        _bulk_command(
            ctx,
            ids,
            ids_file,
            report_dir,
            lambda engine, device_ids, cancel: engine.update_tags(
                device_ids, parsed_tags, mode=mode, cancel=cancel
            ),
        )
        return

    if ids_file is None:
        raise _fail(ValueError("Provide --tag, or a --file with per-device tag columns"))

    try:
        config = _load_config(ctx)
        rows = _read_rows(ids_file, config)
        client = _client(config)
        started_at = datetime.now(timezone.utc)

        async def run_rows(cancel: CancellationToken) -> BulkOperationResult:
            async with client:
                engine = BulkMutationEngine(client, config.execution)
                return await engine.update_tags_from_rows(rows, mode=mode, cancel=cancel)

        result = _run(run_rows)
    except (ImporterError, OSError) as e:
        raise _fail(e) from e

    _finish_bulk(result, config, started_at, ids_file, report_dir)


@profiles_app.command("list")
def profiles_list(ctx: typer.Context) -> None:
    """List import profiles."""
    try:
        config = _load_config(ctx)
        profiles = _profile_store(config).list()
    except ImporterError as e:
        raise _fail(e) from e

    if not profiles:
        console.print("[yellow]No import profiles defined[/yellow]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Required tags")
    for profile in profiles:
        table.add_row(profile.id, profile.name, ", ".join(sorted(profile.required_tags)))
    console.print(table)


@profiles_app.command("add")
def profiles_add(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Profile name"),
    required_tags: list[str] | None = typer.Option(
        None, "--require-tag", "-r", help="Tag every row must carry (repeatable)"
    ),
    profile_id: str | None = typer.Option(
        None, "--id", help="Update the profile with this id instead of creating one"
    ),
) -> None:
    """Create or update an import profile."""
    try:
        config = _load_config(ctx)
        data: dict[str, object] = {"name": name, "required_tags": set(required_tags or [])}
        if profile_id:
            data["id"] = profile_id
        profile = _profile_store(config).save(ImportProfile(**data))
    except (ImporterError, ValueError) as e:
        raise _fail(e) from e

    console.print(f"[green]Saved profile[/green] [cyan]{profile.id}[/cyan] ({profile.name})")


@profiles_app.command("remove")
def profiles_remove(
    ctx: typer.Context,
    profile_id: str = typer.Argument(..., help="Profile id"),
) -> None:
    """Delete an import profile."""
    try:
        config = _load_config(ctx)
        _profile_store(config).delete(profile_id)
    except ImporterError as e:
        raise _fail(e) from e

    console.print(f"[green]Removed profile[/green] [cyan]{profile_id}[/cyan]")


@app.command()
def version() -> None:
    """Show version information."""
    from . import __version__

    console.print(f"chirpstack-import [cyan]{__version__}[/cyan]")


if __name__ == "__main__":
    app()
