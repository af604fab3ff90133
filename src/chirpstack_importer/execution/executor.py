"""
Import Executor - submits validated rows to ChirpStack and records undo logs.

Execution Model:
---------------
1. Invalid verdicts are never dispatched; their outcome is Skipped with the
   validation errors as the message and the first error's code.
2. Valid verdicts are dispatched through a UnitDispatcher (bounded
   concurrency, unreachable breaker, cancellation). The registry client
   bounds each HTTP request, never a whole row.
3. A created device enters the run's undo log as soon as the registry
   accepts it. If its keys are then refused the device is deleted again and
   the entry dropped; when that cleanup fails too the entry stays so undo can
   remove it. Overwritten devices (action Replaced) never enter the log: undo
   must not delete a device that existed before the run.
4. The completed run is retained in the UndoLogStore so undo(run_id) can
   reverse it later.

Outcomes are always returned in verdict order.
"""

import asyncio
import uuid
from dataclasses import replace
from datetime import datetime, timezone

import structlog

from ..config import ExecutionConfig
from ..models.profiles import ImportProfile
from ..models.results import (
    BulkOperationKind,
    BulkOperationResult,
    DuplicateAction,
    ImportRun,
    ImportTarget,
    RowAction,
    RowOutcome,
    RowStatus,
    UndoEntry,
)
from ..models.rows import ValidationVerdict
from ..observability.logger import LogContext
from ..persistence.undo_log import UndoLogStore
from ..registry.client import ChirpStackClient
from ..registry.response_models import Device
from ..utils.exceptions import ResourceNotFoundError
from .bulk import BulkMutationEngine
from .dispatcher import CancellationToken, UnitDispatcher, failed_outcome
from .throttle import RegistryThrottle

logger = structlog.get_logger(__name__)


def new_run_id() -> str:
    return f"run_{uuid.uuid4().hex[:8]}"


def build_device(verdict: ValidationVerdict, target: ImportTarget) -> Device:
    """
    Build the registry payload for a valid verdict.

    Target tags are merged under the row's tags (row values win); a row
    device profile overrides the target's.

    Args:
        verdict: Valid verdict carrying a normalized device
        target: Run target

    Returns:
        Device ready for creation
    """
    device = verdict.device
    if device is None:
        raise ValueError(f"Verdict for row {verdict.row_index} has no device")

    return Device(
        dev_eui=device.dev_eui,
        name=device.display_name,
        description=device.description,
        application_id=target.application_id,
        device_profile_id=device.device_profile_id or target.device_profile_id,
        tags={**target.additional_tags, **device.tags},
    )


class ImportExecutor:
    """
    Executes import runs and their undo.

    Usage:
        executor = ImportExecutor(client, UndoLogStore())
        run = await executor.execute(verdicts, profile, target)
        undo_result = await executor.undo(run.run_id)
    """

    def __init__(
        self,
        client: ChirpStackClient,
        undo_store: UndoLogStore | None = None,
        execution: ExecutionConfig | None = None,
        throttle: RegistryThrottle | None = None,
    ) -> None:
        """
        Initialize ImportExecutor.

        Args:
            client: ChirpStack client
            undo_store: Retention of undo logs (an in-memory store if None)
            execution: Concurrency and breaker settings
            throttle: Optional throttle shared with other components
        """
        self.client = client
        self.undo_store = undo_store if undo_store is not None else UndoLogStore()
        self.execution = execution or ExecutionConfig()
        self.throttle = throttle or RegistryThrottle(self.execution.max_concurrency)

    async def execute(
        self,
        verdicts: list[ValidationVerdict],
        profile: ImportProfile,
        target: ImportTarget,
        cancel: CancellationToken | None = None,
    ) -> ImportRun:
        """
        Submit every valid verdict to the registry.

        Args:
            verdicts: Validation verdicts in row order
            profile: Profile the rows were validated against
            target: Application, default profile, extra tags, duplicate handling
            cancel: Optional cancellation token

        Returns:
            ImportRun with one outcome per verdict, in verdict order
        """
        run = ImportRun(
            run_id=new_run_id(),
            profile_id=profile.id,
            created_at=datetime.now(timezone.utc),
        )
        overwrite = DuplicateAction(target.duplicate_action) == DuplicateAction.OVERWRITE

        with LogContext(run_id=run.run_id):
            slots: list[RowOutcome | None] = []
            identifiers: list[str | None] = []
            for verdict in verdicts:
                identifiers.append(verdict.device.dev_eui if verdict.device else None)
                if verdict.valid:
                    slots.append(None)
                else:
                    slots.append(
                        RowOutcome(
                            row_index=verdict.row_index,
                            status=RowStatus.SKIPPED,
                            error=verdict.error_summary,
                            error_code=verdict.errors[0].code.value if verdict.errors else None,
                        )
                    )

            logger.info(
                "Starting import run",
                profile_id=profile.id,
                application_id=target.application_id,
                rows=len(verdicts),
                valid=sum(1 for s in slots if s is None),
                duplicate_action=DuplicateAction(target.duplicate_action).value,
            )

            undo_lock = asyncio.Lock()
            created: dict[int, UndoEntry] = {}

            async def keys_refused(
                position: int, registry_id: str, error: Exception
            ) -> RowOutcome:
                outcome = failed_outcome(verdicts[position].row_index, error, registry_id)
                # A device without keys cannot join; take it out again
                if await self._remove_keyless_device(registry_id):
                    async with undo_lock:
                        created.pop(position, None)
                    return outcome
                # Still registered, so the row keeps its undo entry
                return replace(outcome, action=RowAction.CREATED)

            async def provision(position: int) -> RowOutcome:
                verdict = verdicts[position]
                device = build_device(verdict, target)
                app_key = verdict.device.app_key if verdict.device else None

                if overwrite and verdict.exists_in_registry:
                    try:
                        await self.client.delete_device(device.dev_eui)
                    except ResourceNotFoundError:
                        logger.debug("Device vanished before overwrite", dev_eui=device.dev_eui)
                    registry_id = await self.client.create_device(device)
                    if app_key:
                        await self.client.create_device_keys(registry_id, app_key)
                    action = RowAction.REPLACED
                else:
                    registry_id = await self.client.create_device(device)
                    async with undo_lock:
                        created[position] = UndoEntry(registry_device_id=registry_id)
                    if app_key:
                        try:
                            await self.client.create_device_keys(registry_id, app_key)
                        except Exception as e:
                            return await keys_refused(position, registry_id, e)
                    action = RowAction.CREATED

                return RowOutcome(
                    row_index=verdict.row_index,
                    status=RowStatus.SUCCEEDED,
                    registry_device_id=registry_id,
                    action=action,
                )

            async def submit(position: int) -> RowOutcome:
                # Once a row starts mutating, cancelling the run must not leave it half done
                return await asyncio.shield(provision(position))

            dispatcher = UnitDispatcher(
                throttle=self.throttle,
                unreachable_threshold=self.execution.unreachable_threshold,
                operation_kind="import",
            )
            run.outcomes = await dispatcher.dispatch(
                slots,
                submit,
                cancel=cancel,
                identifiers=identifiers,
                row_indexes=[v.row_index for v in verdicts],
            )
            # Undo log follows row order, not completion order
            run.undo_log = [created[p] for p in sorted(created)]
            run.completed_at = datetime.now(timezone.utc)

            self.undo_store.put(run)

            logger.info(
                "Import run complete",
                total=run.total,
                succeeded=run.succeeded,
                failed=run.failed,
                skipped=run.skipped,
                undo_entries=len(run.undo_log),
                duration_seconds=round(run.duration_seconds, 3),
            )

        return run

    async def _remove_keyless_device(self, registry_id: str) -> bool:
        """
        Delete a device whose key provisioning failed.

        Returns:
            True when the device is gone, False when it is still registered
        """
        try:
            await self.client.delete_device(registry_id)
        except ResourceNotFoundError:
            pass
        except Exception as e:
            logger.error(
                "Device created without keys and could not be removed",
                dev_eui=registry_id,
                error=str(e),
            )
            return False
        logger.warning("Device removed after key provisioning failed", dev_eui=registry_id)
        return True

    async def undo(
        self, run_id: str, cancel: CancellationToken | None = None
    ) -> BulkOperationResult:
        """
        Delete every device a run created.

        A device already gone counts as deleted, so undo may be repeated.

        Args:
            run_id: Run to reverse
            cancel: Optional cancellation token

        Returns:
            BulkOperationResult of kind Undo, one outcome per undo entry

        Raises:
            RunNotFoundError: If the run is unknown or its undo log expired
        """
        entries = self.undo_store.get(run_id)

        with LogContext(run_id=run_id):
            logger.info("Undoing import run", entries=len(entries))
            engine = BulkMutationEngine(self.client, self.execution, throttle=self.throttle)
            result = await engine.delete(
                [e.registry_device_id for e in entries],
                cancel=cancel,
                kind=BulkOperationKind.UNDO,
            )

        changelog = self.undo_store.changelog
        if result.failed or result.skipped:
            logger.warning(
                "Undo incomplete, run stays open",
                run_id=run_id,
                failed=result.failed,
                skipped=result.skipped,
            )
        elif changelog is not None:
            changelog.mark_undone(run_id)

        return result
