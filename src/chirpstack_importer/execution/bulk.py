"""Bulk Mutation Engine - apply one mutation kind to a list of devices.

Each entry point takes an ordered list of DevEUIs and returns a
BulkOperationResult with one outcome per input position. Rows are
independent: the registry has no multi-device transaction, so a mixed result
set is the normal outcome rather than an error.

Mutation kinds:
- delete: NotFound counts as Succeeded (already deleted)
- migrate: NotFound when the device is gone, TargetInvalid when the
  destination application is unknown
- change_profile: same taxonomy as migrate
- update_tags: merge (supplied keys replaced, others kept) or replace
"""

from collections.abc import Awaitable, Callable

import structlog

from ..config import ExecutionConfig
from ..constants import DEV_EUI_FIELD, TAG_COLUMN_PREFIX
from ..core.column_mapping import ColumnMapping
from ..models.results import (
    BulkOperationKind,
    BulkOperationResult,
    RowAction,
    RowOutcome,
    RowStatus,
    TagUpdateMode,
)
from ..models.rows import ParsedRow
from ..observability.logger import LogContext
from ..registry.client import ChirpStackClient
from ..utils.exceptions import RegistryErrorKind, ResourceNotFoundError
from .dispatcher import CancellationToken, UnitDispatcher
from .throttle import RegistryThrottle

logger = structlog.get_logger(__name__)

DeviceWork = Callable[[int, str], Awaitable[RowAction]]


def normalize_ids(ids: list[str]) -> list[str]:
    """Trim and upper-case identifiers, keeping positions."""
    return [(d or "").strip().upper() for d in ids]


class BulkMutationEngine:
    """
    Apply delete / migrate / change-profile / update-tags over DevEUI lists.

    The registry client is injected; the engine holds no other shared state.
    """

    def __init__(
        self,
        client: ChirpStackClient,
        execution: ExecutionConfig | None = None,
        throttle: RegistryThrottle | None = None,
    ) -> None:
        """
        Initialize engine.

        Args:
            client: ChirpStack client
            execution: Concurrency and breaker settings
            throttle: Optional throttle shared with other components
        """
        self.client = client
        self.execution = execution or ExecutionConfig()
        self.throttle = throttle or RegistryThrottle(self.execution.max_concurrency)

    def _dispatcher(self, kind: BulkOperationKind) -> UnitDispatcher:
        return UnitDispatcher(
            throttle=self.throttle,
            unreachable_threshold=self.execution.unreachable_threshold,
            operation_kind=kind.value,
        )

    async def _run(
        self,
        kind: BulkOperationKind,
        ids: list[str],
        work: DeviceWork,
        cancel: CancellationToken | None = None,
        invalid: dict[int, str] | None = None,
    ) -> BulkOperationResult:
        """
        Dispatch ``work`` once per identifier.

        Args:
            kind: Operation kind reported in the result
            ids: Normalized identifiers
            work: Coroutine doing the mutation for (index, dev_eui)
            cancel: Optional cancellation token
            invalid: Index -> reason for inputs rejected before dispatch

        Returns:
            BulkOperationResult in input order
        """
        invalid = dict(invalid or {})
        for index, dev_eui in enumerate(ids):
            if not dev_eui and index not in invalid:
                invalid[index] = "Empty device identifier"

        slots: list[RowOutcome | None] = [
            RowOutcome(
                row_index=index,
                status=RowStatus.FAILED,
                error=invalid[index],
                error_code=RegistryErrorKind.INVALID.value,
            )
            if index in invalid
            else None
            for index in range(len(ids))
        ]

        async def unit(index: int) -> RowOutcome:
            dev_eui = ids[index]
            action = await work(index, dev_eui)
            return RowOutcome(
                row_index=index,
                status=RowStatus.SUCCEEDED,
                registry_device_id=dev_eui,
                action=action,
            )

        with LogContext(operation=kind.value):
            logger.info("Starting bulk operation", devices=len(ids))
            outcomes = await self._dispatcher(kind).dispatch(
                slots, unit, cancel=cancel, identifiers=list(ids)
            )
        result = BulkOperationResult(operation_kind=kind, outcomes=outcomes)

        logger.info(
            "Bulk operation complete",
            kind=kind.value,
            total=result.total,
            succeeded=result.succeeded,
            failed=result.failed,
            skipped=result.skipped,
        )
        return result

    async def delete(
        self,
        ids: list[str],
        cancel: CancellationToken | None = None,
        kind: BulkOperationKind = BulkOperationKind.DELETE,
    ) -> BulkOperationResult:
        """
        Delete devices; a device that is already gone counts as deleted.

        Args:
            ids: DevEUIs to delete
            cancel: Optional cancellation token
            kind: Reported kind (Undo reuses this discipline)

        Returns:
            BulkOperationResult
        """

        async def work(index: int, dev_eui: str) -> RowAction:
            try:
                await self.client.delete_device(dev_eui)
            except ResourceNotFoundError:
                logger.debug("Device already absent", dev_eui=dev_eui, row_index=index)
            return RowAction.DELETED

        return await self._run(kind, normalize_ids(ids), work, cancel)

    async def migrate(
        self,
        ids: list[str],
        application_id: str,
        cancel: CancellationToken | None = None,
    ) -> BulkOperationResult:
        """
        Move devices to another application.

        Args:
            ids: DevEUIs to move
            application_id: Destination application
            cancel: Optional cancellation token

        Returns:
            BulkOperationResult (NotFound / TargetInvalid rows Failed)
        """

        async def work(index: int, dev_eui: str) -> RowAction:
            await self.client.set_application(dev_eui, application_id)
            return RowAction.MIGRATED

        return await self._run(BulkOperationKind.MIGRATE, normalize_ids(ids), work, cancel)

    async def change_profile(
        self,
        ids: list[str],
        device_profile_id: str,
        cancel: CancellationToken | None = None,
    ) -> BulkOperationResult:
        """
        Assign a device profile to devices.

        Args:
            ids: DevEUIs to update
            device_profile_id: Device profile to assign
            cancel: Optional cancellation token

        Returns:
            BulkOperationResult (NotFound / TargetInvalid rows Failed)
        """

        async def work(index: int, dev_eui: str) -> RowAction:
            await self.client.set_profile(dev_eui, device_profile_id)
            return RowAction.PROFILE_CHANGED

        return await self._run(BulkOperationKind.CHANGE_PROFILE, normalize_ids(ids), work, cancel)

    async def update_tags(
        self,
        ids: list[str],
        tags: dict[str, str],
        mode: TagUpdateMode = TagUpdateMode.MERGE,
        cancel: CancellationToken | None = None,
    ) -> BulkOperationResult:
        """
        Apply the same tags to every device.

        Args:
            ids: DevEUIs to update
            tags: Tags to apply
            mode: MERGE keeps keys not supplied, REPLACE drops them
            cancel: Optional cancellation token

        Returns:
            BulkOperationResult
        """
        replace = TagUpdateMode(mode) == TagUpdateMode.REPLACE

        async def work(index: int, dev_eui: str) -> RowAction:
            await self.client.set_tags(dev_eui, tags, replace=replace)
            return RowAction.TAGS_UPDATED

        return await self._run(BulkOperationKind.UPDATE_TAGS, normalize_ids(ids), work, cancel)

    async def update_tags_from_rows(
        self,
        rows: list[ParsedRow],
        mode: TagUpdateMode = TagUpdateMode.MERGE,
        cancel: CancellationToken | None = None,
    ) -> BulkOperationResult:
        """
        Apply per-device tags read from a parsed file.

        The devEui column identifies the device; every other non-empty cell is
        a tag named by its column (a ``tag_`` prefix is dropped).

        Args:
            rows: Parsed rows with a devEui column
            mode: MERGE or REPLACE
            cancel: Optional cancellation token

        Returns:
            BulkOperationResult, one outcome per row
        """
        replace = TagUpdateMode(mode) == TagUpdateMode.REPLACE
        ids: list[str] = []
        row_tags: list[dict[str, str]] = []
        invalid: dict[int, str] = {}

        columns = ColumnMapping.from_headers(rows[0].fields.keys()) if rows else ColumnMapping()
        id_header = columns.fields.get(DEV_EUI_FIELD)

        for position, row in enumerate(rows):
            ids.append(row.get(id_header).strip().upper() if id_header else "")
            tags = {}
            for header, value in row.fields.items():
                if header == id_header or not value:
                    continue
                name = header
                if name.lower().startswith(TAG_COLUMN_PREFIX):
                    name = name[len(TAG_COLUMN_PREFIX) :]
                tags[name] = value
            row_tags.append(tags)
            if id_header is None:
                invalid[position] = "No devEui column in file"
            elif not tags and not replace:
                invalid[position] = "Row carries no tags"

        async def work(index: int, dev_eui: str) -> RowAction:
            await self.client.set_tags(dev_eui, row_tags[index], replace=replace)
            return RowAction.TAGS_UPDATED

        return await self._run(BulkOperationKind.UPDATE_TAGS, ids, work, cancel, invalid=invalid)
