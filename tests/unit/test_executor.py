"""Unit tests for the import executor and undo."""

import asyncio

import pytest

from chirpstack_importer.config import ExecutionConfig
from chirpstack_importer.execution.executor import ImportExecutor, build_device, new_run_id
from chirpstack_importer.models.results import (
    BulkOperationKind,
    DuplicateAction,
    ImportTarget,
    RowAction,
    RowStatus,
)
from chirpstack_importer.models.rows import ParsedRow
from chirpstack_importer.persistence.changelog import ChangeLog
from chirpstack_importer.persistence.undo_log import UndoLogStore
from chirpstack_importer.utils.exceptions import (
    ConflictError,
    InvalidRequestError,
    RegistryUnreachableError,
    RunNotFoundError,
)
from chirpstack_importer.validation.validator import validate

APP_KEY = "2B7E151628AED2A6ABF7158809CF4F3C"


def eui(n: int) -> str:
    return f"0004A30B{n:08X}"


def _verdicts(profile, records, snapshot=frozenset(), allow_existing=False):
    rows = [ParsedRow(index=i, fields=dict(r)) for i, r in enumerate(records)]
    return validate(rows, profile, snapshot, allow_existing=allow_existing)


class TestBuildDevice:
    """Test registry payload construction."""

    def test_target_defaults_and_tag_merge(self, profile, target):
        """Test row values win over target tags and the target profile is the default."""
        target.additional_tags = {"site": "default", "owner": "ops"}
        [verdict] = _verdicts(profile, [{"devEui": eui(1), "tag_site": "north"}])

        device = build_device(verdict, target)

        assert device.dev_eui == eui(1)
        assert device.name == eui(1)
        assert device.application_id == "app-1"
        assert device.device_profile_id == "dp-1"
        assert device.tags == {"site": "north", "owner": "ops"}

    def test_row_profile_overrides_target(self, profile, target):
        """Test a per-row device profile."""
        [verdict] = _verdicts(
            profile, [{"devEui": eui(1), "tag_site": "x", "device_profile_id": "dp-2"}]
        )
        assert build_device(verdict, target).device_profile_id == "dp-2"

    def test_requires_device(self, profile, target):
        """Test a verdict without device cannot be built."""
        [verdict] = _verdicts(profile, [{"devEui": "bad"}])
        with pytest.raises(ValueError, match="has no device"):
            build_device(verdict, target)


class TestImportExecutor:
    """Test ImportExecutor.execute."""

    def test_run_id_format(self):
        """Test run ids are unique and prefixed."""
        first, second = new_run_id(), new_run_id()
        assert first.startswith("run_")
        assert first != second

    @pytest.mark.asyncio
    async def test_creates_valid_rows(self, registry, profile, target):
        """Test valid rows are created with keys and recorded for undo."""
        verdicts = _verdicts(
            profile,
            [
                {"devEui": eui(1), "appKey": APP_KEY, "name": "Meter", "tag_site": "north"},
                {"devEui": eui(2), "tag_site": "south"},
            ],
        )

        run = await ImportExecutor(registry).execute(verdicts, profile, target)

        assert run.total == 2
        assert run.succeeded == 2
        assert run.profile_id == profile.id
        assert run.completed_at is not None
        assert [o.action for o in run.outcomes] == [RowAction.CREATED, RowAction.CREATED]
        assert [o.registry_device_id for o in run.outcomes] == [eui(1), eui(2)]
        assert registry.devices[eui(1)].name == "Meter"
        assert registry.devices[eui(1)].tags == {"site": "north"}
        assert registry.keys[eui(1)].app_key == APP_KEY
        assert eui(2) not in registry.keys
        assert [e.registry_device_id for e in run.undo_log] == [eui(1), eui(2)]

    @pytest.mark.asyncio
    async def test_invalid_rows_are_skipped(self, registry, profile, target):
        """Test invalid verdicts are never dispatched."""
        verdicts = _verdicts(
            profile,
            [
                {"devEui": "BADEUI", "tag_site": "north"},
                {"devEui": eui(2), "tag_site": "south"},
            ],
        )

        run = await ImportExecutor(registry).execute(verdicts, profile, target)

        first = run.outcomes[0]
        assert first.status == RowStatus.SKIPPED
        assert first.error_code == "InvalidFormat"
        assert "length 6" in first.error
        assert run.outcomes[1].status == RowStatus.SUCCEEDED
        assert registry.calls == [("create", eui(2))]

    @pytest.mark.asyncio
    async def test_registry_failures_are_captured(self, registry, profile, target):
        """Test per-row registry errors become Failed outcomes."""
        registry.failures[eui(2)] = ConflictError("object already exists")
        verdicts = _verdicts(
            profile, [{"devEui": eui(n), "tag_site": "x"} for n in (1, 2, 3)]
        )

        run = await ImportExecutor(registry).execute(verdicts, profile, target)

        assert [o.status for o in run.outcomes] == [
            RowStatus.SUCCEEDED,
            RowStatus.FAILED,
            RowStatus.SUCCEEDED,
        ]
        assert run.outcomes[1].error_code == "Conflict"
        assert run.outcomes[1].registry_device_id == eui(2)
        assert [e.registry_device_id for e in run.undo_log] == [eui(1), eui(3)]

    @pytest.mark.asyncio
    async def test_concurrency_limit(self, registry, profile, target):
        """Test the executor never exceeds max_concurrency in-flight calls."""
        registry.delay = 0.005
        verdicts = _verdicts(profile, [{"devEui": eui(n), "tag_site": "x"} for n in range(30)])

        executor = ImportExecutor(registry, execution=ExecutionConfig(max_concurrency=4))
        run = await executor.execute(verdicts, profile, target)

        assert run.succeeded == 30
        assert registry.peak_in_flight <= 4
        assert [o.row_index for o in run.outcomes] == list(range(30))

    @pytest.mark.asyncio
    async def test_breaker_stops_run(self, registry, profile, target):
        """Test a down registry skips the remaining rows."""
        for n in range(10):
            registry.failures[eui(n)] = RegistryUnreachableError("connection refused")
        verdicts = _verdicts(profile, [{"devEui": eui(n), "tag_site": "x"} for n in range(10)])

        executor = ImportExecutor(
            registry,
            execution=ExecutionConfig(max_concurrency=1, unreachable_threshold=3),
        )
        run = await executor.execute(verdicts, profile, target)

        assert run.failed == 3
        assert run.skipped == 7
        assert {o.error_code for o in run.outcomes[3:]} == {"UpstreamUnavailable"}
        assert run.undo_log == []

    @pytest.mark.asyncio
    async def test_overwrite_replaces_existing(self, registry, profile):
        """Test overwrite deletes and re-creates without an undo entry."""
        registry.add_device(eui(1), tags={"site": "old"})
        target = ImportTarget(
            application_id="app-1",
            device_profile_id="dp-1",
            duplicate_action=DuplicateAction.OVERWRITE,
        )
        verdicts = _verdicts(
            profile,
            [{"devEui": eui(1), "tag_site": "new"}, {"devEui": eui(2), "tag_site": "new"}],
            snapshot=frozenset({eui(1)}),
            allow_existing=True,
        )

        run = await ImportExecutor(registry).execute(verdicts, profile, target)

        assert [o.action for o in run.outcomes] == [RowAction.REPLACED, RowAction.CREATED]
        assert registry.devices[eui(1)].tags == {"site": "new"}
        assert registry.calls.index(("delete", eui(1))) < registry.calls.index(("create", eui(1)))
        assert [e.registry_device_id for e in run.undo_log] == [eui(2)]

    @pytest.mark.asyncio
    async def test_run_is_retained_for_undo(self, registry, profile, target):
        """Test the completed run is stored."""
        store = UndoLogStore()
        verdicts = _verdicts(profile, [{"devEui": eui(1), "tag_site": "x"}])

        run = await ImportExecutor(registry, store).execute(verdicts, profile, target)

        assert run.run_id in store
        assert [e.registry_device_id for e in store.get(run.run_id)] == [eui(1)]

    @pytest.mark.asyncio
    async def test_outcomes_report_source_row_index(self, registry, profile, target):
        """Test every status reports the verdict's row index, not its position."""
        registry.failures[eui(2)] = ConflictError("object already exists")
        records = [
            {"devEui": eui(1), "tag_site": "x"},
            {"devEui": eui(2), "tag_site": "x"},
            {"devEui": "BAD", "tag_site": "x"},
        ]
        rows = [ParsedRow(index=i + 2, fields=r) for i, r in enumerate(records)]
        verdicts = validate(rows, profile, frozenset())

        run = await ImportExecutor(registry).execute(verdicts, profile, target)

        assert [o.status for o in run.outcomes] == [
            RowStatus.SUCCEEDED,
            RowStatus.FAILED,
            RowStatus.SKIPPED,
        ]
        assert [o.row_index for o in run.outcomes] == [2, 3, 4]


class TestMultiStepRows:
    """Test rows that need more than one registry call."""

    @staticmethod
    def _overwrite_target() -> ImportTarget:
        return ImportTarget(
            application_id="app-1",
            device_profile_id="dp-1",
            duplicate_action=DuplicateAction.OVERWRITE,
        )

    @pytest.mark.asyncio
    async def test_slow_overwrite_completes(self, registry, profile):
        """Test delete, create and keys all run even when each call is slow."""
        registry.add_device(eui(1), tags={"site": "old"})
        registry.delay = 0.05
        verdicts = _verdicts(
            profile,
            [{"devEui": eui(1), "appKey": APP_KEY, "tag_site": "new"}],
            snapshot=frozenset({eui(1)}),
            allow_existing=True,
        )

        run = await ImportExecutor(registry).execute(verdicts, profile, self._overwrite_target())

        assert run.outcomes[0].status == RowStatus.SUCCEEDED
        assert run.outcomes[0].action == RowAction.REPLACED
        assert registry.devices[eui(1)].tags == {"site": "new"}
        assert registry.keys[eui(1)].app_key == APP_KEY

    @pytest.mark.asyncio
    async def test_overwrite_finishes_when_run_is_cancelled(self, registry, profile):
        """Test a cancelled run does not leave an overwritten device deleted."""
        registry.add_device(eui(1), tags={"site": "old"})
        verdicts = _verdicts(
            profile,
            [{"devEui": eui(1), "appKey": APP_KEY, "tag_site": "new"}],
            snapshot=frozenset({eui(1)}),
            allow_existing=True,
        )
        create_device = registry.create_device
        create_device_keys = registry.create_device_keys
        started, finished = asyncio.Event(), asyncio.Event()

        async def slow_create(device):
            started.set()
            await asyncio.sleep(0.05)
            return await create_device(device)

        async def keys_then_signal(dev_eui, app_key, nwk_key=None):
            await create_device_keys(dev_eui, app_key, nwk_key)
            finished.set()

        registry.create_device = slow_create
        registry.create_device_keys = keys_then_signal

        task = asyncio.create_task(
            ImportExecutor(registry).execute(verdicts, profile, self._overwrite_target())
        )
        await started.wait()
        assert eui(1) not in registry.devices
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.wait_for(finished.wait(), timeout=1)

        assert registry.devices[eui(1)].tags == {"site": "new"}
        assert registry.keys[eui(1)].app_key == APP_KEY

    @pytest.mark.asyncio
    async def test_keys_provisioned_when_run_is_cancelled(self, registry, profile, target):
        """Test a created device still gets its keys after the run is cancelled."""
        verdicts = _verdicts(profile, [{"devEui": eui(1), "appKey": APP_KEY, "tag_site": "x"}])
        create_device_keys = registry.create_device_keys
        started, finished = asyncio.Event(), asyncio.Event()

        async def slow_keys(dev_eui, app_key, nwk_key=None):
            started.set()
            await asyncio.sleep(0.05)
            await create_device_keys(dev_eui, app_key, nwk_key)
            finished.set()

        registry.create_device_keys = slow_keys

        task = asyncio.create_task(ImportExecutor(registry).execute(verdicts, profile, target))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.wait_for(finished.wait(), timeout=1)

        assert eui(1) in registry.devices
        assert registry.keys[eui(1)].app_key == APP_KEY

    @pytest.mark.asyncio
    async def test_refused_keys_remove_device(self, registry, profile, target):
        """Test a device whose keys are refused is deleted and leaves no undo entry."""
        registry.op_failures[("keys", eui(1))] = InvalidRequestError("invalid appKey")
        verdicts = _verdicts(
            profile,
            [
                {"devEui": eui(1), "appKey": APP_KEY, "tag_site": "x"},
                {"devEui": eui(2), "tag_site": "x"},
            ],
        )

        run = await ImportExecutor(registry).execute(verdicts, profile, target)

        first = run.outcomes[0]
        assert first.status == RowStatus.FAILED
        assert first.error_code == "Invalid"
        assert first.error == "invalid appKey"
        assert first.registry_device_id == eui(1)
        assert first.action is None
        assert run.outcomes[1].status == RowStatus.SUCCEEDED
        assert eui(1) not in registry.devices
        assert ("delete", eui(1)) in registry.calls
        assert [e.registry_device_id for e in run.undo_log] == [eui(2)]

    @pytest.mark.asyncio
    async def test_refused_keys_keep_undo_entry_when_cleanup_fails(
        self, registry, profile, target, tmp_path
    ):
        """Test a keyless device that cannot be deleted stays undoable."""
        registry.op_failures[("keys", eui(1))] = InvalidRequestError("invalid appKey")
        registry.op_failures[("delete", eui(1))] = RegistryUnreachableError("connection reset")
        verdicts = _verdicts(profile, [{"devEui": eui(1), "appKey": APP_KEY, "tag_site": "x"}])

        with ChangeLog(tmp_path / "changelog.db") as changelog:
            executor = ImportExecutor(registry, UndoLogStore(changelog=changelog))
            run = await executor.execute(verdicts, profile, target)

            first = run.outcomes[0]
            assert first.status == RowStatus.FAILED
            assert first.error_code == "Invalid"
            assert first.action == RowAction.CREATED
            assert eui(1) in registry.devices
            assert [e.registry_device_id for e in run.undo_log] == [eui(1)]
            assert [e.registry_device_id for e in changelog.get_undo_entries(run.run_id)] == [
                eui(1)
            ]

            del registry.op_failures[("delete", eui(1))]
            result = await executor.undo(run.run_id)

        assert result.succeeded == 1
        assert eui(1) not in registry.devices


class TestUndo:
    """Test ImportExecutor.undo."""

    @pytest.mark.asyncio
    async def test_undo_deletes_created_devices(self, registry, profile, target):
        """Test undo removes exactly what the run created."""
        registry.add_device(eui(99))
        executor = ImportExecutor(registry)
        verdicts = _verdicts(profile, [{"devEui": eui(n), "tag_site": "x"} for n in (1, 2)])
        run = await executor.execute(verdicts, profile, target)

        result = await executor.undo(run.run_id)

        assert result.operation_kind == BulkOperationKind.UNDO
        assert result.succeeded == 2
        assert [o.action for o in result.outcomes] == [RowAction.DELETED, RowAction.DELETED]
        assert set(registry.devices) == {eui(99)}

    @pytest.mark.asyncio
    async def test_undo_is_repeatable(self, registry, profile, target):
        """Test a second undo succeeds because missing devices count as deleted."""
        executor = ImportExecutor(registry)
        verdicts = _verdicts(profile, [{"devEui": eui(1), "tag_site": "x"}])
        run = await executor.execute(verdicts, profile, target)

        await executor.undo(run.run_id)
        again = await executor.undo(run.run_id)

        assert again.succeeded == 1
        assert again.failed == 0

    @pytest.mark.asyncio
    async def test_undo_unknown_run(self, registry):
        """Test undo of an unknown run id."""
        with pytest.raises(RunNotFoundError, match="run_missing"):
            await ImportExecutor(registry).undo("run_missing")

    @pytest.mark.asyncio
    async def test_undo_marks_changelog(self, registry, profile, target, tmp_path):
        """Test the changelog records the undo."""
        with ChangeLog(tmp_path / "changelog.db") as changelog:
            executor = ImportExecutor(registry, UndoLogStore(changelog=changelog))
            verdicts = _verdicts(profile, [{"devEui": eui(1), "tag_site": "x"}])
            run = await executor.execute(verdicts, profile, target)

            await executor.undo(run.run_id)

            assert changelog.get_run(run.run_id).undone_at is not None

    @pytest.mark.asyncio
    async def test_incomplete_undo_stays_open(self, registry, profile, target, tmp_path):
        """Test a run is only marked undone once every device is gone."""
        with ChangeLog(tmp_path / "changelog.db") as changelog:
            executor = ImportExecutor(registry, UndoLogStore(changelog=changelog))
            verdicts = _verdicts(profile, [{"devEui": eui(n), "tag_site": "x"} for n in (1, 2)])
            run = await executor.execute(verdicts, profile, target)
            refused = RegistryUnreachableError("connection refused")
            registry.op_failures[("delete", eui(2))] = refused

            result = await executor.undo(run.run_id)

            assert result.succeeded == 1
            assert result.failed == 1
            assert result.outcomes[1].error_code == "Unreachable"
            assert eui(2) in registry.devices
            assert changelog.get_run(run.run_id).undone_at is None

            del registry.op_failures[("delete", eui(2))]
            again = await executor.undo(run.run_id)

            assert again.failed == 0
            assert eui(2) not in registry.devices
            assert changelog.get_run(run.run_id).undone_at is not None
