"""Export module for extracting ChirpStack devices to CSV or XLSX.

The export is the inverse of an import: its columns map straight back onto the
import column aliases, so an exported file can be edited and re-imported into
another application.

Columns:
    dev_eui, name, description, device_profile_id, device_profile_name,
    tag_<key>... (sorted, one per tag key seen), app_key (with include_keys)

Filters:
    device profile id, one ``key=value`` tag, and activity: a device is
    active when ChirpStack saw it within the last 24 hours, inactive when it
    was seen before that, never_seen when it has no lastSeenAt.
"""

import csv
import io
import re
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

import structlog
from openpyxl import Workbook

from ..constants import EXPORT_SEPARATOR, TAG_COLUMN_PREFIX
from ..registry.client import ChirpStackClient
from ..registry.response_models import DeviceListItem

logger = structlog.get_logger(__name__)

BASE_COLUMNS = [
    "dev_eui",
    "name",
    "description",
    "device_profile_id",
    "device_profile_name",
]
KEY_COLUMN = "app_key"
SHEET_NAME = "Devices"
ACTIVITY_WINDOW = timedelta(hours=24)

_FRACTION = re.compile(r"\.(\d+)")


class ExportFormat(str, Enum):
    """Output format of an export."""

    CSV = "csv"
    XLSX = "xlsx"


class ActivityFilter(str, Enum):
    """Activity classes a device can be filtered on."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    NEVER_SEEN = "never_seen"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """
    Parse an RFC 3339 timestamp as returned by ChirpStack.

    Fractional seconds are cut to microseconds and a missing offset is read
    as UTC.

    Raises:
        ValueError: If the value is not a timestamp
    """
    text = value.strip()
    if text[-1:] in ("Z", "z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def matches_activity(last_seen_at: str | None, activity: ActivityFilter, now: datetime) -> bool:
    """Whether a device last seen at ``last_seen_at`` falls in ``activity``."""
    if not last_seen_at:
        return activity == ActivityFilter.NEVER_SEEN
    if activity == ActivityFilter.NEVER_SEEN:
        return False
    try:
        seen = parse_timestamp(last_seen_at)
    except ValueError:
        logger.debug("Unreadable lastSeenAt, treating device as inactive", value=last_seen_at)
        return activity == ActivityFilter.INACTIVE
    active = now - seen < ACTIVITY_WINDOW
    return active if activity == ActivityFilter.ACTIVE else not active


def parse_tag_filter(filter_tag: str | None) -> tuple[str, str] | None:
    """
    Split a ``key=value`` tag filter.

    Raises:
        ValueError: If the filter has no '=' or an empty key
    """
    if not filter_tag:
        return None
    key, sep, value = filter_tag.partition("=")
    if not sep or not key.strip():
        raise ValueError(f"Tag filter must look like key=value, got {filter_tag!r}")
    return key.strip(), value.strip()


class DeviceExporter:
    """
    Export the devices of one application.

    Usage:
        exporter = DeviceExporter(client)
        rows = await exporter.collect(application_id, include_keys=True)
        data = exporter.render(ExportFormat.CSV)
    """

    def __init__(
        self,
        client: ChirpStackClient,
        allow_formulas: bool = False,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """
        Initialize exporter.

        Args:
            client: ChirpStack client
            allow_formulas: Whether to allow CSV formulas (default: False)
            clock: Source of the current UTC time for the activity filter
        """
        self.client = client
        self.allow_formulas = allow_formulas
        self._clock = clock
        self.include_keys = False
        self.discovered_tags: set[str] = set()
        self.exported_devices: list[dict[str, Any]] = []

    async def collect(
        self,
        application_id: str,
        include_keys: bool = False,
        filter_profile: str | None = None,
        filter_tag: str | None = None,
        filter_activity: ActivityFilter | str | None = None,
    ) -> list[dict[str, Any]]:
        """
        Fetch and filter the devices of an application.

        Args:
            application_id: Application to export
            include_keys: Fetch the OTAA root key of every device
            filter_profile: Keep only devices with this device profile id
            filter_tag: Keep only devices carrying this ``key=value`` tag
            filter_activity: Keep only active, inactive or never seen devices

        Returns:
            List of row dictionaries ready for rendering
        """
        tag_filter = parse_tag_filter(filter_tag)
        activity = ActivityFilter(filter_activity) if filter_activity else None
        now = self._clock()
        self.include_keys = include_keys

        logger.info(
            "Exporting devices",
            application_id=application_id,
            include_keys=include_keys,
            filter_profile=filter_profile,
            filter_tag=filter_tag,
            filter_activity=activity.value if activity else None,
        )

        devices = await self.client.list_devices(application_id)
        for item in devices:
            if filter_profile and item.device_profile_id != filter_profile:
                continue
            if tag_filter and item.tags.get(tag_filter[0]) != tag_filter[1]:
                continue
            if activity and not matches_activity(item.last_seen_at, activity, now):
                continue
            await self._export_device(item)

        logger.info(
            "Devices collected", total=len(devices), exported=len(self.exported_devices)
        )
        return self.exported_devices

    async def _export_device(self, item: DeviceListItem) -> None:
        row: dict[str, Any] = {
            "dev_eui": item.dev_eui,
            "name": item.name,
            "description": item.description,
            "device_profile_id": item.device_profile_id,
            "device_profile_name": item.device_profile_name,
        }
        for key, value in item.tags.items():
            column = f"{TAG_COLUMN_PREFIX}{key}"
            self.discovered_tags.add(column)
            row[column] = value

        if self.include_keys:
            keys = await self.client.get_device_keys(item.dev_eui)
            row[KEY_COLUMN] = keys.effective_key if keys else ""

        self.exported_devices.append(row)

    def get_columns(self) -> list[str]:
        """
        Get all columns including discovered tag columns.

        Returns:
            List of column names in output order
        """
        columns = BASE_COLUMNS + sorted(self.discovered_tags)
        if self.include_keys:
            columns.append(KEY_COLUMN)
        return columns

    def render(self, fmt: ExportFormat | str = ExportFormat.CSV) -> bytes:
        """
        Render collected devices.

        Args:
            fmt: csv (semicolon separated, UTF-8) or xlsx

        Returns:
            Encoded file contents
        """
        fmt = ExportFormat(fmt)
        if fmt == ExportFormat.XLSX:
            return self._render_xlsx()
        return self._render_csv()

    def _rows(self) -> list[list[str]]:
        columns = self.get_columns()
        rows = []
        for device in self.exported_devices:
            values = [str(device.get(c) or "") for c in columns]
            if not self.allow_formulas:
                values = [self._sanitize_field(v) for v in values]
            rows.append(values)
        return rows

    def _render_csv(self) -> bytes:
        buffer = io.StringIO()
        writer = csv.writer(buffer, delimiter=EXPORT_SEPARATOR, lineterminator="\n")
        writer.writerow(self.get_columns())
        writer.writerows(self._rows())
        logger.debug("CSV export rendered", devices=len(self.exported_devices))
        return buffer.getvalue().encode("utf-8")

    def _render_xlsx(self) -> bytes:
        workbook = Workbook()
        sheet = workbook.active
        sheet.title = SHEET_NAME
        sheet.append(self.get_columns())
        for row in self._rows():
            sheet.append(row)

        buffer = io.BytesIO()
        workbook.save(buffer)
        logger.debug("XLSX export rendered", devices=len(self.exported_devices))
        return buffer.getvalue()

    def _sanitize_field(self, value: str) -> str:
        """
        Prevent CSV injection by escaping formula characters.

        Ref: https://owasp.org/www-community/attacks/CSV_Injection

        Args:
            value: The field value to sanitize

        Returns:
            Sanitized value (prefixed with ' if dangerous)
        """
        if value.startswith(("=", "@", "+", "-", "\t", "\r")):
            return "'" + value
        return value


async def export_devices(
    client: ChirpStackClient,
    application_id: str,
    *,
    include_keys: bool = False,
    fmt: ExportFormat | str = ExportFormat.CSV,
    filter_profile: str | None = None,
    filter_tag: str | None = None,
    filter_activity: ActivityFilter | str | None = None,
) -> bytes:
    """
    Export the devices of an application as CSV or XLSX bytes.

    Args:
        client: ChirpStack client
        application_id: Application to export
        include_keys: Add an app_key column
        fmt: csv or xlsx
        filter_profile: Keep only devices with this device profile id
        filter_tag: Keep only devices carrying this ``key=value`` tag
        filter_activity: active, inactive or never_seen

    Returns:
        Encoded file contents
    """
    exporter = DeviceExporter(client)
    await exporter.collect(
        application_id,
        include_keys=include_keys,
        filter_profile=filter_profile,
        filter_tag=filter_tag,
        filter_activity=filter_activity,
    )
    return exporter.render(fmt)
