"""Map upload headers onto logical device fields and tag columns.

Headers are matched case-insensitively against COLUMN_ALIASES. A header
starting with ``tag_`` carries a device tag named by the rest of the header.
An explicit mapping ({header: logical field}) supplied by the caller takes
precedence over the automatic one.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field

import structlog

from ..constants import COLUMN_ALIASES, STANDARD_FIELDS, TAG_COLUMN_PREFIX
from ..models.rows import ParsedRow

logger = structlog.get_logger(__name__)


def _normalize_header(header: str) -> str:
    return " ".join(header.strip().lower().split())


def tag_name_from_header(header: str) -> str | None:
    """Return the tag name of a ``tag_<name>`` header, or None."""
    stripped = header.strip()
    if stripped.lower().startswith(TAG_COLUMN_PREFIX) and len(stripped) > len(TAG_COLUMN_PREFIX):
        return stripped[len(TAG_COLUMN_PREFIX) :].strip() or None
    return None


def auto_map_columns(headers: Iterable[str]) -> dict[str, str]:
    """
    Guess the logical field behind each header.

    Args:
        headers: Column names from the upload

    Returns:
        Header -> logical field. Tag columns map to ``tag_<name>``; headers
        that match nothing are left out.
    """
    mapping: dict[str, str] = {}
    claimed: set[str] = set()

    for header in headers:
        tag_name = tag_name_from_header(header)
        if tag_name:
            mapping[header] = f"{TAG_COLUMN_PREFIX}{tag_name}"
            continue

        normalized = _normalize_header(header)
        for logical, aliases in COLUMN_ALIASES.items():
            if normalized in aliases or normalized == logical.lower():
                if logical in claimed:
                    logger.warning(
                        "Column ignored, field already mapped", header=header, field=logical
                    )
                else:
                    mapping[header] = logical
                    claimed.add(logical)
                break

    return mapping


@dataclass(frozen=True)
class ColumnMapping:
    """
    Resolved header layout of an upload.

    Attributes:
        fields: Logical field -> header holding it
        tags: Tag name -> header holding it
    """

    fields: dict[str, str] = field(default_factory=dict)
    tags: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_headers(
        cls, headers: Iterable[str], explicit: dict[str, str] | None = None
    ) -> "ColumnMapping":
        """
        Build the mapping for a header row.

        Args:
            headers: Column names from the upload
            explicit: Optional header -> logical field overrides

        Returns:
            ColumnMapping
        """
        headers = list(headers)
        combined = auto_map_columns(headers)

        if explicit:
            overridden = set(explicit.values())
            # A field mapped explicitly must not also be claimed by an automatic guess
            combined = {h: f for h, f in combined.items() if f not in overridden}
            combined.update(explicit)

        fields: dict[str, str] = {}
        tags: dict[str, str] = {}
        for header, logical in combined.items():
            if logical in STANDARD_FIELDS:
                fields[logical] = header
            elif logical.startswith(TAG_COLUMN_PREFIX):
                tags[logical[len(TAG_COLUMN_PREFIX) :]] = header
            else:
                logger.warning("Unknown logical field in mapping", header=header, field=logical)

        logger.debug("Column mapping resolved", fields=fields, tags=sorted(tags))
        return cls(fields=fields, tags=tags)

    def value(self, row: ParsedRow, logical: str) -> str:
        """Cell value of a logical field ("" when the column is absent)."""
        header = self.fields.get(logical)
        return row.get(header) if header is not None else ""

    def tag_values(self, row: ParsedRow) -> dict[str, str]:
        """Non-empty tag cells of a row."""
        values = {}
        for tag, header in self.tags.items():
            value = row.get(header)
            if value:
                values[tag] = value
        return values
