"""Tabular upload parser.

Overview:
--------
TabularParser decodes an uploaded payload into ordered ParsedRow records keyed
by the header row's column names. Two containers are supported:

1. Delimited text - UTF-8 (an optional BOM is dropped). The separator is
   inferred from the first non-blank line: each candidate (comma, semicolon,
   tab) splits that line and the one yielding the most columns wins. Ties
   favour the earlier candidate, so comma beats semicolon beats tab.

2. XLSX workbook - the active worksheet, read with openpyxl. Cells are turned
   into strings (None becomes "", integral floats lose their ".0").

Format Detection:
----------------
An explicit declared format wins. Otherwise the ZIP local file header magic
selects XLSX and anything else is treated as delimited text.

Row Rules:
---------
- The first non-blank record is the header; cells are stripped.
- Blank records are skipped and do not consume an index.
- Ragged rows follow RaggedRowPolicy: PAD pads short rows with "" and
  truncates long ones, ERROR raises FormatError naming the line.

Error Handling:
--------------
- FormatError: undecodable bytes, unreadable workbook, missing header
"""

import csv
import io
import zipfile
from datetime import date, datetime, time
from enum import Enum
from pathlib import PurePath
from typing import Any

import structlog
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from ..config import RaggedRowPolicy
from ..constants import SEPARATOR_CANDIDATES, XLSX_MAGIC
from ..models.rows import ParsedRow
from ..utils.exceptions import FormatError

logger = structlog.get_logger(__name__)


class UploadFormat(str, Enum):
    """Container format of an upload."""

    CSV = "csv"
    XLSX = "xlsx"


_SUFFIX_FORMATS = {
    ".csv": UploadFormat.CSV,
    ".txt": UploadFormat.CSV,
    ".tsv": UploadFormat.CSV,
    ".xlsx": UploadFormat.XLSX,
    ".xlsm": UploadFormat.XLSX,
}


def format_from_filename(filename: str | PurePath) -> UploadFormat | None:
    """
    Map a filename suffix to an upload format.

    Args:
        filename: Name or path of the uploaded file

    Returns:
        UploadFormat, or None when the suffix is not recognised
    """
    return _SUFFIX_FORMATS.get(PurePath(filename).suffix.lower())


def detect_format(data: bytes) -> UploadFormat:
    """Infer the container from the leading bytes."""
    if data.startswith(XLSX_MAGIC):
        return UploadFormat.XLSX
    return UploadFormat.CSV


def detect_separator(text: str) -> str:
    """
    Choose the field separator for delimited text.

    Args:
        text: Decoded upload content

    Returns:
        The candidate producing the most columns on the first non-blank line
    """
    sample = next((line for line in text.splitlines() if line.strip()), "")

    best = SEPARATOR_CANDIDATES[0]
    best_count = 0
    for candidate in SEPARATOR_CANDIDATES:
        count = len(next(csv.reader([sample], delimiter=candidate), []))
        # Strict comparison keeps the earlier candidate on ties
        if count > best_count:
            best, best_count = candidate, count

    logger.debug("Separator detected", separator=repr(best), columns=best_count)
    return best


def cell_to_str(value: Any) -> str:
    """
    Convert a spreadsheet cell value to the string a CSV export would hold.

    Args:
        value: Raw value from openpyxl

    Returns:
        Stripped string
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime | date | time):
        return value.isoformat()
    return str(value).strip()


class TabularParser:
    """
    Parse uploads into ParsedRow records.

    Attributes:
        ragged_rows: Policy for rows whose width differs from the header
        headers: Column names of the last parsed upload
        separator: Separator used for the last delimited upload
    """

    def __init__(self, ragged_rows: RaggedRowPolicy = RaggedRowPolicy.PAD) -> None:
        """
        Initialize parser.

        Args:
            ragged_rows: PAD (default) or ERROR
        """
        self.ragged_rows = RaggedRowPolicy(ragged_rows)
        self.headers: list[str] = []
        self.separator: str | None = None
        self.ragged_count = 0

    def parse(
        self, data: bytes, declared_format: UploadFormat | str | None = None
    ) -> list[ParsedRow]:
        """
        Parse an upload into ordered rows.

        Args:
            data: Raw upload bytes
            declared_format: "csv", "xlsx" or None to infer from content

        Returns:
            List of ParsedRow with consecutive indices starting at 0

        Raises:
            FormatError: If the payload cannot be decoded or has no header row
        """
        if declared_format is None:
            fmt = detect_format(data)
        else:
            try:
                fmt = UploadFormat(str(declared_format).lower())
            except ValueError as e:
                raise FormatError(f"Unsupported upload format: {declared_format}") from e

        self.headers = []
        self.separator = None
        self.ragged_count = 0

        logger.info("Starting upload parse", format=fmt.value, size=len(data))

        if fmt == UploadFormat.XLSX:
            records = self._read_xlsx(data)
        else:
            records = self._read_delimited(data)

        rows = self._build_rows(records)

        logger.info(
            "Upload parse complete",
            rows_parsed=len(rows),
            columns=len(self.headers),
            ragged_rows=self.ragged_count,
        )
        return rows

    def _read_delimited(self, data: bytes) -> list[tuple[int, list[str]]]:
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise FormatError(f"Upload is not valid UTF-8 text: {e.reason}") from e

        self.separator = detect_separator(text)
        reader = csv.reader(io.StringIO(text, newline=""), delimiter=self.separator)

        records: list[tuple[int, list[str]]] = []
        try:
            for record in reader:
                records.append((reader.line_num, [cell.strip() for cell in record]))
        except csv.Error as e:
            raise FormatError(f"Malformed delimited text: {e}", line_number=reader.line_num) from e
        return records

    def _read_xlsx(self, data: bytes) -> list[tuple[int, list[str]]]:
        try:
            workbook = load_workbook(filename=io.BytesIO(data), read_only=True, data_only=True)
        except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError, ValueError) as e:
            raise FormatError(f"Upload is not a readable XLSX workbook: {e}") from e

        try:
            sheet = workbook.active
            if sheet is None:
                raise FormatError("Workbook has no active worksheet")
            return [
                (row_number, [cell_to_str(value) for value in values])
                for row_number, values in enumerate(sheet.iter_rows(values_only=True), start=1)
            ]
        finally:
            workbook.close()

    def _build_rows(self, records: list[tuple[int, list[str]]]) -> list[ParsedRow]:
        """
        Turn raw records into ParsedRows using the first non-blank record as header.

        Args:
            records: (line number, cells) pairs in file order

        Returns:
            ParsedRow list

        Raises:
            FormatError: No header, or a ragged row under the ERROR policy
        """
        data_records = iter(r for r in records if any(cell for cell in r[1]))

        header_record = next(data_records, None)
        if header_record is None:
            raise FormatError("Upload has no header row")

        header_line, header_cells = header_record
        # Trailing empty header cells come from trailing separators or unused sheet columns
        while header_cells and not header_cells[-1]:
            header_cells = header_cells[:-1]
        self.headers = [
            cell or f"column_{position}" for position, cell in enumerate(header_cells, start=1)
        ]

        if len(set(self.headers)) != len(self.headers):
            logger.warning("Duplicate column names, last one wins", line=header_line)

        width = len(self.headers)
        rows: list[ParsedRow] = []

        for line_number, cells in data_records:
            if len(cells) != width:
                extra = cells[width:]
                # Extra cells that are all empty do not make a row ragged
                if len(cells) < width or any(extra):
                    self.ragged_count += 1
                    if self.ragged_rows == RaggedRowPolicy.ERROR:
                        raise FormatError(
                            f"Row has {len(cells)} fields, header has {width}",
                            line_number=line_number,
                        )
                    logger.warning(
                        "Column count mismatch",
                        line=line_number,
                        expected=width,
                        actual=len(cells),
                    )
                cells = cells[:width] + [""] * (width - len(cells))

            fields = dict(zip(self.headers, cells, strict=True))
            rows.append(ParsedRow(index=len(rows), fields=fields))

        return rows


def parse_upload(
    data: bytes,
    declared_format: UploadFormat | str | None = None,
    ragged_rows: RaggedRowPolicy = RaggedRowPolicy.PAD,
) -> list[ParsedRow]:
    """Parse an upload with a one-off TabularParser."""
    return TabularParser(ragged_rows=ragged_rows).parse(data, declared_format)
