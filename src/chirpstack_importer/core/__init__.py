"""Core components of the ChirpStack device importer.

This package contains upload parsing, column mapping and device export.
"""

from .column_mapping import ColumnMapping, auto_map_columns
from .exporter import ActivityFilter, DeviceExporter, ExportFormat, export_devices
from .parser import TabularParser, UploadFormat, detect_separator, parse_upload

__all__ = [
    "ActivityFilter",
    "ColumnMapping",
    "DeviceExporter",
    "ExportFormat",
    "TabularParser",
    "UploadFormat",
    "auto_map_columns",
    "detect_separator",
    "export_devices",
    "parse_upload",
]
