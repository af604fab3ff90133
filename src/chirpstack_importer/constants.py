"""Named constants for the ChirpStack device importer."""

# -----------------------------------------------------------------------------
# Identifier formats
# -----------------------------------------------------------------------------

# DevEUI is a 64-bit identifier rendered as hex
DEV_EUI_LENGTH: int = 16

# AppKey (and NwkKey for LoRaWAN 1.0.x) is a 128-bit AES key rendered as hex
APP_KEY_LENGTH: int = 32

HEX_DIGITS: frozenset[str] = frozenset("0123456789abcdefABCDEF")

# -----------------------------------------------------------------------------
# Logical device fields
# -----------------------------------------------------------------------------

DEV_EUI_FIELD = "devEui"
APP_KEY_FIELD = "appKey"
NAME_FIELD = "name"
DESCRIPTION_FIELD = "description"
DEVICE_PROFILE_FIELD = "deviceProfileId"

STANDARD_FIELDS: frozenset[str] = frozenset(
    {DEV_EUI_FIELD, APP_KEY_FIELD, NAME_FIELD, DESCRIPTION_FIELD, DEVICE_PROFILE_FIELD}
)

# Columns carrying a device tag are named "tag_<tag name>"
TAG_COLUMN_PREFIX = "tag_"

# Header aliases, compared lower-cased with surrounding whitespace removed
COLUMN_ALIASES: dict[str, frozenset[str]] = {
    DEV_EUI_FIELD: frozenset({"deveui", "dev_eui", "dev eui", "device_eui", "dev-eui"}),
    APP_KEY_FIELD: frozenset({"appkey", "app_key", "app key", "application_key", "app-key"}),
    NAME_FIELD: frozenset({"name", "nom", "device_name", "devicename"}),
    DESCRIPTION_FIELD: frozenset({"description", "desc"}),
    DEVICE_PROFILE_FIELD: frozenset(
        {"device_profile_id", "deviceprofileid", "device_profile", "profile_id"}
    ),
}

# -----------------------------------------------------------------------------
# Upload parsing
# -----------------------------------------------------------------------------

# Candidate separators in tie-break order: the first one wins on equal counts
SEPARATOR_CANDIDATES: tuple[str, ...] = (",", ";", "\t")

# ZIP local file header, the container used by XLSX workbooks
XLSX_MAGIC: bytes = b"PK\x03\x04"

DEFAULT_MAX_UPLOAD_BYTES: int = 10 * 1024 * 1024

# Separator written by the exporter
EXPORT_SEPARATOR = ";"

# -----------------------------------------------------------------------------
# Registry API
# -----------------------------------------------------------------------------

DEFAULT_PAGE_SIZE: int = 100

# Upper bound on pages fetched by a single listing
MAX_PAGES: int = 10_000

DEFAULT_MAX_CONCURRENCY: int = 8

DEFAULT_CALL_TIMEOUT: float = 30.0

# Consecutive Unreachable failures that stop further dispatch in a run
DEFAULT_UNREACHABLE_THRESHOLD: int = 5

# -----------------------------------------------------------------------------
# Undo retention
# -----------------------------------------------------------------------------

DEFAULT_UNDO_RETENTION_SECONDS: int = 24 * 60 * 60

DEFAULT_UNDO_MAX_RUNS: int = 100
