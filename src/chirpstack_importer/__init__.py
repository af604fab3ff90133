"""ChirpStack Device Importer - bulk import, migration and undo for LoRaWAN devices."""

from .cli import app
from .config import ImporterConfig

__version__ = "0.1.0"
__all__ = ["app", "ImporterConfig"]
