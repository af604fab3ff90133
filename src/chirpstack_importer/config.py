"""Configuration management for the ChirpStack device importer."""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import yaml

from .constants import (
    DEFAULT_CALL_TIMEOUT,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_MAX_UPLOAD_BYTES,
    DEFAULT_UNDO_MAX_RUNS,
    DEFAULT_UNDO_RETENTION_SECONDS,
    DEFAULT_UNREACHABLE_THRESHOLD,
)
from .utils.exceptions import ConfigurationError


class RaggedRowPolicy(str, Enum):
    """What to do with data rows whose width differs from the header."""

    PAD = "pad"  # Pad short rows with "", truncate long rows
    ERROR = "error"  # Reject the whole upload


@dataclass
class RegistryConfig:
    """ChirpStack REST API connection configuration."""

    base_url: str
    api_token: str
    tenant_id: str | None = None
    timeout: float = 30.0
    verify_ssl: bool = True
    max_connections: int = 20  # Maximum total connections
    max_keepalive: int = 10  # Maximum keep-alive connections


@dataclass
class ExecutionConfig:
    """Concurrency and failure-isolation settings for registry work."""

    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    call_timeout: float = DEFAULT_CALL_TIMEOUT
    unreachable_threshold: int = DEFAULT_UNREACHABLE_THRESHOLD


@dataclass
class UploadConfig:
    """Upload boundary settings."""

    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    ragged_rows: RaggedRowPolicy = RaggedRowPolicy.PAD


@dataclass
class UndoConfig:
    """Retention of undo logs."""

    retention_seconds: int = DEFAULT_UNDO_RETENTION_SECONDS
    max_runs: int = DEFAULT_UNDO_MAX_RUNS
    changelog_path: Path | None = Path(".changelogs/changelog.db")


@dataclass
class ProfileConfig:
    """Import profile store location."""

    store_path: Path = Path("import_profiles.yaml")


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"
    file: Path | None = None


@dataclass
class ImporterConfig:
    """
    Complete configuration for the ChirpStack device importer.

    This combines all configuration sections.
    """

    registry: RegistryConfig | None = None
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    upload: UploadConfig = field(default_factory=UploadConfig)
    undo: UndoConfig = field(default_factory=UndoConfig)
    profiles: ProfileConfig = field(default_factory=ProfileConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_file(cls, config_path: Path) -> "ImporterConfig":
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to YAML config file

        Returns:
            ImporterConfig instance

        Raises:
            ConfigurationError: If the file is not valid YAML or has a bad structure
        """
        try:
            with open(config_path) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in configuration file {config_path}: {e}"
            ) from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Invalid configuration file structure in {config_path}: "
                f"expected dictionary, got {type(data).__name__}"
            )

        try:
            registry_data = data.get("registry")
            registry = RegistryConfig(**registry_data) if registry_data else None

            execution = ExecutionConfig(**data.get("execution", {}))

            upload_data = dict(data.get("upload", {}))
            if "ragged_rows" in upload_data:
                upload_data["ragged_rows"] = RaggedRowPolicy(upload_data["ragged_rows"])
            upload = UploadConfig(**upload_data)

            undo_data = dict(data.get("undo", {}))
            if undo_data.get("changelog_path"):
                undo_data["changelog_path"] = Path(undo_data["changelog_path"])
            undo = UndoConfig(**undo_data)

            profiles_data = dict(data.get("profiles", {}))
            if "store_path" in profiles_data:
                profiles_data["store_path"] = Path(profiles_data["store_path"])
            profiles = ProfileConfig(**profiles_data)

            logging_data = dict(data.get("logging", {}))
            # Convert file path string to Path if present
            if logging_data.get("file"):
                logging_data["file"] = Path(logging_data["file"])
            logging = LoggingConfig(**logging_data)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration in {config_path}: {e}") from e

        return cls(
            registry=registry,
            execution=execution,
            upload=upload,
            undo=undo,
            profiles=profiles,
            logging=logging,
        )

    def to_file(self, config_path: Path) -> None:
        """
        Save configuration to YAML file.

        Args:
            config_path: Path to save config file
        """

        def _plain(section: object) -> dict:
            return {
                k: v.value if isinstance(v, Enum) else str(v) if isinstance(v, Path) else v
                for k, v in section.__dict__.items()
                if v is not None
            }

        data = {
            "registry": _plain(self.registry) if self.registry else None,
            "execution": _plain(self.execution),
            "upload": _plain(self.upload),
            "undo": _plain(self.undo),
            "profiles": _plain(self.profiles),
            "logging": _plain(self.logging),
        }

        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    @classmethod
    def from_env(cls) -> "ImporterConfig":
        """
        Create configuration from environment variables.

        Environment variables:
            CHIRPSTACK_URL: ChirpStack REST API base URL
            CHIRPSTACK_API_TOKEN: API token
            CHIRPSTACK_TENANT_ID: Optional tenant scope for registry listings
            CHIRPSTACK_VERIFY_SSL: Set to 'false' to disable certificate checks
            IMPORT_MAX_CONCURRENCY: Maximum in-flight registry calls (default: 8)
            LOG_LEVEL: Logging level (default: INFO)
            LOG_FORMAT: console or json (default: console)

        Returns:
            ImporterConfig instance

        Raises:
            ConfigurationError: If CHIRPSTACK_URL is set but the API token is missing
        """
        registry_config = None
        url = os.getenv("CHIRPSTACK_URL")
        if url:
            token = os.environ.get("CHIRPSTACK_API_TOKEN", "")
            if not token:
                raise ConfigurationError(
                    "CHIRPSTACK_URL is set but CHIRPSTACK_API_TOKEN is missing. "
                    "Please set the API token used to authenticate against ChirpStack."
                )

            verify_ssl_str = os.environ.get("CHIRPSTACK_VERIFY_SSL", "true").lower()
            verify_ssl = verify_ssl_str not in ("false", "0", "no", "off")

            registry_config = RegistryConfig(
                base_url=url,
                api_token=token,
                tenant_id=os.environ.get("CHIRPSTACK_TENANT_ID") or None,
                verify_ssl=verify_ssl,
            )

        execution = ExecutionConfig()
        concurrency = os.environ.get("IMPORT_MAX_CONCURRENCY")
        if concurrency:
            try:
                execution.max_concurrency = int(concurrency)
            except ValueError as e:
                raise ConfigurationError(
                    f"IMPORT_MAX_CONCURRENCY must be an integer, got {concurrency!r}"
                ) from e

        logging_config = LoggingConfig(
            level=os.environ.get("LOG_LEVEL", "INFO"),
            format=os.environ.get("LOG_FORMAT", "console"),
        )

        return cls(
            registry=registry_config,
            execution=execution,
            logging=logging_config,
        )


def load_config(config_file: Path | None = None) -> ImporterConfig:
    """
    Load configuration from file or environment variables.

    Args:
        config_file: Optional path to YAML config file

    Returns:
        ImporterConfig instance

    Raises:
        ConfigurationError: If config_file is specified but doesn't exist
    """
    if config_file:
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_file}")
        return ImporterConfig.from_file(config_file)
    return ImporterConfig.from_env()
