"""
Configuration management for tablestorage.

Handles loading, validation, and access to configuration settings.
"""

import os
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional
from enum import Enum

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator, ValidationError, ConfigDict

from tablestorage.emulator.backend import DEV_ACCOUNT_KEY, DEV_ACCOUNT_NAME
from tablestorage.query import MAX_SEGMENT_SIZE
from tablestorage.sas import MAX_STORED_POLICIES

logger = logging.getLogger(__name__)

REDACTED = "***REDACTED***"
DEVELOPMENT_TABLE_ENDPOINT = f"http://127.0.0.1:10002/{DEV_ACCOUNT_NAME}"


class LogLevel(str, Enum):
    """Valid log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class BackendType(str, Enum):
    """Kind of table service behind the endpoint."""
    CLASSIC = "classic"
    COSMOS = "cosmos"


class TransportType(str, Enum):
    """How requests reach the service."""
    MEMORY = "memory"
    AZURE = "azure"


def parse_connection_string(connection_string: str) -> Dict[str, str]:
    """
    Parse a storage connection string into its settings.

    ``UseDevelopmentStorage=true`` expands to the local emulator's well-known
    account, key and endpoint.

    Args:
        connection_string: ``Key=Value`` pairs separated by ``;``

    Returns:
        Settings keyed by name (``AccountName``, ``AccountKey``, ``TableEndpoint``, ...)

    Raises:
        ValueError: If a segment is not a ``Key=Value`` pair
    """
    settings: Dict[str, str] = {}
    for segment in connection_string.strip().strip(";").split(";"):
        if not segment.strip():
            continue
        if "=" not in segment:
            raise ValueError(f"Malformed connection string segment: {segment!r}")
        key, value = segment.split("=", 1)
        settings[key.strip()] = value.strip()

    if settings.get("UseDevelopmentStorage", "").lower() == "true":
        settings.setdefault("AccountName", DEV_ACCOUNT_NAME)
        settings.setdefault("AccountKey", DEV_ACCOUNT_KEY)
        settings.setdefault("TableEndpoint", DEVELOPMENT_TABLE_ENDPOINT)
        settings.setdefault("DefaultEndpointsProtocol", "http")

    if "TableEndpoint" not in settings and "AccountName" in settings:
        protocol = settings.get("DefaultEndpointsProtocol", "https")
        suffix = settings.get("EndpointSuffix", "core.windows.net")
        settings["TableEndpoint"] = f"{protocol}://{settings['AccountName']}.table.{suffix}"

    return settings


def is_cosmos_endpoint(endpoint: Optional[str]) -> bool:
    """Whether ``endpoint`` points at a Cosmos DB Table API account."""
    return bool(endpoint) and ".table.cosmos" in endpoint.lower()


class AccountConfig(BaseModel):
    """Storage account credentials."""
    name: str = DEV_ACCOUNT_NAME
    key: str = DEV_ACCOUNT_KEY
    connection_string: Optional[str] = None
    table_endpoint: Optional[str] = None

    @model_validator(mode="after")
    def apply_connection_string(self) -> "AccountConfig":
        """Fill name, key and endpoint from the connection string when given."""
        if self.connection_string:
            settings = parse_connection_string(self.connection_string)
            self.name = settings.get("AccountName", self.name)
            self.key = settings.get("AccountKey", self.key)
            self.table_endpoint = self.table_endpoint or settings.get("TableEndpoint")
        return self

    @property
    def endpoint(self) -> str:
        return self.table_endpoint or f"https://{self.name}.table.core.windows.net"


class QueryConfig(BaseModel):
    """Query defaults."""
    segment_size: int = Field(default=MAX_SEGMENT_SIZE, ge=1, le=MAX_SEGMENT_SIZE)


class EmulatorConfig(BaseModel):
    """In-process service settings."""
    max_stored_policies: int = Field(default=MAX_STORED_POLICIES, ge=0)
    policy_activation_delay: float = Field(
        default=0.0,
        ge=0.0,
        description="Seconds before a stored access policy can authorise requests"
    )


class SamplesConfig(BaseModel):
    """Sample scenario settings."""
    table_prefix: str = "demo"
    policy_propagation_wait: float = Field(
        default=0.03,
        ge=0.0,
        description="Seconds to wait after storing an access policy"
    )

    @field_validator("table_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        if not v or not v.isalnum() or not v[0].isalpha() or len(v) > 58:
            raise ValueError("table_prefix must be 1-58 alphanumeric characters starting with a letter")
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: LogLevel = LogLevel.INFO
    format: str = "text"
    file: Optional[str] = None
    rotation_size: str = "10MB"
    rotation_count: int = 5
    module_levels: Optional[Dict[str, str]] = Field(
        default=None,
        description="Per-module log levels, e.g., {'tablestorage.segments': 'DEBUG'}"
    )


class TableStorageConfig(BaseModel):
    """Main tablestorage configuration schema."""

    version: str = Field(default="0.1.0", description="Configuration version")

    account: AccountConfig = Field(default_factory=AccountConfig)

    backend: Optional[BackendType] = Field(
        default=None,
        description="Service kind; detected from the endpoint when unset"
    )

    transport: TransportType = TransportType.MEMORY

    query: QueryConfig = Field(default_factory=QueryConfig)

    emulator: EmulatorConfig = Field(default_factory=EmulatorConfig)

    samples: SamplesConfig = Field(default_factory=SamplesConfig)

    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Validate version format."""
        parts = v.split(".")
        if len(parts) != 3:
            raise ValueError("Version must be in format x.y.z")
        for part in parts:
            if not part.isdigit():
                raise ValueError("Version components must be numeric")
        return v

    @property
    def backend_type(self) -> BackendType:
        """Configured backend, or the one implied by the endpoint."""
        if self.backend is not None:
            return BackendType(self.backend)
        if is_cosmos_endpoint(self.account.table_endpoint):
            return BackendType.COSMOS
        return BackendType.CLASSIC

    model_config = ConfigDict(use_enum_values=True)


def redact(config: TableStorageConfig) -> Dict[str, Any]:
    """Configuration as a dict with secrets replaced by a marker."""
    config_dict = config.model_dump(mode="json")
    account = config_dict.get("account", {})
    for field_name in ("key", "connection_string"):
        if account.get(field_name):
            account[field_name] = REDACTED
    return config_dict


class ConfigManager:
    """
    Manages tablestorage configuration loading and validation.

    Configuration precedence (highest to lowest):
    1. CLI arguments
    2. Environment variables (TABLESTORAGE_*)
    3. Configuration file (YAML/JSON)
    4. Defaults
    """

    def __init__(self):
        self._config: Optional[TableStorageConfig] = None
        self._config_file: Optional[Path] = None

    def load(
        self,
        config_file: Optional[str] = None,
        cli_overrides: Optional[Dict[str, Any]] = None
    ) -> TableStorageConfig:
        """
        Load and validate configuration from multiple sources.

        Args:
            config_file: Path to configuration file (YAML or JSON)
            cli_overrides: Dictionary of CLI argument overrides

        Returns:
            Validated TableStorageConfig instance

        Raises:
            ValidationError: If configuration is invalid
            FileNotFoundError: If specified config file doesn't exist
        """
        logger.info("Loading tablestorage configuration")

        config_dict: Dict[str, Any] = {}

        if config_file:
            config_dict = self._load_from_file(config_file)
            self._config_file = Path(config_file)
            logger.info(f"Loaded configuration from file: {config_file}")

        env_config = self._load_from_env()
        config_dict = self._merge_configs(config_dict, env_config)
        if env_config:
            logger.info(f"Applied {len(env_config)} environment variable overrides")

        if cli_overrides:
            config_dict = self._merge_configs(config_dict, cli_overrides)
            logger.info(f"Applied {len(cli_overrides)} CLI argument overrides")

        try:
            self._config = TableStorageConfig(**config_dict)
            logger.info("Configuration validated successfully")
            self._log_configuration()
            return self._config
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e}")
            raise

    def _load_from_file(self, file_path: str) -> Dict[str, Any]:
        """Load configuration from YAML or JSON file."""
        path = Path(file_path)

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {file_path}")

        with open(path, 'r') as f:
            if path.suffix in ['.yaml', '.yml']:
                return yaml.safe_load(f) or {}
            elif path.suffix == '.json':
                return json.load(f)
            else:
                raise ValueError(f"Unsupported config file format: {path.suffix}")

    def _load_from_env(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        config: Dict[str, Any] = {}

        # Account
        if connection_string := os.getenv("TABLESTORAGE_CONNECTION_STRING"):
            config.setdefault("account", {})["connection_string"] = connection_string
        if account_name := os.getenv("TABLESTORAGE_ACCOUNT_NAME"):
            config.setdefault("account", {})["name"] = account_name
        if account_key := os.getenv("TABLESTORAGE_ACCOUNT_KEY"):
            config.setdefault("account", {})["key"] = account_key
        if endpoint := os.getenv("TABLESTORAGE_TABLE_ENDPOINT"):
            config.setdefault("account", {})["table_endpoint"] = endpoint

        # Service selection
        if backend := os.getenv("TABLESTORAGE_BACKEND"):
            config["backend"] = backend.lower()
        if transport := os.getenv("TABLESTORAGE_TRANSPORT"):
            config["transport"] = transport.lower()

        # Query
        if segment_size := os.getenv("TABLESTORAGE_SEGMENT_SIZE"):
            config.setdefault("query", {})["segment_size"] = int(segment_size)

        # Logging configuration
        if log_level := os.getenv("TABLESTORAGE_LOG_LEVEL"):
            config.setdefault("logging", {})["level"] = log_level.upper()
        if log_file := os.getenv("TABLESTORAGE_LOG_FILE"):
            config.setdefault("logging", {})["file"] = log_file
        if log_format := os.getenv("TABLESTORAGE_LOG_FORMAT"):
            config.setdefault("logging", {})["format"] = log_format.lower()

        return config

    def _merge_configs(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two configuration dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value

        return result

    def _log_configuration(self) -> None:
        """Log the loaded configuration (with sensitive data redacted)."""
        if not self._config:
            return

        logger.debug(f"Active configuration: {json.dumps(redact(self._config), indent=2)}")

    def get_config(self) -> TableStorageConfig:
        """
        Get the loaded configuration.

        Returns:
            TableStorageConfig instance

        Raises:
            RuntimeError: If configuration hasn't been loaded
        """
        if self._config is None:
            raise RuntimeError("Configuration not loaded. Call load() first.")
        return self._config

    def reload(self) -> TableStorageConfig:
        """
        Reload configuration from the same sources.

        Returns:
            Reloaded TableStorageConfig instance
        """
        config_file = str(self._config_file) if self._config_file else None
        return self.load(config_file=config_file)
