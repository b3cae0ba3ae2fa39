"""Core module initialization."""

from .config_manager import (
    BackendType,
    ConfigManager,
    TableStorageConfig,
    TransportType,
    parse_connection_string,
)
from .logging_config import setup_logging, setup_logging_from_config

__all__ = [
    "BackendType",
    "ConfigManager",
    "TableStorageConfig",
    "TransportType",
    "parse_connection_string",
    "setup_logging",
    "setup_logging_from_config",
]
