"""
Pydantic models for tables and entities.

Defines the generic property bag exchanged with the service and the table
naming rules.
"""

import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator, ConfigDict


SYSTEM_PROPERTIES = frozenset({"PartitionKey", "RowKey", "Timestamp", "etag", "odata.etag"})

# Characters the service rejects in PartitionKey / RowKey values
_DISALLOWED_KEY_CHARS = re.compile(r"[/\\#?\x00-\x1f\x7f-\x9f]")


class TableNameValidator:
    """Validates table naming rules."""

    @staticmethod
    def validate(name: str) -> tuple[bool, Optional[str]]:
        """
        Validate table name.

        Rules:
        - 3-63 characters
        - Alphanumeric only
        - Must start with a letter
        - Case-insensitive (stored as-is but compared case-insensitively)

        Args:
            name: Table name to validate

        Returns:
            Tuple of (is_valid, error_message)
        """
        if not name:
            return False, "Table name cannot be empty"

        if len(name) < 3 or len(name) > 63:
            return False, f"Table name must be between 3 and 63 characters, got {len(name)}"

        if not re.match(r"^[A-Za-z][A-Za-z0-9]*$", name):
            return False, "Table name must start with a letter and contain only alphanumeric characters"

        return True, None


class Table(BaseModel):
    """Table model."""
    model_config = ConfigDict(extra='forbid')

    table_name: str = Field(..., min_length=3, max_length=63)

    @field_validator('table_name')
    @classmethod
    def validate_table_name(cls, v: str) -> str:
        """Validate table name."""
        is_valid, error = TableNameValidator.validate(v)
        if not is_valid:
            raise ValueError(error)
        return v


class Entity(BaseModel):
    """
    Generic entity (property bag).

    Entities must have PartitionKey and RowKey (system properties).
    Timestamp and ETag are assigned by the service on every write.
    Custom properties are kept in ``model_extra``.
    """
    model_config = ConfigDict(extra='allow', arbitrary_types_allowed=True, populate_by_name=True)

    PartitionKey: str = Field(..., description="Partition key for the entity")
    RowKey: str = Field(..., description="Row key for the entity")
    Timestamp: Optional[datetime] = Field(
        default=None,
        description="Last modification timestamp"
    )
    etag: str = Field(
        default="",
        description="ETag for optimistic concurrency",
        alias="odata.etag"
    )

    @field_validator('PartitionKey', 'RowKey')
    @classmethod
    def validate_keys(cls, v: str) -> str:
        """Validate that keys are non-empty and contain no reserved characters."""
        if not v or not v.strip():
            raise ValueError("PartitionKey and RowKey cannot be empty")
        if _DISALLOWED_KEY_CHARS.search(v):
            raise ValueError("PartitionKey and RowKey cannot contain '/', '\\', '#', '?' or control characters")
        return v

    @property
    def key(self) -> tuple[str, str]:
        """(PartitionKey, RowKey) pair."""
        return self.PartitionKey, self.RowKey

    def get_custom_properties(self) -> Dict[str, Any]:
        """Get all custom properties (non-system properties)."""
        if self.model_extra is None:
            return {}
        return {k: v for k, v in self.model_extra.items() if k not in SYSTEM_PROPERTIES}

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert entity to a flat dictionary.

        Returns:
            Dictionary with system and custom properties
        """
        result: Dict[str, Any] = {
            "PartitionKey": self.PartitionKey,
            "RowKey": self.RowKey,
        }
        if self.Timestamp is not None:
            result["Timestamp"] = self.Timestamp.isoformat().replace('+00:00', 'Z')
        if self.etag:
            result["odata.etag"] = self.etag

        result.update(self.get_custom_properties())
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Entity":
        """
        Create entity from dictionary.

        Args:
            data: Dictionary with entity data

        Returns:
            Entity instance
        """
        timestamp = data.get("Timestamp")
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp.replace('Z', '+00:00'))

        custom_props = {k: v for k, v in data.items() if k not in SYSTEM_PROPERTIES}

        return cls(
            PartitionKey=data.get("PartitionKey", ""),
            RowKey=data.get("RowKey", ""),
            Timestamp=timestamp,
            etag=data.get("odata.etag", data.get("etag")) or "",
            **custom_props
        )

    @staticmethod
    def generate_etag(timestamp: Optional[datetime] = None) -> str:
        """
        Generate ETag for entity.

        Args:
            timestamp: Optional timestamp to use

        Returns:
            ETag string in service format
        """
        if timestamp is None:
            timestamp = datetime.now(timezone.utc)

        # W/"datetime'2025-12-04T10%3A30%3A00.123456Z'"
        ts_str = timestamp.isoformat(timespec='microseconds').replace('+00:00', 'Z')
        ts_str = ts_str.replace(':', '%3A')
        return f'W/"datetime\'{ts_str}\'"'
