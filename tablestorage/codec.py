"""
Entity codec.

Maps strongly-typed records (``TableEntity`` subclasses) to and from the
generic ``Entity`` property bag. Both directions are pure functions over the
record's declared schema.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional, Type, TypeVar, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_pascal

from tablestorage.exceptions import SchemaMismatchError
from tablestorage.models import Entity


INT32_MIN, INT32_MAX = -(2 ** 31), 2 ** 31 - 1
INT64_MIN, INT64_MAX = -(2 ** 63), 2 ** 63 - 1


class EdmType(Enum):
    """Entity Data Model primitive types supported as entity properties."""
    STRING = "Edm.String"
    INT32 = "Edm.Int32"
    INT64 = "Edm.Int64"
    DOUBLE = "Edm.Double"
    BOOLEAN = "Edm.Boolean"
    DATETIME = "Edm.DateTime"
    GUID = "Edm.Guid"
    BINARY = "Edm.Binary"

    def is_numeric(self) -> bool:
        """Check if type is numeric (Int32, Int64, Double)."""
        return self in (EdmType.INT32, EdmType.INT64, EdmType.DOUBLE)


def edm_type_of(value: Any) -> EdmType:
    """
    Classify a Python value as an EDM type.

    Args:
        value: Property value

    Returns:
        The EDM type used to store the value

    Raises:
        SchemaMismatchError: If the value has no EDM representation
    """
    # bool is a subclass of int
    if isinstance(value, bool):
        return EdmType.BOOLEAN
    if isinstance(value, int):
        if INT32_MIN <= value <= INT32_MAX:
            return EdmType.INT32
        if INT64_MIN <= value <= INT64_MAX:
            return EdmType.INT64
        raise SchemaMismatchError(f"Integer {value} is outside the Int64 range")
    if isinstance(value, float):
        return EdmType.DOUBLE
    if isinstance(value, str):
        return EdmType.STRING
    if isinstance(value, datetime):
        return EdmType.DATETIME
    if isinstance(value, UUID):
        return EdmType.GUID
    if isinstance(value, (bytes, bytearray)):
        return EdmType.BINARY
    raise SchemaMismatchError(
        f"Unsupported property type: {type(value).__name__}",
        details={"type": type(value).__name__},
    )


class TableEntity(BaseModel):
    """
    Base class for typed records.

    Field names are mapped to PascalCase property names, so ``phone_number``
    is stored as ``PhoneNumber``.
    """
    model_config = ConfigDict(alias_generator=to_pascal, populate_by_name=True, extra='ignore')

    partition_key: str
    row_key: str
    timestamp: Optional[datetime] = None
    etag: Optional[str] = Field(default=None, alias="odata.etag")


R = TypeVar("R")

EntityLike = Union[TableEntity, Entity, Mapping[str, Any]]


def _check_keys(partition_key: Any, row_key: Any) -> None:
    for name, value in (("PartitionKey", partition_key), ("RowKey", row_key)):
        if not isinstance(value, str) or not value:
            raise SchemaMismatchError(
                f"{name} must be a non-empty string, got {value!r}",
                details={"property": name},
            )


def _check_properties(properties: Mapping[str, Any]) -> None:
    for name, value in properties.items():
        try:
            edm_type_of(value)
        except SchemaMismatchError as e:
            raise SchemaMismatchError(
                f"Property '{name}': {e.message}",
                details={"property": name, **e.details},
            ) from e


def encode(record: TableEntity) -> Entity:
    """
    Encode a typed record into a property bag.

    Args:
        record: Record to encode

    Returns:
        Entity carrying the record's keys, etag, timestamp and properties

    Raises:
        SchemaMismatchError: If keys are missing or a property is unsupported
    """
    data = record.model_dump(by_alias=True, exclude={"timestamp", "etag"})
    partition_key = data.pop("PartitionKey", None)
    row_key = data.pop("RowKey", None)
    _check_keys(partition_key, row_key)

    # The service has no null; absent and None are the same thing
    properties = {k: v for k, v in data.items() if v is not None}
    _check_properties(properties)

    try:
        return Entity(
            PartitionKey=partition_key,
            RowKey=row_key,
            Timestamp=record.timestamp,
            etag=record.etag or "",
            **properties,
        )
    except ValidationError as e:
        raise SchemaMismatchError(str(e), details={"errors": e.errors()}) from e


def decode(entity: Entity, record_type: Type[R]) -> R:
    """
    Decode a property bag into a typed record.

    Args:
        entity: Entity returned by the service
        record_type: ``Entity`` or a ``TableEntity`` subclass

    Returns:
        Record instance

    Raises:
        SchemaMismatchError: If the entity does not satisfy the record schema
    """
    if record_type is Entity:
        return entity
    if not (isinstance(record_type, type) and issubclass(record_type, TableEntity)):
        raise TypeError(f"Cannot decode into {record_type!r}")

    data = dict(entity.get_custom_properties())
    data.update(
        PartitionKey=entity.PartitionKey,
        RowKey=entity.RowKey,
        Timestamp=entity.Timestamp,
    )
    data["odata.etag"] = entity.etag or None
    try:
        return record_type.model_validate(data)
    except ValidationError as e:
        raise SchemaMismatchError(
            f"Entity {entity.PartitionKey}/{entity.RowKey} does not match {record_type.__name__}",
            details={"errors": e.errors(include_url=False)},
        ) from e


def to_entity(obj: EntityLike) -> Entity:
    """
    Normalise a record, entity or mapping into an ``Entity``.

    Args:
        obj: Value to convert

    Returns:
        A new Entity instance

    Raises:
        SchemaMismatchError: If the value cannot be represented as an entity
    """
    if isinstance(obj, TableEntity):
        return encode(obj)
    if isinstance(obj, Entity):
        _check_properties(obj.get_custom_properties())
        return obj.model_copy(deep=True)
    if isinstance(obj, Mapping):
        _check_keys(obj.get("PartitionKey"), obj.get("RowKey"))
        entity_data = {k: v for k, v in obj.items() if v is not None}
        try:
            entity = Entity.from_dict(entity_data)
        except (ValidationError, ValueError) as e:
            raise SchemaMismatchError(str(e)) from e
        _check_properties(entity.get_custom_properties())
        return entity
    raise SchemaMismatchError(f"Cannot convert {type(obj).__name__} to an entity")


def record_type_of(obj: EntityLike) -> type:
    """Record type results for ``obj`` should be decoded into."""
    return type(obj) if isinstance(obj, TableEntity) else Entity


def with_metadata(record: R, written: Entity) -> R:
    """
    Copy service-assigned metadata (etag, timestamp) onto a record.

    Args:
        record: Record (or entity/mapping) the caller submitted
        written: Entity returned by the service for the write

    Returns:
        Updated copy of the record; mappings come back as ``Entity``
    """
    if isinstance(record, TableEntity):
        return record.model_copy(update={"etag": written.etag or None, "timestamp": written.Timestamp})
    entity = to_entity(record)
    entity.etag = written.etag
    entity.Timestamp = written.Timestamp
    return entity
