"""
Entity operations and batches.

A ``TableOperation`` describes one entity-level request; a
``TableBatchOperation`` is an ordered group of them submitted atomically
against a single partition.
"""

import base64
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterator, List, Optional, Sequence
from uuid import UUID

from tablestorage.codec import EntityLike, record_type_of, to_entity
from tablestorage.exceptions import ErrorKind, InvalidBatchError, TableStorageError
from tablestorage.models import Entity
from tablestorage.sas import TableSasPermissions


MAX_BATCH_OPERATIONS = 100
MAX_BATCH_SIZE_BYTES = 4 * 1024 * 1024

# Fixed per-operation envelope (changeset boundary, request line, headers)
_OPERATION_OVERHEAD_BYTES = 512


class OperationType(str, Enum):
    """Entity-level operation kinds."""
    INSERT = "insert"
    MERGE = "merge"
    REPLACE = "replace"
    INSERT_OR_MERGE = "insert_or_merge"
    INSERT_OR_REPLACE = "insert_or_replace"
    DELETE = "delete"
    RETRIEVE = "retrieve"

    @property
    def is_write(self) -> bool:
        return self != OperationType.RETRIEVE

    @property
    def uses_etag(self) -> bool:
        """Operations that honour If-Match."""
        return self in (OperationType.MERGE, OperationType.REPLACE, OperationType.DELETE)

    @property
    def required_permissions(self) -> TableSasPermissions:
        """SAS permissions the service demands for this operation."""
        return _REQUIRED_PERMISSIONS[self]


_REQUIRED_PERMISSIONS = {
    OperationType.INSERT: TableSasPermissions.ADD,
    OperationType.MERGE: TableSasPermissions.UPDATE,
    OperationType.REPLACE: TableSasPermissions.UPDATE,
    OperationType.INSERT_OR_MERGE: TableSasPermissions.ADD | TableSasPermissions.UPDATE,
    OperationType.INSERT_OR_REPLACE: TableSasPermissions.ADD | TableSasPermissions.UPDATE,
    OperationType.DELETE: TableSasPermissions.DELETE,
    OperationType.RETRIEVE: TableSasPermissions.QUERY,
}


@dataclass
class TableOperation:
    """
    One entity-level operation.

    Attributes:
        operation_type: What to do
        entity: Encoded entity (for RETRIEVE only the keys are meaningful)
        record_type: Type results are decoded into
        select: Projection for RETRIEVE
    """
    operation_type: OperationType
    entity: Entity
    record_type: type = Entity
    select: Optional[List[str]] = None

    @property
    def partition_key(self) -> str:
        return self.entity.PartitionKey

    @property
    def row_key(self) -> str:
        return self.entity.RowKey

    @property
    def etag(self) -> Optional[str]:
        """If-Match value; None means unconditional."""
        return self.entity.etag or None

    @classmethod
    def _write(cls, operation_type: OperationType, obj: EntityLike) -> "TableOperation":
        return cls(operation_type, to_entity(obj), record_type_of(obj))

    @classmethod
    def insert(cls, obj: EntityLike) -> "TableOperation":
        return cls._write(OperationType.INSERT, obj)

    @classmethod
    def merge(cls, obj: EntityLike) -> "TableOperation":
        return cls._write(OperationType.MERGE, obj)

    @classmethod
    def replace(cls, obj: EntityLike) -> "TableOperation":
        return cls._write(OperationType.REPLACE, obj)

    @classmethod
    def insert_or_merge(cls, obj: EntityLike) -> "TableOperation":
        return cls._write(OperationType.INSERT_OR_MERGE, obj)

    @classmethod
    def insert_or_replace(cls, obj: EntityLike) -> "TableOperation":
        return cls._write(OperationType.INSERT_OR_REPLACE, obj)

    @classmethod
    def delete(cls, obj: EntityLike) -> "TableOperation":
        """
        Delete an entity.

        The entity must carry an etag; pass ``'*'`` to delete regardless of
        version.

        Raises:
            ValueError: If the entity has no etag
        """
        operation = cls._write(OperationType.DELETE, obj)
        if not operation.entity.etag:
            raise ValueError("Delete requires an ETag; use '*' to delete unconditionally")
        return operation

    @classmethod
    def retrieve(
        cls,
        partition_key: str,
        row_key: str,
        record_type: type = Entity,
        select: Optional[List[str]] = None,
    ) -> "TableOperation":
        entity = to_entity({"PartitionKey": partition_key, "RowKey": row_key})
        return cls(OperationType.RETRIEVE, entity, record_type, select)


@dataclass
class TableResult:
    """
    Outcome of one operation.

    Attributes:
        operation_type: Operation that produced the result
        result: Decoded record (None for deletes and absent retrieves)
        etag: New etag for writes, current etag for retrieves
        status_code: HTTP-equivalent status
        error: Expected failure reported as a value rather than raised
    """
    operation_type: OperationType
    result: Any = None
    etag: Optional[str] = None
    status_code: int = 200
    error: Optional[TableStorageError] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        return self.error.kind if self.error else None


def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(value).decode("ascii")
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    raise TypeError(f"Cannot serialise {type(value).__name__}")


def encoded_size(operation: TableOperation) -> int:
    """Approximate wire size of one operation inside a batch."""
    body = json.dumps(operation.entity.to_dict(), default=_json_default)
    return len(body.encode("utf-8")) + _OPERATION_OVERHEAD_BYTES


@dataclass
class TableBatchOperation:
    """
    Ordered group of operations committed all-or-nothing.

    Invariants (checked by ``validate``):
        - 1 to 100 operations
        - a single partition key
        - a retrieve must be the only operation
        - each entity appears at most once
        - encoded size of at most 4 MiB
    """
    operations: List[TableOperation] = field(default_factory=list)

    def add(self, operation: TableOperation) -> "TableBatchOperation":
        self.operations.append(operation)
        return self

    def insert(self, obj: EntityLike) -> "TableBatchOperation":
        return self.add(TableOperation.insert(obj))

    def merge(self, obj: EntityLike) -> "TableBatchOperation":
        return self.add(TableOperation.merge(obj))

    def replace(self, obj: EntityLike) -> "TableBatchOperation":
        return self.add(TableOperation.replace(obj))

    def insert_or_merge(self, obj: EntityLike) -> "TableBatchOperation":
        return self.add(TableOperation.insert_or_merge(obj))

    def insert_or_replace(self, obj: EntityLike) -> "TableBatchOperation":
        return self.add(TableOperation.insert_or_replace(obj))

    def delete(self, obj: EntityLike) -> "TableBatchOperation":
        return self.add(TableOperation.delete(obj))

    def retrieve(self, partition_key: str, row_key: str, record_type: type = Entity) -> "TableBatchOperation":
        return self.add(TableOperation.retrieve(partition_key, row_key, record_type))

    @property
    def partition_key(self) -> Optional[str]:
        return self.operations[0].partition_key if self.operations else None

    @property
    def required_permissions(self) -> TableSasPermissions:
        permissions = TableSasPermissions.NONE
        for operation in self.operations:
            permissions |= operation.operation_type.required_permissions
        return permissions

    def validate(self) -> None:
        """
        Check the batch invariants.

        Raises:
            InvalidBatchError: On the first violated invariant
        """
        validate_batch(self.operations)

    def __iter__(self) -> Iterator[TableOperation]:
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self.operations)


def validate_batch(operations: Sequence[TableOperation]) -> None:
    """
    Check batch invariants before dispatch.

    Args:
        operations: Operations in submission order

    Raises:
        InvalidBatchError: On the first violated invariant
    """
    if not operations:
        raise InvalidBatchError("A batch must contain at least one operation")

    if len(operations) > MAX_BATCH_OPERATIONS:
        raise InvalidBatchError(
            f"A batch may contain at most {MAX_BATCH_OPERATIONS} operations, got {len(operations)}",
            details={"count": len(operations)},
        )

    retrieves = [op for op in operations if op.operation_type == OperationType.RETRIEVE]
    if retrieves and len(operations) > 1:
        raise InvalidBatchError("A batch containing a retrieve must contain only that retrieve")

    partition_key = operations[0].partition_key
    seen = set()
    total_size = 0
    for index, operation in enumerate(operations):
        if operation.partition_key != partition_key:
            raise InvalidBatchError(
                f"All operations in a batch must share PartitionKey '{partition_key}', "
                f"operation {index} uses '{operation.partition_key}'",
                details={"index": index},
            )
        if operation.row_key in seen:
            raise InvalidBatchError(
                f"Entity with RowKey '{operation.row_key}' appears more than once in the batch",
                details={"index": index},
            )
        seen.add(operation.row_key)
        total_size += encoded_size(operation)

    if total_size > MAX_BATCH_SIZE_BYTES:
        raise InvalidBatchError(
            f"Batch payload of {total_size} bytes exceeds {MAX_BATCH_SIZE_BYTES} bytes",
            details={"size": total_size},
        )
