"""
Query construction.

Builds OData ``$filter`` expressions and the three query shapes used against
a partitioned table: point query, partition scan and row-key range query.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional
from uuid import UUID

from tablestorage.codec import EdmType, edm_type_of
from tablestorage.models import Entity


MAX_SEGMENT_SIZE = 1000


class QueryComparisons(str, Enum):
    """Comparison operators for filter conditions."""
    EQUAL = "eq"
    NOT_EQUAL = "ne"
    GREATER_THAN = "gt"
    GREATER_THAN_OR_EQUAL = "ge"
    LESS_THAN = "lt"
    LESS_THAN_OR_EQUAL = "le"


class TableOperators(str, Enum):
    """Logical operators for combining filter conditions."""
    AND = "and"
    OR = "or"
    NOT = "not"


def format_literal(value: Any) -> str:
    """
    Format a Python value as an OData literal.

    Args:
        value: Value of a supported property type

    Returns:
        Literal text, e.g. ``'Smith'``, ``42L`` or ``datetime'2024-01-01T00:00:00Z'``
    """
    edm_type = edm_type_of(value)

    if edm_type == EdmType.STRING:
        return "'" + value.replace("'", "''") + "'"
    if edm_type == EdmType.BOOLEAN:
        return "true" if value else "false"
    if edm_type == EdmType.INT32:
        return str(value)
    if edm_type == EdmType.INT64:
        return f"{value}L"
    if edm_type == EdmType.DOUBLE:
        text = repr(float(value))
        return text if "." in text or "e" in text or "n" in text else text + ".0"
    if edm_type == EdmType.DATETIME:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        text = value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
        return f"datetime'{text}'"
    if edm_type == EdmType.GUID:
        return f"guid'{value}'"
    # EdmType.BINARY
    return f"X'{bytes(value).hex()}'"


def generate_filter_condition(property_name: str, operation: QueryComparisons, value: Any) -> str:
    """
    Generate a single filter condition.

    Args:
        property_name: Property to compare
        operation: Comparison operator
        value: Literal to compare against

    Returns:
        Filter condition, e.g. ``PartitionKey eq 'Smith'``
    """
    op = QueryComparisons(operation)
    return f"{property_name} {op.value} {format_literal(value)}"


def combine_filters(left: str, operator: TableOperators, right: str) -> str:
    """
    Combine two filter expressions.

    Args:
        left: Left filter
        operator: ``and`` or ``or``
        right: Right filter

    Returns:
        ``(left) operator (right)``
    """
    op = TableOperators(operator)
    if op == TableOperators.NOT:
        raise ValueError("'not' is unary; use negate_filter()")
    return f"({left}) {op.value} ({right})"


def negate_filter(expression: str) -> str:
    """Negate a filter expression."""
    return f"not ({expression})"


class QueryShape(str, Enum):
    """Predicate shapes sharing the same pagination machinery."""
    POINT = "point"
    PARTITION_SCAN = "partition_scan"
    RANGE = "range"
    TABLE_SCAN = "table_scan"
    CUSTOM = "custom"


@dataclass(frozen=True)
class TableQuery:
    """
    Query definition.

    Attributes:
        filter: OData $filter expression (None scans the whole table)
        select: Properties to project (system properties are always returned)
        take_count: Max entities per segment (defaults to the service maximum)
        entity_type: Record type results are decoded into
        shape: Predicate shape the query was built with
    """
    filter: Optional[str] = None
    select: Optional[List[str]] = field(default=None, hash=False)
    take_count: Optional[int] = None
    entity_type: type = Entity
    shape: QueryShape = QueryShape.CUSTOM

    def __post_init__(self):
        if self.take_count is not None and not 1 <= self.take_count <= MAX_SEGMENT_SIZE:
            raise ValueError(f"take_count must be between 1 and {MAX_SEGMENT_SIZE}, got {self.take_count}")

    @property
    def segment_size(self) -> int:
        """Entities requested per round trip."""
        return self.take_count or MAX_SEGMENT_SIZE

    @classmethod
    def all(cls, entity_type: type = Entity, take_count: Optional[int] = None) -> "TableQuery":
        """Unfiltered table scan."""
        return cls(entity_type=entity_type, take_count=take_count, shape=QueryShape.TABLE_SCAN)

    @classmethod
    def point(cls, partition_key: str, row_key: str, entity_type: type = Entity) -> "TableQuery":
        """Equality on both keys. Matches at most one entity."""
        return cls(
            filter=combine_filters(
                generate_filter_condition("PartitionKey", QueryComparisons.EQUAL, partition_key),
                TableOperators.AND,
                generate_filter_condition("RowKey", QueryComparisons.EQUAL, row_key),
            ),
            entity_type=entity_type,
            shape=QueryShape.POINT,
        )

    @classmethod
    def partition_scan(
        cls,
        partition_key: str,
        entity_type: type = Entity,
        take_count: Optional[int] = None,
    ) -> "TableQuery":
        """Equality on the partition key only."""
        return cls(
            filter=generate_filter_condition("PartitionKey", QueryComparisons.EQUAL, partition_key),
            entity_type=entity_type,
            take_count=take_count,
            shape=QueryShape.PARTITION_SCAN,
        )

    @classmethod
    def range(
        cls,
        partition_key: str,
        start_row_key: Optional[str] = None,
        end_row_key: Optional[str] = None,
        *,
        include_start: bool = True,
        include_end: bool = True,
        entity_type: type = Entity,
        take_count: Optional[int] = None,
    ) -> "TableQuery":
        """
        Equality on the partition key and bounds on the row key.

        Args:
            partition_key: Partition to scan
            start_row_key: Lower row-key bound (None for unbounded)
            end_row_key: Upper row-key bound (None for unbounded)
            include_start: Whether the lower bound is inclusive
            include_end: Whether the upper bound is inclusive
            entity_type: Record type results are decoded into
            take_count: Max entities per segment

        Returns:
            Range query
        """
        if start_row_key is not None and end_row_key is not None and start_row_key > end_row_key:
            raise ValueError(f"start_row_key '{start_row_key}' is after end_row_key '{end_row_key}'")

        expression = generate_filter_condition("PartitionKey", QueryComparisons.EQUAL, partition_key)
        bounds = []
        if start_row_key is not None:
            op = QueryComparisons.GREATER_THAN_OR_EQUAL if include_start else QueryComparisons.GREATER_THAN
            bounds.append(generate_filter_condition("RowKey", op, start_row_key))
        if end_row_key is not None:
            op = QueryComparisons.LESS_THAN_OR_EQUAL if include_end else QueryComparisons.LESS_THAN
            bounds.append(generate_filter_condition("RowKey", op, end_row_key))

        if len(bounds) == 2:
            expression = combine_filters(
                expression,
                TableOperators.AND,
                combine_filters(bounds[0], TableOperators.AND, bounds[1]),
            )
        elif bounds:
            expression = combine_filters(expression, TableOperators.AND, bounds[0])

        return cls(filter=expression, entity_type=entity_type, take_count=take_count, shape=QueryShape.RANGE)

    def where(self, expression: str) -> "TableQuery":
        """Return a copy with an additional condition and-ed to the filter."""
        combined = combine_filters(self.filter, TableOperators.AND, expression) if self.filter else expression
        return replace(self, filter=combined, shape=QueryShape.CUSTOM)

    def take(self, count: int) -> "TableQuery":
        """Return a copy with a different segment size."""
        return replace(self, take_count=count)

    def with_select(self, *properties: str) -> "TableQuery":
        """Return a copy projecting the given properties."""
        return replace(self, select=list(properties) or None)

    def with_entity_type(self, entity_type: type) -> "TableQuery":
        """Return a copy decoding results into ``entity_type``."""
        return replace(self, entity_type=entity_type)


def parse_binary_literal(text: str) -> bytes:
    """Decode the hex body of an ``X'..'`` literal."""
    return bytes.fromhex(text)


def parse_guid_literal(text: str) -> UUID:
    """Decode the body of a ``guid'..'`` literal."""
    return UUID(text)


def parse_datetime_literal(text: str) -> datetime:
    """Decode the body of a ``datetime'..'`` literal."""
    value = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value
