"""
Table clients.

``TableServiceClient`` covers account-level work (tables, service settings,
statistics); ``TableClient`` covers one table (entity operations, batches,
queries, stored policies and SAS tokens). Both are thin: validation happens
here, everything else goes through the backend's transport.
"""

import logging
from typing import List, Optional, Type, TypeVar

from tablestorage.backends import BackendCapability, TableBackend, create_backend
from tablestorage.codec import EntityLike, decode, to_entity, with_metadata
from tablestorage.core.config_manager import TableStorageConfig
from tablestorage.emulator.backend import TableEmulator
from tablestorage.exceptions import (
    ConflictError,
    EntityNotFoundError,
    NotAllowedError,
    NotFoundError,
    TableNotFoundError,
)
from tablestorage.models import Entity
from tablestorage.operations import (
    OperationType,
    TableBatchOperation,
    TableOperation,
    TableResult,
    validate_batch,
)
from tablestorage.query import MAX_SEGMENT_SIZE, TableQuery
from tablestorage.sas import AccessPolicy, TablePermissions, validate_sas_request
from tablestorage.segments import ContinuationToken, QuerySegment, SegmentedQuery
from tablestorage.service_properties import ServiceProperties, ServiceStats

logger = logging.getLogger(__name__)

R = TypeVar("R")

_STATUS_CODES = {
    OperationType.INSERT: 201,
    OperationType.DELETE: 204,
    OperationType.RETRIEVE: 200,
}


class TableClient:
    """
    Client for one table.

    Writes return the submitted record (same type) carrying the new etag and
    timestamp. Nothing is retried; ``TransientError`` is left to the caller.
    """

    def __init__(self, table_name: str, backend: TableBackend, default_segment_size: int = MAX_SEGMENT_SIZE):
        """
        Initialize client.

        Args:
            table_name: Table this client addresses
            backend: Backend (transport plus capabilities)
            default_segment_size: Segment size for queries that set no take count
        """
        self.table_name = table_name
        self.backend = backend
        self.default_segment_size = default_segment_size

    @property
    def transport(self):
        return self.backend.transport

    @property
    def url(self) -> str:
        return self.transport.table_url(self.table_name)

    # ========== Table lifecycle ==========

    async def create(self) -> None:
        """Create the table. Raises ConflictError if it exists."""
        await self.transport.create_table(self.table_name)
        logger.info(f"Created table {self.table_name}")

    async def create_if_not_exists(self) -> bool:
        """Create the table unless it exists. Returns True if it was created."""
        try:
            await self.create()
            return True
        except ConflictError:
            return False

    async def delete_table(self) -> None:
        """Delete the table. Raises TableNotFoundError if absent."""
        await self.transport.delete_table(self.table_name)
        logger.info(f"Deleted table {self.table_name}")

    async def delete_table_if_exists(self) -> bool:
        """Delete the table if present. Returns True if it was deleted."""
        try:
            await self.delete_table()
            return True
        except NotFoundError:
            return False

    async def exists(self) -> bool:
        """Whether the table exists. Table names are case-insensitive."""
        return await self.transport.table_exists(self.table_name)

    # ========== Entity operations ==========

    async def insert(self, record: R) -> R:
        """
        Insert a new entity.

        Raises:
            ConflictError: If an entity with the same keys exists
        """
        written = await self.transport.insert_entity(self.table_name, to_entity(record))
        return with_metadata(record, written)

    async def merge(self, record: R) -> R:
        """
        Merge the record's properties into the stored entity.

        The record's etag is used as If-Match; an empty etag or ``'*'`` merges
        unconditionally.

        Raises:
            NotFoundError: If the entity does not exist
            PreconditionFailedError: If the etag is stale
        """
        entity = to_entity(record)
        written = await self.transport.merge_entity(self.table_name, entity, etag=entity.etag or None)
        return with_metadata(record, written)

    async def replace(self, record: R) -> R:
        """
        Replace the stored entity with the record.

        Raises:
            NotFoundError: If the entity does not exist
            PreconditionFailedError: If the etag is stale
        """
        entity = to_entity(record)
        written = await self.transport.replace_entity(self.table_name, entity, etag=entity.etag or None)
        return with_metadata(record, written)

    async def insert_or_merge(self, record: R) -> R:
        written = await self.transport.insert_or_merge_entity(self.table_name, to_entity(record))
        return with_metadata(record, written)

    async def insert_or_replace(self, record: R) -> R:
        written = await self.transport.insert_or_replace_entity(self.table_name, to_entity(record))
        return with_metadata(record, written)

    async def delete(self, record: EntityLike) -> None:
        """
        Delete an entity.

        Args:
            record: Entity to delete; must carry an etag (``'*'`` for any version)

        Raises:
            ValueError: If the record has no etag
            NotFoundError: If the entity does not exist
            PreconditionFailedError: If the etag is stale
        """
        operation = TableOperation.delete(record)
        await self.transport.delete_entity(
            self.table_name, operation.partition_key, operation.row_key, etag=operation.etag
        )

    async def retrieve(
        self,
        partition_key: str,
        row_key: str,
        entity_type: Type[R] = Entity,
        select: Optional[List[str]] = None,
    ) -> Optional[R]:
        """
        Point lookup.

        Returns:
            The decoded record, or None if no entity has these keys

        Raises:
            SchemaMismatchError: If a key is empty or contains reserved characters
        """
        operation = TableOperation.retrieve(partition_key, row_key, entity_type, select)
        try:
            entity = await self.transport.retrieve_entity(
                self.table_name, operation.partition_key, operation.row_key, select=select
            )
        except EntityNotFoundError:
            return None
        return decode(entity, entity_type)

    async def execute(self, operation: TableOperation) -> TableResult:
        """
        Run one operation and report its outcome.

        Not-found and permission-denied outcomes are returned as the result's
        ``error``; every other failure is raised.
        """
        op_type = operation.operation_type
        try:
            if op_type == OperationType.RETRIEVE:
                entity = await self.transport.retrieve_entity(
                    self.table_name, operation.partition_key, operation.row_key, select=operation.select
                )
                return TableResult(op_type, decode(entity, operation.record_type), entity.etag or None)

            if op_type == OperationType.DELETE:
                await self.transport.delete_entity(
                    self.table_name, operation.partition_key, operation.row_key, etag=operation.etag
                )
                return TableResult(op_type, status_code=204)

            written = await self._write(operation)
        except (NotFoundError, NotAllowedError) as e:
            if isinstance(e, TableNotFoundError):
                raise
            logger.debug(f"{op_type.value} on {self.table_name}: {e.kind.value}")
            return TableResult(op_type, status_code=e.status_code, error=e)

        return TableResult(
            op_type,
            decode(written, operation.record_type),
            written.etag or None,
            status_code=_STATUS_CODES.get(op_type, 204),
        )

    async def _write(self, operation: TableOperation) -> Entity:
        op_type = operation.operation_type
        entity = operation.entity
        if op_type == OperationType.INSERT:
            return await self.transport.insert_entity(self.table_name, entity)
        if op_type == OperationType.MERGE:
            return await self.transport.merge_entity(self.table_name, entity, etag=operation.etag)
        if op_type == OperationType.REPLACE:
            return await self.transport.replace_entity(self.table_name, entity, etag=operation.etag)
        if op_type == OperationType.INSERT_OR_MERGE:
            return await self.transport.insert_or_merge_entity(self.table_name, entity)
        return await self.transport.insert_or_replace_entity(self.table_name, entity)

    async def execute_batch(self, batch: TableBatchOperation) -> List[TableResult]:
        """
        Commit a batch all-or-nothing.

        Returns:
            One result per operation, in submission order

        Raises:
            InvalidBatchError: If the batch violates its invariants (nothing is sent)
        """
        operations = list(batch)
        validate_batch(operations)
        if len(operations) == 1 and operations[0].operation_type == OperationType.RETRIEVE:
            # A lone retrieve is a point lookup; an absent entity is a result, not an error
            return [await self.execute(operations[0])]
        written = await self.transport.execute_batch(self.table_name, operations)
        logger.debug(
            f"Committed batch of {len(operations)} operation(s) on {self.table_name}/{batch.partition_key}"
        )

        results = []
        for operation, entity in zip(operations, written):
            if entity is None:
                results.append(TableResult(operation.operation_type, status_code=204))
                continue
            results.append(
                TableResult(
                    operation.operation_type,
                    decode(entity, operation.record_type),
                    entity.etag or None,
                    status_code=_STATUS_CODES.get(operation.operation_type, 204),
                )
            )
        return results

    # ========== Queries ==========

    def _with_default_segment_size(self, query: TableQuery) -> TableQuery:
        if query.take_count is None and self.default_segment_size != MAX_SEGMENT_SIZE:
            return query.take(self.default_segment_size)
        return query

    async def query_segment(
        self,
        query: TableQuery,
        continuation_token: Optional[ContinuationToken] = None,
    ) -> QuerySegment:
        """
        Fetch one segment.

        Args:
            query: Query definition
            continuation_token: Token from the previous segment (None to start)

        Returns:
            Decoded results and the token for the next segment (None when done)
        """
        query = self._with_default_segment_size(query)
        segment = await self.transport.query_segment(self.table_name, query, continuation_token)
        return QuerySegment(
            [decode(entity, query.entity_type) for entity in segment],
            segment.continuation_token,
        )

    def query(self, query: TableQuery) -> SegmentedQuery:
        """
        Lazy iteration over every result, one segment per round trip.

        Example:
            ```python
            async for customer in table.query(TableQuery.partition_scan("Smith", CustomerEntity)):
                ...
            ```
        """
        async def fetch(token: Optional[ContinuationToken]) -> QuerySegment:
            return await self.query_segment(query, token)

        return SegmentedQuery(fetch, description=f"query on {self.table_name}")

    # ========== Access control ==========

    async def get_permissions(self) -> TablePermissions:
        self.backend.require(BackendCapability.TABLE_ACL)
        return await self.transport.get_table_permissions(self.table_name)

    async def set_permissions(self, permissions: TablePermissions) -> None:
        self.backend.require(BackendCapability.TABLE_ACL)
        await self.transport.set_table_permissions(self.table_name, permissions)

    async def create_stored_policy(self, name: str, policy: AccessPolicy) -> TablePermissions:
        """
        Add a stored access policy to the table.

        The policy may take a short while to become usable by tokens.

        Raises:
            ConflictError: If a policy with this name exists
            TooManyPoliciesError: If the table already holds the maximum
        """
        permissions = await self.get_permissions()
        permissions.add(name, policy)
        await self.set_permissions(permissions)
        logger.info(f"Stored access policy '{name}' on {self.table_name}")
        return permissions

    async def generate_sas(
        self,
        policy: Optional[AccessPolicy] = None,
        policy_id: Optional[str] = None,
    ) -> str:
        """
        Have the service credential sign a table SAS.

        Args:
            policy: Ad-hoc constraints (needs permissions and expiry without ``policy_id``)
            policy_id: Stored policy to reference

        Returns:
            Token query string without a leading '?'
        """
        self.backend.require(BackendCapability.SAS)
        validate_sas_request(policy, policy_id)
        return await self.transport.generate_table_sas(self.table_name, policy=policy, policy_id=policy_id)

    async def generate_sas_uri(
        self,
        policy: Optional[AccessPolicy] = None,
        policy_id: Optional[str] = None,
    ) -> str:
        token = await self.generate_sas(policy=policy, policy_id=policy_id)
        return f"{self.url}?{token}"

    def with_sas(self, sas_token: str) -> "TableClient":
        """Client for the same table authenticated by ``sas_token``."""
        backend = self.backend.with_transport(self.transport.with_sas(sas_token))
        return TableClient(self.table_name, backend, self.default_segment_size)


class TableServiceClient:
    """Account-level client."""

    def __init__(self, backend: TableBackend, default_segment_size: int = MAX_SEGMENT_SIZE):
        self.backend = backend
        self.default_segment_size = default_segment_size

    @classmethod
    def from_config(
        cls,
        config: TableStorageConfig,
        emulator: Optional[TableEmulator] = None,
    ) -> "TableServiceClient":
        """
        Build a client from configuration.

        Args:
            config: Loaded configuration
            emulator: Service to use for the memory transport
        """
        return cls(create_backend(config, emulator), default_segment_size=config.query.segment_size)

    @property
    def transport(self):
        return self.backend.transport

    def get_table_client(self, table_name: str) -> TableClient:
        return TableClient(table_name, self.backend, self.default_segment_size)

    # ========== Tables ==========

    async def create_table(self, table_name: str) -> TableClient:
        table = self.get_table_client(table_name)
        await table.create()
        return table

    async def create_table_if_not_exists(self, table_name: str) -> TableClient:
        table = self.get_table_client(table_name)
        await table.create_if_not_exists()
        return table

    async def delete_table(self, table_name: str) -> None:
        await self.get_table_client(table_name).delete_table()

    async def delete_table_if_exists(self, table_name: str) -> bool:
        return await self.get_table_client(table_name).delete_table_if_exists()

    async def list_tables_segment(
        self,
        prefix: Optional[str] = None,
        max_results: Optional[int] = None,
        continuation_token: Optional[ContinuationToken] = None,
    ) -> QuerySegment[str]:
        """Fetch one segment of table names."""
        return await self.transport.list_tables_segment(
            prefix=prefix, max_results=max_results, continuation_token=continuation_token
        )

    def list_tables(self, prefix: Optional[str] = None, results_per_page: Optional[int] = None) -> SegmentedQuery[str]:
        """Lazy iteration over table names."""
        async def fetch(token: Optional[ContinuationToken]) -> QuerySegment[str]:
            return await self.list_tables_segment(prefix, results_per_page, token)

        return SegmentedQuery(fetch, description="list tables")

    # ========== Service ==========

    async def get_service_properties(self) -> ServiceProperties:
        self.backend.require(BackendCapability.SERVICE_PROPERTIES)
        return await self.transport.get_service_properties()

    async def set_service_properties(self, properties: ServiceProperties) -> None:
        self.backend.require(BackendCapability.SERVICE_PROPERTIES)
        if properties.cors:
            self.backend.require(BackendCapability.CORS)
        await self.transport.set_service_properties(properties)

    async def get_service_stats(self) -> ServiceStats:
        self.backend.require(BackendCapability.SERVICE_STATS)
        return await self.transport.get_service_stats()

    async def close(self) -> None:
        await self.transport.close()

    async def __aenter__(self) -> "TableServiceClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
